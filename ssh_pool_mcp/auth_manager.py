from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from ssh_pool_mcp.constants import (
    DEFAULT_AGENT_FORWARD,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_KEY_NAMES,
)
from ssh_pool_mcp.exceptions import AuthResolutionError

AuthMode = Literal["password", "key"]


@dataclass(frozen=True)
class AuthConfig:
    """单次请求携带的认证参数，仅在该连接键首次建立连接时使用。"""

    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    agent_forward: bool = DEFAULT_AGENT_FORWARD

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class SSHCredentials:
    username: str
    password: str | None = None
    private_key: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None

    @property
    def auth_mode(self) -> AuthMode:
        if self.password:
            return "password"
        return "key"

    def __repr__(self) -> str:
        return (
            f"SSHCredentials(username={self.username!r}, auth_mode={self.auth_mode!r}, "
            f"private_key_path={self.private_key_path!r})"
        )


class CredentialResolver:
    def __init__(
        self,
        *,
        key_dir: Path | None = None,
        key_names: Sequence[str] = DEFAULT_KEY_NAMES,
    ) -> None:
        self._key_dir = key_dir if key_dir is not None else Path.home() / ".ssh"
        self._key_names = tuple(key_names)

    @property
    def key_dir(self) -> Path:
        return self._key_dir

    def discover_keys(self) -> list[Path]:
        found: list[Path] = []
        for name in self._key_names:
            candidate = self._key_dir / name
            try:
                if candidate.is_file():
                    found.append(candidate)
            except OSError:
                continue
        return found

    def resolve(self, *, username: str, auth: AuthConfig) -> SSHCredentials:
        """按 密码 > 指定私钥 > 自动发现私钥 的顺序解析凭据。

        Raises:
            AuthResolutionError: 无可用凭据或私钥文件无法读取
        """
        if auth.password:
            return SSHCredentials(username=username, password=auth.password)

        if auth.private_key_path:
            key_path = Path(auth.private_key_path).expanduser()
        else:
            discovered = self.discover_keys()
            if not discovered:
                raise AuthResolutionError(
                    f"未在 {self._key_dir} 中找到SSH私钥，请指定private_key_path或使用密码认证",
                    username=username,
                )
            key_path = discovered[0]

        return SSHCredentials(
            username=username,
            private_key=self._load_private_key(key_path, username=username),
            private_key_path=str(key_path),
            passphrase=auth.passphrase or None,
        )

    @staticmethod
    def _load_private_key(path: Path, *, username: str) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise AuthResolutionError(
                f"读取私钥失败: {path} - {exc}",
                username=username,
                key_path=str(path),
            ) from exc
