from __future__ import annotations

from dataclasses import dataclass

import asyncssh
from loguru import logger

from ssh_pool_mcp.auth_manager import AuthConfig
from ssh_pool_mcp.connection_pool import ConnectionPool, PoolKey
from ssh_pool_mcp.exceptions import ExecutionChannelError, TransportError
from ssh_pool_mcp.types import SSHExecuteResultDict


def _to_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


def _exit_code(completed: asyncssh.SSHCompletedProcess) -> int | None:
    # 被信号终止的进程没有退出码
    if getattr(completed, "exit_signal", None) is not None:
        return None
    return completed.exit_status


@dataclass(frozen=True)
class SSHCommandResult:
    host: str
    port: int
    username: str
    command: str
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def connection_key(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> SSHExecuteResultDict:
        return {
            "command": self.command,
            "host": self.connection_key,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "success": self.success,
        }


class CommandExecutor:
    def __init__(self, *, pool: ConnectionPool) -> None:
        self._pool = pool

    async def execute_command(
        self,
        *,
        host: str,
        port: int,
        username: str,
        auth: AuthConfig,
        command: str,
    ) -> SSHCommandResult:
        """在池化会话上执行一条命令。

        每次调用在同一会话上打开独立的命令通道，并发调用互不阻塞。
        非零退出码作为结果返回，不视为错误；不做自动重试。

        Raises:
            ValueError: command为空
            ExecutionChannelError: 命令通道打开失败或出错，会话仍保留在池中
            TransportError: 执行过程中会话断开，会话已被移出池
        """
        if not command.strip():
            raise ValueError("command不能为空")

        key = PoolKey(host=host, port=port, username=username)
        conn = await self._pool.acquire(key, auth)

        try:
            completed: asyncssh.SSHCompletedProcess = await conn.run(command, check=False)
        except (asyncssh.Error, OSError) as exc:
            await self._raise_if_transport_lost(key, conn, exc)
            if isinstance(exc, asyncssh.ChannelOpenError):
                message = f"打开命令通道失败: {key} - {exc}"
            else:
                message = f"命令通道出错: {key} - {exc}"
            raise ExecutionChannelError(
                message, command=command, connection_key=key.connection_key
            ) from exc

        # 既无退出码也无信号：通道在收到退出状态前关闭
        if completed.exit_status is None and getattr(completed, "exit_signal", None) is None:
            await self._raise_if_transport_lost(key, conn, None)
            raise ExecutionChannelError(
                f"命令通道在返回退出状态前关闭: {key}",
                command=command,
                connection_key=key.connection_key,
            )

        result = SSHCommandResult(
            host=host,
            port=port,
            username=username,
            command=command,
            exit_code=_exit_code(completed),
            stdout=_to_text(completed.stdout),
            stderr=_to_text(completed.stderr),
        )
        logger.debug("命令执行完成: {} exit_code={}", key, result.exit_code)
        return result

    async def _raise_if_transport_lost(
        self,
        key: PoolKey,
        conn: asyncssh.SSHClientConnection,
        exc: BaseException | None,
    ) -> None:
        """会话已断开时移出池并抛出 TransportError，否则直接返回。"""
        if not ConnectionPool.is_connection_dead(conn):
            return
        await self._pool.discard(key, conn)
        reason = f" - {exc}" if exc is not None else ""
        raise TransportError(
            f"执行命令时SSH会话断开: {key}{reason}",
            host=key.host,
            port=key.port,
            connection_key=key.connection_key,
            stage="execute",
        ) from exc
