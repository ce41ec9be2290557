from __future__ import annotations

from pathlib import Path
from typing import Any

from ssh_pool_mcp.settings import SSHPoolSettings


class ConfigManager:
    """持有进程级配置，供入口和测试统一加载。"""

    def __init__(self, settings: SSHPoolSettings) -> None:
        self.settings = settings

    @classmethod
    def load(
        cls,
        *,
        config_file: Path | None = None,
        env_file: Path | None = None,
    ) -> ConfigManager:
        """按 JSON配置文件 < .env < 环境变量 的优先级加载配置。

        Args:
            config_file: JSON配置文件，None 时取 SSH_POOL_MCP_CONFIG_FILE 或默认文件
            env_file: .env 文件，None 时使用当前目录下的 .env

        Raises:
            ValueError: JSON配置文件不是对象，或配置值校验失败
        """
        overrides: dict[str, Any] = {}
        if config_file is not None:
            overrides["config_file"] = config_file
        if env_file is not None:
            overrides["_env_file"] = env_file
        return cls(SSHPoolSettings(**overrides))
