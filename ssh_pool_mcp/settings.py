"""SSH Pool MCP 配置设置模块

使用 Pydantic Settings 管理配置，支持以下配置方式（优先级从高到低）：
1. 构造参数
2. 环境变量（前缀：SSH_POOL_MCP_）
3. .env 文件
4. JSON 配置文件（SSH_POOL_MCP_CONFIG_FILE，默认 ssh_pool_mcp_config.json）
5. 默认值

示例环境变量：
    SSH_POOL_MCP_LOG_LEVEL=DEBUG
    SSH_POOL_MCP_IDLE_CONNECTION_TTL_SECONDS=600
    SSH_POOL_MCP_SSH_KEY_DIR=/home/ops/.ssh
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from ssh_pool_mcp.constants import (
    DEFAULT_AGENT_FORWARD,
    DEFAULT_CONFIG_FILE,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_IDLE_TTL_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    ENV_PREFIX,
)


def _default_key_dir() -> Path:
    return Path.home() / ".ssh"


class JsonObjectSettingsSource(JsonConfigSettingsSource):
    """只接受顶层为对象的 JSON 配置文件。"""

    def _read_file(self, file_path: Path) -> dict[str, Any]:
        with open(file_path, encoding=self.json_file_encoding or "utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"配置文件必须是JSON对象: {file_path}")
        return raw


class SSHPoolSettings(BaseSettings):
    """SSH Pool MCP 服务器配置类。

    支持通过环境变量、.env文件、JSON配置文件或默认值进行配置。
    环境变量前缀为 SSH_POOL_MCP_。
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 配置文件路径
    config_file: Path = Field(default=Path(DEFAULT_CONFIG_FILE))

    # 日志配置
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: Path = Field(default=Path("logs"), description="日志目录")
    log_rotation: str = Field(default="10 MB", description="日志轮转大小")
    log_retention: str = Field(default="30 days", description="日志保留时间")

    # 连接池配置
    connect_timeout_ms: int = Field(
        default=DEFAULT_CONNECT_TIMEOUT_MS, ge=1, description="连接建立超时时间(毫秒)"
    )
    idle_connection_ttl_seconds: int = Field(
        default=DEFAULT_IDLE_TTL_SECONDS, ge=1, description="空闲连接TTL(秒)"
    )
    sweep_interval_seconds: float = Field(
        default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0, description="空闲清理间隔(秒)"
    )

    # SSH 认证配置
    agent_forward: bool = Field(
        default=DEFAULT_AGENT_FORWARD, description="默认是否启用SSH agent转发"
    )
    ssh_key_dir: Path = Field(
        default_factory=_default_key_dir, description="自动发现私钥的目录"
    )
    strict_host_key_checking: bool = Field(
        default=False, description="是否校验known_hosts，关闭时接受任意主机密钥"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        init_kwargs: dict[str, Any] = getattr(init_settings, "init_kwargs", {})
        json_file = init_kwargs.get("config_file") or os.getenv(
            f"{ENV_PREFIX}CONFIG_FILE", DEFAULT_CONFIG_FILE
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonObjectSettingsSource(settings_cls, json_file=Path(json_file)),
        )
