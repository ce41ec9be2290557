"""SSH Pool MCP 常量定义"""
from __future__ import annotations

DEFAULT_SSH_PORT: int = 22

# 连接建立超时（毫秒）
DEFAULT_CONNECT_TIMEOUT_MS: int = 10_000

# 空闲连接阈值：30分钟未使用即被清理
DEFAULT_IDLE_TTL_SECONDS: int = 30 * 60

# 后台清理任务执行间隔：5分钟
DEFAULT_SWEEP_INTERVAL_SECONDS: float = 5 * 60

DEFAULT_AGENT_FORWARD: bool = True

# 未指定凭据时按顺序查找的私钥文件名
DEFAULT_KEY_NAMES: tuple[str, ...] = ("id_rsa", "id_ed25519", "id_ecdsa", "id_dsa")

SERVER_NAME: str = "ssh-pool-mcp"

# 配置环境变量前缀与默认 JSON 配置文件
ENV_PREFIX: str = "SSH_POOL_MCP_"
DEFAULT_CONFIG_FILE: str = "ssh_pool_mcp_config.json"
