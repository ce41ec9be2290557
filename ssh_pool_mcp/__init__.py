"""
SSH Pool MCP 远程命令执行工具

基于 MCP 协议的持久化SSH会话池，按 user@host:port 复用已认证的会话执行远程命令。
"""

__version__ = "0.1.0"

__all__ = [
    "auth_manager",
    "command_executor",
    "config_manager",
    "connection_pool",
    "constants",
    "exceptions",
    "logger",
    "mcp_server",
    "settings",
    "types",
]
