"""SSH Pool MCP 自定义异常模块

定义项目中使用的所有自定义异常类，提供结构化的错误处理。
异常层次结构：
    SSHMCPError (基类)
    ├── AuthResolutionError        - 无可用凭据或私钥无法读取/解析
    ├── SSHConnectionError         - SSH连接相关错误
    │   ├── ConnectTimeoutError    - 连接建立超时
    │   └── TransportError         - 网络/协议层故障（连接前后均可能发生）
    ├── ConnectionNotFoundError    - 关闭不存在的连接
    └── ExecutionChannelError      - 命令通道打开失败或在退出前出错

非零退出码不是异常，而是命令结果数据的一部分。
"""
from __future__ import annotations

from typing import Literal

# 出错阶段：建立连接 / 执行命令 / 管理连接
ErrorStage = Literal["connect", "execute", "manage"]


class SSHMCPError(Exception):
    """SSH MCP 基础异常类。

    所有自定义异常的基类，提供统一的错误消息格式。

    Attributes:
        message: 用户友好的错误描述信息
        details: 可选的附加错误详情字典
    """

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        """初始化基础异常。

        Args:
            message: 用户友好的错误描述信息
            details: 可选的附加错误详情
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_dict(self) -> dict[str, object]:
        """将异常转换为结构化的错误字典。

        Returns:
            包含error_type、message和details的字典
        """
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class AuthResolutionError(SSHMCPError):
    """凭据解析错误。

    未提供密码、未提供私钥路径且自动发现也找不到私钥时抛出；
    私钥文件无法读取或无法解析（如口令错误）时同样抛出。

    Attributes:
        username: 关联的用户名
        key_path: 关联的私钥路径（如有）
    """

    def __init__(
        self,
        message: str,
        *,
        username: str = "",
        key_path: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        merged_details = {
            "username": username,
            "key_path": key_path,
            "stage": "connect",
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.username = username
        self.key_path = key_path


class SSHConnectionError(SSHMCPError):
    """SSH连接错误。

    当SSH连接建立失败、超时或连接在使用中断开时抛出。

    Attributes:
        host: 目标主机地址
        port: 目标SSH端口
        connection_key: 连接池键（user@host:port）
        stage: 出错阶段
    """

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        port: int = 22,
        connection_key: str = "",
        stage: ErrorStage = "connect",
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化SSH连接错误。

        Args:
            message: 错误描述信息
            host: 目标主机地址
            port: 目标SSH端口
            connection_key: 连接池键
            stage: 出错阶段
            details: 附加错误详情
        """
        merged_details = {
            "host": host,
            "port": port,
            "connection_key": connection_key,
            "stage": stage,
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.host = host
        self.port = port
        self.connection_key = connection_key
        self.stage = stage


class ConnectTimeoutError(SSHConnectionError):
    """连接建立超时。

    连接尝试在指定时间内未就绪时抛出，该次尝试对应的会话记录会被丢弃。
    """


class TransportError(SSHConnectionError):
    """传输层错误。

    网络或SSH协议层的异步故障。发生后对应的会话记录会被移除，
    正在该会话上执行的命令同样以此错误失败。
    """


class ConnectionNotFoundError(SSHMCPError):
    """连接不存在错误。

    关闭连接时引用了连接池中不存在的连接键。

    Attributes:
        connection_key: 请求关闭的连接键
    """

    def __init__(
        self,
        message: str,
        *,
        connection_key: str = "",
        details: dict[str, object] | None = None,
    ) -> None:
        merged_details = {
            "connection_key": connection_key,
            "stage": "manage",
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.connection_key = connection_key


class ExecutionChannelError(SSHMCPError):
    """命令通道错误。

    命令通道打开失败，或在得到退出状态前出错时抛出。
    与非零退出码不同，后者属于正常结果。

    Attributes:
        command: 执行的命令
        connection_key: 连接池键
    """

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        connection_key: str = "",
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化命令通道错误。

        Args:
            message: 错误描述信息
            command: 执行的命令
            connection_key: 连接池键
            details: 附加错误详情
        """
        merged_details = {
            "command": command,
            "connection_key": connection_key,
            "stage": "execute",
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.command = command
        self.connection_key = connection_key
