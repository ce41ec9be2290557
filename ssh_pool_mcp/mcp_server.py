"""SSH Pool MCP Server 模块

本模块通过 MCP (Model Context Protocol) 暴露基于持久SSH会话池的远程命令工具：
- ssh_execute: 在远程主机上执行命令（同一 user@host:port 复用会话）
- ssh_connections: 查看、关闭单个或全部池化会话

使用方式：
    通过 stdio 启动 MCP 服务器，供 Claude Desktop 等客户端调用。
    收到 SIGINT/SIGTERM 或 stdin 关闭时，停止空闲清理并关闭全部会话后退出。
"""
from __future__ import annotations

import signal
import sys
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from io import TextIOWrapper
from pathlib import Path
from tempfile import gettempdir
from typing import Any, Literal, cast

import anyio
from loguru import logger
from mcp.server.fastmcp import FastMCP
from mcp.server.stdio import stdio_server

from ssh_pool_mcp.auth_manager import AuthConfig
from ssh_pool_mcp.command_executor import CommandExecutor
from ssh_pool_mcp.connection_pool import ConnectionPool, SessionSnapshot
from ssh_pool_mcp.constants import DEFAULT_SSH_PORT, SERVER_NAME
from ssh_pool_mcp.exceptions import ConnectionNotFoundError, SSHMCPError
from ssh_pool_mcp.settings import SSHPoolSettings
from ssh_pool_mcp.types import (
    ConnectionAction,
    ConnectionCloseAllResultDict,
    ConnectionCloseResultDict,
    ConnectionFailureDict,
    ConnectionListResultDict,
    ErrorDict,
    SSHExecuteFailureDict,
)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


async def _cancel_on_signal(scope: anyio.CancelScope) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("收到信号 {}，正在关闭SSH会话...", signal.Signals(signum).name)
            scope.cancel()
            return


def run_stdio_server(server: FastMCP) -> None:
    async def _run() -> None:
        stdin = anyio.wrap_file(
            TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
        )
        stdout = anyio.wrap_file(
            TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
        )
        async with anyio.create_task_group() as tg:
            # Windows 不支持 open_signal_receiver
            if sys.platform != "win32":
                tg.start_soon(_cancel_on_signal, tg.cancel_scope)
            async with stdio_server(stdin=stdin, stdout=stdout) as (read_stream, write_stream):
                lowlevel = cast(Any, server)._mcp_server
                await lowlevel.run(
                    read_stream,
                    write_stream,
                    lowlevel.create_initialization_options(),
                )
            tg.cancel_scope.cancel()

    try:
        anyio.run(_run)
    except BaseException:
        error_path = Path(gettempdir()) / "ssh-pool-mcp-startup-error.log"
        with error_path.open("a", encoding="utf-8") as f:
            f.write("\n" + "=" * 80 + "\n")
            f.write(traceback.format_exc())
        raise


def _error_dict(exc: SSHMCPError) -> ErrorDict:
    return cast(ErrorDict, exc.to_error_dict())


def format_execute_failure(
    *, host: str, port: int, username: str, command: str, exc: SSHMCPError
) -> SSHExecuteFailureDict:
    return {
        "command": command,
        "host": f"{username}@{host}:{port}",
        "success": False,
        "error": _error_dict(exc),
    }


def format_connection_list(snapshots: list[SessionSnapshot]) -> ConnectionListResultDict:
    return {
        "action": "list",
        "count": len(snapshots),
        "connections": [
            {
                "connection_key": s.connection_key,
                "is_connected": s.is_connected,
                "last_used": s.last_used_iso,
                "minutes_idle": s.minutes_idle,
            }
            for s in snapshots
        ],
    }


def format_connection_failure(
    action: ConnectionAction, exc: SSHMCPError
) -> ConnectionFailureDict:
    return {"action": action, "success": False, "error": _error_dict(exc)}


def create_mcp_server(
    *,
    settings: SSHPoolSettings,
    pool: ConnectionPool | None = None,
) -> FastMCP:
    if pool is None:
        pool = ConnectionPool(settings=settings)
    executor = CommandExecutor(pool=pool)

    @asynccontextmanager
    async def lifespan(_app: FastMCP) -> AsyncIterator[None]:
        try:
            yield
        finally:
            # 收到信号时外层作用域已取消，停机流程需屏蔽取消
            with anyio.CancelScope(shield=True):
                closed = await pool.shutdown()
            logger.info("SSH Pool MCP 已停止，关闭 {} 个会话", closed)

    mcp = FastMCP(
        name=SERVER_NAME,
        instructions="通过持久化SSH会话池在远程主机上执行命令并管理会话",
        log_level=cast(LogLevel, settings.log_level),
        lifespan=lifespan,
    )

    @mcp.tool()
    async def ssh_execute(
        *,
        host: str,
        username: str,
        command: str,
        port: int = DEFAULT_SSH_PORT,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
        timeout: int = settings.connect_timeout_ms,
        agent_forward: bool = settings.agent_forward,
    ) -> dict[str, Any]:
        """在远程主机上执行SSH命令并返回输出。

        同一 user@host:port 的请求复用持久化会话，首次请求时建立连接。
        凭据仅在建立连接时使用：优先密码，其次指定私钥，
        都未提供时自动查找 ~/.ssh 下的 id_rsa、id_ed25519、id_ecdsa、id_dsa。

        Args:
            host: 目标主机地址（IP或域名）
            username: SSH用户名
            command: 要执行的命令
            port: SSH端口，默认22
            password: SSH密码（可选，不使用密钥时提供）
            private_key_path: SSH私钥路径（可选）
            passphrase: 私钥口令（可选）
            timeout: 连接建立超时时间（毫秒），默认10000
            agent_forward: 是否启用SSH agent转发，默认True

        Returns:
            dict: 包含command、host、exit_code、stdout、stderr、success；
            失败时包含error（error_type、message、details）
        """
        auth = AuthConfig(
            password=password,
            private_key_path=private_key_path,
            passphrase=passphrase,
            timeout_ms=timeout,
            agent_forward=agent_forward,
        )
        try:
            res = await executor.execute_command(
                host=host,
                port=port,
                username=username,
                auth=auth,
                command=command,
            )
        except SSHMCPError as exc:
            logger.warning("SSH命令执行失败: {}@{}:{} - {}", username, host, port, exc.message)
            return dict(
                format_execute_failure(
                    host=host, port=port, username=username, command=command, exc=exc
                )
            )
        return dict(res.to_dict())

    @mcp.tool()
    async def ssh_connections(
        *,
        action: ConnectionAction,
        connection_key: str | None = None,
    ) -> dict[str, Any]:
        """管理持久化SSH会话。

        支持列出当前会话、关闭指定会话、关闭全部会话。

        Args:
            action: 操作类型 - list(列出)/close(关闭指定)/close_all(全部关闭)
            connection_key: 连接键（user@host:port），action=close 时必填

        Returns:
            dict: list返回会话列表；close返回关闭结果；close_all返回关闭数量
        """
        if action == "list":
            return dict(format_connection_list(await pool.list_sessions()))

        if action == "close":
            if not connection_key:
                error = SSHMCPError("action=close 时必须提供connection_key")
                return dict(format_connection_failure(action, error))
            try:
                await pool.close(connection_key)
            except ConnectionNotFoundError as exc:
                return dict(format_connection_failure(action, exc))
            closed: ConnectionCloseResultDict = {
                "action": action,
                "connection_key": connection_key,
                "closed": True,
            }
            return dict(closed)

        closed_all: ConnectionCloseAllResultDict = {
            "action": action,
            "closed_count": await pool.close_all(),
        }
        return dict(closed_all)

    return mcp
