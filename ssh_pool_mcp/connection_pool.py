"""SSH会话池管理模块

提供异步SSH会话池，支持：
- 按主机+端口+用户名维度的会话复用（每个键最多一个会话记录）
- 懒建立连接，并发的首次请求共享同一次连接尝试（single-flight）
- 连接建立超时控制，超时的尝试被取消并丢弃
- 传输层断开通知即时剔除会话
- 后台定期清理空闲会话
- 单个关闭、全量关闭与优雅停机
"""
from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial

import asyncssh
from loguru import logger

from ssh_pool_mcp.auth_manager import AuthConfig, CredentialResolver, SSHCredentials
from ssh_pool_mcp.exceptions import (
    AuthResolutionError,
    ConnectionNotFoundError,
    ConnectTimeoutError,
    SSHConnectionError,
    TransportError,
)
from ssh_pool_mcp.settings import SSHPoolSettings


class SessionStatus(str, enum.Enum):
    """会话记录状态：CONNECTING -> READY -> CLOSED，CLOSED 为终态。"""

    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class PoolKey:
    """连接池键。

    用于按主机+端口+用户名维度管理会话。凭据不参与键的计算，
    相同键的后续请求直接复用已有会话。

    Attributes:
        host: 主机地址
        port: SSH端口
        username: SSH用户名
    """

    host: str
    port: int
    username: str

    @property
    def connection_key(self) -> str:
        """对外展示的连接键，格式为 user@host:port。"""
        return f"{self.username}@{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.connection_key


@dataclass
class SessionRecord:
    """池化会话记录。

    Attributes:
        key: 连接池键，创建后不变
        auth: 建立连接时使用的认证参数
        last_used: 上次成功获取的时间戳（只增不减）
        status: 会话状态
        connection: 独占持有的asyncssh连接，READY 之前为 None
        attempt: 进行中的连接任务，仅在 CONNECTING 状态存在
    """

    key: PoolKey
    auth: AuthConfig
    last_used: float
    status: SessionStatus = SessionStatus.CONNECTING
    connection: asyncssh.SSHClientConnection | None = None
    attempt: asyncio.Task[asyncssh.SSHClientConnection] | None = None

    def touch(self, now: float) -> None:
        if now > self.last_used:
            self.last_used = now

    def mark_closed(self) -> None:
        self.status = SessionStatus.CLOSED
        self.attempt = None


@dataclass(frozen=True)
class SessionSnapshot:
    """会话记录的只读快照，用于 list_sessions。"""

    key: PoolKey
    status: SessionStatus
    last_used: float
    idle_seconds: float

    @property
    def connection_key(self) -> str:
        return self.key.connection_key

    @property
    def is_connected(self) -> bool:
        return self.status is SessionStatus.READY

    @property
    def last_used_iso(self) -> str:
        return datetime.fromtimestamp(self.last_used, tz=timezone.utc).isoformat()

    @property
    def minutes_idle(self) -> int:
        return int(self.idle_seconds // 60)


class _SessionClient(asyncssh.SSHClient):
    """把传输层的断开通知转交给连接池。"""

    def __init__(self, on_lost: Callable[[Exception | None], None]) -> None:
        self._on_lost = on_lost

    def connection_lost(self, exc: Exception | None) -> None:
        self._on_lost(exc)


class ConnectionPool:
    """异步SSH会话池。

    管理SSH会话的创建、复用、清理和销毁。每个 PoolKey 至多对应一条
    SessionRecord；并发的首次请求挂到同一个连接任务上。

    所有对 _records 的读改写都在不跨越 await 的代码段中完成，
    因此传输层的同步回调不会与持锁的代码段交错执行。

    Attributes:
        _settings: SSH Pool MCP配置
        _resolver: 凭据解析器
    """

    def __init__(
        self,
        *,
        settings: SSHPoolSettings,
        resolver: CredentialResolver | None = None,
        time_provider: Callable[[], float] = time.time,
    ) -> None:
        """初始化会话池。

        Args:
            settings: SSH Pool MCP配置
            resolver: 凭据解析器，None 时按配置的私钥目录创建
            time_provider: 墙钟时间提供函数，用于测试注入
        """
        self._settings = settings
        self._resolver = (
            resolver if resolver is not None else CredentialResolver(key_dir=settings.ssh_key_dir)
        )
        self._time = time_provider

        self._lock = asyncio.Lock()
        self._records: dict[PoolKey, SessionRecord] = {}

        # 后台空闲清理任务
        self._cleanup_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._records)

    def _ensure_cleanup_started(self) -> None:
        """确保后台清理任务已启动。

        仅在首次调用时创建后台任务，后续调用无操作。
        """
        if self._cleanup_task is None and not self._closed:
            try:
                self._cleanup_task = asyncio.create_task(self._background_cleanup_loop())
            except RuntimeError:
                pass

    async def acquire(self, key: PoolKey, auth: AuthConfig) -> asyncssh.SSHClientConnection:
        """获取可用的SSH会话。

        已就绪的会话直接复用；正在建立的会话等待同一次连接尝试；
        不存在或已失效的会话会重新建立。

        Args:
            key: 连接池键
            auth: 认证参数，仅在需要新建连接时使用

        Returns:
            asyncssh.SSHClientConnection: 已就绪的SSH连接

        Raises:
            AuthResolutionError: 无法解析出可用凭据
            ConnectTimeoutError: 连接在超时时间内未就绪
            TransportError: 连接失败或在建立过程中被关闭
            SSHConnectionError: 会话池已停止
        """
        if self._closed:
            raise SSHConnectionError(
                f"连接池已关闭: {key}",
                host=key.host,
                port=key.port,
                connection_key=key.connection_key,
            )
        self._ensure_cleanup_started()

        stale: asyncssh.SSHClientConnection | None = None
        async with self._lock:
            record = self._records.get(key)
            if record is not None and not self._is_usable(record):
                logger.info("SSH会话已失效，重新连接: {}", key)
                stale = self._pop_record(record)
                record = None

            if record is None:
                record = SessionRecord(key=key, auth=auth, last_used=self._time())
                record.attempt = asyncio.create_task(self._establish(record))
                self._records[key] = record
            elif record.status is SessionStatus.READY and record.connection is not None:
                record.touch(self._time())
                logger.debug("复用SSH会话: {}", key)
                return record.connection

            attempt = record.attempt

        if stale is not None:
            await self._close_quietly(stale)

        # shield: 单个等待者被取消不影响其他等待者共享的连接任务
        conn = await asyncio.shield(attempt)

        async with self._lock:
            if record.status is SessionStatus.READY:
                record.touch(self._time())
        return conn

    async def close(self, key: PoolKey | str) -> None:
        """关闭指定会话并从池中移除。

        Args:
            key: PoolKey 或 user@host:port 形式的连接键

        Raises:
            ConnectionNotFoundError: 池中不存在该连接键
        """
        async with self._lock:
            record = self._find(key)
            if record is None:
                raise ConnectionNotFoundError(f"连接不存在: {key}", connection_key=str(key))
            conn = self._pop_record(record)

        if conn is not None:
            await self._close_quietly(conn)
        logger.info("SSH会话已关闭: {}", record.key)

    async def close_all(self) -> int:
        """关闭池中所有会话。

        Returns:
            调用时刻池中的会话记录数
        """
        async with self._lock:
            records = list(self._records.values())
            self._records.clear()
            for record in records:
                record.mark_closed()

        await asyncio.gather(
            *[self._close_quietly(r.connection) for r in records if r.connection is not None],
            return_exceptions=True,
        )
        if records:
            logger.info("已关闭 {} 个SSH会话", len(records))
        return len(records)

    async def shutdown(self) -> int:
        """停止后台清理任务并关闭所有会话，用于进程优雅退出。

        Returns:
            关闭的会话数量
        """
        self._closed = True

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        return await self.close_all()

    async def discard(self, key: PoolKey, connection: asyncssh.SSHClientConnection) -> None:
        """丢弃仍持有指定连接的会话记录，并关闭该连接。

        记录已被替换为新会话时不会误删新记录。

        Args:
            key: 连接池键
            connection: 需要丢弃的连接
        """
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.connection is connection:
                self._pop_record(record)
        await self._close_quietly(connection)

    async def list_sessions(self) -> list[SessionSnapshot]:
        """返回当前所有会话记录的快照，不修改池状态。"""
        now = self._time()
        async with self._lock:
            return [
                SessionSnapshot(
                    key=r.key,
                    status=r.status,
                    last_used=r.last_used,
                    idle_seconds=max(0.0, now - r.last_used),
                )
                for r in self._records.values()
            ]

    async def sweep_idle(self) -> int:
        """清理空闲超时或已断开的就绪会话。

        正在建立的会话不受影响，其时长由连接超时单独约束。

        Returns:
            被清理的会话数量
        """
        ttl = float(self._settings.idle_connection_ttl_seconds)
        now = self._time()

        async with self._lock:
            expired = [
                r
                for r in self._records.values()
                if r.status is SessionStatus.READY
                and (
                    now - r.last_used > ttl
                    or r.connection is None
                    or self.is_connection_dead(r.connection)
                )
            ]
            for record in expired:
                self._pop_record(record)

        # 锁外异步关闭连接
        if expired:
            for record in expired:
                logger.info("清理空闲SSH会话: {}", record.key)
            await asyncio.gather(
                *[self._close_quietly(r.connection) for r in expired if r.connection is not None],
                return_exceptions=True,
            )
        return len(expired)

    async def _background_cleanup_loop(self) -> None:
        """后台清理循环，按固定间隔执行 sweep_idle。"""
        interval = float(self._settings.sweep_interval_seconds)
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("空闲会话清理失败")

    async def _establish(self, record: SessionRecord) -> asyncssh.SSHClientConnection:
        """为会话记录建立连接。

        失败或超时的记录会从池中移除；建立期间记录被关闭时，
        新连接会被立即关闭。

        Args:
            record: 处于 CONNECTING 状态的会话记录

        Returns:
            已就绪的SSH连接
        """
        key = record.key
        auth = record.auth
        logger.info("建立SSH连接: {}", key)
        try:
            credentials = self._resolver.resolve(username=key.username, auth=auth)
            options = self._build_connect_options(record, credentials)
            conn = await asyncio.wait_for(
                asyncssh.connect(**options), timeout=auth.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            self._pop_record(record)
            logger.warning("SSH连接超时({}ms): {}", auth.timeout_ms, key)
            raise ConnectTimeoutError(
                f"SSH连接超时({auth.timeout_ms}ms): {key}",
                host=key.host,
                port=key.port,
                connection_key=key.connection_key,
            ) from exc
        except AuthResolutionError as exc:
            self._pop_record(record)
            logger.warning("SSH凭据解析失败: {} - {}", key, exc.message)
            raise
        except asyncio.CancelledError:
            self._pop_record(record)
            raise
        except Exception as exc:
            self._pop_record(record)
            logger.warning("SSH连接失败: {} - {}", key, exc)
            raise TransportError(
                f"SSH连接失败: {key} - {exc}",
                host=key.host,
                port=key.port,
                connection_key=key.connection_key,
            ) from exc

        async with self._lock:
            current = self._records.get(key) is record
            # 连接返回后、加锁前的断开通知会被忽略，需在此复查
            lost = self.is_connection_dead(conn)
            if current and record.status is SessionStatus.CONNECTING and not lost:
                record.connection = conn
                record.status = SessionStatus.READY
                record.attempt = None
                record.touch(self._time())
                logger.info("SSH连接已建立: {}", key)
                return conn
            if lost:
                self._pop_record(record)

        await self._close_quietly(conn)
        if lost:
            logger.warning("SSH会话在就绪前断开: {}", key)
            raise TransportError(
                f"SSH会话在就绪前断开: {key}",
                host=key.host,
                port=key.port,
                connection_key=key.connection_key,
            )
        raise TransportError(
            f"SSH会话在建立过程中被关闭: {key}",
            host=key.host,
            port=key.port,
            connection_key=key.connection_key,
        )

    def _build_connect_options(
        self, record: SessionRecord, credentials: SSHCredentials
    ) -> dict[str, object]:
        key = record.key
        auth = record.auth
        options: dict[str, object] = {
            "host": key.host,
            "port": key.port,
            "username": key.username,
            "client_factory": partial(_SessionClient, partial(self._on_transport_lost, record)),
            "agent_forwarding": auth.agent_forward,
        }
        if not auth.agent_forward:
            options["agent_path"] = None
        if not self._settings.strict_host_key_checking:
            options["known_hosts"] = None

        if credentials.password:
            options["password"] = credentials.password
        elif credentials.private_key is not None:
            try:
                private_key = asyncssh.import_private_key(
                    credentials.private_key, credentials.passphrase
                )
            except ValueError as exc:
                raise AuthResolutionError(
                    f"私钥解析失败: {credentials.private_key_path} - {exc}",
                    username=key.username,
                    key_path=credentials.private_key_path,
                ) from exc
            options["client_keys"] = [private_key]
        return options

    def _on_transport_lost(self, record: SessionRecord, exc: Exception | None) -> None:
        """传输层断开回调：把就绪会话置为 CLOSED 并移出池。

        CONNECTING 阶段的断开由连接任务自身报告。
        """
        if record.status is not SessionStatus.READY:
            return
        self._pop_record(record)
        if exc is None:
            logger.info("SSH会话已结束: {}", record.key)
        else:
            logger.warning("SSH会话异常断开: {} - {}", record.key, exc)

    def _pop_record(self, record: SessionRecord) -> asyncssh.SSHClientConnection | None:
        """把记录移出池并置为 CLOSED，返回其持有的连接。"""
        if self._records.get(record.key) is record:
            del self._records[record.key]
        record.mark_closed()
        return record.connection

    def _find(self, key: PoolKey | str) -> SessionRecord | None:
        if isinstance(key, PoolKey):
            return self._records.get(key)
        for record in self._records.values():
            if record.key.connection_key == key:
                return record
        return None

    def _is_usable(self, record: SessionRecord) -> bool:
        if record.status is SessionStatus.CONNECTING:
            return True
        if record.status is SessionStatus.READY and record.connection is not None:
            return not self.is_connection_dead(record.connection)
        return False

    @staticmethod
    def is_connection_dead(conn: asyncssh.SSHClientConnection) -> bool:
        """检查连接是否已死亡。

        Args:
            conn: SSH连接

        Returns:
            连接是否已关闭或不可用
        """
        try:
            if hasattr(conn, "is_closing"):
                return bool(conn.is_closing())
        except Exception:
            return True
        return False

    @staticmethod
    async def _close_quietly(conn: asyncssh.SSHClientConnection) -> None:
        """关闭连接，关闭过程中的异常仅记录调试日志。

        Args:
            conn: 要关闭的SSH连接
        """
        try:
            conn.close()
            await conn.wait_closed()
        except Exception as exc:
            logger.debug("关闭SSH连接时出错: {}", exc)
