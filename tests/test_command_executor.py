"""CommandExecutor 命令执行单元测试模块

覆盖以下场景：
- 正常执行与输出收集
- 非零退出码作为结果返回
- 信号终止时无退出码
- 命令通道错误与会话断开的区分
- 同一身份的多次执行复用会话
"""
import asyncio

import asyncssh
import pytest
import pytest_asyncio

from ssh_pool_mcp.auth_manager import AuthConfig
from ssh_pool_mcp.command_executor import CommandExecutor, SSHCommandResult
from ssh_pool_mcp.connection_pool import ConnectionPool
from ssh_pool_mcp.exceptions import ExecutionChannelError, TransportError
from ssh_pool_mcp.settings import SSHPoolSettings

AUTH = AuthConfig(password="p")


class FakeCompleted:
    """模拟 asyncssh.SSHCompletedProcess。"""

    def __init__(self, *, stdout="", stderr="", exit_status=0, exit_signal=None) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.exit_signal = exit_signal


class FakeConnection:
    """带可编程 run() 的假连接对象。"""

    def __init__(self, handler=None) -> None:
        self.closed = False
        self.commands: list[str] = []
        self._handler = handler or (lambda command: FakeCompleted(stdout=f"{command}\n"))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return

    async def run(self, command: str, **kwargs):
        assert kwargs.get("check") is False
        self.commands.append(command)
        result = self._handler(command)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def _patch_connect(mocker, conn: FakeConnection):
    async def connect_side_effect(**_kwargs):
        return conn

    return mocker.patch("asyncssh.connect", side_effect=connect_side_effect, autospec=True)


@pytest_asyncio.fixture
async def pool():
    p = ConnectionPool(settings=SSHPoolSettings())
    yield p
    await p.shutdown()


async def _execute(executor: CommandExecutor, command: str) -> SSHCommandResult:
    return await executor.execute_command(
        host="h", port=22, username="alice", auth=AUTH, command=command
    )


class TestCommandResult:
    """SSHCommandResult 测试组。"""

    def test_success_only_for_zero_exit(self) -> None:
        """success 仅在退出码为 0 时为 True。"""
        ok = SSHCommandResult("h", 22, "u", "true", 0, "", "")
        failed = SSHCommandResult("h", 22, "u", "false", 1, "", "")
        killed = SSHCommandResult("h", 22, "u", "sleep 9", None, "", "")
        assert ok.success is True
        assert failed.success is False
        assert killed.success is False

    def test_to_dict(self) -> None:
        """to_dict 应输出连接键作为 host。"""
        res = SSHCommandResult("h", 2222, "root", "uptime", 0, "up\n", "")
        assert res.to_dict() == {
            "command": "uptime",
            "host": "root@h:2222",
            "exit_code": 0,
            "stdout": "up\n",
            "stderr": "",
            "success": True,
        }


class TestExecuteCommand:
    """execute_command 测试组。"""

    @pytest.mark.asyncio
    async def test_echo(self, mocker, pool) -> None:
        """正常命令应返回完整 stdout 与退出码 0。"""
        conn = FakeConnection(lambda command: FakeCompleted(stdout="hi\n"))
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        res = await _execute(executor, "echo hi")

        assert res.stdout == "hi\n"
        assert res.stderr == ""
        assert res.exit_code == 0
        assert res.success is True
        assert res.connection_key == "alice@h:22"
        assert conn.commands == ["echo hi"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_result_not_error(self, mocker, pool) -> None:
        """非零退出码不抛出异常，success 为 False。"""
        conn = FakeConnection(
            lambda command: FakeCompleted(stderr="boom\n", exit_status=1)
        )
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        res = await _execute(executor, "exit 1")

        assert res.exit_code == 1
        assert res.stderr == "boom\n"
        assert res.success is False

    @pytest.mark.asyncio
    async def test_signal_termination_has_no_exit_code(self, mocker, pool) -> None:
        """被信号终止的命令 exit_code 为 None。"""
        conn = FakeConnection(
            lambda command: FakeCompleted(exit_status=-1, exit_signal=("KILL", False, "", ""))
        )
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        res = await _execute(executor, "sleep 100")

        assert res.exit_code is None
        assert res.success is False

    @pytest.mark.asyncio
    async def test_bytes_output_decoded(self, mocker, pool) -> None:
        """bytes 输出应解码为字符串。"""
        conn = FakeConnection(lambda command: FakeCompleted(stdout=b"\xe4\xbd\xa0\xe5\xa5\xbd", stderr=None))
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        res = await _execute(executor, "cat greeting")

        assert res.stdout == "你好"
        assert res.stderr == ""

    @pytest.mark.asyncio
    async def test_blank_command_rejected(self, mocker, pool) -> None:
        """空命令应抛出 ValueError，且不建立连接。"""
        connect = _patch_connect(mocker, FakeConnection())
        executor = CommandExecutor(pool=pool)

        with pytest.raises(ValueError, match="command不能为空"):
            await _execute(executor, "   ")
        assert connect.call_count == 0

    @pytest.mark.asyncio
    async def test_repeated_executes_share_session(self, mocker, pool) -> None:
        """同一身份的两次执行只建立一次连接。"""
        conn = FakeConnection()
        connect = _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        await _execute(executor, "uptime")
        await _execute(executor, "whoami")

        assert connect.call_count == 1
        assert conn.commands == ["uptime", "whoami"]

    @pytest.mark.asyncio
    async def test_concurrent_executes_multiplex(self, mocker, pool) -> None:
        """同一会话上的并发命令互不阻塞。"""
        gate = asyncio.Event()

        async def slow(command: str) -> FakeCompleted:
            if command == "slow":
                await gate.wait()
            return FakeCompleted(stdout=f"{command}\n")

        conn = FakeConnection(slow)
        connect = _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        slow_task = asyncio.create_task(_execute(executor, "slow"))
        await asyncio.sleep(0.01)
        fast = await _execute(executor, "fast")
        assert fast.stdout == "fast\n"
        assert not slow_task.done()

        gate.set()
        assert (await slow_task).stdout == "slow\n"
        assert connect.call_count == 1


class TestExecuteFailures:
    """执行失败处理测试组。"""

    @pytest.mark.asyncio
    async def test_channel_open_failure_keeps_session(self, mocker, pool) -> None:
        """通道打开失败抛出 ExecutionChannelError，会话保留在池中。"""
        def refuse(command: str):
            raise asyncssh.ChannelOpenError(2, "open failed")

        conn = FakeConnection(refuse)
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(ExecutionChannelError, match="打开命令通道失败") as exc_info:
            await _execute(executor, "ls")

        assert exc_info.value.command == "ls"
        assert exc_info.value.details["stage"] == "execute"
        assert len(await pool.list_sessions()) == 1
        assert conn.closed is False

    @pytest.mark.asyncio
    async def test_channel_error_on_live_session(self, mocker, pool) -> None:
        """会话仍存活时的通道错误不移除会话。"""
        def broken(command: str):
            raise OSError("channel broken")

        conn = FakeConnection(broken)
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(ExecutionChannelError, match="命令通道出错"):
            await _execute(executor, "ls")
        assert len(await pool.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_connection_lost_during_run(self, mocker, pool) -> None:
        """执行中会话断开抛出 TransportError，会话被移出池。"""
        conn = FakeConnection()

        def drop(command: str):
            conn.closed = True
            raise asyncssh.ConnectionLost("connection lost")

        conn._handler = drop
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(TransportError, match="执行命令时SSH会话断开") as exc_info:
            await _execute(executor, "ls")

        assert exc_info.value.stage == "execute"
        assert exc_info.value.connection_key == "alice@h:22"
        assert await pool.list_sessions() == []

    @pytest.mark.asyncio
    async def test_session_dropped_before_exit_status(self, mocker, pool) -> None:
        """会话断开导致没有退出状态时抛出 TransportError，而不是返回结果。"""
        conn = FakeConnection()

        def drop(command: str) -> FakeCompleted:
            conn.closed = True
            return FakeCompleted(exit_status=None, exit_signal=None)

        conn._handler = drop
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(TransportError, match="执行命令时SSH会话断开") as exc_info:
            await _execute(executor, "hang")

        assert exc_info.value.stage == "execute"
        assert await pool.list_sessions() == []

    @pytest.mark.asyncio
    async def test_next_execute_reconnects_after_drop(self, mocker, pool) -> None:
        """会话中途断开后，下一次执行透明重连。"""
        first = FakeConnection()
        second = FakeConnection()

        def drop(command: str) -> FakeCompleted:
            first.closed = True
            return FakeCompleted(exit_status=None, exit_signal=None)

        first._handler = drop
        fakes = [first, second]

        async def connect_side_effect(**_kwargs):
            return fakes.pop(0)

        connect = mocker.patch("asyncssh.connect", side_effect=connect_side_effect, autospec=True)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(TransportError):
            await _execute(executor, "hang")
        res = await _execute(executor, "echo ok")

        assert res.stdout == "echo ok\n"
        assert connect.call_count == 2

    @pytest.mark.asyncio
    async def test_channel_closed_without_exit_status_on_live_session(self, mocker, pool) -> None:
        """会话存活但通道未返回退出状态时抛出 ExecutionChannelError，会话保留。"""
        conn = FakeConnection(lambda command: FakeCompleted(exit_status=None, exit_signal=None))
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(ExecutionChannelError, match="返回退出状态前关闭"):
            await _execute(executor, "ls")
        assert len(await pool.list_sessions()) == 1
        assert conn.closed is False

    @pytest.mark.asyncio
    async def test_channel_open_failure_on_dead_session(self, mocker, pool) -> None:
        """通道打开失败且会话已断开时抛出 TransportError 并移出会话。"""
        conn = FakeConnection()

        def refuse(command: str):
            conn.closed = True
            raise asyncssh.ChannelOpenError(2, "connection closed")

        conn._handler = refuse
        _patch_connect(mocker, conn)
        executor = CommandExecutor(pool=pool)

        with pytest.raises(TransportError, match="执行命令时SSH会话断开"):
            await _execute(executor, "ls")
        assert await pool.list_sessions() == []
