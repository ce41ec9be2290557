from __future__ import annotations

from typing import Literal, TypedDict

ConnectionAction = Literal["list", "close", "close_all"]


class ErrorDict(TypedDict):
    error_type: str
    message: str
    details: dict[str, object]


class SSHExecuteResultDict(TypedDict):
    command: str
    host: str
    exit_code: int | None
    stdout: str
    stderr: str
    success: bool


class SSHExecuteFailureDict(TypedDict):
    command: str
    host: str
    success: bool
    error: ErrorDict


class ConnectionInfoDict(TypedDict):
    connection_key: str
    is_connected: bool
    last_used: str
    minutes_idle: int


class ConnectionListResultDict(TypedDict):
    action: ConnectionAction
    count: int
    connections: list[ConnectionInfoDict]


class ConnectionCloseResultDict(TypedDict):
    action: ConnectionAction
    connection_key: str
    closed: bool


class ConnectionCloseAllResultDict(TypedDict):
    action: ConnectionAction
    closed_count: int


class ConnectionFailureDict(TypedDict):
    action: ConnectionAction
    success: bool
    error: ErrorDict
