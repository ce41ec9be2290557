from __future__ import annotations

import re
import sys
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from loguru import logger

from ssh_pool_mcp.settings import SSHPoolSettings

_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)(password\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (re.compile(r"(?i)(passphrase\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (re.compile(r"(?i)(token\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (
        re.compile(
            r"-----BEGIN ([A-Z0-9 ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED PRIVATE KEY]",
    ),
]


def redact(text: str) -> str:
    redacted = text
    for pattern, repl in _REDACTIONS:
        redacted = pattern.sub(repl, redacted)
    return redacted


def _resolve_log_dir(settings: SSHPoolSettings) -> Path:
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        return Path(settings.log_dir)
    except OSError:
        log_dir = Path(gettempdir()) / "ssh-pool-mcp-logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir


def setup_logger(settings: SSHPoolSettings) -> Path:
    """配置 loguru 日志输出，返回实际使用的日志目录。

    stdout 留给 MCP stdio 传输，日志只写 stderr（仅终端）和文件。
    """
    log_dir = _resolve_log_dir(settings)
    log_file = log_dir / "app.log"
    err_file = log_dir / "error.log"

    logger.remove()

    def patcher(record: Any) -> None:
        record["message"] = redact(record.get("message", ""))

    # 全局 patcher，模块内直接使用 loguru.logger 的日志同样会被脱敏
    logger.configure(patcher=patcher)

    if getattr(sys.stderr, "isatty", lambda: False)():
        logger.add(
            sys.stderr,
            level=settings.log_level,
            colorize=True,
            backtrace=False,
            diagnose=False,
            enqueue=True,
        )

    logger.add(
        str(log_file),
        level=settings.log_level,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        encoding="utf-8",
    )

    logger.add(
        str(err_file),
        level="ERROR",
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        encoding="utf-8",
    )
    return log_dir
