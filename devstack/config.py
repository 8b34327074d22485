"""启动器配置（通过环境变量覆盖）。"""

from __future__ import annotations

import logging
import os
from pathlib import Path


def _to_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    """安全解析整数环境变量。"""

    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _to_float(value: str | None, default: float, *, minimum: float = 0.0) -> float:
    """安全解析浮点环境变量。"""

    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _to_bool(value: str | None, default: bool = False) -> bool:
    """安全解析布尔环境变量。"""

    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


def _to_log_level(value: str | None, default: str = "INFO") -> str:
    """解析日志级别，未知级别回退到默认值。"""

    if value is None:
        return default
    name = str(value).strip().upper()
    return name if isinstance(logging.getLevelName(name), int) else default


PROJECT_DIR = Path(os.getenv("DEVSTACK_PROJECT_DIR") or Path.cwd()).resolve()
ENV_FILE = os.getenv("DEVSTACK_ENV_FILE", ".env")

GRACE_PERIOD_SECONDS = _to_float(os.getenv("DEVSTACK_GRACE_PERIOD_SECONDS"), 3.0, minimum=0.0)
PORT_SETTLE_SECONDS = _to_float(os.getenv("DEVSTACK_PORT_SETTLE_SECONDS"), 1.0, minimum=0.0)
RECLAIM_PORTS = _to_bool(os.getenv("DEVSTACK_RECLAIM_PORTS"), default=True)
READY_TIMEOUT_SECONDS = _to_float(os.getenv("DEVSTACK_READY_TIMEOUT_SECONDS"), 30.0, minimum=0.0)
READY_POLL_INTERVAL_SECONDS = _to_float(os.getenv("DEVSTACK_READY_POLL_INTERVAL_SECONDS"), 0.5, minimum=0.05)
MONITOR_MODE = os.getenv("DEVSTACK_MONITOR_MODE", "watch").strip().lower()
RELAY_CHUNK_SIZE = _to_int(os.getenv("DEVSTACK_RELAY_CHUNK_SIZE"), 4096, minimum=1)

LOG_LEVEL = _to_log_level(os.getenv("DEVSTACK_LOG_LEVEL"))
