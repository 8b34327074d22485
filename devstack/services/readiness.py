"""服务就绪探测（TCP 端口可连接）。"""

from __future__ import annotations

import asyncio
import time
from typing import Callable


async def is_port_open(host: str, port: int, *, timeout: float = 1.0) -> bool:
    """尝试建立 TCP 连接，成功即视为端口已监听。"""

    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port(
    port: int,
    *,
    host: str = "127.0.0.1",
    timeout: float = 30.0,
    interval: float = 0.5,
    should_continue: Callable[[], bool] | None = None,
) -> bool:
    """轮询端口直到可连接或超时；`should_continue` 返回 False 时提前放弃。"""

    deadline = time.monotonic() + max(timeout, 0.0)
    while True:
        if should_continue is not None and not should_continue():
            return False
        if await is_port_open(host, port, timeout=min(max(interval, 0.05), 1.0)):
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)
