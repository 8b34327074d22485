"""服务描述、运行句柄与子进程拉起。"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import os
from pathlib import Path
import signal
import sys
from typing import Any, Awaitable, Callable, Mapping, TextIO

from devstack.services.output_relay import relay_stream
from devstack.services.readiness import wait_for_port

logger = logging.getLogger(__name__)

SpawnFactory = Callable[..., Awaitable[Any]]


class ServiceStartError(RuntimeError):
    """子进程启动失败或在就绪前退出。"""


class ServiceState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """受管服务定义。"""

    name: str
    command: tuple[str, ...]
    cwd: Path | None = None
    ready_port: int | None = None
    startup_delay: float = 0.0
    url: str | None = None
    install_command: tuple[str, ...] | None = None
    install_marker: str | None = None


@dataclass(slots=True)
class ServiceHandle:
    """运行中的受管服务，持有自身的输出转发任务。"""

    descriptor: ServiceDescriptor
    process: Any
    process_group: bool = False
    state: ServiceState = ServiceState.STARTING
    relay_tasks: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pid(self) -> int:
        return int(self.process.pid)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.returncode is None

    def mark_running(self) -> None:
        if self.state is ServiceState.STARTING:
            self.state = ServiceState.RUNNING

    def mark_killed(self) -> None:
        self.state = ServiceState.KILLED

    def send_signal(self, sig: int) -> None:
        """发送信号；独立进程组时作用于整个进程组。"""

        if self.process_group:
            os.killpg(self.pid, sig)
        else:
            self.process.send_signal(sig)

    def signal_leftovers(self, sig: int) -> None:
        """进程组组长已退出时，尽力通知组内残留进程。"""

        if not self.process_group:
            return
        try:
            os.killpg(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            return
        logger.info("  已向 %s 的残留进程组发送 %s", self.name, signal.Signals(sig).name)

    async def wait(self) -> int:
        """等待进程退出并记录状态。"""

        code = await self.process.wait()
        if self.state is not ServiceState.KILLED:
            self.state = ServiceState.EXITED
        return int(code)

    async def wait_relays(self, timeout: float | None = None) -> None:
        """等待输出转发任务读完剩余输出，超时后取消。"""

        if not self.relay_tasks:
            return
        _done, pending = await asyncio.wait(self.relay_tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def spawn_service(
    descriptor: ServiceDescriptor,
    env: Mapping[str, str],
    *,
    spawn_factory: SpawnFactory = asyncio.create_subprocess_exec,
    new_session: bool = True,
    stdout_sink: TextIO | None = None,
    stderr_sink: TextIO | None = None,
    chunk_size: int = 4096,
) -> ServiceHandle:
    """拉起子进程，并为 stdout/stderr 各启动一个转发任务。"""

    logger.info("🚀 正在启动 %s: %s", descriptor.name, " ".join(descriptor.command))
    kwargs: dict[str, Any] = {
        "cwd": str(descriptor.cwd) if descriptor.cwd is not None else None,
        "env": dict(env),
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
    }
    if new_session:
        kwargs["start_new_session"] = True

    try:
        process = await spawn_factory(*descriptor.command, **kwargs)
    except OSError as exc:
        raise ServiceStartError(f"{descriptor.name} 启动失败: {exc}") from exc

    handle = ServiceHandle(descriptor=descriptor, process=process, process_group=new_session)
    streams = (
        (process.stdout, stdout_sink or sys.stdout),
        (process.stderr, stderr_sink or sys.stderr),
    )
    for stream, sink in streams:
        if stream is None:
            continue
        handle.relay_tasks.append(
            asyncio.create_task(
                relay_stream(stream, descriptor.name, sink, chunk_size=chunk_size),
                name=f"relay:{descriptor.name}",
            )
        )
    return handle


async def wait_until_ready(
    handle: ServiceHandle,
    *,
    timeout: float,
    poll_interval: float = 0.5,
    should_continue: Callable[[], bool] | None = None,
) -> None:
    """就绪等待：有端口时探测端口，否则按固定延时等待。"""

    def _keep_waiting() -> bool:
        return handle.is_alive() and (should_continue is None or should_continue())

    descriptor = handle.descriptor
    if descriptor.ready_port is not None and timeout > 0:
        logger.info("⏳ 等待 %s 监听端口 %s ...", descriptor.name, descriptor.ready_port)
        ready = await wait_for_port(
            descriptor.ready_port,
            timeout=timeout,
            interval=poll_interval,
            should_continue=_keep_waiting,
        )
        if ready:
            logger.info("✅ %s 已就绪", descriptor.name)
        elif _keep_waiting():
            logger.warning("⚠️  %s 在 %.1fs 内未监听端口 %s，继续启动", descriptor.name, timeout, descriptor.ready_port)
    elif descriptor.startup_delay > 0:
        logger.info("⏳ 等待 %s 启动 (%.1fs)...", descriptor.name, descriptor.startup_delay)
        await asyncio.sleep(descriptor.startup_delay)

    if not handle.is_alive():
        raise ServiceStartError(f"{descriptor.name} 在就绪前退出 code={handle.returncode}")
    handle.mark_running()
