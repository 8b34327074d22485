"""多服务启动编排：预检、拉起、监控与有序关停。"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
import shutil
import signal
import subprocess
from typing import Any, Callable, Iterable, Sequence, TextIO

from devstack.config import (
    ENV_FILE,
    GRACE_PERIOD_SECONDS,
    MONITOR_MODE,
    PORT_SETTLE_SECONDS,
    PROJECT_DIR,
    READY_POLL_INTERVAL_SECONDS,
    READY_TIMEOUT_SECONDS,
    RECLAIM_PORTS,
    RELAY_CHUNK_SIZE,
)
from devstack.services.env_loader import load_environment
from devstack.services.port_reclaimer import reclaim_ports
from devstack.services.preflight import (
    DependencyInstallError,
    PreflightError,
    RequiredTool,
    WhichFunc,
    check_env_vars,
    check_required_tools,
    ensure_dependencies,
)
from devstack.services.service_catalog import REQUIRED_ENV_VARS, REQUIRED_TOOLS, RECLAIMED_PORTS, build_services
from devstack.services.service_launcher import (
    ServiceDescriptor,
    ServiceHandle,
    ServiceStartError,
    SpawnFactory,
    spawn_service,
    wait_until_ready,
)

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class MonitorMode(str, Enum):
    """子进程监控策略。"""

    WATCH = "watch"
    RACE = "race"


def parse_monitor_mode(value: str | None) -> MonitorMode:
    """解析监控策略，未知取值回退到 watch。"""

    try:
        return MonitorMode(str(value or "").strip().lower())
    except ValueError:
        return MonitorMode.WATCH


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """启动器运行配置。"""

    project_dir: Path
    env_file: Path
    grace_period: float
    port_settle_seconds: float
    reclaim_ports: bool
    ready_timeout: float
    ready_poll_interval: float
    monitor_mode: MonitorMode
    relay_chunk_size: int = 4096
    process_groups: bool = True


def load_runtime_config(
    *,
    project_dir: Path | None = None,
    env_file: str | Path | None = None,
    reclaim: bool | None = None,
    monitor_mode: str | None = None,
    grace_period: float | None = None,
) -> RuntimeConfig:
    """从全局配置读取启动参数，命令行参数优先。"""

    base_dir = (project_dir or PROJECT_DIR).resolve()
    env_path = Path(env_file if env_file is not None else ENV_FILE)
    if not env_path.is_absolute():
        env_path = base_dir / env_path

    return RuntimeConfig(
        project_dir=base_dir,
        env_file=env_path,
        grace_period=max(GRACE_PERIOD_SECONDS if grace_period is None else grace_period, 0.0),
        port_settle_seconds=PORT_SETTLE_SECONDS,
        reclaim_ports=RECLAIM_PORTS if reclaim is None else reclaim,
        ready_timeout=READY_TIMEOUT_SECONDS,
        ready_poll_interval=READY_POLL_INTERVAL_SECONDS,
        monitor_mode=parse_monitor_mode(monitor_mode if monitor_mode is not None else MONITOR_MODE),
        relay_chunk_size=RELAY_CHUNK_SIZE,
    )


class ProcessSupervisor:
    """负责拉起并守护开发环境的全部服务。"""

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        services: Sequence[ServiceDescriptor] | None = None,
        required_env_vars: Iterable[str] = REQUIRED_ENV_VARS,
        required_tools: Iterable[RequiredTool] = REQUIRED_TOOLS,
        ports: Iterable[int] = RECLAIMED_PORTS,
        spawn_factory: SpawnFactory = asyncio.create_subprocess_exec,
        which: WhichFunc = shutil.which,
        port_reclaimer: Callable[[Iterable[int]], list[int]] = reclaim_ports,
        install_runner: Callable[..., subprocess.CompletedProcess[bytes]] = subprocess.run,
        stdout_sink: TextIO | None = None,
        stderr_sink: TextIO | None = None,
    ) -> None:
        self.config = config
        self._services = list(services) if services is not None else build_services(config.project_dir)
        self._required_env_vars = tuple(required_env_vars)
        self._required_tools = tuple(required_tools)
        self._ports = tuple(ports)
        self._spawn_factory = spawn_factory
        self._which = which
        self._port_reclaimer = port_reclaimer
        self._install_runner = install_runner
        self._stdout_sink = stdout_sink
        self._stderr_sink = stderr_sink

        self.env: dict[str, str] = {}
        self._handles: list[ServiceHandle] = []
        self._watch_tasks: list[asyncio.Task[None]] = []
        self._stop_event = asyncio.Event()
        self._shutting_down = False
        self._shutdown_task: asyncio.Task[None] | None = None
        self._unexpected_exit: tuple[str, int] | None = None
        self._previous_handlers: dict[int, Any] = {}

    @property
    def handles(self) -> list[ServiceHandle]:
        """返回已启动服务（按启动顺序）。"""

        return list(self._handles)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def unexpected_exit(self) -> tuple[str, int] | None:
        return self._unexpected_exit

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """请求停止（信号处理或故障检测触发）。"""

        self._stop_event.set()

    def preflight(self) -> dict[str, str]:
        """加载环境并完成启动前检查，返回传给子进程的环境。"""

        result = load_environment(self.config.env_file)
        check_env_vars(result.values, self._required_env_vars)
        check_required_tools(self._required_tools, which=self._which)
        self.env = result.values
        return self.env

    async def reclaim_ports(self) -> list[int]:
        """释放服务端口，有进程被结束时等待端口回收。"""

        if not self._ports:
            return []
        logger.info("🧹 正在清理端口: %s", ", ".join(str(port) for port in self._ports))
        killed = await asyncio.to_thread(self._port_reclaimer, self._ports)
        if killed and self.config.port_settle_seconds > 0:
            await asyncio.sleep(self.config.port_settle_seconds)
        return killed

    async def start(self) -> None:
        """按声明顺序逐个拉起服务并等待就绪。"""

        for descriptor in self._services:
            if self.stop_requested:
                logger.info("收到停止请求，中断启动流程")
                return

            if descriptor.install_command:
                await asyncio.to_thread(ensure_dependencies, descriptor, self.env, runner=self._install_runner)

            handle = await spawn_service(
                descriptor,
                self.env,
                spawn_factory=self._spawn_factory,
                new_session=self.config.process_groups,
                stdout_sink=self._stdout_sink,
                stderr_sink=self._stderr_sink,
                chunk_size=self.config.relay_chunk_size,
            )
            self._handles.append(handle)
            await wait_until_ready(
                handle,
                timeout=self.config.ready_timeout,
                poll_interval=self.config.ready_poll_interval,
                should_continue=lambda: not self.stop_requested,
            )

    def _record_unexpected_exit(self, name: str, code: int) -> None:
        if self._unexpected_exit is None:
            self._unexpected_exit = (name, code)

    async def _watch(self, handle: ServiceHandle) -> None:
        """单个服务的退出监听。"""

        code = await handle.wait()
        if self._shutting_down:
            return
        if code != 0:
            logger.error("❌ %s 意外退出 code=%s", handle.name, code)
            self._record_unexpected_exit(handle.name, code)
            self.request_stop()
            return
        logger.info("%s 已正常退出", handle.name)

    async def monitor(self) -> None:
        """阻塞直到收到停止信号或有服务异常退出。"""

        if self.config.monitor_mode is MonitorMode.RACE:
            await self._monitor_race()
            return

        self._watch_tasks = [
            asyncio.create_task(self._watch(handle), name=f"watch:{handle.name}") for handle in self._handles
        ]
        await self._stop_event.wait()

    async def _monitor_race(self) -> None:
        """任一服务退出即结束运行。"""

        waiters: dict[asyncio.Task[Any], ServiceHandle] = {
            asyncio.create_task(handle.wait(), name=f"race:{handle.name}"): handle for handle in self._handles
        }
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            done, _pending = await asyncio.wait({*waiters, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (*waiters, stop_waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, stop_waiter, return_exceptions=True)

        for task in done:
            handle = waiters.get(task)
            if handle is None or task.cancelled() or task.exception() is not None:
                continue
            code = task.result()
            if code != 0:
                logger.error("❌ %s 意外退出 code=%s", handle.name, code)
                self._record_unexpected_exit(handle.name, code)
            else:
                logger.info("%s 已退出，结束运行", handle.name)
        self.request_stop()

    async def shutdown(self) -> None:
        """关停入口，重复或并发调用只执行一次关停流程。"""

        if not self._shutting_down:
            self._shutting_down = True
            task = asyncio.create_task(self._teardown(), name="shutdown")
            self._shutdown_task = task
        else:
            task = self._shutdown_task
        await asyncio.shield(task)

    async def _teardown(self) -> None:
        """按启动逆序停止服务，再等待输出转发收尾。"""

        logger.info("🛑 正在停止所有服务...")
        for handle in reversed(self._handles):
            await self._stop_service(handle)

        if self._watch_tasks:
            await asyncio.gather(*self._watch_tasks, return_exceptions=True)
        relay_timeout = max(self.config.grace_period, 1.0)
        await asyncio.gather(
            *(handle.wait_relays(relay_timeout) for handle in self._handles),
            return_exceptions=True,
        )
        logger.info("🏁 所有服务已停止")

    async def _stop_service(self, handle: ServiceHandle) -> None:
        """SIGTERM 后等待宽限期，超时升级为 SIGKILL。"""

        if not handle.is_alive():
            logger.info("  %s 已退出 code=%s", handle.name, handle.returncode)
            handle.signal_leftovers(signal.SIGTERM)
            return

        logger.info("  正在停止 %s ...", handle.name)
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle | None = None
        try:
            handle.mark_killed()
            handle.send_signal(signal.SIGTERM)
            timer = loop.call_later(self.config.grace_period, self._force_kill, handle)
            await handle.wait()
            logger.info("  ✅ %s 已停止", handle.name)
        except (ProcessLookupError, OSError) as exc:
            logger.warning("  ⚠️  %s 停止时出错: %s", handle.name, exc)
        finally:
            if timer is not None:
                timer.cancel()

    def _force_kill(self, handle: ServiceHandle) -> None:
        if not handle.is_alive():
            return
        logger.warning("  强制结束 %s ...", handle.name)
        try:
            handle.send_signal(signal.SIGKILL)
        except (ProcessLookupError, OSError) as exc:
            logger.warning("  ⚠️  %s 强制结束失败: %s", handle.name, exc)

    def _log_banner(self) -> None:
        logger.info("🎉 所有服务启动成功!")
        for handle in self._handles:
            if handle.descriptor.url:
                logger.info("   %-10s %s", handle.name, handle.descriptor.url)
        logger.info("💡 按 Ctrl+C 停止所有服务")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """注册终止信号处理。"""

        for sig in STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                self._previous_handlers[sig] = signal.signal(
                    sig, lambda _signum, _frame: loop.call_soon_threadsafe(self.request_stop)
                )

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in STOP_SIGNALS:
            if sig in self._previous_handlers:
                signal.signal(sig, self._previous_handlers.pop(sig))
                continue
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> int:
        """完整运行流程，返回进程退出码。"""

        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        try:
            try:
                self.preflight()
            except PreflightError:
                return 1

            if self.config.reclaim_ports:
                await self.reclaim_ports()

            try:
                await self.start()
            except (ServiceStartError, DependencyInstallError) as exc:
                logger.error("❌ 启动服务失败: %s", exc)
                await self.shutdown()
                return 1
            except Exception:
                logger.exception("❌ 启动服务失败")
                await self.shutdown()
                return 1

            if not self.stop_requested:
                self._log_banner()
                await self.monitor()

            await self.shutdown()
        finally:
            self._remove_signal_handlers(loop)

        if self._unexpected_exit is not None:
            name, code = self._unexpected_exit
            logger.error("触发 fail-fast，异常服务=%s code=%s", name, code)
            return 1
        return 0
