"""端口回收：结束上次异常退出遗留的占用进程。"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import signal
import subprocess
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

PidFinder = Callable[[int], set[int]]
KillFunc = Callable[[int, int], None]

PROC_NET_FILES = ("/proc/net/tcp", "/proc/net/tcp6")
TCP_LISTEN = "0A"


def _find_pids_with_lsof(port: int) -> set[int] | None:
    """通过 lsof 查找监听端口的 PID，lsof 不可用时返回 None。"""

    try:
        result = subprocess.run(
            ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None

    pids: set[int] = set()
    for line in result.stdout.splitlines():
        value = line.strip()
        if value.isdigit():
            pids.add(int(value))
    return pids


def _socket_inodes_for_port(port: int, proc_net_files: Iterable[str] = PROC_NET_FILES) -> set[str]:
    """从 /proc/net/tcp* 中找出监听该端口的 socket inode。"""

    hex_port = f"{port:04X}"
    inodes: set[str] = set()
    for tcp_file in proc_net_files:
        try:
            lines = Path(tcp_file).read_text().splitlines()[1:]
        except OSError:
            continue
        for line in lines:
            fields = line.split()
            if len(fields) < 10:
                continue
            local_port = fields[1].rsplit(":", 1)[-1]
            if local_port == hex_port and fields[3] == TCP_LISTEN and fields[9] != "0":
                inodes.add(fields[9])
    return inodes


def _find_pids_with_procfs(port: int) -> set[int]:
    """Linux 下无 lsof 时扫描 /proc 定位 socket 持有者。"""

    inodes = _socket_inodes_for_port(port)
    if not inodes:
        return set()

    pids: set[int] = set()
    proc = Path("/proc")
    for pid_dir in proc.iterdir():
        if not pid_dir.name.isdigit():
            continue
        try:
            fds = list((pid_dir / "fd").iterdir())
        except OSError:
            continue
        for fd in fds:
            try:
                link = os.readlink(fd)
            except OSError:
                continue
            if link.startswith("socket:[") and link[8:-1] in inodes:
                pids.add(int(pid_dir.name))
                break
    return pids


def find_pids_on_port(port: int) -> set[int]:
    """查找占用端口的进程，优先 lsof，回退 procfs。"""

    pids = _find_pids_with_lsof(port)
    if pids is not None:
        return pids
    return _find_pids_with_procfs(port)


def reclaim_ports(
    ports: Iterable[int],
    *,
    find_pids: PidFinder = find_pids_on_port,
    kill: KillFunc = os.kill,
) -> list[int]:
    """强制结束占用指定端口的进程，忽略一切错误，返回已发送 SIGKILL 的 PID。"""

    own_pid = os.getpid()
    killed: list[int] = []
    for port in ports:
        try:
            pids = find_pids(port)
        except OSError as exc:
            logger.debug("查询端口占用失败 port=%s error=%s", port, exc)
            continue

        for pid in sorted(pids - {own_pid}):
            try:
                kill(pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError, OSError) as exc:
                logger.debug("结束进程失败 port=%s pid=%s error=%s", port, pid, exc)
                continue
            logger.info("🔪 已释放端口 %s (pid=%s)", port, pid)
            killed.append(pid)
    return killed
