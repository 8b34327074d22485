from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path

import pytest

from devstack.services import port_reclaimer
from devstack.services.port_reclaimer import reclaim_ports


@pytest.mark.unit
def test_reclaim_ports_kills_owners_but_never_itself() -> None:
    owners = {3001: {5001, os.getpid()}, 8080: {5002}}
    killed: list[tuple[int, int]] = []

    result = reclaim_ports(
        [3001, 8080],
        find_pids=lambda port: set(owners.get(port, set())),
        kill=lambda pid, sig: killed.append((pid, sig)),
    )

    assert result == [5001, 5002]
    assert killed == [(5001, signal.SIGKILL), (5002, signal.SIGKILL)]


@pytest.mark.unit
def test_reclaim_ports_ignores_lookup_and_kill_errors() -> None:
    def find_pids(port: int) -> set[int]:
        if port == 7233:
            raise OSError("lsof exploded")
        return {6001, 6002}

    def kill(pid: int, _sig: int) -> None:
        if pid == 6001:
            raise ProcessLookupError(pid)

    assert reclaim_ports([7233, 8233], find_pids=find_pids, kill=kill) == [6002]


@pytest.mark.unit
def test_socket_inodes_for_port_reads_proc_net_tcp(tmp_path: Path) -> None:
    tcp = tmp_path / "tcp"
    tcp.write_text(
        "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid  timeout inode\n"
        "   0: 00000000:1F90 00000000:0000 0A 00000000:00000000 00:00000000 00000000  1000        0 123456 1\n"
        "   1: 0100007F:0BB9 00000000:0000 0A 00000000:00000000 00:00000000 00000000  1000        0 654321 1\n"
        "   2: 0100007F:1F90 0100007F:D431 01 00000000:00000000 00:00000000 00000000  1000        0 777777 1\n"
    )

    assert port_reclaimer._socket_inodes_for_port(8080, [str(tcp), str(tmp_path / "absent")]) == {"123456"}
    assert port_reclaimer._socket_inodes_for_port(3001, [str(tcp)]) == {"654321"}
    assert port_reclaimer._socket_inodes_for_port(7233, [str(tcp)]) == set()


@pytest.mark.unit
def test_find_pids_on_port_falls_back_to_procfs_without_lsof(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(port_reclaimer, "_find_pids_with_lsof", lambda _port: None)
    monkeypatch.setattr(port_reclaimer, "_find_pids_with_procfs", lambda _port: {4321})

    assert port_reclaimer.find_pids_on_port(8080) == {4321}


@pytest.mark.unit
def test_lsof_lookup_only_matches_listening_sockets(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[list[str]] = []

    def fake_run(command: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        captured.append(command)
        return subprocess.CompletedProcess(command, 0, "4242\n", "")

    monkeypatch.setattr(port_reclaimer.subprocess, "run", fake_run)

    assert port_reclaimer._find_pids_with_lsof(8080) == {4242}
    assert captured == [["lsof", "-ti", "tcp:8080", "-sTCP:LISTEN"]]
