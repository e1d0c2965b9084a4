"""Tests for ProcessManager and port helpers."""

from __future__ import annotations

import socket
import subprocess
import sys

import psutil

from utils.port_utils import check_port_availability, is_port_accepting, is_port_in_use
from utils.process_manager import ProcessManager

SPAWN_CHILD = (
    "import subprocess, sys, time\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print(child.pid, flush=True)\n"
    "time.sleep(30)\n"
)


class TestProcessManager:

    def test_terminate_process_tree(self) -> None:
        parent = subprocess.Popen([sys.executable, "-c", SPAWN_CHILD], stdout=subprocess.PIPE, text=True)
        child_pid = int(parent.stdout.readline())
        manager = ProcessManager()

        assert manager.terminate_process(parent.pid, timeout=5)

        parent.wait(5)
        assert not psutil.pid_exists(child_pid) or psutil.Process(child_pid).status() == psutil.STATUS_ZOMBIE

    def test_kill_children_leaves_parent(self) -> None:
        parent = subprocess.Popen([sys.executable, "-c", SPAWN_CHILD], stdout=subprocess.PIPE, text=True)
        try:
            parent.stdout.readline()

            assert ProcessManager().kill_children(parent.pid, timeout=1) == 1
            assert parent.poll() is None
        finally:
            parent.kill()
            parent.wait()

    def test_terminate_missing_process(self) -> None:
        dead = subprocess.Popen([sys.executable, "-c", "pass"])
        dead.wait()

        assert ProcessManager().terminate_process(dead.pid)

    def test_stale_sweep_spares_foreign_engines(self, tmp_path) -> None:
        """Only processes with our config or a recorded PID are terminated."""
        config_path = tmp_path / "engine.json"
        config_path.write_text("{}")
        sleeper = "import time; time.sleep(30)"
        ours = subprocess.Popen([sys.executable, "-c", sleeper, str(config_path)])
        recorded = subprocess.Popen([sys.executable, "-c", sleeper])
        foreign = subprocess.Popen([sys.executable, "-c", sleeper, str(tmp_path / "other.json")])
        try:
            terminated = ProcessManager().terminate_stale_engines(
                sys.executable, known_pids=[recorded.pid], config_path=config_path,
            )

            assert terminated == 2
            assert ours.wait(5) is not None
            assert recorded.wait(5) is not None
            assert foreign.poll() is None
        finally:
            for proc in (ours, recorded, foreign):
                proc.kill()
                proc.wait()

    def test_stale_sweep_without_hints_kills_nothing(self) -> None:
        other = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            assert ProcessManager().terminate_stale_engines(sys.executable) == 0
            assert other.poll() is None
        finally:
            other.kill()
            other.wait()

    def test_admin_status(self) -> None:
        status = ProcessManager().get_admin_status()

        assert set(status) == {'is_admin', 'message'}


class TestPorts:

    def test_listening_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            assert is_port_in_use(port)
            assert is_port_accepting(port)
            available, message = check_port_availability(port)
            assert not available
            assert str(port) in message

    def test_free_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        assert not is_port_accepting(port, timeout=0.2)
        assert check_port_availability(port)[0]
