"""
Shared fixtures.

FakeHost stands in for RemoteExecutor: it keeps a tiny model of the
managed host (files, containers, hosts-file entries) and records every
command, so lifecycle tests can assert on both state and traffic.

ShellHost runs commands through a local `sh -c` instead, for the few
shell snippets whose behaviour the model cannot vouch for.
"""

import posixpath
import re
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from aquarium.config import AquariumConfig
from aquarium.errors import RemoteCommandFailure
from aquarium.lifecycle import Orchestrator
from aquarium.status import MemoryStatusStore


class FakeHost:

    def __init__(self):
        self.files = {}
        self.containers = {}
        self.hosts = {}
        self.commands = []
        self.ssh_calls = []
        self.fail_on = []
        self.host_checks = 0
        self.provisioned = False
        self._cwd = []
        self._next = 0

    # ── executor surface ─────────────────────────────────────────

    @contextmanager
    def cd(self, path):
        self._cwd.append(self._path(path))
        try:
            yield self
        finally:
            self._cwd.pop()

    def ensure_host(self):
        self.host_checks += 1

    def run(self, command):
        self.commands.append(command)
        if any(marker in command for marker in self.fail_on):
            return False, ""
        return self._dispatch(command)

    def run_checked(self, command):
        ok, out = self.run(command)
        if not ok:
            raise RemoteCommandFailure(command, 1, out)
        return out

    def capture(self, command):
        return self.run_checked(command).strip()

    def ssh(self, address, command=None):
        self.ssh_calls.append((address, command))
        return 0

    def provision(self):
        self.provisioned = True

    # ── helpers for assertions ───────────────────────────────────

    def docker_runs(self):
        return [c for c in self.commands if c.startswith("docker run ")]

    def running(self):
        return {cid: c for cid, c in self.containers.items() if c["running"]}

    def add_container(self, cidfile_path, ip, running=True):
        """Pretend a container was started by an earlier invocation."""
        self._next += 1
        cid = f"{self._next:064x}"
        self.containers[cid] = {"name": "earlier", "image": "", "running": running, "ip": ip}
        self.files[cidfile_path] = cid
        return cid

    # ── the model ────────────────────────────────────────────────

    def _path(self, path):
        base = self._cwd[-1] if self._cwd else "/"
        return posixpath.join(base, path)

    def _dispatch(self, command):
        m = re.match(r"cat (\S+)$", command)
        if m:
            path = self._path(m.group(1))
            return (True, self.files[path]) if path in self.files else (False, "")

        m = re.match(r"test -f (\S+)$", command)
        if m:
            return self._path(m.group(1)) in self.files, ""

        m = re.match(r"rm -f (.+)$", command)
        if m:
            for name in m.group(1).split():
                self.files.pop(self._path(name), None)
            return True, ""

        m = re.match(r"docker run -d --cidfile (\S+) --name (\S+) (.*) (\S+)$", command)
        if m:
            self._next += 1
            cid = f"{self._next:064x}"
            self.containers[cid] = {
                "name": m.group(2), "image": m.group(4),
                "running": True, "ip": f"172.17.0.{self._next + 1}",
            }
            self.files[self._path(m.group(1))] = cid
            return True, ""

        m = re.match(r"docker inspect -f '\{\{\.State\.Running\}\}' (\S+)$", command)
        if m:
            container = self.containers.get(m.group(1))
            if container is None:
                return False, ""
            return True, "true" if container["running"] else "false"

        m = re.match(r"docker inspect -f '\{\{\.NetworkSettings\.IPAddress\}\}' (\S+)$", command)
        if m:
            container = self.containers.get(m.group(1))
            return (True, container["ip"]) if container else (False, "")

        m = re.match(r"docker rm -f (\S+)$", command)
        if m:
            return self.containers.pop(m.group(1), None) is not None, ""

        m = re.match(r"echo (\S+) > (\S+)$", command)
        if m:
            self.files[self._path(m.group(2))] = m.group(1)
            return True, ""

        m = re.search(r"echo '(\S+) (\S+)' >> ", command)
        if m:
            self.hosts[m.group(2)] = m.group(1)
            return True, ""

        return True, ""


class ShellHost:
    """Executor surface backed by the local shell."""

    def __init__(self, root):
        self.root = Path(root)
        self.commands = []
        self._cwd = []

    @contextmanager
    def cd(self, path):
        self._cwd.append(posixpath.join(self._cwd[-1] if self._cwd else str(self.root), path))
        try:
            yield self
        finally:
            self._cwd.pop()

    def run(self, command):
        self.commands.append(command)
        cwd = self._cwd[-1] if self._cwd else str(self.root)
        proc = subprocess.run(["sh", "-c", command], cwd=cwd, capture_output=True, text=True)
        return proc.returncode == 0, proc.stdout

    def run_checked(self, command):
        ok, out = self.run(command)
        if not ok:
            raise RemoteCommandFailure(command, 1, out)
        return out

    def capture(self, command):
        return self.run_checked(command).strip()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def store():
    return MemoryStatusStore()


@pytest.fixture
def config(tmp_path):
    return AquariumConfig.from_dict({
        "local_root": str(tmp_path),
        "status_file": str(tmp_path / "status.yml"),
    })


@pytest.fixture
def orchestrator(host, store, config):
    ticks = iter(range(1_600_000_000, 1_700_000_000))
    return Orchestrator(host, store, config, clock=lambda: float(next(ticks)))


@pytest.fixture
def frozen_orchestrator(config):
    """Factory for independent orchestrators sharing one frozen clock."""

    def _make():
        return Orchestrator(FakeHost(), MemoryStatusStore(), config, clock=lambda: 1_600_000_000.0)

    return _make


@pytest.fixture
def shell_orchestrator(tmp_path, store):
    """Orchestrator whose commands really run, with the hosts file under tmp_path."""
    config = AquariumConfig.from_dict({
        "local_root": str(tmp_path),
        "hosts_file": str(tmp_path / "shared" / "hosts"),
    })
    return Orchestrator(ShellHost(tmp_path), store, config, clock=lambda: 1_600_000_000.0)
