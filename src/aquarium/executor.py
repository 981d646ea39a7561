#!/usr/bin/env python3
"""
Remote Executor — Command Execution on the Managed Host

Every lifecycle step ends up as a shell command run inside the Vagrant VM
that hosts the containers. This module owns that channel:

- ManagedHost: the local `vagrant` CLI (status/up/ssh-config/provision,
  interactive ssh). `ensure_running()` is idempotent and memoized.
- RemoteExecutor: a paramiko SSH session into the VM with
  `run` (non-fatal), `run_checked` (raises RemoteCommandFailure),
  `capture` (trimmed stdout) and a `cd()` scope for remote commands.

No timeout is applied to remote commands; a hung command hangs the
invocation.

Usage:
    executor = RemoteExecutor(config)
    with executor.cd("/vagrant/data/zookeeper"):
        ok, out = executor.run("test -f cidfile")
        cid = executor.capture("cat cidfile")
    executor.close()
"""

import logging
import posixpath
import shlex
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

import paramiko

from .config import AquariumConfig
from .errors import HostUnavailable, RemoteCommandFailure

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Result of a command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Managed Host ─────────────────────────────────────────────────

class ManagedHost:
    """
    The Vagrant machine all containers run in.

    Talks to the local `vagrant` binary from the directory holding the
    Vagrantfile.
    """

    def __init__(self, vagrant_dir: Path = Path(".")):
        self.vagrant_dir = Path(vagrant_dir)
        self._ready = False

    def _vagrant(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["vagrant", *args]
        logger.debug(f"[LOCAL] {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, cwd=self.vagrant_dir,
                capture_output=True, text=True, check=False,
            )
        except FileNotFoundError as e:
            raise HostUnavailable("vagrant is not installed or not on PATH") from e

        if check and result.returncode != 0:
            raise HostUnavailable(
                f"'{' '.join(cmd)}' failed (exit code {result.returncode})\n"
                f"{result.stderr.strip()}"
            )
        return result

    def state(self) -> str:
        """Machine state as reported by `vagrant status` (e.g. running, poweroff)."""
        result = self._vagrant("status", "--machine-readable")
        for line in result.stdout.splitlines():
            # timestamp,target,type,data
            parts = line.split(",")
            if len(parts) >= 4 and parts[2] == "state":
                return parts[3]
        return "unknown"

    def ensure_running(self):
        """Bring the VM up if needed. Safe to call any number of times."""
        if self._ready:
            return
        state = self.state()
        if state != "running":
            logger.info(f"Managed host is {state}, running vagrant up")
            self._vagrant("up")
        self._ready = True

    def ssh_settings(self) -> Dict[str, str]:
        """Parse `vagrant ssh-config` into lowercase keys (hostname, port, user, identityfile)."""
        result = self._vagrant("ssh-config")
        settings = {}
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line or " " not in line:
                continue
            key, value = line.split(None, 1)
            settings[key.lower()] = value.strip().strip('"')
        return settings

    def provision(self):
        self._vagrant("provision")

    def interactive(self, remote_command: str) -> int:
        """Run a command in the VM attached to this terminal; returns its exit code."""
        cmd = ["vagrant", "ssh", "-c", remote_command, "--", "-t"]
        logger.debug(f"[LOCAL] {' '.join(cmd)}")
        try:
            return subprocess.call(cmd, cwd=self.vagrant_dir)
        except FileNotFoundError as e:
            raise HostUnavailable("vagrant is not installed or not on PATH") from e

    def __repr__(self) -> str:
        return f"ManagedHost({self.vagrant_dir}, {'ready' if self._ready else 'unchecked'})"


# ── Remote Executor ──────────────────────────────────────────────

class RemoteExecutor:
    """
    SSH-based command execution inside the managed host.

    Connection settings come from config, falling back to
    `vagrant ssh-config` when no address is configured. The host is
    brought up (if needed) before the first connection.
    """

    def __init__(self, config: AquariumConfig, managed_host: ManagedHost = None):
        self.config = config
        self.managed_host = managed_host or ManagedHost(config.vagrant_dir)
        self.host = config.host.address or ""
        self.port = config.host.port
        self.username = config.host.username
        self.key_path = config.host.key_path
        self.timeout = config.host.connect_timeout
        self._client: Optional[paramiko.SSHClient] = None
        self._cwd: List[str] = []
        self._exec_log: List[ExecResult] = []

        logger.debug(
            f"RemoteExecutor initialized (host={self.host or 'vagrant'}, "
            f"user={self.username}, port={self.port})"
        )

    @staticmethod
    def _read_key_file(path: str):
        """Read a private key from file."""
        expanded = str(Path(path).expanduser())
        for key_class in [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]:
            try:
                return key_class.from_private_key_file(expanded)
            except (paramiko.SSHException, ValueError):
                continue
        logger.error(f"Could not parse SSH key: {path}")
        return None

    def _resolve_endpoint(self):
        """Fill in host/port/user/key from vagrant when not configured."""
        if self.host:
            return
        settings = self.managed_host.ssh_settings()
        self.host = settings.get("hostname", "127.0.0.1")
        self.port = int(settings.get("port", self.port))
        self.username = settings.get("user", self.username)
        if not self.key_path:
            self.key_path = settings.get("identityfile")

    # ── Connection Management ────────────────────────────────────

    def ensure_host(self):
        """Make sure the managed host is up. Idempotent."""
        self.managed_host.ensure_running()

    def provision(self):
        self.ensure_host()
        self.managed_host.provision()

    def connect(self) -> bool:
        """Establish the SSH connection to the managed host."""
        self.ensure_host()
        self._resolve_endpoint()

        key = self._read_key_file(self.key_path) if self.key_path else None

        try:
            self._client = paramiko.SSHClient()
            self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            self._client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=key,
                timeout=self.timeout,
                allow_agent=key is None,
                look_for_keys=key is None,
            )
            logger.info(f"SSH connected to {self.username}@{self.host}:{self.port}")
            return True
        except paramiko.AuthenticationException:
            logger.error(f"SSH auth failed for {self.username}@{self.host}")
        except paramiko.SSHException as e:
            logger.error(f"SSH error connecting to {self.host}: {e}")
        except OSError as e:
            logger.error(f"SSH connection failed to {self.host}: {e}")
        self._client = None
        return False

    def close(self):
        """Close the SSH connection."""
        if self._client:
            self._client.close()
            self._client = None
            logger.debug("SSH connection closed")

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _ensure_connected(self):
        if self.connected:
            return
        if not self.connect():
            raise HostUnavailable(
                f"Cannot reach managed host at {self.username}@{self.host}:{self.port}"
            )

    # ── Working Directory Scope ──────────────────────────────────

    @contextmanager
    def cd(self, path: str):
        """
        Scope remote commands issued inside the block to `path`.

        Only affects commands sent through this executor; the local
        process cwd and local path checks are untouched.
        """
        base = self._cwd[-1] if self._cwd else "/"
        self._cwd.append(posixpath.join(base, path))
        try:
            yield self
        finally:
            self._cwd.pop()

    @property
    def cwd(self) -> Optional[str]:
        return self._cwd[-1] if self._cwd else None

    def _scoped(self, command: str) -> str:
        if not self._cwd:
            return command
        return f"cd {shlex.quote(self._cwd[-1])} && {command}"

    # ── Command Execution ────────────────────────────────────────

    def exec(self, command: str) -> ExecResult:
        """
        Execute a command on the managed host as-is (no cd scope).

        Returns an ExecResult; never raises for a non-zero exit.
        """
        self._ensure_connected()
        start = time.time()

        try:
            _, stdout_ch, stderr_ch = self._client.exec_command(command)
            stdout, stderr = self._drain(stdout_ch, stderr_ch)
            exit_code = stdout_ch.channel.recv_exit_status()
        except paramiko.SSHException as e:
            exit_code, stdout, stderr = -1, "", str(e)

        duration = (time.time() - start) * 1000
        result = ExecResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0,
            duration_ms=round(duration, 1),
            host=self.host,
        )
        self._record(result)
        return result

    @staticmethod
    def _drain(stdout_ch, stderr_ch) -> Tuple[str, str]:
        """
        Read stdout and stderr concurrently. Reading one to EOF first lets
        the other fill its channel window and stall the remote command.
        """
        err: List[bytes] = []
        reader = threading.Thread(target=lambda: err.append(stderr_ch.read()), daemon=True)
        reader.start()
        out = stdout_ch.read()
        reader.join()
        return (
            out.decode("utf-8", errors="replace").strip(),
            b"".join(err).decode("utf-8", errors="replace").strip(),
        )

    def run(self, command: str) -> Tuple[bool, str]:
        """Run a command in the current scope; the caller inspects the boolean."""
        result = self.exec(self._scoped(command))
        return result.success, result.stdout

    def run_checked(self, command: str) -> str:
        """Run a command in the current scope; raise RemoteCommandFailure on non-zero exit."""
        result = self.exec(self._scoped(command))
        if not result.success:
            raise RemoteCommandFailure(
                result.command, result.exit_code, result.stdout, result.stderr,
            )
        return result.stdout

    def capture(self, command: str) -> str:
        """Run a checked command and return its trimmed stdout."""
        return self.run_checked(command).strip()

    def ssh(self, address: str, command: Optional[str] = None) -> int:
        """Open an interactive SSH session from the managed host to `address`."""
        self.ensure_host()
        remote = (
            f"ssh -t -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null "
            f"{self.config.container_user}@{address}"
        )
        if command:
            remote += f" {shlex.quote(command)}"
        return self.managed_host.interactive(remote)

    def _record(self, result: ExecResult):
        self._exec_log.append(result)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {result.command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent command execution log."""
        entries = self._exec_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_exec_stats(self) -> Dict[str, Any]:
        total = len(self._exec_log)
        successes = sum(1 for e in self._exec_log if e.success)
        avg_duration = (
            sum(e.duration_ms for e in self._exec_log) / total
            if total > 0 else 0
        )
        return {
            "total_commands": total,
            "successes": successes,
            "failures": total - successes,
            "avg_duration_ms": round(avg_duration, 1),
            "connected": self.connected,
            "host": self.host,
        }

    # ── Context Manager ──────────────────────────────────────────

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        status = "connected" if self.connected else "disconnected"
        return f"RemoteExecutor({self.username}@{self.host or 'vagrant'}:{self.port}, {status})"
