#!/usr/bin/env python3
"""
Lifecycle Orchestrator — compile, build, start, stop, restart

Drives one component instance at a time through:

    stopped -> compiling -> building -> built -> starting -> running
    running -> stopping -> stopped

Each step is a short sequence of commands on the managed host wrapped
in the kind's hooks, with the Status Store updated at the start and end.

Failure policy: any hook or checked command failure propagates and
aborts that instance's pipeline. Nothing is rolled back; the store keeps
whatever status was last written (e.g. `compiling` when the image build
failed). Re-running the operation is the recovery path.

Known limitations:
- No dependency ordering (starting manager does not start zookeeper).
- Restart always destroys the container. For zookeeper that wipes the
  cluster metadata.
- Two invocations against the same instance at once race on the cidfile
  and on the status file.

Usage:
    orch = Orchestrator(executor, store, config)
    for inst in orch.registry.resolve(["router"]):
        orch.build(inst)
        orch.start(inst)
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from .components import (
    ComponentInstance, HookContext, Registry, default_registry,
)
from .config import AquariumConfig
from .errors import AquariumError, ComponentNotRunning, MissingPrerequisiteFile
from .executor import RemoteExecutor
from .status import Status, StatusStore

logger = logging.getLogger(__name__)

BUILD_COMMAND = "make clean && make package"

# Where `make package` may leave an artifact, relative to the checkout.
ARTIFACT_LOCATIONS = ("pkg/{package}", "{package}")

BASE_LAYER_IMAGE = "aquarium/base-layer"
BUILDER_LAYER_IMAGE = "aquarium/builder-layer"

# Built and started, in this order, by base_cluster().
BASE_CLUSTER = (
    "base-container", "zookeeper", "registry", "builder",
    "router", "supervisor", "manager",
)

ZOOKEEPER_CLI = "/opt/zookeeper/bin/zkCli.sh -server localhost:2181"
REGISTER_SCRIPT = "manager/register-components.sh"


# ── Data Models ──────────────────────────────────────────────────

@dataclass
class StartResult:
    """Outcome of start() for one instance."""
    name: str
    cid: Optional[str] = None
    ip: Optional[str] = None
    already_running: bool = False
    container_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEntry:
    """Record of a lifecycle action taken during this invocation."""
    timestamp: float = field(default_factory=time.time)
    action: str = ""
    target: str = ""
    success: bool = True
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Orchestrator ─────────────────────────────────────────────────

class Orchestrator:
    """
    Lifecycle operations over component instances.

    The executor and the store are injected; nothing here is global.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        store: StatusStore,
        config: AquariumConfig,
        registry: Registry = None,
        clock: Callable[[], float] = time.time,
    ):
        self.executor = executor
        self.store = store
        self.config = config
        self.registry = registry or default_registry()
        self._clock = clock
        self._audit_log: List[AuditEntry] = []

    # ── Internals ────────────────────────────────────────────────

    def _audit(self, action: str, target: str, success: bool, detail: str = ""):
        entry = AuditEntry(action=action, target=target, success=success, detail=detail)
        self._audit_log.append(entry)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {action} {target}: {'ok' if success else 'FAIL'} {detail}")

    @contextmanager
    def _audited(self, action: str, target: str):
        try:
            yield
        except AquariumError as e:
            self._audit(action, target, False, str(e).splitlines()[0])
            raise

    def _mark(self, instance: ComponentInstance, status: Status, **attrs: Any):
        self.store.update(instance.kind.name, instance.id, status=status, **attrs)
        logger.debug(f"{instance} -> {status.value}")

    def _hook(self, name: str, instance: ComponentInstance):
        hook = getattr(instance.kind.hooks, name)
        hook(HookContext(
            instance=instance, executor=self.executor,
            store=self.store, config=self.config,
        ))

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock()).strftime("%Y%m%d%H%M%S%f")

    def _find_artifact(self, package: str) -> str:
        """First candidate location that exists; the last one otherwise."""
        candidates = [loc.format(package=package) for loc in ARTIFACT_LOCATIONS]
        for candidate in candidates[:-1]:
            found, _ = self.executor.run(f"test -f {candidate}")
            if found:
                return candidate
        return candidates[-1]

    def _running_cid(self, instance: ComponentInstance) -> Optional[str]:
        """
        Container id from the cidfile, if that exact container is running.
        Must be called inside the instance's workdir scope.
        """
        has_file, content = self.executor.run(f"cat {instance.cidfile}")
        cid = content.strip() if has_file else ""
        if not cid:
            return None
        known, state = self.executor.run(
            f"docker inspect -f '{{{{.State.Running}}}}' {cid}"
        )
        return cid if known and state.strip() == "true" else None

    # ── Compile & Build ──────────────────────────────────────────

    def compile(self, instance: ComponentInstance):
        """Build the kind's packages from source and copy them into the workdir."""
        kind = instance.kind
        if not kind.repo:
            logger.info(f"{instance}: no repository, nothing to compile")
            return

        with self._audited("compile", instance.name):
            self._mark(instance, Status.COMPILING)
            self._hook("precompile", instance)

            workdir = instance.workdir(self.config)
            self.executor.run_checked(f"mkdir -p {workdir}")
            with self.executor.cd(f"{self.config.repos_dir}/{kind.repo}"):
                self.executor.run_checked(BUILD_COMMAND)
                for package in kind.packages:
                    source = self._find_artifact(package)
                    self.executor.run_checked(f"cp {source} {workdir}/")

            self._hook("postcompile", instance)
        # Status stays `compiling`; build_image moves it on.
        self._audit("compile", instance.name, True, ", ".join(kind.packages))

    def build_image(self, instance: ComponentInstance, no_cache: bool = False):
        """docker build the instance's workdir into its image tag."""
        with self._audited("build_image", instance.name):
            self._mark(instance, Status.BUILDING)
            self._hook("preimage", instance)

            flags = "--no-cache " if no_cache else ""
            with self.executor.cd(instance.workdir(self.config)):
                self.executor.run_checked(f"docker build {flags}-t {instance.image} .")

            self._hook("postimage", instance)
            self._mark(instance, Status.BUILT)
        self._audit("build_image", instance.name, True, instance.image)

    def build(self, instance: ComponentInstance, no_cache: bool = False):
        self.compile(instance)
        self.build_image(instance, no_cache=no_cache)

    # ── Start / Stop ─────────────────────────────────────────────

    def start(self, instance: ComponentInstance) -> Optional[StartResult]:
        """
        Launch a container for the instance unless its recorded container
        is already running. Returns None for the base image, which is
        never started.
        """
        kind = instance.kind
        if kind.is_base_image:
            logger.info(f"{instance} is a base image; nothing to start")
            return None

        with self._audited("start", instance.name):
            with self.executor.cd(instance.workdir(self.config)):
                existing = self._running_cid(instance)
                if existing:
                    entry = self.store.get(kind.name, instance.id)
                    logger.info(f"{instance} already running ({existing[:12]})")
                    # A rebuild while running leaves the record at `built`.
                    if entry.get("status") != Status.RUNNING.value:
                        self._mark(instance, Status.RUNNING)
                    self._audit("start", instance.name, True, "already running")
                    return StartResult(
                        name=instance.name,
                        cid=entry.get("cid") or existing,
                        ip=entry.get("ip"),
                        already_running=True,
                    )

                self._mark(instance, Status.STARTING)
                self._hook("prestart", instance)

                self.executor.run_checked(f"rm -f {instance.cidfile}")
                container_name = instance.container_name(self._timestamp())
                options = " ".join(instance.launch_options(self.config))
                self.executor.run_checked(
                    f"docker run -d --cidfile {instance.cidfile} "
                    f"--name {container_name} {options} {instance.image}"
                )
                cid = self.executor.capture(f"cat {instance.cidfile}")
                ip = self.executor.capture(
                    f"docker inspect -f '{{{{.NetworkSettings.IPAddress}}}}' {cid}"
                )
                self.executor.run_checked(f"echo {ip} > {instance.ipfile}")

            self._mark(instance, Status.STARTING, cid=cid, ip=ip)

            if kind.registers_hostname:
                self.register_hostname(instance.hostname(self.config), ip)

            self._hook("poststart", instance)
            self._mark(instance, Status.RUNNING)

        self._audit("start", instance.name, True, f"cid={cid[:12]} ip={ip}")
        return StartResult(
            name=instance.name, cid=cid, ip=ip, container_name=container_name,
        )

    def stop(self, instance: ComponentInstance) -> bool:
        """
        Remove the instance's container, if it has one on record.
        Returns True when a container record was found.
        """
        kind = instance.kind
        if kind.is_base_image:
            logger.info(f"{instance} is a base image; nothing to stop")
            return False

        with self._audited("stop", instance.name):
            with self.executor.cd(instance.workdir(self.config)):
                has_file, content = self.executor.run(f"cat {instance.cidfile}")
                cid = content.strip() if has_file else ""

                if not cid:
                    logger.info(f"{instance} has no container on record")
                    self._mark(instance, Status.STOPPED, cid=None, ip=None)
                    return False

                self._mark(instance, Status.STOPPING)
                removed, _ = self.executor.run(f"docker rm -f {cid}")
                if not removed:
                    logger.warning(f"{instance}: container {cid[:12]} was already gone")
                self.executor.run_checked(f"rm -f {instance.cidfile} {instance.ipfile}")

            self._mark(instance, Status.STOPPED, cid=None, ip=None)
        self._audit("stop", instance.name, True, f"cid={cid[:12]}")
        return True

    def restart(self, instance: ComponentInstance) -> Optional[StartResult]:
        """Stop then start. Always replaces the container."""
        self.stop(instance)
        return self.start(instance)

    # ── Hosts File ───────────────────────────────────────────────

    def register_hostname(self, hostname: str, ip: str):
        """Point `hostname` at `ip` in the shared hosts file (replace or append)."""
        hosts = self.config.hosts_file
        pattern = hostname.replace(".", r"\.")
        self.executor.run_checked(f"mkdir -p $(dirname {hosts}) && touch {hosts}")
        self.executor.run_checked(
            f"if grep -q ' {pattern}$' {hosts}; "
            f"then sed -i 's/^.* {pattern}$/{ip} {hostname}/' {hosts}; "
            f"else echo '{ip} {hostname}' >> {hosts}; fi"
        )
        self._audit("register_hostname", hostname, True, ip)

    # ── Layers ───────────────────────────────────────────────────

    def build_layers(self, base: bool = False, builder: bool = False) -> List[str]:
        """
        Build the filesystem layers compile steps rely on.
        Asking for neither layer means both.
        """
        if not base and not builder:
            base = builder = True

        layers = self.config.layers
        archive = self.config.local_path(layers.base_archive)
        context = self.config.local_path(layers.builder_context)
        if base and not archive.exists():
            raise MissingPrerequisiteFile(archive, hint="download the base rootfs archive first")
        if builder and not (context / "Dockerfile").exists():
            raise MissingPrerequisiteFile(context / "Dockerfile")

        built = []
        with self._audited("build_layers", "layers"):
            self.executor.run_checked(f"mkdir -p {layers.dir}")
            if base:
                with self.executor.cd(layers.dir):
                    self.executor.run_checked(
                        f"cp {self.config.remote_path(layers.base_archive)} base.tar.gz"
                    )
                    self.executor.run_checked(
                        f"docker import - {BASE_LAYER_IMAGE} < base.tar.gz"
                    )
                built.append("base")
            if builder:
                scratch = f"builder-layer-{self._timestamp()}"
                with self.executor.cd(self.config.remote_path(layers.builder_context)):
                    self.executor.run_checked(f"docker build -t {BUILDER_LAYER_IMAGE} .")
                    self.executor.run_checked(f"docker create --name {scratch} {BUILDER_LAYER_IMAGE}")
                    self.executor.run_checked(
                        f"docker export {scratch} | gzip > {layers.dir}/builder.tar.gz"
                    )
                    self.executor.run_checked(f"docker rm {scratch}")
                built.append("builder")

        self._audit("build_layers", "layers", True, ", ".join(built))
        return built

    # ── Inspection & Access ──────────────────────────────────────

    def inspect(self, instance: ComponentInstance) -> Dict[str, Any]:
        """Recorded state plus derived names. Issues no remote commands."""
        entry = self.store.get(instance.kind.name, instance.id)
        return {
            "component": instance.kind.name,
            "instance": instance.id,
            "name": instance.name,
            "image": instance.image,
            "workdir": instance.workdir(self.config),
            "status": entry.get("status", Status.STOPPED.value),
            "cid": entry.get("cid"),
            "ip": entry.get("ip"),
        }

    def ssh(self, instance: ComponentInstance, command: Optional[str] = None) -> int:
        ip = self.store.get(instance.kind.name, instance.id).get("ip")
        if not ip:
            raise ComponentNotRunning(instance.name)
        return self.executor.ssh(ip, command)

    def zookeeper_shell(self, command: Optional[str] = None) -> int:
        """Open the zookeeper CLI inside the zookeeper container."""
        zookeeper = self.registry.each_instance(self.registry.lookup("zookeeper"))[0]
        cli = ZOOKEEPER_CLI + (f" {command}" if command else "")
        return self.ssh(zookeeper, cli)

    # ── Cluster-Level Operations ─────────────────────────────────

    def register_components(self):
        """Register the cluster's components with the running manager."""
        manager = self.registry.each_instance(self.registry.lookup("manager"))[0]
        ip = self.store.get(manager.kind.name, manager.id).get("ip")
        if not ip:
            raise ComponentNotRunning(manager.name)

        with self._audited("register_components", manager.name):
            with self.executor.cd(self.config.remote_data_dir):
                self.executor.run_checked(f"./{REGISTER_SCRIPT} {ip}")
        self._audit("register_components", manager.name, True, ip)

    def base_cluster(self, no_cache: bool = False, layers: bool = True) -> List[StartResult]:
        """
        Build and start the base set in a fixed order. A convenience
        sequence, not dependency resolution.
        """
        if layers:
            self.build_layers()
        results = []
        for instance in self.registry.resolve(BASE_CLUSTER):
            self.build(instance, no_cache=no_cache)
            result = self.start(instance)
            if result is not None:
                results.append(result)
        return results

    def provision(self):
        """Re-run the managed host's provisioners."""
        with self._audited("provision", "host"):
            self.executor.provision()
        self._audit("provision", "host", True)

    # ── Audit Log ────────────────────────────────────────────────

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        entries = self._audit_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_audit_summary(self) -> Dict[str, Any]:
        total = len(self._audit_log)
        successes = sum(1 for e in self._audit_log if e.success)
        actions = {}
        for e in self._audit_log:
            actions[e.action] = actions.get(e.action, 0) + 1
        return {
            "total_actions": total,
            "successes": successes,
            "failures": total - successes,
            "actions_by_type": actions,
        }

    def __repr__(self) -> str:
        return f"Orchestrator(store={self.store!r}, actions={len(self._audit_log)})"
