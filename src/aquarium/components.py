#!/usr/bin/env python3
"""
Component Registry — The Fixed Catalog of Managed Services

Each ComponentKind is a static, immutable description: optional source
repo (no repo means nothing to compile), declared instance ids, the
packages compiling produces, how to launch it, what to tag its image, and
a set of hooks run around the generic lifecycle steps.

Hooks are plain callables with no-op defaults. A kind with an unusual
sequence swaps in its own callable instead of the orchestrator growing
per-kind branches.

Usage:
    registry = default_registry()
    for inst in registry.resolve(["router"], instance="internal"):
        print(inst.name, inst.image)
"""

import logging
import shutil
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple,
)

from .config import AquariumConfig
from .errors import MissingPrerequisiteFile, UnknownComponent, UnknownInstance

if TYPE_CHECKING:
    from .executor import RemoteExecutor
    from .status import StatusStore

logger = logging.getLogger(__name__)

ALL = "all"

# The base image is built, never run.
BASE_IMAGE = "base-container"

# Other components find these by name through the shared hosts file.
HOSTS_FILE_KINDS = frozenset({"zookeeper", "registry", "builder"})


# ── Hooks ────────────────────────────────────────────────────────

@dataclass
class HookContext:
    """Everything a hook may touch."""
    instance: "ComponentInstance"
    executor: "RemoteExecutor"
    store: "StatusStore"
    config: AquariumConfig


HookFn = Callable[[HookContext], None]


def noop(ctx: HookContext) -> None:
    return None


@dataclass(frozen=True)
class Hooks:
    precompile: HookFn = noop
    postcompile: HookFn = noop
    preimage: HookFn = noop
    postimage: HookFn = noop
    prestart: HookFn = noop
    poststart: HookFn = noop


# ── Model ────────────────────────────────────────────────────────

def default_image(instance: "ComponentInstance") -> str:
    return f"aquarium/{instance.name}"


def no_options(instance: "ComponentInstance", config: AquariumConfig) -> List[str]:
    return []


@dataclass(frozen=True)
class ComponentKind:
    """Static definition of one kind of managed service."""
    name: str
    repo: Optional[str] = None
    instances: Tuple[str, ...] = ()
    hooks: Hooks = field(default_factory=Hooks)
    packages: Tuple[str, ...] = ()
    options: Callable[["ComponentInstance", AquariumConfig], List[str]] = no_options
    image: Callable[["ComponentInstance"], str] = default_image

    @property
    def multi_instance(self) -> bool:
        # zero or one declared id means a single anonymous instance
        return len(self.instances) > 1

    @property
    def instance_ids(self) -> List[Optional[str]]:
        return list(self.instances) if self.multi_instance else [None]

    @property
    def is_base_image(self) -> bool:
        return self.name == BASE_IMAGE

    @property
    def registers_hostname(self) -> bool:
        return self.name in HOSTS_FILE_KINDS


@dataclass(frozen=True)
class ComponentInstance:
    """
    One replica/role of a kind. A view, recomputed every call; only its
    Status Store entry outlives the process.
    """
    kind: ComponentKind
    id: Optional[str] = None

    @property
    def suffix(self) -> str:
        return f"-{self.id}" if self.id else ""

    @property
    def name(self) -> str:
        return f"{self.kind.name}{self.suffix}"

    @property
    def cidfile(self) -> str:
        return f"cidfile{self.suffix}"

    @property
    def ipfile(self) -> str:
        return f"ip{self.suffix}"

    @property
    def image(self) -> str:
        return self.kind.image(self)

    def workdir(self, config: AquariumConfig) -> str:
        """Working directory inside the managed host."""
        return f"{config.remote_data_dir}/{self.name}"

    def local_workdir(self, config: AquariumConfig):
        """The same directory as seen from this machine (shared folder)."""
        return config.local_data_dir / self.name

    def hostname(self, config: AquariumConfig) -> str:
        return f"{self.kind.name}.{config.domain}"

    def launch_options(self, config: AquariumConfig) -> List[str]:
        return [f"--dns {config.dns}"] + list(self.kind.options(self, config))

    def container_name(self, timestamp: str) -> str:
        """Unique per start: <kind>[-<id>]-<timestamp>."""
        return f"{self.name}-{timestamp}"

    def __str__(self) -> str:
        return self.name


# ── Kind-specific hooks and options ──────────────────────────────

def install_ssh_key(ctx: HookContext) -> None:
    """Copy the public key the base image authorizes into its build context."""
    source = ctx.config.local_path(ctx.config.ssh_public_key)
    if not source.exists():
        raise MissingPrerequisiteFile(source, hint="generate it with ssh-keygen -f data/ssh/id_rsa")
    dest = ctx.instance.local_workdir(ctx.config) / "id_rsa.pub"
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, dest)
    logger.debug(f"Copied {source} -> {dest}")


def require_layer(layer: str) -> HookFn:
    """Hook that refuses to compile until `layer` has been built on the host."""

    def _check(ctx: HookContext) -> None:
        path = f"{ctx.config.layers.dir}/{layer}.tar.gz"
        ok, _ = ctx.executor.run(f"test -f {path}")
        if not ok:
            raise MissingPrerequisiteFile(path, hint="run `aquarium build-layers` first")

    return _check


def wait_for_port(port: int, attempts: int = 30) -> HookFn:
    """Hook that blocks until the freshly started container accepts connections."""

    def _wait(ctx: HookContext) -> None:
        inst = ctx.instance
        ip = ctx.store.get(inst.kind.name, inst.id).get("ip")
        if not ip:
            return
        ctx.executor.run_checked(
            f"for i in $(seq 1 {attempts}); do nc -z {ip} {port} && exit 0; sleep 1; done; exit 1"
        )

    return _wait


def _published(*ports: str):
    def _options(instance: ComponentInstance, config: AquariumConfig) -> List[str]:
        return [f"-p {p}" for p in ports]
    return _options


def _privileged_with_layers(instance: ComponentInstance, config: AquariumConfig) -> List[str]:
    return ["--privileged", f"-v {config.layers.dir}:{config.layers.dir}"]


def _router_options(instance: ComponentInstance, config: AquariumConfig) -> List[str]:
    return [f"-e ROUTER_ROLE={instance.id}"]


# ── The Catalog ──────────────────────────────────────────────────
# Order is the order `all` expands to. It is not a dependency graph.

CATALOG: Tuple[ComponentKind, ...] = (
    ComponentKind(
        name=BASE_IMAGE,
        hooks=Hooks(preimage=install_ssh_key),
    ),
    ComponentKind(
        name="zookeeper",
        options=_published("2181:2181"),
    ),
    ComponentKind(
        name="registry",
        options=_published("5000:5000"),
    ),
    ComponentKind(
        name="builder",
        repo="atlas-builder",
        packages=("atlas-builder.tar.gz",),
        hooks=Hooks(precompile=require_layer("builder")),
        options=_privileged_with_layers,
    ),
    ComponentKind(
        name="router",
        repo="atlas-router",
        instances=("internal", "external"),
        packages=("atlas-router.tar.gz",),
        options=_router_options,
    ),
    ComponentKind(
        name="supervisor",
        repo="atlas-supervisor",
        instances=("1", "2"),
        packages=("atlas-supervisor.tar.gz",),
        hooks=Hooks(precompile=require_layer("base")),
        options=_privileged_with_layers,
    ),
    ComponentKind(
        name="manager",
        repo="atlas-manager",
        packages=("atlas-manager.tar.gz",),
        hooks=Hooks(poststart=wait_for_port(443)),
        options=_published("8443:443"),
    ),
)


# ── Registry ─────────────────────────────────────────────────────

class Registry:
    """Name -> kind lookup plus instance resolution."""

    def __init__(self, kinds: Iterable[ComponentKind]):
        self._kinds: Dict[str, ComponentKind] = {}
        for kind in kinds:
            if kind.name in self._kinds:
                raise ValueError(f"Duplicate component kind: {kind.name}")
            self._kinds[kind.name] = kind

    def names(self) -> Set[str]:
        return set(self._kinds)

    def ordered_names(self) -> List[str]:
        return list(self._kinds)

    def lookup(self, name: str) -> ComponentKind:
        try:
            return self._kinds[name]
        except KeyError:
            raise UnknownComponent(name, self._kinds) from None

    def each_instance(
        self, kind: ComponentKind, instance_filter: Optional[str] = None,
    ) -> List[ComponentInstance]:
        """
        Instances of `kind`: all of them for None/"all", exactly one for a
        declared id. Singleton kinds declare no ids.
        """
        if instance_filter in (None, ALL):
            return [ComponentInstance(kind, i) for i in kind.instance_ids]
        if not kind.multi_instance or instance_filter not in kind.instances:
            declared = kind.instances if kind.multi_instance else ()
            raise UnknownInstance(kind.name, instance_filter, declared)
        return [ComponentInstance(kind, instance_filter)]

    def resolve(
        self, names: Iterable[str], instance: Optional[str] = None,
    ) -> List[ComponentInstance]:
        """
        Turn user-supplied names (or "all") into instances.

        Every name is validated before anything is returned. With "all",
        an instance filter applies only to the kinds that declare it.
        """
        names = list(names)
        kinds = [self.lookup(n) for n in names if n != ALL]
        expand_all = ALL in names
        if expand_all:
            kinds = list(self._kinds.values())

        resolved: List[ComponentInstance] = []
        seen: Set[str] = set()
        for kind in kinds:
            if kind.name in seen:
                continue
            seen.add(kind.name)
            if expand_all and instance not in (None, ALL) and instance not in kind.instances:
                continue
            resolved.extend(self.each_instance(kind, instance))
        return resolved

    def __iter__(self) -> Iterator[ComponentKind]:
        return iter(self._kinds.values())

    def __contains__(self, name: str) -> bool:
        return name in self._kinds

    def __repr__(self) -> str:
        return f"Registry({', '.join(self._kinds)})"


def default_registry() -> Registry:
    return Registry(CATALOG)
