"""
Aquarium — Container Cluster Lifecycle on a Single Vagrant Host

Provides:
- Remote Executor (RemoteExecutor, ManagedHost) — commands inside the VM
- Status Store (FileStatusStore, MemoryStatusStore) — what runs where
- Component Registry (Registry, ComponentKind, ComponentInstance) — the catalog
- Lifecycle Orchestrator (Orchestrator) — compile/build/start/stop/restart
"""

__version__ = "0.1.0"

from .config import AquariumConfig, load_config
from .errors import (
    AquariumError, UnknownComponent, UnknownInstance, RemoteCommandFailure,
    MissingPrerequisiteFile, HostUnavailable, ComponentNotRunning, CorruptStatusFile,
)
from .executor import RemoteExecutor, ManagedHost, ExecResult
from .status import Status, StatusStore, FileStatusStore, MemoryStatusStore
from .components import (
    ComponentKind, ComponentInstance, Hooks, HookContext, Registry, default_registry,
)
from .lifecycle import Orchestrator, StartResult, AuditEntry

__all__ = [
    'AquariumConfig', 'load_config',
    'AquariumError', 'UnknownComponent', 'UnknownInstance', 'RemoteCommandFailure',
    'MissingPrerequisiteFile', 'HostUnavailable', 'ComponentNotRunning', 'CorruptStatusFile',
    'RemoteExecutor', 'ManagedHost', 'ExecResult',
    'Status', 'StatusStore', 'FileStatusStore', 'MemoryStatusStore',
    'ComponentKind', 'ComponentInstance', 'Hooks', 'HookContext', 'Registry', 'default_registry',
    'Orchestrator', 'StartResult', 'AuditEntry',
]
