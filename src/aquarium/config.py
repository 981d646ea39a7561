"""Configuration loader for aquarium."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = Path("config/aquarium.defaults.yml")


@dataclass(frozen=True)
class HostConfig:
    # address=None means "ask vagrant ssh-config"
    address: Optional[str]
    port: int
    username: str
    key_path: Optional[str]
    connect_timeout: int


@dataclass(frozen=True)
class LayersConfig:
    dir: str
    base_archive: str
    builder_context: str


@dataclass(frozen=True)
class AquariumConfig:
    vagrant_dir: Path
    local_root: Path
    remote_root: str
    data_dir: str
    repos_dir: str
    status_file: Path
    hosts_file: str
    domain: str
    container_user: str
    dns: str
    ssh_public_key: str
    host: HostConfig
    layers: LayersConfig

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AquariumConfig":
        host_data = data.get("host", {}) or {}
        layers_data = data.get("layers", {}) or {}
        return cls(
            vagrant_dir=Path(data.get("vagrant_dir", ".")),
            local_root=Path(data.get("local_root", ".")),
            remote_root=str(data.get("remote_root", "/vagrant")).rstrip("/"),
            data_dir=str(data.get("data_dir", "data")).strip("/"),
            repos_dir=str(data.get("repos_dir", "/home/vagrant/repos")).rstrip("/"),
            status_file=Path(data.get("status_file", "~/.aquarium/status.yml")).expanduser(),
            hosts_file=str(data.get("hosts_file", "/home/vagrant/aquarium/hosts")),
            domain=str(data.get("domain", "aquarium")),
            container_user=str(data.get("container_user", "root")),
            dns=str(data.get("dns", "172.17.42.1")),
            ssh_public_key=str(data.get("ssh_public_key", "data/ssh/id_rsa.pub")),
            host=HostConfig(
                address=host_data.get("address"),
                port=int(host_data.get("port", 22)),
                username=str(host_data.get("username", "vagrant")),
                key_path=host_data.get("key_path"),
                connect_timeout=int(host_data.get("connect_timeout", 30)),
            ),
            layers=LayersConfig(
                dir=str(layers_data.get("dir", "/home/vagrant/layers")).rstrip("/"),
                base_archive=str(layers_data.get("base_archive", "data/layers/base.tar.gz")),
                builder_context=str(layers_data.get("builder_context", "data/layers/builder")),
            ),
        )

    @property
    def local_data_dir(self) -> Path:
        return self.local_root / self.data_dir

    @property
    def remote_data_dir(self) -> str:
        return f"{self.remote_root}/{self.data_dir}"

    def local_path(self, relative: str) -> Path:
        """Path of a project file on this machine."""
        return self.local_root / relative

    def remote_path(self, relative: str) -> str:
        """Path of the same project file as seen from inside the managed host."""
        return f"{self.remote_root}/{relative.lstrip('/')}"


ENV_MAP = {
    "vagrant_dir": "AQUARIUM_VAGRANT_DIR",
    "local_root": "AQUARIUM_ROOT",
    "repos_dir": "AQUARIUM_REPOS_DIR",
    "status_file": "AQUARIUM_STATUS_FILE",
    "hosts_file": "AQUARIUM_HOSTS_FILE",
    "host.address": "AQUARIUM_HOST",
    "host.port": "AQUARIUM_SSH_PORT",
    "host.username": "AQUARIUM_SSH_USER",
    "host.key_path": "AQUARIUM_SSH_KEY",
    "host.connect_timeout": "AQUARIUM_CONNECT_TIMEOUT",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in {"port", "connect_timeout"}:
            value = int(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path | None = None) -> AquariumConfig:
    if config_path is None:
        path = DEFAULT_CONFIG_PATH
        data = load_yaml(path) if path.exists() else {}
    else:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)

    data = merge_env_overrides(data)
    return AquariumConfig.from_dict(data)
