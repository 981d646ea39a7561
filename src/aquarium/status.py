#!/usr/bin/env python3
"""
Status Store — What Is Running, and Where

The one piece of state shared between otherwise stateless invocations.
A nested mapping:

    zookeeper:                 # singleton component
      status: running
      cid: 4f1c...
      ip: 172.17.0.5
    router:                    # multi-instance component
      internal: {status: running, cid: ..., ip: ...}
      external: {status: stopped, cid: null, ip: null}

Design principles:
- The file is replaced atomically (temp file + rename), so a concurrent
  reader never sees a torn record
- set/update are read-modify-write and NOT atomic across processes;
  callers serialize invocations themselves
- Stopping clears cid/ip but keeps the entry (status: stopped)
- Records are schema-checked on the way in and out
"""

import json
import logging
import os
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

import yaml
from jsonschema import Draft7Validator

from .errors import CorruptStatusFile

logger = logging.getLogger(__name__)


class Status(Enum):
    """Lifecycle states of a component instance."""
    STOPPED = "stopped"
    COMPILING = "compiling"
    BUILDING = "building"
    BUILT = "built"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


_NULLABLE_STRING = {"type": ["string", "null"]}

_ATTRIBUTE_PROPERTIES: Dict[str, Any] = {
    "status": {"type": "string", "enum": [s.value for s in Status]},
    "cid": _NULLABLE_STRING,
    "ip": _NULLABLE_STRING,
    "updated_at": {"type": "number"},
}

_ATTRIBUTES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": _ATTRIBUTE_PROPERTIES,
}

RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": {
        # A component entry is either an attribute mapping itself, or a
        # mapping of instance id -> attribute mapping.
        "type": "object",
        "properties": _ATTRIBUTE_PROPERTIES,
        "additionalProperties": _ATTRIBUTES_SCHEMA,
    },
}

_validator = Draft7Validator(RECORD_SCHEMA)


def validate_record(record: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(record), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(
            f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
            for error in errors
        )
        raise CorruptStatusFile(f"status record validation failed: {messages}")


def _is_attributes(entry: Dict[str, Any]) -> bool:
    return not entry or any(not isinstance(v, dict) for v in entry.values())


def _normalize(record: Dict[Any, Any]) -> Dict[str, Any]:
    """Stringify component and instance keys (YAML may hand back ints for '1')."""
    normalized = {}
    for component, entry in record.items():
        if isinstance(entry, dict):
            entry = {str(k): (dict(v) if isinstance(v, dict) else v) for k, v in entry.items()}
        normalized[str(component)] = entry
    return normalized


class StatusStore:
    """
    Store contract shared by the file-backed store and the in-memory fake.

    Subclasses implement read() and write(); the convenience methods are
    built on top of those two.
    """

    def read(self) -> Dict[str, Any]:
        raise NotImplementedError

    def write(self, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get(self, component: str, instance: Optional[str] = None) -> Dict[str, Any]:
        """Attribute mapping for one instance; empty if never recorded."""
        entry = self.read().get(component, {})
        if instance is not None:
            entry = entry.get(instance, {})
        return dict(entry)

    def set(self, component: str, instance: Optional[str], key: str, value: Any) -> None:
        self.update(component, instance, **{key: value})

    def update(self, component: str, instance: Optional[str] = None, **attrs: Any) -> None:
        """Read-modify-write of one instance entry, creating it if absent."""
        record = self.read()
        entry = record.setdefault(component, {})
        if instance is not None:
            entry = entry.setdefault(instance, {})
        for key, value in attrs.items():
            entry[key] = value.value if isinstance(value, Status) else value
        entry["updated_at"] = time.time()
        self.write(record)

    def entries(self) -> List[Tuple[str, Optional[str], Dict[str, Any]]]:
        """Flatten the record into (component, instance, attributes) rows."""
        rows = []
        for component, entry in sorted(self.read().items()):
            if _is_attributes(entry):
                rows.append((component, None, dict(entry)))
            else:
                for instance, attrs in sorted(entry.items()):
                    rows.append((component, instance, dict(attrs)))
        return rows


class FileStatusStore(StatusStore):
    """YAML file store at a well-known path."""

    def __init__(self, path):
        self.path = Path(path).expanduser()

    def read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise CorruptStatusFile(f"Cannot parse {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise CorruptStatusFile(f"{self.path} does not hold a mapping")
        record = _normalize(data)
        validate_record(record)
        return record

    def write(self, record: Dict[str, Any]) -> None:
        validate_record(record)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(record, handle, default_flow_style=False, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Status written to {self.path}")

    def __repr__(self) -> str:
        return f"FileStatusStore({self.path})"


class MemoryStatusStore(StatusStore):
    """In-process store with the same contract; used by tests."""

    def __init__(self, record: Dict[str, Any] = None):
        self._record: Dict[str, Any] = {}
        if record:
            self.write(record)

    def read(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self._record))  # deep copy via json

    def write(self, record: Dict[str, Any]) -> None:
        validate_record(record)
        self._record = json.loads(json.dumps(record))
