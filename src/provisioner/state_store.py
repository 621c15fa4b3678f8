"""Durable record of last-applied resource state.

The store is the diff baseline and the source for output projection.
Only the apply scheduler writes to it, and only after a provider call
has confirmed success.

CONCURRENCY: access is serialized per node id, never through a single
global lock, so independent subtrees can record results in parallel.

DURABILITY: FileStateStore writes each node to its own JSON document via
temp file + fsync + rename. A crash mid-apply leaves every record either
at its previous or its new content.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from .config import MAX_STATE_RECORD_SIZE_BYTES

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
_RECORD_SUFFIX = ".json"


class StateStoreError(Exception):
    """Raised when the state store cannot read or persist a record."""

    pass


@dataclass(frozen=True)
class ObservedState:
    """Last-applied snapshot for one resource node.

    Attributes:
        node_id: Resource node id (e.g. "node-pool:default").
        kind: Resource kind value, kept so removed nodes can be deleted.
        identity: Provider identifier (ARM id, ARN, GKE self link...).
        attributes: Desired attributes as last applied.
        outputs: Provider-populated fields (endpoint, FQDN, principal ids).
        depends_on: Dependencies at apply time, used for reverse-order deletes.
        updated_at: ISO-8601 UTC timestamp of the write.
    """

    node_id: str
    kind: str
    identity: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "nodeId": self.node_id,
            "kind": self.kind,
            "identity": self.identity,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependsOn": list(self.depends_on),
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservedState:
        try:
            return cls(
                node_id=str(data["nodeId"]),
                kind=str(data["kind"]),
                identity=data.get("identity"),
                attributes=dict(data.get("attributes") or {}),
                outputs=dict(data.get("outputs") or {}),
                depends_on=tuple(data.get("dependsOn") or ()),
                updated_at=str(data.get("updatedAt", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Malformed state record: {e}") from e


class StateStore(ABC):
    """Per-node keyed store of ObservedState."""

    def __init__(self) -> None:
        self._node_locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _lock_for(self, node_id: str) -> threading.Lock:
        with self._locks_lock:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = threading.Lock()
                self._node_locks[node_id] = lock
            return lock

    def get(self, node_id: str) -> ObservedState | None:
        """Return the recorded state for a node, or None if absent."""
        with self._lock_for(node_id):
            return self._read(node_id)

    def put(
        self,
        node_id: str,
        attributes: dict[str, Any],
        *,
        kind: str,
        identity: str | None = None,
        outputs: dict[str, Any] | None = None,
        depends_on: Iterable[str] = (),
    ) -> ObservedState:
        """Atomically record the applied state of one node.

        Returns:
            The stored record.

        Raises:
            StateStoreError: If the record cannot be persisted.
        """
        state = ObservedState(
            node_id=node_id,
            kind=kind,
            identity=identity,
            attributes=dict(attributes),
            outputs=dict(outputs or {}),
            depends_on=tuple(sorted(depends_on)),
            updated_at=datetime.now(UTC).isoformat(),
        )
        with self._lock_for(node_id):
            self._write(state)
        logger.debug("Recorded state", extra={"node_id": node_id, "kind": kind})
        return state

    def delete(self, node_id: str) -> None:
        """Remove a node's record. Removing an absent record is a no-op."""
        with self._lock_for(node_id):
            self._remove(node_id)
        logger.debug("Removed state", extra={"node_id": node_id})

    def snapshot(self) -> dict[str, ObservedState]:
        """Consistent-per-node copy of every record."""
        result: dict[str, ObservedState] = {}
        for node_id in self.list_ids():
            state = self.get(node_id)
            if state is not None:
                result[node_id] = state
        return result

    @abstractmethod
    def list_ids(self) -> list[str]:
        """Sorted ids of all recorded nodes."""

    @abstractmethod
    def _read(self, node_id: str) -> ObservedState | None: ...

    @abstractmethod
    def _write(self, state: ObservedState) -> None: ...

    @abstractmethod
    def _remove(self, node_id: str) -> None: ...


class MemoryStateStore(StateStore):
    """In-process store, used for dry runs and tests."""

    def __init__(self, initial: Iterable[ObservedState] = ()) -> None:
        super().__init__()
        self._records: dict[str, ObservedState] = {s.node_id: s for s in initial}

    def list_ids(self) -> list[str]:
        return sorted(self._records)

    def _read(self, node_id: str) -> ObservedState | None:
        return self._records.get(node_id)

    def _write(self, state: ObservedState) -> None:
        self._records[state.node_id] = state

    def _remove(self, node_id: str) -> None:
        self._records.pop(node_id, None)


class FileStateStore(StateStore):
    """One JSON document per node id under a state directory."""

    def __init__(self, state_dir: Path) -> None:
        super().__init__()
        self._dir = Path(state_dir)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {self._dir}: {e}") from e

    @property
    def state_dir(self) -> Path:
        return self._dir

    def _path_for(self, node_id: str) -> Path:
        return self._dir / (quote(node_id, safe="") + _RECORD_SUFFIX)

    def list_ids(self) -> list[str]:
        try:
            # Leftover ".tmp-" files from an interrupted write are not records
            names = [
                p.name
                for p in self._dir.iterdir()
                if p.name.endswith(_RECORD_SUFFIX) and not p.name.startswith(".")
            ]
        except OSError as e:
            raise StateStoreError(f"Cannot list state directory {self._dir}: {e}") from e
        return sorted(unquote(name[: -len(_RECORD_SUFFIX)]) for name in names)

    def _read(self, node_id: str) -> ObservedState | None:
        path = self._path_for(node_id)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Cannot stat state record {path}: {e}") from e

        if size > MAX_STATE_RECORD_SIZE_BYTES:
            raise StateStoreError(
                f"State record exceeds maximum size of {MAX_STATE_RECORD_SIZE_BYTES} bytes: {path}"
            )

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Cannot read state record {path}: {e}") from e

        if not isinstance(data, dict):
            raise StateStoreError(f"State record must be a JSON object: {path}")
        return ObservedState.from_dict(data)

    def _write(self, state: ObservedState) -> None:
        path = self._path_for(state.node_id)
        try:
            payload = json.dumps(state.to_dict(), indent=2, sort_keys=True, default=str)
        except (TypeError, ValueError) as e:
            raise StateStoreError(f"State for {state.node_id} is not serializable: {e}") from e

        if len(payload.encode("utf-8")) > MAX_STATE_RECORD_SIZE_BYTES:
            raise StateStoreError(
                f"State record for {state.node_id} exceeds {MAX_STATE_RECORD_SIZE_BYTES} bytes"
            )

        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=_RECORD_SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Cannot write state record {path}: {e}") from e

    def _remove(self, node_id: str) -> None:
        try:
            self._path_for(node_id).unlink(missing_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot remove state record for {node_id}: {e}") from e


def open_store(state_dir: Path | None) -> StateStore:
    """FileStateStore for a directory, MemoryStateStore when none is given."""
    if state_dir is None:
        return MemoryStateStore()
    return FileStateStore(state_dir)
