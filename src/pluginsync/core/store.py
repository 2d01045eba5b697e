"""
Record Store capability.

The reconciliation engine talks to the target environment only through this
interface. Records are flat dicts keyed by the logical field names below;
every call may raise StoreError, which callers convert into a per-item
report entry.
"""

from __future__ import annotations

import copy
import json
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

Record = Dict[str, Any]

# Entity kinds
ASSEMBLY = "plugin_assembly"
PLUGIN_TYPE = "plugin_type"
STEP = "plugin_step"
IMAGE = "step_image"
MESSAGE = "message"
MESSAGE_FILTER = "message_filter"
USER = "system_user"
WEB_RESOURCE = "web_resource"

KINDS = (ASSEMBLY, PLUGIN_TYPE, STEP, IMAGE, MESSAGE, MESSAGE_FILTER, USER, WEB_RESOURCE)

# kind -> field holding the parent id (used by find_children)
PARENT_FIELDS: Dict[str, str] = {
    PLUGIN_TYPE: "assembly_id",
    STEP: "plugin_type_id",
    IMAGE: "step_id",
    MESSAGE_FILTER: "message_id",
}


class StoreError(Exception):
    """Transport, auth or server-side failure of a store call."""

    def __init__(self, message: str, *, kind: str = "", status: int = 0) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


def parent_field(kind: str) -> str:
    try:
        return PARENT_FIELDS[kind]
    except KeyError:
        raise StoreError(f"Kind '{kind}' has no parent relationship", kind=kind) from None


class RecordStore(ABC):
    """Abstract data-access capability over typed entity kinds."""

    @abstractmethod
    def find_by_name(self, kind: str, name: str) -> Optional[Record]:
        """Return the first record of `kind` whose name equals `name`, or None."""

    @abstractmethod
    def find_by_id(self, kind: str, record_id: str) -> Optional[Record]:
        """Return the record of `kind` with id `record_id`, or None."""

    @abstractmethod
    def find_children(self, parent_id: str, kind: str) -> List[Record]:
        """Return every record of `kind` owned by `parent_id`."""

    @abstractmethod
    def find_where(self, kind: str, field: str, value: Any) -> List[Record]:
        """Return every record of `kind` whose `field` equals `value`."""

    @abstractmethod
    def create(self, kind: str, fields: Record) -> str:
        """Create a record and return its id. An 'id' in `fields` is honoured."""

    @abstractmethod
    def update(self, kind: str, record_id: str, fields: Record) -> None:
        """Write `fields` onto an existing record."""

    @abstractmethod
    def delete(self, kind: str, record_id: str) -> None:
        """Delete a record."""

    @abstractmethod
    def set_state(self, kind: str, record_id: str, state: int) -> None:
        """Change the enabled/disabled state code of a record."""

    @abstractmethod
    def remove_unmanaged_layers(self, kind: str, record_id: str) -> None:
        """Strip unmanaged solution layers so a content update becomes active."""


def _same_id(a: Any, b: Any) -> bool:
    return str(a or "").strip("{}").lower() == str(b or "").strip("{}").lower()


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store. Used for dry runs against a captured environment and
    as the test double for the engine.

    `calls` records every write as (operation, kind, id) so callers can assert
    on the exact write set. `fail_on` maps (operation, kind) or
    (operation, kind, id) to an error message raised as StoreError.
    """

    def __init__(self, records: Optional[Dict[str, List[Record]]] = None) -> None:
        self._data: Dict[str, List[Record]] = {k: [] for k in KINDS}
        for kind, items in (records or {}).items():
            for it in items:
                rec = copy.deepcopy(it)
                rec.setdefault("id", str(uuid.uuid4()))
                self._data.setdefault(kind, []).append(rec)
        self.calls: List[tuple] = []
        self.fail_on: Dict[tuple, str] = {}
        self.layers_removed: List[str] = []

    # ------------- helpers -------------

    def _check(self, op: str, kind: str, record_id: str = "") -> None:
        msg = self.fail_on.get((op, kind, record_id)) or self.fail_on.get((op, kind))
        if msg:
            raise StoreError(msg, kind=kind)

    def _items(self, kind: str) -> List[Record]:
        if kind not in self._data:
            raise StoreError(f"Unknown kind '{kind}'", kind=kind)
        return self._data[kind]

    def _get(self, kind: str, record_id: str) -> Record:
        for rec in self._items(kind):
            if _same_id(rec.get("id"), record_id):
                return rec
        raise StoreError(f"{kind} {record_id} not found", kind=kind, status=404)

    def all(self, kind: str) -> List[Record]:
        return [copy.deepcopy(r) for r in self._items(kind)]

    @classmethod
    def load(cls, path: str) -> "InMemoryRecordStore":
        """Build a store from a JSON dump {kind: [record, ...]}."""
        p = Path(path)
        if not p.is_file():
            raise StoreError(f"Store file not found: {path}")
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise StoreError(f"Cannot parse store file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"Store file {path} must hold an object keyed by kind")
        return cls(data)

    def save(self, path: str) -> None:
        Path(path).write_text(json.dumps(self._data, indent=2), encoding="utf-8")

    # ------------- reads -------------

    def find_by_name(self, kind: str, name: str) -> Optional[Record]:
        self._check("find", kind)
        for rec in self._items(kind):
            if rec.get("name") == name:
                return copy.deepcopy(rec)
        return None

    def find_by_id(self, kind: str, record_id: str) -> Optional[Record]:
        self._check("find", kind)
        for rec in self._items(kind):
            if _same_id(rec.get("id"), record_id):
                return copy.deepcopy(rec)
        return None

    def find_children(self, parent_id: str, kind: str) -> List[Record]:
        self._check("find", kind)
        pfield = parent_field(kind)
        return [copy.deepcopy(r) for r in self._items(kind) if _same_id(r.get(pfield), parent_id)]

    def find_where(self, kind: str, field: str, value: Any) -> List[Record]:
        self._check("find", kind)
        return [copy.deepcopy(r) for r in self._items(kind) if r.get(field) == value]

    # ------------- writes -------------

    def create(self, kind: str, fields: Record) -> str:
        self._check("create", kind)
        rec = copy.deepcopy(fields)
        rec["id"] = str(rec.get("id") or uuid.uuid4())
        if any(_same_id(r.get("id"), rec["id"]) for r in self._items(kind)):
            raise StoreError(f"{kind} {rec['id']} already exists", kind=kind, status=409)
        if kind == STEP:
            rec.setdefault("state", 0)
        self._items(kind).append(rec)
        self.calls.append(("create", kind, rec["id"]))
        return rec["id"]

    def update(self, kind: str, record_id: str, fields: Record) -> None:
        self._check("update", kind, record_id)
        rec = self._get(kind, record_id)
        rec.update(copy.deepcopy(fields))
        self.calls.append(("update", kind, record_id))

    def delete(self, kind: str, record_id: str) -> None:
        self._check("delete", kind, record_id)
        rec = self._get(kind, record_id)
        self._items(kind).remove(rec)
        self.calls.append(("delete", kind, record_id))

    def set_state(self, kind: str, record_id: str, state: int) -> None:
        self._check("set_state", kind, record_id)
        rec = self._get(kind, record_id)
        rec["state"] = int(state)
        self.calls.append(("set_state", kind, record_id))

    def remove_unmanaged_layers(self, kind: str, record_id: str) -> None:
        self._check("remove_layers", kind, record_id)
        self._get(kind, record_id)
        self.layers_removed.append(record_id)
        self.calls.append(("remove_layers", kind, record_id))
