"""
Dual-backend repository.

Every entity collection gets the same read/write contract: shared storage
is authoritative when enabled, and the local store keeps a mirror that is
refreshed on every successful shared read or write. In local mode the
mirror is the only copy. Entity code never branches on the storage mode.

Reads that cannot reach shared storage fall back to the mirror. Writes
that cannot reach it raise BackendUnavailable and leave the mirror as is.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from sqlalchemy import Column, Integer, MetaData, Table, Text

from src.shared.errors import (
    BackendUnavailable,
    NotFound,
    OwnershipViolation,
    UnknownField,
)
from src.storage.backends import Backends, StorageSession
from src.storage.mode import StorageMode

log = logging.getLogger(__name__)

SQL_TYPES = {"text": Text, "int": Integer, "bool": Integer, "json": Text}


@dataclass(frozen=True)
class Scope:
    """
    Visibility of a caller.

    Scope.admin() sees every record, Scope.owner(id) sees only records owned
    by that id, and the empty Scope() sees nothing.
    """
    owner_id: Optional[int] = None
    is_admin: bool = False

    @classmethod
    def admin(cls) -> "Scope":
        return cls(is_admin=True)

    @classmethod
    def owner(cls, owner_id: int) -> "Scope":
        return cls(owner_id=owner_id)

    @property
    def is_empty(self) -> bool:
        return not self.is_admin and self.owner_id is None

    def allows(self, owner_id: Optional[int]) -> bool:
        if self.is_admin:
            return True
        return self.owner_id is not None and owner_id == self.owner_id


@dataclass
class EntityRecord:
    id: int
    owner_id: Optional[int]
    payload: dict
    origin: StorageMode


@dataclass
class EntitySpec:
    """
    Declares one entity collection.

    Args:
        name: Collection name (also used to build the local key).
        table: Shared table name.
        owner_column: Shared column holding the owner id.
        fields: Payload field name -> kind ("text", "int", "bool", "json").
        defaults: Values applied on create for omitted fields.
        immutable: Fields accepted on create but rejected in patches.
    """
    name: str
    table: str
    owner_column: str
    fields: dict[str, str]
    defaults: dict[str, Any] = field(default_factory=dict)
    immutable: frozenset = frozenset()

    @property
    def collection_key(self) -> str:
        return f"velox_{self.name}"

    def schema(self, metadata: Optional[MetaData] = None) -> Table:
        """Shared table definition; bools are stored as 0/1 integers."""
        return Table(
            self.table,
            metadata if metadata is not None else MetaData(),
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column(self.owner_column, Integer, index=True),
            *(Column(name, SQL_TYPES[kind]) for name, kind in self.fields.items()),
            sqlite_autoincrement=True,
        )

    def _check_known(self, data: dict) -> None:
        unknown = sorted(set(data) - set(self.fields))
        if unknown:
            raise UnknownField(f"Unknown field(s) for {self.name}: {', '.join(unknown)}")

    def prepare_create(self, payload: dict) -> dict:
        self._check_known(payload)
        data = {name: self.defaults.get(name) for name in self.fields}
        data.update(payload)
        return data

    def prepare_patch(self, patch: dict) -> dict:
        self._check_known(patch)
        blocked = sorted(set(patch) & set(self.immutable))
        if blocked:
            raise UnknownField(f"Field(s) cannot be changed on {self.name}: {', '.join(blocked)}")
        return dict(patch)

    # ── Conversions ──

    def to_db(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        kind = self.fields[name]
        if kind == "json":
            return json.dumps(value)
        if kind == "bool":
            return int(bool(value))
        return value

    def from_db(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        kind = self.fields[name]
        if kind == "json":
            return json.loads(value) if isinstance(value, str) else value
        if kind == "bool":
            return bool(value)
        return value

    def record_from_row(self, row: dict) -> EntityRecord:
        payload = {name: self.from_db(name, row.get(name)) for name in self.fields}
        return EntityRecord(
            id=row["id"],
            owner_id=row.get(self.owner_column),
            payload=payload,
            origin=StorageMode.SHARED,
        )

    def record_from_mirror(self, item: dict) -> EntityRecord:
        payload = {name: item.get(name, self.defaults.get(name)) for name in self.fields}
        return EntityRecord(
            id=item["id"],
            owner_id=item.get("owner_id"),
            payload=payload,
            origin=StorageMode.LOCAL,
        )

    @staticmethod
    def record_to_mirror(record: EntityRecord) -> dict:
        return {"id": record.id, "owner_id": record.owner_id, **record.payload}


def _matches(record: EntityRecord, scope: Scope, filters: dict) -> bool:
    if not scope.allows(record.owner_id):
        return False
    return all(record.payload.get(k) == v for k, v in filters.items())


class DualBackendRepository:
    """Generic list/get/create/update/delete over shared storage and a local mirror."""

    def __init__(self, spec: EntitySpec, backends: Backends):
        self.spec = spec
        self.backends = backends

    @contextmanager
    def _session(self, session: Optional[StorageSession], write: bool) -> Iterator[StorageSession]:
        if session is not None:
            yield session
            return
        with self.backends.session(write=write) as s:
            yield s

    # ── Reads ──

    def list(
        self,
        scope: Scope,
        filters: Optional[dict] = None,
        session: Optional[StorageSession] = None,
    ) -> list[EntityRecord]:
        """
        List records visible to `scope`, optionally filtered by field equality.

        An empty scope returns an empty list, never the full collection.
        """
        if scope.is_empty:
            return []
        filters = dict(filters or {})
        self.spec._check_known(filters)

        with self._session(session, write=False) as s:
            if s.mode == StorageMode.SHARED:
                try:
                    records = self._select_shared(s, scope, filters)
                except BackendUnavailable as e:
                    if s.write:
                        raise
                    log.warning("%s: shared read failed, serving local mirror: %s", self.spec.name, e)
                else:
                    self._refresh_mirror(s, scope, filters, records)
                    return records
            return [r for r in self._load_mirror(s) if _matches(r, scope, filters)]

    def get(self, record_id: int, scope: Scope, session: Optional[StorageSession] = None) -> EntityRecord:
        """
        Fetch one record.

        Raises:
            NotFound: No record has that id.
            OwnershipViolation: The record belongs to someone else.
        """
        with self._session(session, write=False) as s:
            record = None
            if s.mode == StorageMode.SHARED:
                try:
                    record = self._find_shared(s, record_id)
                except BackendUnavailable as e:
                    if s.write:
                        raise
                    log.warning("%s: shared read failed, serving local mirror: %s", self.spec.name, e)
                    record = self._find_mirror(s, record_id)
            else:
                record = self._find_mirror(s, record_id)
        return self._check_access(record, record_id, scope)

    def _check_access(self, record: Optional[EntityRecord], record_id: int, scope: Scope) -> EntityRecord:
        if record is None:
            raise NotFound(f"{self.spec.name} {record_id} not found")
        if not scope.allows(record.owner_id):
            raise OwnershipViolation(f"{self.spec.name} {record_id} does not belong to the caller")
        return record

    # ── Writes ──

    def create(
        self,
        payload: dict,
        owner_id: Optional[int],
        session: Optional[StorageSession] = None,
    ) -> EntityRecord:
        """Create a record; the generated id comes from the active backend."""
        data = self.spec.prepare_create(payload)

        with self._session(session, write=True) as s:
            if s.mode == StorageMode.SHARED:
                columns = [self.spec.owner_column, *self.spec.fields]
                placeholders = ", ".join(f":{c}" for c in columns)
                values = {self.spec.owner_column: owner_id}
                values.update((n, self.spec.to_db(n, data[n])) for n in self.spec.fields)
                new_id = s.insert(
                    f"INSERT INTO {self.spec.table} ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
            else:
                existing = self._load_mirror(s)
                new_id = max((r.id for r in existing), default=0) + 1

            record = EntityRecord(id=new_id, owner_id=owner_id, payload=data, origin=s.mode)
            self._upsert_mirror(s, record)
        return record

    def update(
        self,
        record_id: int,
        scope: Scope,
        patch: dict,
        session: Optional[StorageSession] = None,
    ) -> EntityRecord:
        """
        Merge `patch` into a record; fields absent from the patch are untouched.

        Raises:
            UnknownField: Patch carries undeclared or immutable fields.
            NotFound / OwnershipViolation: See get().
        """
        changes = self.spec.prepare_patch(patch)

        with self._session(session, write=True) as s:
            current = self._find_for_write(s, record_id, scope)
            merged = {**current.payload, **changes}

            if s.mode == StorageMode.SHARED and changes:
                assignments = ", ".join(f"{name} = :{name}" for name in changes)
                values = {n: self.spec.to_db(n, v) for n, v in changes.items()}
                affected = s.execute(
                    f"UPDATE {self.spec.table} SET {assignments} WHERE id = :record_id",
                    {**values, "record_id": record_id},
                )
                if affected == 0:
                    raise NotFound(f"{self.spec.name} {record_id} not found")

            record = EntityRecord(id=record_id, owner_id=current.owner_id, payload=merged, origin=s.mode)
            self._upsert_mirror(s, record)
        return record

    def delete(self, record_id: int, scope: Scope, session: Optional[StorageSession] = None) -> None:
        """Delete a record. Missing or foreign ids are failures, not no-ops."""
        with self._session(session, write=True) as s:
            self._find_for_write(s, record_id, scope)
            if s.mode == StorageMode.SHARED:
                s.execute(f"DELETE FROM {self.spec.table} WHERE id = :record_id", {"record_id": record_id})
            remaining = [r for r in s.read_collection(self.spec.collection_key) if r.get("id") != record_id]
            s.write_collection(self.spec.collection_key, remaining)

    def clear(self, session: Optional[StorageSession] = None) -> None:
        """Remove every record from both backends (system reset)."""
        with self._session(session, write=True) as s:
            if s.mode == StorageMode.SHARED:
                s.execute(f"DELETE FROM {self.spec.table}")
            s.write_collection(self.spec.collection_key, [])

    # ── Shared helpers ──

    def _select_columns(self) -> str:
        return ", ".join(["id", self.spec.owner_column, *self.spec.fields])

    def _select_shared(self, s: StorageSession, scope: Scope, filters: dict) -> list[EntityRecord]:
        clauses, params = [], {}
        if not scope.is_admin:
            clauses.append(f"{self.spec.owner_column} = :scope_owner")
            params["scope_owner"] = scope.owner_id
        for name, value in filters.items():
            if value is None:
                clauses.append(f"{name} IS NULL")
            else:
                clauses.append(f"{name} = :{name}")
                params[name] = self.spec.to_db(name, value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = s.execute(
            f"SELECT {self._select_columns()} FROM {self.spec.table}{where} ORDER BY id",
            params,
        )
        return [self.spec.record_from_row(r) for r in rows]

    def _find_shared(self, s: StorageSession, record_id: int) -> Optional[EntityRecord]:
        rows = s.execute(
            f"SELECT {self._select_columns()} FROM {self.spec.table} WHERE id = :record_id",
            {"record_id": record_id},
        )
        return self.spec.record_from_row(rows[0]) if rows else None

    def _find_for_write(self, s: StorageSession, record_id: int, scope: Scope) -> EntityRecord:
        if s.mode == StorageMode.SHARED:
            record = self._find_shared(s, record_id)
        else:
            record = self._find_mirror(s, record_id)
        return self._check_access(record, record_id, scope)

    # ── Mirror helpers ──

    def _load_mirror(self, s: StorageSession) -> list[EntityRecord]:
        items = s.read_collection(self.spec.collection_key)
        return sorted(
            (self.spec.record_from_mirror(i) for i in items if isinstance(i, dict) and "id" in i),
            key=lambda r: r.id,
        )

    def _find_mirror(self, s: StorageSession, record_id: int) -> Optional[EntityRecord]:
        for record in self._load_mirror(s):
            if record.id == record_id:
                return record
        return None

    def _upsert_mirror(self, s: StorageSession, record: EntityRecord) -> None:
        items = [i for i in s.read_collection(self.spec.collection_key) if i.get("id") != record.id]
        items.append(EntitySpec.record_to_mirror(record))
        items.sort(key=lambda i: i["id"])
        s.write_collection(self.spec.collection_key, items)

    def _refresh_mirror(
        self,
        s: StorageSession,
        scope: Scope,
        filters: dict,
        records: list[EntityRecord],
    ) -> None:
        """Replace the mirror slice covered by (scope, filters) with fresh shared rows."""
        try:
            kept = [
                EntitySpec.record_to_mirror(r)
                for r in self._load_mirror(s)
                if not _matches(r, scope, filters)
            ]
            fresh = [EntitySpec.record_to_mirror(r) for r in records]
            fresh_ids = {i["id"] for i in fresh}
            items = [i for i in kept if i["id"] not in fresh_ids] + fresh
            items.sort(key=lambda i: i["id"])
            s.write_collection(self.spec.collection_key, items)
        except sqlite3.Error as e:
            log.warning("%s: local mirror refresh failed: %s", self.spec.name, e)
