"""
Per-transaction change tracker and atomic flush.

A UnitOfWork keeps one Entry per row the batch touches, keyed by model and
primary key. Commands consult it before querying the store, so repeated
operations on the same natural key mutate a single staged record instead
of producing duplicate INSERTs or conflicting writes. flush() turns the
entries into INSERT/UPDATE/DELETE statements inside the caller's session
transaction.

Entities held here are transient model instances used as plain records;
they are never added to the session.
"""

import enum
import functools
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy import delete, insert, inspect, update
from sqlalchemy.orm import MANYTOONE, Session

from .database import (
    Base,
    Counter,
    Hash,
    Job,
    JobParameter,
    JobState,
    ListItem,
    QueuedJob,
    SetItem,
    State,
    utc_now,
)
from .errors import DuplicateEntryError, StaleEntryError

# Referenced rows are written before the rows pointing at them
FLUSH_ORDER = (State, Job, JobParameter, JobState, QueuedJob, Counter, Hash, ListItem, SetItem)


class EntryStatus(enum.Enum):
    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class Entry:
    """A staged entity and the write it is waiting for."""

    __slots__ = ("entity", "status", "modified")

    def __init__(self, entity: Base, status: EntryStatus):
        self.entity = entity
        self.status = status
        self.modified = set()

    def __repr__(self) -> str:
        return f"<Entry {type(self.entity).__name__} {_key_values(self.entity)} {self.status.value}>"

    def mark_modified(self, *columns: str) -> None:
        """Schedule an UPDATE of the given columns. Pending INSERTs already carry every value."""
        if self.status is EntryStatus.ADDED:
            return
        self.status = EntryStatus.MODIFIED
        self.modified.update(columns)

    def mark_added(self) -> None:
        self.status = EntryStatus.ADDED
        self.modified.clear()

    def mark_unchanged(self) -> None:
        self.status = EntryStatus.UNCHANGED
        self.modified.clear()

    def mark_deleted(self) -> None:
        self.status = EntryStatus.DELETED
        self.modified.clear()


@functools.lru_cache(maxsize=None)
def _primary_key_attrs(model: Type[Base]) -> Tuple[str, ...]:
    mapper = inspect(model)
    return tuple(mapper.get_property_by_column(column).key for column in mapper.primary_key)


@functools.lru_cache(maxsize=None)
def _value_attrs(model: Type[Base]) -> Tuple[str, ...]:
    keys = set(_primary_key_attrs(model))
    return tuple(attr.key for attr in inspect(model).column_attrs if attr.key not in keys)


def _key_values(entity: Base) -> Tuple[Any, ...]:
    return tuple(getattr(entity, attr) for attr in _primary_key_attrs(type(entity)))


def _identity(entity: Base) -> Tuple[Any, ...]:
    key = _key_values(entity)
    if any(value is None for value in key):
        # Generated key not assigned yet; the object itself is the identity
        return (type(entity), ("transient", id(entity)))
    return (type(entity), key)


def _sync_references(entity: Base) -> None:
    """Copy keys of referenced entities into the matching foreign key columns."""
    mapper = inspect(type(entity))
    instance_dict = inspect(entity).dict
    for relationship in mapper.relationships:
        if relationship.direction is not MANYTOONE or relationship.key not in instance_dict:
            continue
        target = instance_dict[relationship.key]
        if target is None:
            continue
        target_mapper = inspect(type(target))
        for local, remote in relationship.local_remote_pairs:
            setattr(
                entity,
                mapper.get_property_by_column(local).key,
                getattr(target, target_mapper.get_property_by_column(remote).key),
            )


class UnitOfWork:
    """Change tracker for one batch, bound to one session transaction."""

    def __init__(self, session: Session, now: Optional[datetime] = None):
        self.session = session
        self.now = now or utc_now()
        self._entries: Dict[Tuple[Any, ...], Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, model: Type[Base], **key) -> Optional[Entry]:
        """Return the staged entry for the row with the given primary key."""
        values = tuple(key[attr] for attr in _primary_key_attrs(model))
        return self._entries.get((model, values))

    def entries(self, model: Type[Base], **criteria) -> List[Entry]:
        """Return staged entries of a model whose attributes equal the criteria."""
        return [
            entry for entry in self._entries.values()
            if type(entry.entity) is model
            and all(getattr(entry.entity, name) == value for name, value in criteria.items())
        ]

    def add(self, entity: Base) -> Entry:
        """
        Stage an INSERT.

        Adding a row whose key is staged for deletion turns the delete into
        an UPDATE carrying the new values, since the stored row still exists.

        Raises:
            DuplicateEntryError: If the key is already staged for another write
        """
        identity = _identity(entity)
        entry = self._entries.get(identity)
        if entry is None:
            entry = Entry(entity, EntryStatus.ADDED)
            self._entries[identity] = entry
            return entry
        if entry.status is not EntryStatus.DELETED:
            raise DuplicateEntryError(f"{entry!r} is already staged")

        values = inspect(entity).dict
        columns = _value_attrs(type(entity))
        for column in columns:
            setattr(entry.entity, column, values.get(column))
        entry.mark_modified(*columns)
        return entry

    def attach(self, entity: Base) -> Entry:
        """
        Start tracking a row known to exist in the store, without writing it.

        Raises:
            DuplicateEntryError: If the key is already staged
        """
        identity = _identity(entity)
        if identity in self._entries:
            raise DuplicateEntryError(f"{self._entries[identity]!r} is already staged")
        entry = Entry(entity, EntryStatus.UNCHANGED)
        self._entries[identity] = entry
        return entry

    def remove(self, entity: Base) -> Optional[Entry]:
        """
        Stage a DELETE, or cancel a pending INSERT of the same row.

        Returns:
            The deleted entry, or None when a pending insert was cancelled
        """
        identity = _identity(entity)
        entry = self._entries.get(identity)
        if entry is None:
            entry = Entry(entity, EntryStatus.DELETED)
            self._entries[identity] = entry
            return entry
        if entry.status is EntryStatus.ADDED:
            self.detach(entry)
            return None
        entry.mark_deleted()
        return entry

    def detach(self, entry: Entry) -> None:
        """Stop tracking an entry; nothing is written for it."""
        self._entries.pop(_identity(entry.entity), None)

    def flush(self) -> Dict[str, int]:
        """
        Write every staged change through the session.

        Per model: deletes, then updates, then inserts, models in
        FLUSH_ORDER. The caller owns the surrounding transaction and rolls
        it back if this raises.

        Returns:
            Counts of inserted, updated and deleted rows

        Raises:
            StaleEntryError: If an UPDATE or DELETE did not hit exactly one row
        """
        stats = {"inserted": 0, "updated": 0, "deleted": 0}
        for model in self._flush_order():
            staged = [entry for entry in self._entries.values() if type(entry.entity) is model]
            for entry in staged:
                if entry.status is EntryStatus.DELETED:
                    self._delete(entry)
                    stats["deleted"] += 1
            for entry in staged:
                if entry.status is EntryStatus.MODIFIED and entry.modified:
                    self._update(entry)
                    stats["updated"] += 1
            for entry in staged:
                if entry.status is EntryStatus.ADDED:
                    self._insert(entry)
                    stats["inserted"] += 1
        return stats

    def _flush_order(self) -> Iterable[Type[Base]]:
        order = list(FLUSH_ORDER)
        for entry in self._entries.values():
            if type(entry.entity) not in order:
                order.append(type(entry.entity))
        return order

    def _key_criteria(self, entity: Base) -> list:
        table = type(entity).__table__
        return [table.c[attr] == getattr(entity, attr) for attr in _primary_key_attrs(type(entity))]

    def _insert(self, entry: Entry) -> None:
        entity = entry.entity
        model = type(entity)
        _sync_references(entity)

        key_attrs = _primary_key_attrs(model)
        instance_dict = inspect(entity).dict
        values = {}
        for attr in key_attrs + _value_attrs(model):
            if attr not in instance_dict:
                continue
            if attr in key_attrs and instance_dict[attr] is None:
                continue
            values[attr] = instance_dict[attr]

        result = self.session.execute(insert(model.__table__).values(**values))
        for attr, value in zip(key_attrs, result.inserted_primary_key):
            if getattr(entity, attr) is None:
                setattr(entity, attr, value)

    def _update(self, entry: Entry) -> None:
        entity = entry.entity
        model = type(entity)
        _sync_references(entity)

        table = model.__table__
        relative = getattr(model, "__relative_columns__", ())
        values = {}
        for attr in sorted(entry.modified):
            value = getattr(entity, attr)
            values[attr] = table.c[attr] + value if attr in relative else value

        result = self.session.execute(
            update(table).where(*self._key_criteria(entity)).values(**values)
        )
        if result.rowcount != 1:
            raise StaleEntryError(f"UPDATE of {entry!r} matched {result.rowcount} rows")

    def _delete(self, entry: Entry) -> None:
        entity = entry.entity
        table = type(entity).__table__
        result = self.session.execute(delete(table).where(*self._key_criteria(entity)))
        if result.rowcount != 1:
            raise StaleEntryError(f"DELETE of {entry!r} matched {result.rowcount} rows")
