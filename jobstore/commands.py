"""
Deferred actions queued by a transaction.

Each command is an immutable value describing one operation. At commit
time apply() reconciles it against the unit of work (rows staged earlier in
the batch) and the compiled lookups (rows already persisted), and stages
the resulting writes.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from . import lookups
from .database import Counter, Hash, Job, JobState, ListItem, SetItem, State
from .unit_of_work import Entry, EntryStatus, UnitOfWork

if TYPE_CHECKING:
    from .queues import TransactionalJobQueue


@dataclass(frozen=True)
class NewState:
    """A state the caller moves a job into; data is an already serialized payload."""

    name: str
    reason: Optional[str] = None
    data: Optional[str] = None


class Command:
    """Base class for deferred actions."""

    def apply(self, uow: UnitOfWork) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, object]:
        return {"action": type(self).__name__}


def _live(entries: List[Entry]) -> List[Entry]:
    return [entry for entry in entries if entry.status is not EntryStatus.DELETED]


def _set_view(uow: UnitOfWork, key: str) -> List[Entry]:
    """Entries for every member of a set: persisted ones plus staged inserts."""
    staged = {entry.entity.value: entry for entry in uow.entries(SetItem, key=key)}
    view = _live(list(staged.values()))
    for value in sorted(lookups.set_values(uow.session, key=key) - set(staged)):
        view.append(uow.attach(SetItem(key=key, value=value)))
    return view


def _hash_view(uow: UnitOfWork, key: str) -> List[Entry]:
    staged = {entry.entity.field: entry for entry in uow.entries(Hash, key=key)}
    view = _live(list(staged.values()))
    for field in sorted(lookups.hash_fields(uow.session, key=key) - set(staged)):
        view.append(uow.attach(Hash(key=key, field=field)))
    return view


def _list_view(uow: UnitOfWork, key: str) -> List[Entry]:
    """Entries for every element of a list ordered by position, staged values winning."""
    staged = {entry.entity.position: entry for entry in uow.entries(ListItem, key=key)}
    view = []
    for position, value, expire_at in lookups.list_rows(uow.session, key=key):
        entry = staged.pop(position, None)
        if entry is None:
            entry = uow.attach(
                ListItem(key=key, position=position, value=value, expire_at=expire_at)
            )
        elif entry.status is EntryStatus.DELETED:
            continue
        view.append(entry)
    view.extend(_live(list(staged.values())))
    view.sort(key=lambda entry: entry.entity.position)
    return view


def _compact_list(uow: UnitOfWork, rows: List[Entry], survivors: List[Entry]) -> None:
    """
    Keep only the survivors, packed onto the lowest positions.

    Position is part of the primary key, so instead of renumbering rows the
    surplus tail rows are deleted and the survivors' values are copied down.
    """
    values = [(entry.entity.value, entry.entity.expire_at) for entry in survivors]
    for entry in rows[len(values):]:
        uow.remove(entry.entity)
    for entry, (value, expire_at) in zip(rows, values):
        entity = entry.entity
        if entity.value == value and entity.expire_at == expire_at:
            continue
        entity.value = value
        entity.expire_at = expire_at
        entry.mark_modified("value", "expire_at")


def _expire_entries(entries: List[Entry], expire_at: Optional[datetime]) -> None:
    for entry in entries:
        entry.entity.expire_at = expire_at
        entry.mark_modified("expire_at")


@dataclass(frozen=True)
class AddJobState(Command):
    job_id: int
    state: NewState
    set_current: bool = False

    def apply(self, uow: UnitOfWork) -> None:
        history = State(
            job_id=self.job_id,
            created_at=uow.now,
            name=self.state.name,
            reason=self.state.reason,
            data=self.state.data,
        )
        uow.add(history)
        if not self.set_current:
            return

        entry = uow.find(JobState, job_id=self.job_id)
        if entry is None:
            entry = uow.attach(JobState(job_id=self.job_id))
        entry.entity.name = self.state.name
        entry.entity.state = history
        if lookups.job_state_exists(uow.session, job_id=self.job_id):
            entry.mark_modified("name", "state_id")
        else:
            entry.mark_added()

    def describe(self):
        return {
            "action": "SetJobState" if self.set_current else "AddJobState",
            "job_id": self.job_id,
            "state": self.state.name,
        }


@dataclass(frozen=True)
class AddToSet(Command):
    key: str
    value: str
    score: Decimal = Decimal(0)

    def apply(self, uow: UnitOfWork) -> None:
        entry = uow.find(SetItem, key=self.key, value=self.value)
        if entry is not None:
            entity = entry.entity
            if entry.status is EntryStatus.DELETED:
                entity.expire_at = None
                entry.mark_modified("expire_at")
            entity.score = self.score
            entity.created_at = uow.now
            entry.mark_modified("score", "created_at")
            return

        entity = SetItem(key=self.key, value=self.value, score=self.score, created_at=uow.now)
        if lookups.set_exists(uow.session, key=self.key, value=self.value):
            uow.attach(entity).mark_modified("score", "created_at")
        else:
            uow.add(entity)

    def describe(self):
        return {"action": "AddToSet", "key": self.key, "value": self.value}


@dataclass(frozen=True)
class AddRangeToSet(Command):
    key: str
    values: Tuple[str, ...]

    def apply(self, uow: UnitOfWork) -> None:
        staged = {entry.entity.value: entry for entry in uow.entries(SetItem, key=self.key)}
        persisted = lookups.set_values(uow.session, key=self.key)

        for value in self.values:
            entry = staged.get(value)
            if entry is None:
                if value not in persisted:
                    uow.add(SetItem(key=self.key, value=value, score=Decimal(0), created_at=uow.now))
            elif entry.status is EntryStatus.DELETED and value in persisted:
                entry.mark_unchanged()

    def describe(self):
        return {"action": "AddRangeToSet", "key": self.key, "count": len(self.values)}


@dataclass(frozen=True)
class RemoveFromSet(Command):
    key: str
    value: str

    def apply(self, uow: UnitOfWork) -> None:
        entry = uow.find(SetItem, key=self.key, value=self.value)
        if lookups.set_exists(uow.session, key=self.key, value=self.value):
            if entry is None:
                entry = uow.attach(SetItem(key=self.key, value=self.value))
            entry.mark_deleted()
        elif entry is not None:
            uow.detach(entry)

    def describe(self):
        return {"action": "RemoveFromSet", "key": self.key, "value": self.value}


@dataclass(frozen=True)
class RemoveSet(Command):
    key: str

    def apply(self, uow: UnitOfWork) -> None:
        for entry in _set_view(uow, self.key):
            uow.remove(entry.entity)

    def describe(self):
        return {"action": "RemoveSet", "key": self.key}


@dataclass(frozen=True)
class AddCounter(Command):
    key: str
    delta: int
    expire_at: Optional[datetime] = None

    def apply(self, uow: UnitOfWork) -> None:
        entry = next(
            (
                entry for entry in uow.entries(Counter, key=self.key)
                if entry.status in (EntryStatus.ADDED, EntryStatus.MODIFIED)
            ),
            None,
        )
        if entry is None:
            counter_id = lookups.counter_id(uow.session, key=self.key)
            if counter_id is None:
                entry = uow.add(Counter(key=self.key, value=0))
            else:
                # Value of an attached counter is a delta added to the stored one
                entry = uow.attach(Counter(id=counter_id, key=self.key, value=0))

        entry.entity.value += self.delta
        entry.entity.expire_at = self.expire_at
        entry.mark_modified("value", "expire_at")

    def describe(self):
        return {"action": "AddCounter", "key": self.key, "delta": self.delta}


@dataclass(frozen=True)
class InsertToList(Command):
    key: str
    value: Optional[str]

    def apply(self, uow: UnitOfWork) -> None:
        staged = uow.entries(ListItem, key=self.key)
        if staged:
            positions = set(lookups.list_positions(uow.session, key=self.key))
            for entry in staged:
                if entry.status is EntryStatus.DELETED:
                    positions.discard(entry.entity.position)
                else:
                    positions.add(entry.entity.position)
            top = max(positions, default=-1)
        else:
            top = lookups.max_list_position(uow.session, key=self.key)
            if top is None:
                top = -1

        uow.add(ListItem(key=self.key, position=top + 1, value=self.value, expire_at=None))

    def describe(self):
        return {"action": "InsertToList", "key": self.key}


@dataclass(frozen=True)
class RemoveFromList(Command):
    key: str
    value: Optional[str]

    def apply(self, uow: UnitOfWork) -> None:
        rows = _list_view(uow, self.key)
        survivors = [entry for entry in rows if entry.entity.value != self.value]
        _compact_list(uow, rows, survivors)

    def describe(self):
        return {"action": "RemoveFromList", "key": self.key}


@dataclass(frozen=True)
class TrimList(Command):
    key: str
    keep_starting_from: int
    keep_ending_at: int

    def apply(self, uow: UnitOfWork) -> None:
        rows = _list_view(uow, self.key)
        survivors = [
            entry for index, entry in enumerate(rows)
            if self.keep_starting_from <= index <= self.keep_ending_at
        ]
        _compact_list(uow, rows, survivors)

    def describe(self):
        return {
            "action": "TrimList",
            "key": self.key,
            "range": [self.keep_starting_from, self.keep_ending_at],
        }


@dataclass(frozen=True)
class SetRangeInHash(Command):
    key: str
    pairs: Tuple[Tuple[str, Optional[str]], ...]

    def apply(self, uow: UnitOfWork) -> None:
        persisted = lookups.hash_fields(uow.session, key=self.key)

        for field, value in self.pairs:
            entry = uow.find(Hash, key=self.key, field=field)
            if entry is None:
                entity = Hash(key=self.key, field=field, value=value)
                if field in persisted:
                    uow.attach(entity).mark_modified("value")
                else:
                    uow.add(entity)
                continue

            if entry.status is EntryStatus.DELETED:
                entry.entity.expire_at = None
                entry.mark_modified("expire_at")
            entry.entity.value = value
            entry.mark_modified("value")

    def describe(self):
        return {"action": "SetRangeInHash", "key": self.key, "fields": [f for f, _ in self.pairs]}


@dataclass(frozen=True)
class RemoveHash(Command):
    key: str

    def apply(self, uow: UnitOfWork) -> None:
        for entry in _hash_view(uow, self.key):
            uow.remove(entry.entity)

    def describe(self):
        return {"action": "RemoveHash", "key": self.key}


@dataclass(frozen=True)
class ExpireJob(Command):
    job_id: int
    expire_at: Optional[datetime]

    def apply(self, uow: UnitOfWork) -> None:
        entry = uow.find(Job, id=self.job_id)
        if entry is None:
            entry = uow.attach(Job(id=self.job_id))
        _expire_entries([entry], self.expire_at)

    def describe(self):
        return {"action": "ExpireJob", "job_id": self.job_id, "expire_at": self.expire_at}


@dataclass(frozen=True)
class ExpireHash(Command):
    key: str
    expire_at: Optional[datetime]

    def apply(self, uow: UnitOfWork) -> None:
        _expire_entries(_hash_view(uow, self.key), self.expire_at)

    def describe(self):
        return {"action": "ExpireHash", "key": self.key, "expire_at": self.expire_at}


@dataclass(frozen=True)
class ExpireList(Command):
    key: str
    expire_at: Optional[datetime]

    def apply(self, uow: UnitOfWork) -> None:
        _expire_entries(_list_view(uow, self.key), self.expire_at)

    def describe(self):
        return {"action": "ExpireList", "key": self.key, "expire_at": self.expire_at}


@dataclass(frozen=True)
class ExpireSet(Command):
    key: str
    expire_at: Optional[datetime]

    def apply(self, uow: UnitOfWork) -> None:
        _expire_entries(_set_view(uow, self.key), self.expire_at)

    def describe(self):
        return {"action": "ExpireSet", "key": self.key, "expire_at": self.expire_at}


@dataclass(frozen=True)
class EnqueueJob(Command):
    job_queue: "TransactionalJobQueue"
    queue: str
    job_id: int

    def apply(self, uow: UnitOfWork) -> None:
        self.job_queue.enqueue_within_transaction(uow, self.queue, self.job_id)

    def describe(self):
        return {"action": "EnqueueJob", "queue": self.queue, "job_id": self.job_id}
