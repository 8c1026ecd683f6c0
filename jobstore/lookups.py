"""
Precompiled read queries used while reconciling a batch.

Each lookup is built once at import time and shared read-only by every
transaction. They only see persisted rows: staged changes are consulted
first by the caller through the unit of work.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Set

from sqlalchemy import bindparam, exists, func, select
from sqlalchemy.engine import Result
from sqlalchemy.orm import Session
from sqlalchemy.sql import Executable

from .database import Counter, Hash, JobState, ListItem, SetItem


@dataclass(frozen=True)
class CompiledLookup:
    """A parameterized statement plus the function shaping its result."""

    name: str
    statement: Executable
    shape: Callable[[Result], Any]

    def __call__(self, session: Session, **params) -> Any:
        return self.shape(session.execute(self.statement, params))


def _scalar_set(result: Result) -> Set[Any]:
    return set(result.scalars().all())


def _scalar_list(result: Result) -> List[Any]:
    return list(result.scalars().all())


def _rows(result: Result) -> List[Any]:
    return list(result.all())


def _scalar(result: Result) -> Any:
    return result.scalar()


def _flag(result: Result) -> bool:
    return bool(result.scalar())


hash_fields = CompiledLookup(
    "hash_fields",
    select(Hash.field).where(Hash.key == bindparam("key")),
    _scalar_set,
)

set_values = CompiledLookup(
    "set_values",
    select(SetItem.value).where(SetItem.key == bindparam("key")),
    _scalar_set,
)

set_exists = CompiledLookup(
    "set_exists",
    select(
        exists().where(
            SetItem.key == bindparam("key"),
            SetItem.value == bindparam("value"),
        )
    ),
    _flag,
)

list_positions = CompiledLookup(
    "list_positions",
    select(ListItem.position).where(ListItem.key == bindparam("key")),
    _scalar_list,
)

list_rows = CompiledLookup(
    "list_rows",
    select(ListItem.position, ListItem.value, ListItem.expire_at)
    .where(ListItem.key == bindparam("key"))
    .order_by(ListItem.position),
    _rows,
)

max_list_position = CompiledLookup(
    "max_list_position",
    select(func.max(ListItem.position)).where(ListItem.key == bindparam("key")),
    _scalar,
)

job_state_exists = CompiledLookup(
    "job_state_exists",
    select(exists().where(JobState.job_id == bindparam("job_id"))),
    _flag,
)

counter_id = CompiledLookup(
    "counter_id",
    select(Counter.id)
    .where(Counter.key == bindparam("key"))
    .order_by(Counter.id)
    .limit(1),
    _scalar,
)
