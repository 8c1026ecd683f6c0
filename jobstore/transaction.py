"""
Write transaction over the job store.

Operations validate their arguments immediately and queue a command;
nothing touches the database until commit(), which applies every command
in order to a single unit of work and writes the result atomically.
Callbacks registered with after_commit() run only once that write has
succeeded.
"""

from collections import deque
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Deque, Iterable, Mapping, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from . import commands
from .commands import Command, NewState
from .database import utc_now
from .errors import CommitError, PreconditionError, TransactionDisposedError
from .logger import get_logger
from .unit_of_work import UnitOfWork
from .validation import (
    parse_job_id,
    require_int,
    require_non_empty,
    require_not_none,
    require_optional_str,
    require_timedelta,
)

if TYPE_CHECKING:
    from .storage import JobStorage

HashPairs = Union[Mapping[str, Optional[str]], Iterable[Tuple[str, Optional[str]]]]


class JobStorageTransaction:
    """
    Batch of deferred writes committed as one unit.

    A transaction serves a single caller. Once committed (successfully or
    not) or disposed it rejects further use; a failed commit has rolled back
    everything and the caller rebuilds the batch in a new transaction.
    """

    def __init__(self, storage: "JobStorage"):
        if storage is None:
            raise PreconditionError("Argument 'storage' must not be None")
        self._storage = storage
        self._commands: Deque[Command] = deque()
        self._after_commit: Deque[Callable[[], None]] = deque()
        self._disposed = False

    def __enter__(self) -> "JobStorageTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def __len__(self) -> int:
        return len(self._commands)

    # Job state

    def add_job_state(self, job_id: str, state: NewState) -> None:
        """Append a state to the job's history without moving its current state."""
        self._add_job_state(job_id, state, set_current=False)

    def set_job_state(self, job_id: str, state: NewState) -> None:
        """Append a state to the job's history and make it the current one."""
        self._add_job_state(job_id, state, set_current=True)

    def _add_job_state(self, job_id: str, state: NewState, set_current: bool) -> None:
        number = parse_job_id(job_id)
        require_not_none(state, "state")
        if not isinstance(state, NewState):
            raise PreconditionError("Argument 'state' must be a NewState")
        require_non_empty(state.name, "state.name")
        require_optional_str(state.reason, "state.reason")
        require_optional_str(state.data, "state.data")
        self._throw_if_disposed()
        self.defer(commands.AddJobState(number, state, set_current))

    def expire_job(self, job_id: str, expire_in: timedelta) -> None:
        number = parse_job_id(job_id)
        expire_at = self._expire_at(expire_in)
        self._throw_if_disposed()
        self.defer(commands.ExpireJob(number, expire_at))

    def persist_job(self, job_id: str) -> None:
        number = parse_job_id(job_id)
        self._throw_if_disposed()
        self.defer(commands.ExpireJob(number, None))

    # Queues

    def add_to_queue(self, queue: str, job_id: str) -> None:
        """
        Enqueue a job into the named queue.

        Store-backed queues commit the enqueue with this transaction; other
        providers enqueue immediately.
        """
        require_non_empty(queue, "queue")
        number = parse_job_id(job_id)
        self._throw_if_disposed()
        self._storage.get_job_queue(queue).enlist(self, queue, number)

    # Sets

    def add_to_set(self, key: str, value: str, score: Union[float, Decimal] = 0) -> None:
        require_non_empty(key, "key")
        require_non_empty(value, "value")
        score = self._score(score)
        self._throw_if_disposed()
        self.defer(commands.AddToSet(key, value, score))

    def add_range_to_set(self, key: str, values: Iterable[str]) -> None:
        require_non_empty(key, "key")
        require_not_none(values, "values")
        if isinstance(values, str):
            raise PreconditionError("Argument 'values' must be a collection of strings")
        items = tuple(dict.fromkeys(values))
        for item in items:
            require_non_empty(item, "values[]")
        self._throw_if_disposed()
        self.defer(commands.AddRangeToSet(key, items))

    def remove_from_set(self, key: str, value: str) -> None:
        require_non_empty(key, "key")
        require_non_empty(value, "value")
        self._throw_if_disposed()
        self.defer(commands.RemoveFromSet(key, value))

    def remove_set(self, key: str) -> None:
        require_non_empty(key, "key")
        self._throw_if_disposed()
        self.defer(commands.RemoveSet(key))

    def expire_set(self, key: str, expire_in: timedelta) -> None:
        require_non_empty(key, "key")
        expire_at = self._expire_at(expire_in)
        self._throw_if_disposed()
        self.defer(commands.ExpireSet(key, expire_at))

    def persist_set(self, key: str) -> None:
        require_non_empty(key, "key")
        self._throw_if_disposed()
        self.defer(commands.ExpireSet(key, None))

    # Counters

    def increment_counter(self, key: str, expire_in: Optional[timedelta] = None) -> None:
        self._add_counter(key, 1, expire_in)

    def decrement_counter(self, key: str, expire_in: Optional[timedelta] = None) -> None:
        self._add_counter(key, -1, expire_in)

    def _add_counter(self, key: str, delta: int, expire_in: Optional[timedelta]) -> None:
        require_non_empty(key, "key")
        expire_at = self._expire_at(expire_in) if expire_in is not None else None
        self._throw_if_disposed()
        self.defer(commands.AddCounter(key, delta, expire_at))

    # Lists

    def insert_to_list(self, key: str, value: Optional[str]) -> None:
        require_non_empty(key, "key")
        require_optional_str(value, "value")
        self._throw_if_disposed()
        self.defer(commands.InsertToList(key, value))

    def remove_from_list(self, key: str, value: Optional[str]) -> None:
        """Remove every element equal to value, closing the gaps."""
        require_non_empty(key, "key")
        require_optional_str(value, "value")
        self._throw_if_disposed()
        self.defer(commands.RemoveFromList(key, value))

    def trim_list(self, key: str, keep_starting_from: int, keep_ending_at: int) -> None:
        """Keep only elements whose index lies in the inclusive range, renumbered from zero."""
        require_non_empty(key, "key")
        require_int(keep_starting_from, "keep_starting_from")
        require_int(keep_ending_at, "keep_ending_at")
        self._throw_if_disposed()
        self.defer(commands.TrimList(key, keep_starting_from, keep_ending_at))

    def expire_list(self, key: str, expire_in: timedelta) -> None:
        require_non_empty(key, "key")
        expire_at = self._expire_at(expire_in)
        self._throw_if_disposed()
        self.defer(commands.ExpireList(key, expire_at))

    def persist_list(self, key: str) -> None:
        require_non_empty(key, "key")
        self._throw_if_disposed()
        self.defer(commands.ExpireList(key, None))

    # Hashes

    def set_range_in_hash(self, key: str, pairs: HashPairs) -> None:
        """Set several hash fields; a field given twice keeps its last value."""
        require_non_empty(key, "key")
        require_not_none(pairs, "pairs")
        items = pairs.items() if isinstance(pairs, Mapping) else pairs
        collected = []
        for pair in items:
            if isinstance(pair, (str, bytes)) or not isinstance(pair, (tuple, list)) or len(pair) != 2:
                raise PreconditionError(f"Argument 'pairs' must hold (field, value) pairs, got {pair!r}")
            field, value = pair
            require_non_empty(field, "field")
            require_optional_str(value, "value")
            collected.append((field, value))
        self._throw_if_disposed()
        self.defer(commands.SetRangeInHash(key, tuple(collected)))

    def remove_hash(self, key: str) -> None:
        require_non_empty(key, "key")
        self._throw_if_disposed()
        self.defer(commands.RemoveHash(key))

    def expire_hash(self, key: str, expire_in: timedelta) -> None:
        require_non_empty(key, "key")
        expire_at = self._expire_at(expire_in)
        self._throw_if_disposed()
        self.defer(commands.ExpireHash(key, expire_at))

    def persist_hash(self, key: str) -> None:
        require_non_empty(key, "key")
        self._throw_if_disposed()
        self.defer(commands.ExpireHash(key, None))

    # Lifecycle

    def defer(self, command: Command) -> None:
        """Queue a command for commit()."""
        self._throw_if_disposed()
        self._commands.append(command)
        get_logger().debug("Queued action", **command.describe())

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the next successful commit."""
        self._throw_if_disposed()
        self._after_commit.append(callback)

    def commit(self) -> None:
        """
        Apply every queued command to one unit of work and write it atomically.

        Raises:
            CommitError: If any command or the final write failed; nothing was persisted
            TransactionDisposedError: If the transaction was already committed or disposed
        """
        self._throw_if_disposed()
        logger = get_logger()
        pending = list(self._commands)
        callbacks = list(self._after_commit)
        self.dispose()

        def apply_all(uow: UnitOfWork) -> None:
            for command in pending:
                command.apply(uow)

        try:
            stats = self._storage.use_unit_of_work(apply_all)
        except CommitError as e:
            logger.record_commit_failure(type(e).__name__)
            logger.error(f"Commit failed: {e}", actions=len(pending))
            raise
        except SQLAlchemyError as e:
            logger.record_commit_failure(type(e).__name__)
            logger.error(f"Commit failed: {e}", actions=len(pending))
            raise CommitError(f"Transaction rolled back: {e}") from e
        except Exception as e:
            logger.record_commit_failure(type(e).__name__)
            logger.error(f"Commit failed: {type(e).__name__}: {e}", actions=len(pending))
            raise CommitError(f"Transaction rolled back: {type(e).__name__}: {e}") from e

        logger.record_commit(len(pending), stats)
        logger.info("Transaction committed", actions=len(pending), **stats)

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"After-commit callback failed: {e}", callback=repr(callback))
                raise

    def dispose(self) -> None:
        """Drop all queued work. Safe to call more than once."""
        if self._disposed:
            return
        self._commands.clear()
        self._after_commit.clear()
        self._disposed = True

    def _throw_if_disposed(self) -> None:
        if self._disposed:
            raise TransactionDisposedError(f"{type(self).__name__} has already been committed or disposed")

    @staticmethod
    def _expire_at(expire_in: timedelta):
        require_timedelta(expire_in, "expire_in")
        return utc_now() + expire_in

    @staticmethod
    def _score(score) -> Decimal:
        if isinstance(score, bool) or not isinstance(score, (int, float, Decimal)):
            raise PreconditionError("Argument 'score' must be a number")
        value = score if isinstance(score, Decimal) else Decimal(str(score))
        if not value.is_finite():
            raise PreconditionError(f"Argument 'score' must be finite, got {score!r}")
        return value
