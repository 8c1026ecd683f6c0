"""
Entry point tying the database, queue providers and transactions together.
"""

from typing import Callable, Dict, Mapping, Optional, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .config import StorageSettings
from .database import create_storage_engine, get_session_factory, init_database
from .errors import CommitError
from .logger import get_logger
from .queues import JobQueue, SqlJobQueue
from .retry import exponential_backoff, is_transient_error
from .transaction import JobStorageTransaction
from .unit_of_work import UnitOfWork

T = TypeVar("T")


class JobStorage:
    """
    Relational job storage.

    Args:
        engine: Engine bound to the job store database
        queues: Providers for specific queue names
        default_queue: Provider for every other queue (store-backed by default)
        commit_retries: Default retry budget of run_in_transaction
    """

    def __init__(
        self,
        engine: Engine,
        queues: Optional[Mapping[str, JobQueue]] = None,
        default_queue: Optional[JobQueue] = None,
        commit_retries: int = 3,
    ):
        self.engine = engine
        self.commit_retries = commit_retries
        self._session_factory = get_session_factory(engine)
        self.default_queue = default_queue or SqlJobQueue()
        self._queues: Dict[str, JobQueue] = dict(queues or {})

    @classmethod
    def from_settings(cls, settings: Optional[StorageSettings] = None, **kwargs) -> "JobStorage":
        settings = settings or StorageSettings.from_env()
        get_logger(level=settings.log_level)
        engine = create_storage_engine(settings.database_url, echo=settings.sql_echo)
        kwargs.setdefault("commit_retries", settings.commit_retries)
        return cls(engine, **kwargs)

    def initialize(self) -> None:
        """Create missing tables."""
        init_database(self.engine)

    def get_session(self) -> Session:
        """Open a plain session, for reads outside a transaction."""
        return self._session_factory()

    def get_job_queue(self, queue: str) -> JobQueue:
        return self._queues.get(queue, self.default_queue)

    def set_job_queue(self, queue: str, provider: JobQueue) -> None:
        self._queues[queue] = provider

    def create_transaction(self) -> JobStorageTransaction:
        return JobStorageTransaction(self)

    def use_unit_of_work(self, work: Callable[[UnitOfWork], None]) -> Dict[str, int]:
        """
        Run work against a fresh unit of work and flush it atomically.

        The session transaction commits only if work and the flush both
        succeed; any exception rolls everything back and propagates.

        Returns:
            Row counts written by the flush
        """
        with self._session_factory() as session:
            with session.begin():
                uow = UnitOfWork(session)
                work(uow)
                return uow.flush()

    def run_in_transaction(
        self,
        build: Callable[[JobStorageTransaction], T],
        max_retries: Optional[int] = None,
        base_delay: float = 0.05,
    ) -> T:
        """
        Build and commit a transaction, rebuilding it after transient failures.

        build receives a fresh transaction on every attempt and queues the
        operations; this helper commits it. Providers that enqueue outside
        the transaction see their side effects repeated on each attempt.

        Raises:
            RetryError: If every attempt failed with a transient error
            CommitError: If an attempt failed with a non-transient error
        """
        def on_retry(attempt, error, delay):
            get_logger().warning(
                f"Retrying transaction after failure: {error}",
                attempt=attempt,
                delay=delay,
            )

        @exponential_backoff(
            max_retries=self.commit_retries if max_retries is None else max_retries,
            base_delay=base_delay,
            exceptions=(CommitError,),
            should_retry=is_transient_error,
            on_retry=on_retry,
        )
        def attempt() -> T:
            with self.create_transaction() as transaction:
                result = build(transaction)
                transaction.commit()
                return result

        return attempt()
