"""
Queue providers a transaction can enqueue jobs into.

A provider decides how it joins a transaction through enlist():

- TransactionalJobQueue folds the enqueue into the transaction's unit of
  work, so it commits atomically with everything else, and wakes waiting
  consumers once the commit succeeded.
- ExternalJobQueue performs the enqueue immediately, outside the atomic
  boundary; durability and ordering are the provider's own business.
"""

import abc
import threading
from typing import TYPE_CHECKING, Optional

from .commands import EnqueueJob
from .database import QueuedJob
from .logger import get_logger
from .unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from .transaction import JobStorageTransaction


class JobQueue(abc.ABC):
    """A named-queue backend."""

    @abc.abstractmethod
    def enlist(self, transaction: "JobStorageTransaction", queue: str, job_id: int) -> None:
        """Make the transaction enqueue job_id into queue."""


class TransactionalJobQueue(JobQueue):
    """A queue stored in the same database as the transaction."""

    def enlist(self, transaction: "JobStorageTransaction", queue: str, job_id: int) -> None:
        transaction.defer(EnqueueJob(self, queue, job_id))
        transaction.after_commit(self.notify_new_item)

    @abc.abstractmethod
    def enqueue_within_transaction(self, uow: UnitOfWork, queue: str, job_id: int) -> None:
        """Stage the enqueue in the unit of work."""

    @abc.abstractmethod
    def notify_new_item(self) -> None:
        """Signal consumers that committed work is waiting."""


class ExternalJobQueue(JobQueue):
    """A queue living outside the store, such as a message broker."""

    def enlist(self, transaction: "JobStorageTransaction", queue: str, job_id: int) -> None:
        get_logger().debug("Enqueueing outside transaction", queue=queue, job_id=job_id)
        self.enqueue_externally(queue, str(job_id))

    @abc.abstractmethod
    def enqueue_externally(self, queue: str, job_id: str) -> None:
        """Push the job to the external queue right away."""


class SqlJobQueue(TransactionalJobQueue):
    """
    Store-backed queue writing QueuedJob rows.

    Consumers block on wait_for_new_item() instead of polling the table
    continuously; every successful commit that enqueued here sets the event.
    """

    def __init__(self):
        self.new_item_event = threading.Event()

    def enqueue_within_transaction(self, uow: UnitOfWork, queue: str, job_id: int) -> None:
        uow.add(QueuedJob(job_id=job_id, queue=queue, fetched_at=None))

    def notify_new_item(self) -> None:
        self.new_item_event.set()

    def wait_for_new_item(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a commit enqueued something, then reset the signal.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            True if signalled, False on timeout
        """
        signalled = self.new_item_event.wait(timeout)
        if signalled:
            self.new_item_event.clear()
        return signalled
