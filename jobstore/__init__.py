"""
jobstore: relational persistence for a background-job processor.
"""

__version__ = "0.1.0"

from .commands import NewState
from .config import StorageSettings
from .errors import (
    CommitError,
    DuplicateEntryError,
    JobStoreError,
    PreconditionError,
    StaleEntryError,
    TransactionDisposedError,
)
from .queues import ExternalJobQueue, JobQueue, SqlJobQueue, TransactionalJobQueue
from .storage import JobStorage
from .transaction import JobStorageTransaction

__all__ = [
    "CommitError",
    "DuplicateEntryError",
    "ExternalJobQueue",
    "JobQueue",
    "JobStorage",
    "JobStorageTransaction",
    "JobStoreError",
    "NewState",
    "PreconditionError",
    "SqlJobQueue",
    "StaleEntryError",
    "StorageSettings",
    "TransactionDisposedError",
    "TransactionalJobQueue",
    "__version__",
]
