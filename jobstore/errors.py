"""
Exception hierarchy for the job store.
"""


class JobStoreError(Exception):
    """Base class for job store errors."""
    pass


class PreconditionError(JobStoreError, ValueError):
    """Raised synchronously when an operation argument is invalid."""
    pass


class TransactionDisposedError(JobStoreError, RuntimeError):
    """Raised when a transaction is used after dispose() or commit()."""
    pass


class DuplicateEntryError(JobStoreError):
    """Raised when the same row is staged twice in one unit of work."""
    pass


class CommitError(JobStoreError):
    """Raised when a unit of work fails and is rolled back."""
    pass


class StaleEntryError(CommitError):
    """Raised when an UPDATE or DELETE does not hit exactly one row."""
    pass
