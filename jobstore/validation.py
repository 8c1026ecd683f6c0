"""
Argument checks shared by transaction operations.

Every check raises PreconditionError before anything is queued, so a
rejected call leaves the pending batch untouched.
"""

import re
from datetime import timedelta
from typing import Any, Optional

from .errors import PreconditionError

_JOB_ID_RE = re.compile(r"[0-9]+")

# Largest value a BIGINT job id column holds
MAX_JOB_ID = 2 ** 63 - 1


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v != ""


def require_non_empty(value: Any, name: str) -> str:
    if value is None:
        raise PreconditionError(f"Argument '{name}' must not be None")
    if not _is_non_empty_str(value):
        raise PreconditionError(f"Argument '{name}' must be a non-empty string")
    return value


def require_optional_str(value: Any, name: str) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise PreconditionError(f"Argument '{name}' must be a string or None")
    return value


def require_not_none(value: Any, name: str) -> Any:
    if value is None:
        raise PreconditionError(f"Argument '{name}' must not be None")
    return value


def require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PreconditionError(f"Argument '{name}' must be an integer")
    return value


def require_timedelta(value: Any, name: str) -> timedelta:
    if not isinstance(value, timedelta):
        raise PreconditionError(f"Argument '{name}' must be a timedelta")
    return value


def parse_job_id(job_id: Any) -> int:
    """
    Parse a job identifier exchanged as a decimal string.

    Returns:
        The identifier as a positive integer no larger than MAX_JOB_ID
    """
    require_non_empty(job_id, "job_id")
    if not _JOB_ID_RE.fullmatch(job_id):
        raise PreconditionError(f"Job id {job_id!r} is not a decimal integer")
    value = int(job_id)
    if value <= 0:
        raise PreconditionError(f"Job id {job_id!r} must be positive")
    if value > MAX_JOB_ID:
        raise PreconditionError(f"Job id {job_id!r} exceeds {MAX_JOB_ID}")
    return value
