"""Canonical execution status vocabulary."""

from enum import StrEnum


class ExecutionStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    RUNNING = "running"
    WAITING = "waiting"
    CANCELED = "canceled"


_ALIASES: dict[str, ExecutionStatus] = {
    "crashed": ExecutionStatus.ERROR,
    "cancelled": ExecutionStatus.CANCELED,
}


def normalize_status(raw: str | None) -> ExecutionStatus:
    """Map a remote status string onto ExecutionStatus.

    Matching is case-insensitive. Anything unrecognized, including None,
    becomes ERROR.
    """
    if raw is None:
        return ExecutionStatus.ERROR
    key = raw.strip().lower()
    try:
        return ExecutionStatus(key)
    except ValueError:
        return _ALIASES.get(key, ExecutionStatus.ERROR)
