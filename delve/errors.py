"""Delve exception taxonomy.

    DelveError
    ├── SerializationError      record not representable as JSON — no write happens
    ├── CorruptedStateError     stored record unreadable — callers treat it as absent
    ├── CapabilityError         planner / reflector / writer / search call failed
    │   └── RunTimeoutError     run exceeded its wall-clock budget
    ├── InvalidTransitionError  state machine asked to make an illegal move
    ├── AggregateFailureError   every provider in a multi-provider run failed
    ├── ConcurrentUpdateError   optimistic compare-and-set retries exhausted
    ├── ConfigurationError      unknown depth / provider, or no provider available
    └── RunNotFoundError        no record for the requested run id
"""

from __future__ import annotations


class DelveError(Exception):
    """Base class for every error raised by Delve."""


class SerializationError(DelveError):
    """A record cannot be stored because it is not plain JSON data."""

    def __init__(self, message: str, path: str = "root") -> None:
        super().__init__(f"{message} (at {path})")
        self.path = path


class CorruptedStateError(DelveError):
    """A stored value is not a well-formed record."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Corrupted record at {key!r}: {reason}")
        self.key = key
        self.reason = reason


class CapabilityError(DelveError):
    """An external capability failed or returned schema-invalid output."""

    def __init__(self, capability: str, message: str, provider: str | None = None) -> None:
        prefix = f"{capability}[{provider}]" if provider else capability
        super().__init__(f"{prefix}: {message}")
        self.capability = capability
        self.provider = provider


class RunTimeoutError(CapabilityError):
    """A run did not finish within its wall-clock budget."""

    def __init__(self, run_id: str, timeout: float) -> None:
        super().__init__("run", f"{run_id} exceeded {timeout:.0f}s budget")
        self.run_id = run_id
        self.timeout = timeout


class InvalidTransitionError(DelveError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal status transition {current!r} -> {target!r}")
        self.current = current
        self.target = target


class AggregateFailureError(DelveError):
    """All providers of a multi-provider run failed."""

    def __init__(self, run_id: str, failures: dict[str, str]) -> None:
        detail = "; ".join(f"{p}: {e}" for p, e in failures.items()) or "no providers ran"
        super().__init__(f"All provider research streams failed for {run_id} ({detail})")
        self.run_id = run_id
        self.failures = failures


class ConcurrentUpdateError(DelveError):
    def __init__(self, key: str, attempts: int) -> None:
        super().__init__(f"Gave up updating {key!r} after {attempts} conflicting writes")
        self.key = key
        self.attempts = attempts


class ConfigurationError(DelveError):
    pass


class RunNotFoundError(DelveError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Research run {run_id!r} not found")
        self.run_id = run_id
