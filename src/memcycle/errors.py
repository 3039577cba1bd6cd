"""Exception taxonomy for the memory lifecycle engine.

Every error raised by a component derives from :class:`LifecycleError` and
carries a ``context`` dict (user, sector, ids, ...) so that the scheduler can
log enough detail to reproduce a failure.

``retryable`` marks errors caused by transient store I/O.  The scheduler
retries those with backoff; everything else aborts the current stage.

Validation problems specific to one operation raise a class that is both the
operation error and :class:`ValidationError`, so callers may catch either::

    try:
        await search.search(vec, "semantic", limit=0)
    except ValidationError:
        ...  # caller bug
"""

from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base class for all memcycle errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"{base} ({details})"


class ValidationError(LifecycleError, ValueError):
    """Bad threshold, limit, id or configuration.  Never retried."""


class StoreError(LifecycleError):
    """Transient persistent-store failure (locked, unreachable, I/O)."""

    retryable = True


class SearchError(LifecycleError):
    """Vector similarity search failed."""


class InvalidSearchError(SearchError, ValidationError):
    """Search was called with an empty embedding, bad limit or threshold."""


class SummarizerError(LifecycleError):
    """The content summarizer could not produce a summary."""


class ConsolidationError(LifecycleError):
    """A consolidation pass or a single cluster commit failed."""


class InvalidConsolidationError(ConsolidationError, ValidationError):
    """Consolidation was configured with an out-of-range parameter."""


class ArchiveError(LifecycleError):
    """Archival, restore or purge failed."""


class InvalidArchiveError(ArchiveError, ValidationError):
    """Archive operation called with invalid arguments."""


class LeaseConflict(Exception):
    """Another run already holds the lease.

    Not an error: it is the expected signal for a concurrent trigger and
    the scheduler reports it as ``RunOutcome.ALREADY_RUNNING``.
    """

    def __init__(self, name: str, holder: str | None = None) -> None:
        super().__init__(f"lease {name!r} is held by {holder or 'another run'}")
        self.name = name
        self.holder = holder
