"""
Scoped cleanup for scenario resources.

Every resource a scenario creates (namespace, Helm release, port-forward)
registers its release hook on a CleanupScope. Hooks run last-in first-out
when the scope exits, unless the scenario failed and the operator asked to
keep cluster resources around for post-mortem debugging. Hooks deferred with
``always=True`` (local processes, open clients) run either way.

A failing hook never hides the scenario's own exception: hook errors are
logged and collected on ``errors``, and only raised as a CleanupError when
the body itself succeeded.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


class CleanupError(Exception):
    """One or more release hooks failed after the scenario body succeeded."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__("; ".join(str(err) for err in errors))
        self.errors = errors


@dataclass(frozen=True)
class _Hook:
    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    always: bool = False

    @property
    def name(self) -> str:
        return getattr(self.fn, "__qualname__", repr(self.fn))


class CleanupScope:
    """Context manager collecting release hooks for one scenario case."""

    def __init__(self, keep_on_failure: bool = False) -> None:
        self.keep_on_failure = keep_on_failure
        self.failed = False
        self.errors: list[Exception] = []
        self._hooks: list[_Hook] = []

    def __enter__(self) -> CleanupScope:
        return self

    def defer(self, fn: Callable[..., Any], *args: Any, always: bool = False, **kwargs: Any) -> None:
        """
        Register ``fn(*args, **kwargs)`` to run when the scope exits.

        ``always`` hooks run even when a failed scope keeps its resources.
        """
        self._hooks.append(_Hook(fn, args, kwargs, always))

    def mark_failed(self) -> None:
        self.failed = True

    def close(self) -> None:
        """Run the pending hooks in reverse order, collecting their errors."""
        keep = self.failed and self.keep_on_failure
        if keep:
            kept = [hook.name for hook in self._hooks if not hook.always]
            logger.warning("cleanup_skipped", reason="keep_on_failure", hooks=kept)

        while self._hooks:
            hook = self._hooks.pop()
            if keep and not hook.always:
                continue
            try:
                hook.fn(*hook.args, **hook.kwargs)
            except Exception as exc:
                logger.error("cleanup_hook_failed", hook=hook.name, error=str(exc))
                self.errors.append(exc)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc_type is not None:
            self.failed = True

        self.close()

        if self.errors and exc_type is None:
            raise CleanupError(self.errors)
        return False
