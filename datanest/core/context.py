"""Per-step execution context: deadline and cooperative cancellation."""

from __future__ import annotations

import threading
import time

from datanest.core.errors import RunCancelled, StepTimeout


class StepContext:
    """Carries a step's deadline and the run's cancel signal.

    Work calls ``checkpoint()`` between phases and right before committing
    to the cache, so a cancelled or timed-out step never publishes output.

    Parameters
    ----------
    step_name:
        Used in error messages.
    timeout:
        Maximum duration in seconds, or None for no limit.
    cancel_event:
        Run-level cancellation signal shared by all steps.
    """

    def __init__(
        self,
        step_name: str = "",
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.step_name = step_name
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a timeout."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def checkpoint(self) -> None:
        """Raise if the run was cancelled or the step ran out of time."""
        if self.cancelled:
            raise RunCancelled(f"Run cancelled during step {self.step_name!r}")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise StepTimeout(
                f"Step {self.step_name!r} exceeded its timeout of {self.timeout}s"
            )

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early on cancellation; checks the deadline after."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self.cancel_event.wait(seconds)
        self.checkpoint()
