"""A tiny sequential interpreter for scripted device flows.

Scripted flows (posting a comment, practising the comment flow while
learning, scripted recovery) are written as an ordered list of named steps
instead of a long chain of calls, so a failure is pinned to a step index and
tests can inject a failure at any position.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from feed_agent.errors import Cancelled


def pause(cancel: threading.Event, seconds: float):
    """Sleep that wakes up (and raises Cancelled) as soon as `cancel` is set."""
    if cancel.is_set():
        raise Cancelled()
    if seconds > 0 and cancel.wait(seconds):
        raise Cancelled()


@dataclass
class Step:
    name: str
    run: Callable[[], Any]


def wait_step(cancel: threading.Event, seconds: float, name: str = "wait") -> Step:
    return Step(name, lambda: pause(cancel, seconds))


@dataclass
class StepReport:
    completed: int
    failed_index: Optional[int] = None
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.failed_index is None


def run_steps(steps: list[Step], cancel: threading.Event, label: str = "") -> StepReport:
    """Run steps in order and stop at the first one that raises.

    Cancelled is never turned into a failed step; it propagates so the owning
    engine can unwind. A step that returns False counts as failed too (used by
    verification steps).
    """
    for i, step in enumerate(steps):
        if cancel.is_set():
            raise Cancelled()
        try:
            result = step.run()
        except Cancelled:
            raise
        except Exception as e:
            logging.debug(f"[STEPS]{label} step {i} '{step.name}' failed: {e!r}")
            return StepReport(completed=i, failed_index=i, failed_step=step.name, error=e)
        if result is False:
            logging.debug(f"[STEPS]{label} step {i} '{step.name}' reported failure")
            return StepReport(completed=i, failed_index=i, failed_step=step.name)
    return StepReport(completed=len(steps))
