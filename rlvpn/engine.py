"""Sequential step executor with transition messages and cooperative cancel."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

from . import executil
from .errors import Cancelled, StepFailed

PENDING = "pending"
RUNNING = "running"
DONE = "done"
FAILED = "failed"


@dataclass
class Step:
    name: str
    action: Callable[[], object]
    status: str = PENDING
    error: Optional[BaseException] = None
    duration: float = 0.0


@dataclass(frozen=True)
class StepStart:
    index: int
    name: str
    status: str = field(default=RUNNING, init=False)


@dataclass(frozen=True)
class StepOk:
    index: int
    name: str
    status: str = field(default=DONE, init=False)


@dataclass(frozen=True)
class StepFail:
    index: int
    name: str
    error: BaseException
    status: str = field(default=FAILED, init=False)


@dataclass(frozen=True)
class PlanDone:
    plan: str
    ok: bool
    error: Optional[BaseException] = None


Message = Union[StepStart, StepOk, StepFail, PlanDone]
Reporter = Callable[[Message], None]


def _noop(_msg: Message) -> None:
    return None


def run_steps(
    steps: Sequence[Step],
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
    plan: str = "",
) -> List[Step]:
    """Run ``steps`` in order, stopping at the first failure.

    Each transition is handed to ``reporter`` before the next one happens.
    A set ``cancel`` event is honoured before each step starts; the steps
    not yet started stay pending.  The first failure is raised as
    :class:`StepFailed`, cancellation as :class:`Cancelled`, and a
    :class:`PlanDone` message is always the last one reported.
    """

    report = reporter or _noop
    for step in steps:
        step.status = PENDING
        step.error = None
    try:
        for index, step in enumerate(steps):
            if cancel is not None and cancel.is_set():
                executil.warn("step.cancelled", plan=plan, index=index, step=step.name)
                raise Cancelled(f"cancelled before step {index + 1}/{len(steps)}: {step.name}")
            step.status = RUNNING
            executil.info("step.start", plan=plan, index=index, step=step.name)
            report(StepStart(index, step.name))
            started = time.time()
            try:
                step.action()
            except Exception as exc:
                step.duration = time.time() - started
                step.status = FAILED
                step.error = exc
                executil.error("step.fail", plan=plan, index=index, step=step.name, error=str(exc),
                               kind=getattr(exc, "kind", "subprocess"))
                report(StepFail(index, step.name, exc))
                raise StepFailed(step.name, index, exc) from exc
            step.duration = time.time() - started
            step.status = DONE
            executil.info("step.ok", plan=plan, index=index, step=step.name, dur=step.duration)
            report(StepOk(index, step.name))
    except (StepFailed, Cancelled) as exc:
        executil.info("plan.done", plan=plan, ok=False, error=str(exc))
        report(PlanDone(plan, False, exc))
        raise
    executil.info("plan.done", plan=plan, ok=True)
    report(PlanDone(plan, True))
    return list(steps)
