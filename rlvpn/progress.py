"""Progress channel between the step engine and whoever renders it."""

from __future__ import annotations

import queue
import sys
import threading
from typing import Callable, List, Optional, TextIO, TypeVar

from .engine import Message, PlanDone, StepFail, StepOk, StepStart

T = TypeVar("T")


class ProgressChannel:
    """Unbounded FIFO; the engine writes, one reader drains.

    With no reader attached messages simply accumulate.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[Message]" = queue.Queue()

    def put(self, msg: Message) -> None:
        self._queue.put(msg)

    def get(self, timeout: Optional[float] = None) -> Message:
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[Message]:
        out = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out


def format_message(msg: Message, total: Optional[int] = None) -> str:
    def _pos(index: int) -> str:
        return f"[{index + 1}/{total}]" if total else f"[{index + 1}]"

    if isinstance(msg, StepStart):
        return f"{_pos(msg.index)} {msg.name} ..."
    if isinstance(msg, StepOk):
        return f"{_pos(msg.index)} {msg.name} ok"
    if isinstance(msg, StepFail):
        return f"{_pos(msg.index)} {msg.name} FAILED: {msg.error}"
    if isinstance(msg, PlanDone):
        return f"{msg.plan or 'plan'}: {'done' if msg.ok else 'failed'}"
    return str(msg)


class ConsoleReader:
    """Headless reader printing one line per transition."""

    def __init__(self, stream: Optional[TextIO] = None, total: Optional[int] = None):
        self.stream = stream or sys.stderr
        self.total = total
        self.seen: List[Message] = []

    def handle(self, msg: Message) -> None:
        self.seen.append(msg)
        print(format_message(msg, self.total), file=self.stream, flush=True)

    def follow(self, channel: ProgressChannel, worker: threading.Thread, poll: float = 0.2) -> None:
        """Read until :class:`PlanDone` arrives or the worker exits."""

        while True:
            try:
                msg = channel.get(timeout=poll)
            except queue.Empty:
                if not worker.is_alive():
                    for rest in channel.drain():
                        self.handle(rest)
                    return
                continue
            self.handle(msg)
            if isinstance(msg, PlanDone):
                return


def run_with_reader(
    job: Callable[[ProgressChannel, threading.Event], T],
    reader: Optional[ConsoleReader] = None,
    cancel: Optional[threading.Event] = None,
) -> T:
    """Run ``job`` on a worker thread while the calling thread renders progress.

    ``KeyboardInterrupt`` in the caller sets the cancel event; the job stops
    at the next step boundary.  The job's return value or exception is
    passed back to the caller.
    """

    channel = ProgressChannel()
    cancel = cancel or threading.Event()
    reader = reader or ConsoleReader()
    box: dict = {}

    def _target() -> None:
        try:
            box["result"] = job(channel, cancel)
        except BaseException as exc:
            box["error"] = exc

    worker = threading.Thread(target=_target, name="rlvpn-plan", daemon=True)
    worker.start()
    while True:
        try:
            reader.follow(channel, worker)
            worker.join()
            break
        except KeyboardInterrupt:
            cancel.set()
    if "error" in box:
        raise box["error"]
    return box.get("result")  # type: ignore[return-value]
