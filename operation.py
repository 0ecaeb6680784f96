from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import queue, threading, time
from errors import OperationCancelled
from logging_config import setup_logger
from options import Options
from process_runner import ProcessRunner, RunOutcome
from progress_parser import (ByteProgress, Cancelled, Completed, Failed, LogLine, PercentUpdate, ProgressTracker,
                             StageChanged, get_parser, is_terminal, parse_line)

logger = setup_logger(__name__)


class OperationState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.SUCCEEDED, OperationState.FAILED, OperationState.CANCELLED)

    @property
    def is_live(self) -> bool:
        return self in (OperationState.PENDING, OperationState.RUNNING)


@dataclass(frozen=True)
class OperationSnapshot:
    key: str
    state: OperationState
    progress: int | None
    stage: str | None
    log: tuple
    reason: str | None
    created_at: float
    finished_at: float | None
    acknowledged: bool = False
    result: object = None

    @property
    def log_tail(self):
        return self.log[-Options.log_tail_lines:] if Options.log_tail_lines else ()


_CLOSED = object()


class EventStream:
    """FIFO of events for one subscriber. Iteration ends after a terminal event or close()."""

    def __init__(self, key=None):
        self.key = key
        self._queue = queue.Queue()
        self._closed = False

    def put(self, event):
        if not self._closed:
            self._queue.put(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout=None):
        """Next event, or None on timeout or once the stream is closed."""
        try:
            event = self._queue.get(timeout=timeout) if timeout != 0 else self._queue.get_nowait()
        except queue.Empty:
            return None
        if event is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return event

    def drain(self) -> list:
        events = []
        while True:
            event = self.get(timeout=0)
            if event is None:
                return events
            events.append(event)

    def __iter__(self):
        while True:
            event = self._queue.get()
            if event is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield event
            if is_terminal(event):
                return


class Operation:
    """One unit of long-running work with a replayable event history.

    Subclasses implement ``run()``. Parser verdicts are passed to ``emit`` and
    recorded; the single terminal event is published by ``execute`` once the
    work returns.
    """

    def __init__(self, key: str):
        self.key = key
        self.resources = (key,)
        self.state = OperationState.PENDING
        self.stage = None
        self.reason = None
        self.log = []
        self.created_at = time.time()
        self.finished_at = None
        self.acknowledged = False
        self.result = None
        self.tracker = ProgressTracker()
        self._verdict = None
        self._history = []
        self._subscribers = []
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._done = threading.Event()

    def __repr__(self):
        return f"<{type(self).__name__} {self.key} {self.state.value}>"

    @property
    def progress(self):
        return self.tracker.current

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def subscribe(self) -> EventStream:
        stream = EventStream(self.key)
        with self._lock:
            for event in self._history:
                stream.put(event)
            self._subscribers.append(stream)
        return stream

    def unsubscribe(self, stream):
        with self._lock:
            if stream in self._subscribers:
                self._subscribers.remove(stream)
        stream.close()

    def _publish(self, event):
        with self._lock:
            if self.state.is_terminal and not is_terminal(event):
                return
            self._history.append(event)
            for stream in self._subscribers:
                stream.put(event)

    def emit(self, event):
        if isinstance(event, (Completed, Failed)):
            if self._verdict is None or isinstance(event, Failed) and not isinstance(self._verdict, Failed):
                self._verdict = event
            return
        if isinstance(event, Cancelled):
            self.cancel()
            return
        if isinstance(event, LogLine):
            self.log.append(event.text)
        elif isinstance(event, StageChanged):
            self.stage = event.name
        elif isinstance(event, PercentUpdate):
            if event.value is None and self.tracker.current is not None:
                return
            event = PercentUpdate(self.tracker.update(event.value))
        self._publish(event)

    def log_line(self, text, stream="stdout"):
        self.emit(LogLine(text, stream))

    def set_stage(self, name):
        self.emit(StageChanged(name))
        logger.info(f"[{self.key}] stage: {name}")

    def set_progress(self, value):
        self.emit(PercentUpdate(value))

    def set_bytes(self, received, total=None):
        self.emit(ByteProgress(received, total))

    def check_cancelled(self):
        if self.cancelled:
            raise OperationCancelled(f"Operation '{self.key}' was cancelled")

    def tail(self, count=None):
        count = Options.log_tail_lines if count is None else count
        return tuple(self.log[-count:]) if count else ()

    def cancel(self):
        if self._cancel_event.is_set() or self.state.is_terminal:
            return
        self._cancel_event.set()
        logger.info(f"Cancellation requested for '{self.key}'")
        self.on_cancel()

    def on_cancel(self):
        pass

    def run(self):
        raise NotImplementedError

    def execute(self):
        """Drive the operation to exactly one terminal event. Called on the worker thread."""
        if self.state is not OperationState.PENDING:
            return
        if self.cancelled:
            self._finish(Cancelled())
            return
        self.state = OperationState.RUNNING
        logger.info(f"Operation '{self.key}' started")
        try:
            self.run()
        except OperationCancelled:
            self._finish(Cancelled())
            return
        except Exception as e:
            logger.exception(f"Operation '{self.key}' raised")
            self._finish(Failed(str(e) or type(e).__name__, self.tail()))
            return
        if self.cancelled:
            self._finish(Cancelled())
        elif isinstance(self._verdict, Failed):
            self._finish(Failed(self._verdict.message, self.tail()))
        else:
            self._finish(self._verdict or Completed())

    def fail(self, message):
        self._verdict = Failed(message)

    def _finish(self, event):
        if isinstance(event, Completed) and self.tracker.current is not None and self.tracker.current < 100:
            self._publish(PercentUpdate(self.tracker.update(100)))
        with self._lock:
            if self.state.is_terminal:
                return
            if isinstance(event, Completed):
                self.state = OperationState.SUCCEEDED
            elif isinstance(event, Failed):
                self.state = OperationState.FAILED
                self.reason = event.message
            else:
                self.state = OperationState.CANCELLED
                self.reason = event.message
            self.finished_at = time.time()
        self._publish(event)
        self._done.set()
        logger.info(f"Operation '{self.key}' finished: {self.state.value}"
                    + (f" ({self.reason})" if self.reason else ""))

    def wait(self, timeout=None) -> bool:
        return self._done.wait(timeout)

    def snapshot(self) -> OperationSnapshot:
        with self._lock:
            return OperationSnapshot(self.key, self.state, self.tracker.current, self.stage, tuple(self.log),
                                     self.reason, self.created_at, self.finished_at, self.acknowledged,
                                     self.result)


class CommandOperation(Operation):
    """Runs one external command and feeds its output through a named parser."""

    def __init__(self, key, spawn_spec, parser="generic", elevation_tool=None, cleanup_window=None):
        super().__init__(key)
        self.spawn_spec = spawn_spec
        self.parser_name = parser
        self.parser = get_parser(parser)
        self.runner = ProcessRunner(spawn_spec,
                                    elevation_tool=elevation_tool or Options.elevation_tool,
                                    cleanup_window=Options.cleanup_window if cleanup_window is None else cleanup_window)

    def on_cancel(self):
        self.runner.cancel()

    def run(self):
        self.log_line(f"$ {self.spawn_spec.describe()}", "command")
        spawn_error = self.runner.start()
        if spawn_error is not None:
            if spawn_error.outcome is RunOutcome.KILLED:
                raise OperationCancelled(self.key)
            self._verdict = Failed(f"Could not start {self.spawn_spec.program}: {spawn_error.reason}")
            return
        for line in self.runner.lines():
            for event in parse_line(self.parser, line.text, line.stream):
                self.emit(event)
        status = self.runner.wait()
        if status.outcome is RunOutcome.KILLED or self.cancelled:
            raise OperationCancelled(self.key)
        if status.outcome is RunOutcome.EXITED_WITH_CODE:
            detail = status.describe()
            if isinstance(self._verdict, Failed) and self._verdict.message:
                detail = f"{self._verdict.message} ({detail})"
            self._verdict = Failed(detail)


class OperationHandle:
    """What ``submit`` hands back: a narrow view on one Operation."""

    def __init__(self, operation: Operation, dispatcher=None):
        self._operation = operation
        self._dispatcher = dispatcher

    @property
    def key(self):
        return self._operation.key

    @property
    def state(self) -> OperationState:
        return self._operation.state

    def snapshot(self) -> OperationSnapshot:
        return self._operation.snapshot()

    def subscribe(self) -> EventStream:
        return self._operation.subscribe()

    def events(self):
        yield from self._operation.subscribe()

    def cancel(self):
        if self._dispatcher is not None:
            self._dispatcher.cancel(self.key)
        else:
            self._operation.cancel()

    def wait(self, timeout=None) -> bool:
        return self._operation.wait(timeout)
