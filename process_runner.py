from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import os, queue, shlex, shutil, signal, subprocess, threading, time
from errors import NO_ELEVATION_TOOL
from logging_config import setup_logger

logger = setup_logger(__name__)

DEFAULT_CLEANUP_WINDOW = 5.0
PKEXEC_DENIED_CODES = (126, 127)


class RunOutcome(Enum):
    EXITED_OK = "exited_ok"
    EXITED_WITH_CODE = "exited_with_code"
    SPAWN_FAILED = "spawn_failed"
    KILLED = "killed"


@dataclass(frozen=True)
class RunStatus:
    outcome: RunOutcome
    code: int | None = None
    reason: str | None = None

    @classmethod
    def exited(cls, code: int) -> "RunStatus":
        if code == 0:
            return cls(RunOutcome.EXITED_OK, 0)
        return cls(RunOutcome.EXITED_WITH_CODE, code)

    @classmethod
    def spawn_failed(cls, reason: str) -> "RunStatus":
        return cls(RunOutcome.SPAWN_FAILED, reason=reason)

    @classmethod
    def killed(cls) -> "RunStatus":
        return cls(RunOutcome.KILLED)

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.EXITED_OK

    def describe(self) -> str:
        if self.outcome is RunOutcome.EXITED_OK:
            return "exited successfully"
        if self.outcome is RunOutcome.EXITED_WITH_CODE:
            return self.reason or f"exited with code {self.code}"
        if self.outcome is RunOutcome.SPAWN_FAILED:
            return f"spawn failed: {self.reason}"
        return "killed"


@dataclass(frozen=True)
class SpawnSpec:
    """Invocation contract for one external command."""

    program: str
    args: tuple = ()
    elevate: bool = False
    cwd: str | None = None
    env: dict | None = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    def describe(self) -> str:
        prefix = "[elevated] " if self.elevate else ""
        return prefix + shlex.join([self.program, *self.args])


@dataclass(frozen=True)
class OutputLine:
    stream: str
    text: str


class ProcessRunner:
    def __init__(self, spec: SpawnSpec, elevation_tool: str | None = "pkexec", cleanup_window: float = DEFAULT_CLEANUP_WINDOW):
        self.spec = spec
        self.elevation_tool = elevation_tool
        self.cleanup_window = cleanup_window
        self._process: subprocess.Popen | None = None
        self._queue: queue.Queue = queue.Queue()
        self._readers: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._cancelled = False
        self._cancel_deadline = None
        self._status: RunStatus | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pid(self):
        return self._process.pid if self._process else None

    def resolve_command(self) -> list[str]:
        """Return the argv to execute, or raise LookupError with a SpawnFailed reason."""
        program = self.spec.program
        if os.sep not in program and shutil.which(program) is None and not self.spec.elevate:
            raise LookupError(f"executable not found: {program}")
        command = [program, *self.spec.args]
        if self.spec.elevate:
            tool = shutil.which(self.elevation_tool) if self.elevation_tool else None
            if tool is None:
                raise LookupError(NO_ELEVATION_TOOL)
            command = [tool, *command]
        return command

    def start(self) -> RunStatus | None:
        """Spawn the child. Returns a terminal status if spawning failed, else None."""
        with self._lock:
            if self._process is not None or self._status is not None:
                return self._status
            if self._cancelled:
                self._status = RunStatus.killed()
                return self._status
            try:
                command = self.resolve_command()
            except LookupError as e:
                self._status = RunStatus.spawn_failed(str(e.args[0]))
                logger.warning(f"Cannot spawn '{self.spec.describe()}': {self._status.reason}")
                return self._status

            env = os.environ.copy()
            if self.spec.env:
                env.update({str(k): str(v) for k, v in self.spec.env.items()})
            try:
                self._process = subprocess.Popen(
                    command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, stdin=subprocess.DEVNULL,
                    text=True, errors="replace", bufsize=1, env=env, cwd=self.spec.cwd,
                    start_new_session=True)
            except OSError as e:
                self._status = RunStatus.spawn_failed(str(e))
                logger.warning(f"Cannot spawn '{self.spec.describe()}': {e}")
                return self._status

        logger.info(f"Started pid {self._process.pid}: {self.spec.describe()}")
        self._readers = [
            threading.Thread(target=self._read_stream, args=(self._process.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._read_stream, args=(self._process.stderr, "stderr"), daemon=True),
        ]
        for t in self._readers:
            t.start()
        return None

    def _read_stream(self, stream, name):
        try:
            for line in iter(stream.readline, ''):
                self._queue.put(OutputLine(name, line.rstrip("\r\n")))
        except (OSError, ValueError) as error:
            logger.debug(f"Stopped reading {name} of pid {self.pid}: {error}")
        finally:
            self._queue.put((name, None))

    def lines(self):
        """Yield output lines in arrival order until both streams close."""
        if self._process is None:
            return
        open_streams = 2
        while open_streams:
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._cleanup_window_elapsed():
                    logger.warning(f"Output of pid {self.pid} still open after cancellation, closing streams")
                    self._close_streams()
                    return
                continue
            if isinstance(item, tuple):
                open_streams -= 1
                continue
            yield item

    def _cleanup_window_elapsed(self) -> bool:
        return (self._cancel_deadline is not None and self._process.poll() is not None
                and time.monotonic() > self._cancel_deadline)

    def _close_streams(self):
        for stream in (self._process.stdout, self._process.stderr):
            try:
                stream.close()
            except (OSError, ValueError):
                pass

    def wait(self) -> RunStatus:
        if self._status is not None:
            return self._status
        if self._process is None:
            self._status = RunStatus.killed() if self._cancelled else RunStatus.spawn_failed("not started")
            return self._status
        code = self._process.wait()
        for t in self._readers:
            t.join(timeout=self.cleanup_window)
        self._close_streams()
        if self._cancelled:
            self._status = RunStatus.killed()
        else:
            status = RunStatus.exited(code)
            if (not status.ok and self.spec.elevate and code in PKEXEC_DENIED_CODES
                    and os.path.basename(self.elevation_tool or "") == "pkexec"):
                status = RunStatus(RunOutcome.EXITED_WITH_CODE, code, "authorization was dismissed or denied")
            self._status = status
        logger.info(f"pid {self._process.pid} finished: {self._status.describe()}")
        return self._status

    def run(self, on_line=None) -> RunStatus:
        failed = self.start()
        if failed is not None:
            return failed
        for line in self.lines():
            if on_line:
                on_line(line)
        return self.wait()

    def cancel(self):
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._cancel_deadline = time.monotonic() + self.cleanup_window
            process = self._process
        if process is None or process.poll() is not None:
            return
        logger.info(f"Terminating pid {process.pid}")
        self._signal(process, signal.SIGTERM)
        threading.Thread(target=self._escalate, args=(process,), daemon=True).start()

    def _escalate(self, process):
        try:
            process.wait(timeout=self.cleanup_window)
        except subprocess.TimeoutExpired:
            logger.warning(f"pid {process.pid} ignored SIGTERM, killing")
            self._signal(process, signal.SIGKILL)

    @staticmethod
    def _signal(process, sig):
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                process.send_signal(sig)
            except (ProcessLookupError, PermissionError) as e:
                logger.warning(f"Could not signal pid {process.pid}: {e}")
