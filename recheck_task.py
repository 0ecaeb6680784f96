import threading
from logging_config import setup_logger
from operation import EventStream
from progress_parser import Reconciled

logger = setup_logger(__name__)


class RecheckTask:
    """Runs ``check()`` every ``interval`` seconds and publishes Reconciled when its value changes.

    Used after an operation to notice state that settles later, e.g. a package
    showing up as installed once a transaction finished.
    """

    def __init__(self, key, check, interval=5.0, stream=None, max_checks=None):
        self.key = key
        self.check = check
        self.interval = interval
        self.stream = stream or EventStream(key)
        self.max_checks = max_checks
        self.value = None
        self.checks = 0
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(target=self._loop, daemon=True, name=f"recheck:{self.key}")
            self._thread.start()
        return self.stream

    def _loop(self):
        first = True
        while not self._stop.is_set():
            try:
                value = self.check()
            except Exception as e:
                logger.warning(f"Re-check of '{self.key}' failed: {e}")
            else:
                if first or value != self.value:
                    self.value = value
                    self.stream.put(Reconciled(self.key, value))
                first = False
            self.checks += 1
            if self.max_checks is not None and self.checks >= self.max_checks:
                break
            self._stop.wait(self.interval)
        self.stream.close()

    def cancel(self):
        self._stop.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)
