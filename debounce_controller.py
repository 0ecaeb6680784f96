from __future__ import annotations
from dataclasses import dataclass
import threading, time
from PyQt6.QtCore import QObject, QThread, QTimer, pyqtSignal
from logging_config import setup_logger
from options import Options

logger = setup_logger(__name__)


class CancelToken:
    def __init__(self):
        self._event = threading.Event()
        self._callbacks = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback):
        """Run callback when cancelled; immediately if that already happened."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancel callback failed: {e}")


@dataclass(frozen=True)
class SearchQuery:
    raw_text: str
    submitted_at: float
    generation: int

    @property
    def text(self) -> str:
        return self.raw_text.strip()


# noinspection PyUnresolvedReferences
class SearchWorker(QThread):
    resultsFound = pyqtSignal(int, object)
    searchError = pyqtSignal(int, str)

    def __init__(self, query: SearchQuery, token: CancelToken, search):
        super().__init__()
        self.query = query
        self.token = token
        self.search = search

    def run(self):
        try:
            results = self.search(self.query.text, self.token)
        except Exception as e:
            if not self.token.cancelled:
                logger.warning(f"Search for '{self.query.text}' failed: {e}")
                self.searchError.emit(self.query.generation, str(e))
            return
        if not self.token.cancelled:
            self.resultsFound.emit(self.query.generation, results)


# noinspection PyUnresolvedReferences
class DebounceController(QObject):
    """Collapses bursts of keystrokes into a single search of the latest text.

    ``search(text, token)`` runs on a worker thread and should stop early once
    ``token.cancelled`` is set. Results of superseded or cancelled searches are
    never emitted.
    """

    resultsReady = pyqtSignal(str, object)
    searchFailed = pyqtSignal(str, str)
    searchStarted = pyqtSignal(str)
    cleared = pyqtSignal()

    def __init__(self, search, delay_ms=None, min_length=None, parent=None):
        super().__init__(parent)
        self._search = search
        self.delay_ms = Options.debounce_ms if delay_ms is None else delay_ms
        self.min_length = Options.search_min_length if min_length is None else min_length
        self._generation = 0
        self._pending = None
        self._inflight = None
        self._workers = []
        self._timer = QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(self.delay_ms)
        self._timer.timeout.connect(self._fire)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self):
        return self._pending

    def is_searching(self) -> bool:
        return self._inflight is not None

    def on_input(self, text: str):
        self._generation += 1
        query = SearchQuery(text, time.time(), self._generation)
        if len(query.text) < self.min_length:
            self._timer.stop()
            self._pending = None
            self._cancel_inflight()
            self.cleared.emit()
            return
        self._pending = query
        self._timer.start()

    def flush(self):
        if self._pending is not None:
            self._timer.stop()
            self._fire()

    def cancel(self):
        self._timer.stop()
        self._pending = None
        self._generation += 1
        self._cancel_inflight()

    def _cancel_inflight(self):
        if self._inflight is not None:
            query, token = self._inflight
            logger.debug(f"Cancelling search for '{query.text}'")
            token.cancel()
            self._inflight = None

    def _fire(self):
        query, self._pending = self._pending, None
        if query is None:
            return
        self._cancel_inflight()
        token = CancelToken()
        worker = SearchWorker(query, token, self._search)
        worker.resultsFound.connect(self._on_results)
        worker.searchError.connect(self._on_error)
        worker.finished.connect(lambda w=worker: self._reap(w))
        self._workers.append(worker)
        self._inflight = (query, token)
        self.searchStarted.emit(query.text)
        worker.start()

    def _current_query(self, generation):
        if self._inflight is None:
            return None
        query, token = self._inflight
        if query.generation != generation or generation != self._generation or token.cancelled:
            return None
        return query

    def _on_results(self, generation, results):
        query = self._current_query(generation)
        if query is None:
            return
        self._inflight = None
        self.resultsReady.emit(query.text, results)

    def _on_error(self, generation, message):
        query = self._current_query(generation)
        if query is None:
            return
        self._inflight = None
        self.searchFailed.emit(query.text, message)

    def _reap(self, worker):
        if worker in self._workers:
            worker.wait()
            self._workers.remove(worker)

    def shutdown(self, timeout_ms=2000):
        self.cancel()
        for worker in list(self._workers):
            worker.wait(timeout_ms)
