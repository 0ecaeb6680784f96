from PyQt6.QtCore import QObject, QTimer, pyqtSignal
from logging_config import setup_logger
from progress_parser import is_terminal

logger = setup_logger(__name__)


# noinspection PyUnresolvedReferences
class EventPump(QObject):
    """Moves events from worker-side EventStreams onto the GUI thread.

    Streams are drained on a QTimer so the Qt loop never blocks on a worker.
    A terminal event acknowledges the operation with the dispatcher, which
    releases its key.
    """

    eventReceived = pyqtSignal(str, object)
    operationFinished = pyqtSignal(str, object)

    def __init__(self, dispatcher=None, interval_ms=50, max_per_tick=200, parent=None):
        super().__init__(parent)
        self.dispatcher = dispatcher
        self.max_per_tick = max_per_tick
        self._streams = {}
        self._timer = QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self.pump)

    def watch(self, key, stream):
        self._streams[key] = stream
        if not self._timer.isActive():
            self._timer.start()

    def unwatch(self, key):
        stream = self._streams.pop(key, None)
        if not self._streams:
            self._timer.stop()
        return stream

    def watching(self, key) -> bool:
        return key in self._streams

    def pump(self):
        for key, stream in list(self._streams.items()):
            for _ in range(self.max_per_tick):
                event = stream.get(timeout=0)
                if event is None:
                    if stream.closed:
                        self.unwatch(key)
                    break
                self.eventReceived.emit(key, event)
                if is_terminal(event):
                    self._finish(key)
                    break

    def _finish(self, key):
        self.unwatch(key)
        snapshot = None
        if self.dispatcher is not None:
            snapshot = self.dispatcher.snapshot(key)
            self.dispatcher.acknowledge(key)
        logger.debug(f"Operation '{key}' delivered to the GUI")
        self.operationFinished.emit(key, snapshot)

    def stop(self):
        self._timer.stop()
        self._streams.clear()
