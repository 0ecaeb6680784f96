import time
from PyQt6.QtCore import QMutex, QMutexLocker, QThread
from errors import Busy
from logging_config import setup_logger
from operation import CommandOperation, Operation, OperationHandle
from options import Options

logger = setup_logger(__name__)


class OperationWorker(QThread):
    def __init__(self, operation: Operation):
        super().__init__()
        self.operation = operation
        self.setObjectName(f"operation:{operation.key}")

    def run(self):
        try:
            self.operation.execute()
        except Exception as e:
            # execute() converts failures itself, this only guards the thread
            logger.exception(f"Worker for '{self.operation.key}' crashed: {e}")


class TaskDispatcher:
    """Admits at most one live Operation per resource key and runs each on its own worker thread.

    An operation holds its own key plus any extra resource keys it was submitted
    with, e.g. one ``package:<name>`` per package a transaction touches.
    """

    def __init__(self, elevation_tool=None, cleanup_window=None, retention_seconds=None, clock=time.time):
        self.elevation_tool = elevation_tool
        self.cleanup_window = cleanup_window
        self.retention_seconds = Options.retention_seconds if retention_seconds is None else retention_seconds
        self.clock = clock
        self._mutex = QMutex()
        self._operations = {}
        self._holders = {}
        self._workers = []

    def submit(self, key, spawn_spec, parser="generic", resources=()) -> OperationHandle:
        operation = CommandOperation(key, spawn_spec, parser,
                                     elevation_tool=self.elevation_tool, cleanup_window=self.cleanup_window)
        return self.submit_operation(operation, resources)

    def submit_operation(self, operation: Operation, resources=()) -> OperationHandle:
        """Admit ``operation`` under its key and every extra resource key, all or nothing.

        Raises Busy naming the first key that a live operation already holds.
        """
        key = operation.key
        claimed = list(dict.fromkeys([key, *resources]))
        with QMutexLocker(self._mutex):
            self._purge_locked()
            for resource in claimed:
                holder = self._holders.get(resource)
                if holder is not None and holder.state.is_live:
                    logger.info(f"Rejected '{key}': '{resource}' is held by '{holder.key}'")
                    raise Busy(resource)
            operation.resources = tuple(claimed)
            for resource in claimed:
                self._holders[resource] = operation
            self._operations[key] = operation
            worker = OperationWorker(operation)
            self._workers.append(worker)
            worker.start()
        logger.info(f"Submitted operation '{key}'")
        return OperationHandle(operation, self)

    def cancel(self, key):
        with QMutexLocker(self._mutex):
            operation = self._operations.get(key)
        if operation is None or not operation.state.is_live:
            return
        operation.cancel()

    def subscribe(self, key):
        with QMutexLocker(self._mutex):
            operation = self._operations.get(key)
        if operation is None:
            raise KeyError(f"No operation for '{key}'")
        return operation.subscribe()

    def snapshot(self, key):
        with QMutexLocker(self._mutex):
            self._purge_locked()
            operation = self._operations.get(key)
        return operation.snapshot() if operation else None

    def snapshots(self):
        with QMutexLocker(self._mutex):
            self._purge_locked()
            operations = list(self._operations.values())
        return {op.key: op.snapshot() for op in operations}

    def is_busy(self, key) -> bool:
        """True while a live operation holds ``key``, as its own key or as a resource."""
        with QMutexLocker(self._mutex):
            holder = self._holders.get(key)
            return holder is not None and holder.state.is_live

    def acknowledge(self, key):
        """Mark the terminal Operation as seen and release its key."""
        with QMutexLocker(self._mutex):
            operation = self._operations.get(key)
            if operation is None:
                return False
            operation.acknowledged = True
            if operation.state.is_terminal:
                del self._operations[key]
                self._holders = {resource: op for resource, op in self._holders.items() if op is not operation}
                logger.debug(f"Released key '{key}'")
                return True
        return False

    def _purge_locked(self):
        now = self.clock()
        for key, operation in list(self._operations.items()):
            if (operation.state.is_terminal and operation.finished_at is not None
                    and now - operation.finished_at >= self.retention_seconds):
                del self._operations[key]
                logger.debug(f"Purged unacknowledged operation '{key}'")
        self._holders = {resource: op for resource, op in self._holders.items() if op.state.is_live}
        self._workers = [w for w in self._workers if not w.isFinished()]

    def shutdown(self, timeout=5.0) -> bool:
        with QMutexLocker(self._mutex):
            operations = [op for op in self._operations.values() if op.state.is_live]
            workers = list(self._workers)
        for operation in operations:
            operation.cancel()
        deadline = time.monotonic() + timeout
        clean = True
        for worker in workers:
            remaining = max(0, int((deadline - time.monotonic()) * 1000))
            if not worker.wait(remaining):
                logger.warning(f"Worker {worker.objectName()} did not stop within {timeout}s")
                clean = False
        return clean
