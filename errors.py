"""Error taxonomy shared by the operation engine."""

NO_ELEVATION_TOOL = "NoElevationTool"


class ConsoleError(RuntimeError):
    pass


class Busy(ConsoleError):
    """Raised synchronously by ``submit`` when the key already has a live operation."""

    def __init__(self, key):
        super().__init__(f"An operation for '{key}' is already in progress")
        self.key = key


class SpawnFailed(ConsoleError):
    def __init__(self, reason):
        super().__init__(f"Could not start process: {reason}")
        self.reason = reason


class NonZeroExit(ConsoleError):
    def __init__(self, code, label=None):
        super().__init__(label or f"Command exited with code {code}")
        self.code = code


class NetworkError(ConsoleError):
    pass


class CacheCorrupt(ConsoleError):
    pass


class OperationCancelled(ConsoleError):
    pass


class PipelineError(ConsoleError):
    """Download, extraction or installation of an archive failed."""
