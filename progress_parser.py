from __future__ import annotations
from dataclasses import dataclass
import re
from logging_config import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class PercentUpdate:
    value: int | None


@dataclass(frozen=True)
class StageChanged:
    name: str


@dataclass(frozen=True)
class LogLine:
    text: str
    stream: str = "stdout"


@dataclass(frozen=True)
class ByteProgress:
    received: int
    total: int | None = None


@dataclass(frozen=True)
class Completed:
    message: str = ""


@dataclass(frozen=True)
class Failed:
    message: str
    log_tail: tuple = ()


@dataclass(frozen=True)
class Cancelled:
    message: str = "Cancelled by operator"


@dataclass(frozen=True)
class Advisory:
    topic: str
    message: str


@dataclass(frozen=True)
class Reconciled:
    key: str
    value: object


TERMINAL_EVENTS = (Completed, Failed, Cancelled)


def is_terminal(event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


class ProgressTracker:
    """Clamps percentages to 0..100 and never lets them go backwards."""

    def __init__(self):
        self.current: int | None = None

    def update(self, value):
        if value is None:
            return self.current
        try:
            value = int(round(float(value)))
        except (TypeError, ValueError):
            return self.current
        value = max(0, min(100, value))
        if self.current is None or value > self.current:
            self.current = value
        return self.current

    def reset(self):
        self.current = None


PARSERS = {}

_PERCENT_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s?%")
_FRACTION_RE = re.compile(r"[\[(]\s*(\d+)\s*/\s*(\d+)\s*[\])]")
_TRAILING_FRACTION_RE = re.compile(r"\s(\d+)\s*/\s*(\d+)\s*$")


def register_parser(name):
    def decorator(func):
        PARSERS[name] = func
        return func
    return decorator


def get_parser(name):
    parser = PARSERS.get(name)
    if parser is None:
        logger.warning(f"Unknown parser '{name}', using generic")
        return PARSERS["generic"]
    return parser


def parse_line(parser, text: str, stream: str = "stdout") -> list:
    """Run a parser on one line. Never raises. Blank lines and lines a broken parser chokes on become a bare log line."""
    if not text.strip():
        return [LogLine(text, stream)]
    if isinstance(parser, str):
        parser = get_parser(parser)
    try:
        events = list(parser(text, stream))
    except Exception as e:
        logger.debug(f"Parser {getattr(parser, '__name__', parser)} failed on {text!r}: {e}")
        return [LogLine(text, stream)]
    if not any(isinstance(event, LogLine) for event in events):
        events.insert(0, LogLine(text, stream))
    return events


def _percent(text):
    match = _PERCENT_RE.search(text)
    if match:
        value = float(match.group(1))
        if value <= 100:
            return value
    return None


def _fraction_percent(done, total):
    done, total = int(done), int(total)
    if total <= 0:
        return None
    return min(done, total) * 100 / total


@register_parser("generic")
def parse_generic(text, stream="stdout"):
    events = [LogLine(text, stream)]
    value = _percent(text)
    if value is not None:
        events.append(PercentUpdate(value))
    return events


@register_parser("plain")
def parse_plain(text, stream="stdout"):
    return [LogLine(text, stream)]


@register_parser("dnf")
def parse_dnf(text, stream="stdout"):
    events = [LogLine(text, stream)]
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered.startswith(("downloading packages", "[downloading")):
        events.append(StageChanged("Downloading"))
    elif lowered.startswith(("running transaction", "[running transaction")):
        events.append(StageChanged("Installing"))
    elif lowered.startswith("verifying"):
        events.append(StageChanged("Verifying"))

    match = _FRACTION_RE.search(stripped) if stripped.startswith("[") else None
    if match is None and re.match(r"^(Installing|Upgrading|Removing|Erasing|Cleanup|Verifying|Reinstalling|Downgrading|Running scriptlet)\b", stripped):
        match = _TRAILING_FRACTION_RE.search(stripped)
    if match:
        value = _fraction_percent(*match.groups())
        if value is not None:
            events.append(PercentUpdate(value))

    if stripped in ("Complete!", "Nothing to do.", "Nothing to do") or lowered == "transaction complete":
        events.append(Completed(stripped))
    elif stripped.startswith("Error:") or lowered.startswith("no match for argument"):
        events.append(Failed(stripped))
    return events


@register_parser("apt")
def parse_apt(text, stream="stdout"):
    events = [LogLine(text, stream)]
    stripped = text.strip()
    if stripped.startswith("Reading package lists") or stripped.startswith("Building dependency tree"):
        events.append(StageChanged("Resolving"))
    elif re.match(r"^(Get|Hit|Ign):\d+", stripped):
        events.append(StageChanged("Downloading"))
    elif stripped.startswith(("Unpacking ", "Setting up ", "Removing ", "Preparing to unpack")):
        events.append(StageChanged("Installing"))

    match = re.search(r"Progress:\s*\[\s*(\d{1,3})%\]", stripped)
    if match:
        events.append(PercentUpdate(int(match.group(1))))
    if stripped.startswith("E:"):
        events.append(Failed(stripped[2:].strip() or stripped))
    return events


@register_parser("pacman")
def parse_pacman(text, stream="stdout"):
    events = [LogLine(text, stream)]
    stripped = text.strip()
    lowered = stripped.lower()
    if "/var/lib/pacman/db.lck" in stripped:
        events.append(Failed("Package database is locked: /var/lib/pacman/db.lck"))
        return events
    if lowered.startswith("resolving dependencies"):
        events.append(StageChanged("Resolving"))
    elif lowered.startswith(":: retrieving packages"):
        events.append(StageChanged("Downloading"))
    elif lowered.startswith(":: processing package changes"):
        events.append(StageChanged("Installing"))
    elif lowered.startswith(":: running post-transaction hooks"):
        events.append(StageChanged("Hooks"))

    match = re.match(r"^\(\s*(\d+)\s*/\s*(\d+)\)\s+(installing|upgrading|removing|reinstalling|downgrading)\b", lowered)
    if match:
        value = _fraction_percent(match.group(1), match.group(2))
        if value is not None:
            events.append(PercentUpdate(value))
    if lowered.startswith("error:"):
        events.append(Failed(stripped[6:].strip()))
    elif lowered == "there is nothing to do":
        events.append(Completed(stripped))
    return events


@register_parser("flatpak")
def parse_flatpak(text, stream="stdout"):
    events = [LogLine(text, stream)]
    stripped = text.strip()
    lowered = stripped.lower()
    match = re.match(r"^(Installing|Updating|Uninstalling)\s+(\d+)/(\d+)", stripped)
    if match:
        events.append(StageChanged(match.group(1)))
    value = _percent(stripped)
    if value is not None:
        events.append(PercentUpdate(value))
    if lowered in ("installation complete.", "updates complete.", "uninstall complete.", "changes complete."):
        events.append(Completed(stripped))
    elif lowered.startswith("nothing to do"):
        events.append(Completed(stripped))
    elif lowered.startswith("error:"):
        events.append(Failed(stripped[6:].strip()))
    return events


@register_parser("alien")
def parse_alien(text, stream="stdout"):
    events = [LogLine(text, stream)]
    stripped = text.strip()
    if stripped.lower().startswith("warning: alien is not running as root"):
        events.append(Failed("alien must run with elevated privileges"))
    elif stripped.endswith(" generated") and ".rpm" in stripped:
        events.append(StageChanged("Generated"))
        events.append(PercentUpdate(100))
        events.append(Completed(stripped))
    elif stripped.startswith(("Unpacking", "Converting")) or "rpmbuild" in stripped:
        events.append(StageChanged("Converting"))
    return events


@register_parser("download")
def parse_download(text, stream="stdout"):
    events = [LogLine(text, stream)]
    match = re.search(r"(\d+)\s*/\s*(\d+)\s*bytes", text)
    if match:
        received, total = int(match.group(1)), int(match.group(2))
        events.append(ByteProgress(received, total or None))
        if total:
            events.append(PercentUpdate(received * 100 / total))
        return events
    value = _percent(text)
    if value is not None:
        events.append(PercentUpdate(value))
    return events
