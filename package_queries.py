from __future__ import annotations
from dataclasses import dataclass
import re
from errors import ConsoleError, NonZeroExit, OperationCancelled, SpawnFailed
from logging_config import setup_logger
from operation import CommandOperation, OperationState
from process_runner import RunOutcome
from progress_parser import Completed, Failed, LogLine

logger = setup_logger(__name__)

REPOQUERY_FORMAT = "%{name}|%{version}|%{release}|%{arch}|%{summary}|%{description}|%{size}"
_INFO_FIELDS = ("Name", "Version", "Release", "Architecture", "Arch", "Summary", "Description", "Installed size",
                "Download size", "Installed Size", "Download Size", "Size", "URL", "License", "Vendor", "Source", "Repository", "From repo", "Epoch",
                "Packager", "Buildtime", "Install Date", "Installed-Size", "Package", "Depends", "Section",
                "Maintainer", "Priority", "Homepage")


@dataclass(frozen=True)
class SearchResult:
    name: str
    arch: str = ""
    summary: str = ""
    version: str = ""


@dataclass
class PackageInfo:
    name: str
    version: str = ""
    release: str = ""
    arch: str = ""
    summary: str = ""
    description: str = ""
    size: str = ""


def parse_size(text: str):
    """Bytes for strings like "12.5 MiB" or "300 k"; None if unparseable."""
    parts = (text or "").strip().split()
    if not parts:
        return None
    match = re.match(r"^([\d.,]+)([A-Za-z]*)$", parts[0])
    if not match:
        return None
    try:
        number = float(match.group(1).replace(",", "."))
    except ValueError:
        return None
    unit = (parts[1] if len(parts) > 1 else match.group(2) or "b").lower()
    multipliers = {"k": 1024, "kb": 1024, "kib": 1024,
                   "m": 1024 ** 2, "mb": 1024 ** 2, "mib": 1024 ** 2,
                   "g": 1024 ** 3, "gb": 1024 ** 3, "gib": 1024 ** 3,
                   "t": 1024 ** 4, "tb": 1024 ** 4, "tib": 1024 ** 4}
    return int(number * multipliers.get(unit, 1))


def format_size(size_bytes) -> str:
    units = ["B", "KB", "MB", "GB"]
    size = float(size_bytes or 0)
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{size:.2f} {units[index]}"


def _human_size(raw):
    raw = (raw or "").strip()
    if not raw:
        return ""
    parsed = parse_size(raw)
    return format_size(parsed) if parsed is not None else raw


def parse_repoquery_output(text: str) -> list:
    """Pipe separated ``REPOQUERY_FORMAT`` lines, first occurrence of each name wins."""
    packages, seen = [], set()
    for line in text.splitlines():
        parts = [part.strip() for part in line.strip().split("|")]
        if len(parts) < 4 or not parts[0] or parts[0] in seen:
            continue
        seen.add(parts[0])
        parts += [""] * (7 - len(parts))
        packages.append(PackageInfo(parts[0], parts[1], parts[2], parts[3], parts[4], parts[5], _human_size(parts[6])))
    return packages


def parse_search_output(text: str, family="dnf") -> list:
    results, seen = [], set()
    lines = text.splitlines()
    if family == "dnf":
        for line in lines:
            if "|" in line:
                for info in parse_repoquery_output(line):
                    if info.name not in seen:
                        seen.add(info.name)
                        results.append(SearchResult(info.name, info.arch, info.summary, info.version))
                continue
            match = re.match(r"^\s*([\w.+-]+?)\.(\w+)\s+:\s*(.*)$", line)
            if match and match.group(1) not in seen:
                seen.add(match.group(1))
                results.append(SearchResult(match.group(1), match.group(2), match.group(3).strip()))
        return results

    if family == "zypper":
        for line in lines:
            columns = [column.strip() for column in line.split("|")]
            if len(columns) >= 3 and columns[1] and columns[1] != "Name" and columns[1] not in seen:
                seen.add(columns[1])
                results.append(SearchResult(columns[1], "", columns[2]))
        return results

    # apt ("name/suite version arch") and pacman ("repo/name version") print the summary on the next line
    pending = None
    for line in lines:
        if not line.strip() or line.startswith(("Sorting", "Full Text Search", "WARNING")):
            continue
        if line[:1].isspace():
            if pending is not None:
                name, arch, version = pending
                results.append(SearchResult(name, arch, line.strip(), version))
                pending = None
            continue
        if pending is not None:
            results.append(SearchResult(*pending[:2], "", pending[2]))
        fields = line.split()
        if family == "pacman":
            name = fields[0].split("/", 1)[-1]
            pending = (name, "", fields[1] if len(fields) > 1 else "")
        else:
            name = fields[0].split("/", 1)[0]
            pending = (name, fields[2] if len(fields) > 2 else "", fields[1] if len(fields) > 1 else "")
        if pending[0] in seen:
            pending = None
        else:
            seen.add(pending[0])
    if pending is not None:
        results.append(SearchResult(*pending[:2], "", pending[2]))
    return results


def _field(line):
    if ":" not in line:
        return None, None
    key, value = line.split(":", 1)
    key = key.strip()
    if key in _INFO_FIELDS:
        return key, value.strip()
    return None, None


def parse_info_output(text: str, fallback_name="") -> PackageInfo:
    info = PackageInfo(fallback_name)
    description = []
    in_description = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        key, value = _field(line)
        if key is None:
            if in_description:
                description.append(line.lstrip(":").strip())
            continue
        in_description = False
        if key in ("Name", "Package"):
            if value and not info.version:
                info.name = value
            elif value and info.version:
                # Second package block, keep the first one
                break
        elif key == "Version":
            info.version = value
        elif key == "Release":
            info.release = value
        elif key in ("Architecture", "Arch"):
            info.arch = value
        elif key == "Summary":
            info.summary = value
        elif key in ("Installed size", "Installed Size", "Installed-Size"):
            parsed = parse_size(f"{value} k" if key == "Installed-Size" else value)
            info.size = format_size(parsed) if parsed is not None else value
        elif key in ("Download size", "Download Size", "Size") and not info.size:
            info.size = _human_size(value)
        elif key == "Description":
            in_description = True
            if value:
                description.append(value)
    info.description = " ".join(part for part in description if part).strip()
    if not info.description:
        info.description = info.summary
    if not info.summary and info.description:
        info.summary = info.description[:100]
    return info


class QueryOperation(CommandOperation):
    """Read-only command whose output is interpreted once it exits.

    ``interpret(status, stdout, stderr)`` returns the result or raises
    NonZeroExit; the result ends up in ``self.result`` and the snapshot.
    """

    def __init__(self, key, spawn_spec, interpret, **kwargs):
        super().__init__(key, spawn_spec, "plain", **kwargs)
        self.interpret = interpret
        self.error = None
        self._stdout = []
        self._stderr = []

    def emit(self, event):
        if isinstance(event, LogLine) and event.stream in ("stdout", "stderr"):
            (self._stdout if event.stream == "stdout" else self._stderr).append(event.text)
        super().emit(event)

    def run(self):
        super().run()
        status = self.runner.wait()
        if status.outcome is RunOutcome.SPAWN_FAILED:
            self.error = SpawnFailed(status.reason)
            return
        try:
            self.result = self.interpret(status, "\n".join(self._stdout), "\n".join(self._stderr))
        except NonZeroExit as e:
            self.error = e
            self._verdict = Failed(str(e))
            return
        self._verdict = Completed()


def _last_line(text):
    lines = text.strip().splitlines()
    return lines[-1] if lines else None


def search_operation(helper, text, key=None) -> QueryOperation:
    family = helper.package_family

    def interpret(status, out, err):
        # dnf/apt exit non-zero for "no matches" as well as for real failures
        if status.ok or out.strip() or not err.strip() or "no match" in err.lower():
            return parse_search_output(out, family)
        raise NonZeroExit(status.code, _last_line(err))

    return QueryOperation(key or f"search:{text.strip()}", helper.search_spec(text), interpret)


def info_operation(helper, name, key=None) -> QueryOperation:
    def interpret(status, out, err):
        if not status.ok:
            raise NonZeroExit(status.code, _last_line(err) or f"No information for '{name}'")
        return parse_info_output(out, name)

    return QueryOperation(key or f"info:{name}", helper.info_spec(name), interpret)


def run_query(operation: QueryOperation, token=None):
    """Execute on the calling thread, e.g. a search worker. Returns None when cancelled."""
    if token is not None:
        token.on_cancel(operation.cancel)
    operation.execute()
    if operation.state is OperationState.SUCCEEDED:
        return operation.result
    if operation.state is OperationState.CANCELLED:
        return None
    raise operation.error or ConsoleError(operation.reason)


def search_packages(helper, text, token=None) -> list:
    """Run the distro search for ``text``. Returns [] when cancelled."""
    return run_query(search_operation(helper, text), token) or []


def package_info(helper, name, token=None) -> PackageInfo:
    info = run_query(info_operation(helper, name), token)
    if info is None:
        raise OperationCancelled(f"Query for '{name}' was cancelled")
    return info
