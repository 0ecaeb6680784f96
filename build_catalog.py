from __future__ import annotations
from dataclasses import asdict, dataclass, replace
from pathlib import Path
import json, re, socket, urllib.error, urllib.request
from packaging.version import InvalidVersion, Version
from errors import NetworkError, PipelineError
from logging_config import setup_logger
from options import Options

logger = setup_logger(__name__)

USER_AGENT = "package-console"
ARCHIVE_SUFFIXES = (".tar.gz", ".tar.xz", ".tar.bz2", ".tgz", ".txz", ".zip")
_LEVEL_RE = re.compile(r"x86[_-]64[_-]v([1-4])", re.IGNORECASE)


def _tokenize(version: str):
    tokens = []
    for raw in re.findall(r"\d+|[A-Za-z]+", version):
        tokens.append((0, int(raw)) if raw.isdigit() else (1, raw.lower()))
    return tokens


def compare_versions(current: str, candidate: str) -> int:
    """1 when candidate is newer, -1 when older, 0 when equivalent.

    PEP 440 ordering when both parse, otherwise token by token with numbers
    compared numerically ("GE-Proton9-20" < "GE-Proton10-3").
    """
    if current == candidate:
        return 0
    try:
        current_parsed, candidate_parsed = Version(current), Version(candidate)
    except InvalidVersion:
        current_tokens, candidate_tokens = _tokenize(current), _tokenize(candidate)
        for index in range(max(len(current_tokens), len(candidate_tokens))):
            a = current_tokens[index] if index < len(current_tokens) else (0, 0)
            b = candidate_tokens[index] if index < len(candidate_tokens) else (0, 0)
            if a != b:
                return 1 if b > a else -1
        return 0
    if candidate_parsed == current_parsed:
        return 0
    return 1 if candidate_parsed > current_parsed else -1


def check_build_name(name) -> str:
    """``name`` if it is usable as one directory name under the install root, else PipelineError."""
    if not isinstance(name, str) or not name.strip() or name in (".", "..") or "/" in name or "\0" in name:
        raise PipelineError(f"Unusable build name: {name!r}")
    return name


def platform_level_from_name(name: str):
    match = _LEVEL_RE.search(name or "")
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class BuildDescriptor:
    name: str
    version: str
    download_url: str
    size_bytes: int = 0
    changelog: str = ""
    installed: bool = False
    installed_version: str | None = None
    min_platform_requirement: int | None = None
    checksum: str | None = None
    runner: str = "GE-Proton"
    release_date: str = ""
    page_url: str = ""

    @property
    def update_available(self) -> bool:
        if not self.installed_version:
            return False
        return compare_versions(self.installed_version, self.version) > 0

    def is_supported(self, cpu_level) -> bool:
        if self.min_platform_requirement is None:
            return True
        if cpu_level is None:
            return self.min_platform_requirement <= 1
        return cpu_level >= self.min_platform_requirement

    @property
    def install_dir_name(self) -> str:
        return check_build_name(self.name)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _pick_asset(assets, asset_position=0):
    for asset in assets:
        url = asset.get("browser_download_url") or ""
        if url.split("?")[0].endswith(ARCHIVE_SUFFIXES):
            return asset
    if 0 <= asset_position < len(assets):
        return assets[asset_position]
    return None


def parse_github_releases(releases, runner="GE-Proton", asset_position=0) -> list:
    """Turn a GitHub releases listing into JSON-friendly build dicts."""
    builds = []
    if not isinstance(releases, list):
        logger.warning(f"Unexpected releases payload for {runner}: {type(releases).__name__}")
        return builds
    for release in releases:
        if not isinstance(release, dict):
            continue
        tag = release.get("tag_name")
        asset = _pick_asset(release.get("assets") or [], asset_position)
        if not tag or asset is None or not asset.get("browser_download_url"):
            continue
        builds.append(BuildDescriptor(
            name=tag,
            version=tag,
            download_url=asset["browser_download_url"],
            size_bytes=int(asset.get("size") or 0),
            changelog=release.get("body") or "",
            min_platform_requirement=platform_level_from_name(asset.get("name") or asset["browser_download_url"]),
            runner=runner,
            release_date=release.get("created_at") or "",
            page_url=release.get("html_url") or "",
        ).to_dict())
    return builds


def parse_runners_json(data, fetch=None) -> list:
    """Builds described by a ProtonPlus-style ``runners.json``.

    Runners of type "github" are expanded through ``fetch(endpoint)``; runners
    carrying an inline "builds" list are taken as they are.
    """
    builds = []
    for layer in (data or {}).get("compat_layers", []):
        if layer.get("title") not in ("Proton", "Wine"):
            continue
        for runner in layer.get("runners", []):
            title = runner.get("title")
            if not title:
                continue
            if isinstance(runner.get("builds"), list):
                for build in runner["builds"]:
                    if isinstance(build, dict) and build.get("name") and build.get("download_url"):
                        entry = dict(build)
                        entry.setdefault("version", entry["name"])
                        entry.setdefault("runner", title)
                        builds.append(BuildDescriptor.from_dict(entry).to_dict())
            elif runner.get("type") == "github" and runner.get("endpoint") and fetch is not None:
                try:
                    releases = fetch(f"{runner['endpoint']}?per_page=25&page=1")
                except NetworkError as e:
                    logger.warning(f"Skipping runner {title}: {e}")
                    continue
                builds.extend(parse_github_releases(releases, title, int(runner.get("asset_position") or 0)))
    return builds


def fetch_json(url, timeout=15):
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except (urllib.error.URLError, socket.timeout, OSError, ValueError) as e:
        raise NetworkError(f"Fetching {url} failed: {e}") from e


def make_proton_fetcher(url=None):
    """Cache fetcher for the "proton-builds" topic. A local path or runners.json file is also accepted."""
    def fetch():
        source = url or Options.proton_catalog_url
        if source.startswith(("http://", "https://", "file://")):
            data = fetch_json(source)
        else:
            try:
                data = json.loads(Path(source).expanduser().read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise NetworkError(f"Reading {source} failed: {e}") from e
        if isinstance(data, dict) and "compat_layers" in data:
            return parse_runners_json(data, fetch=fetch_json)
        return parse_github_releases(data)
    return fetch


def installed_builds(install_root=None) -> dict:
    """Map of directory name to the version recorded inside it (or the name itself)."""
    root = Path(install_root or Options.install_root)
    found = {}
    if not root.is_dir():
        return found
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        version_file = entry / "version"
        version = entry.name
        if version_file.is_file():
            try:
                parts = version_file.read_text(encoding="utf-8", errors="replace").split()
                version = parts[-1] if parts else entry.name
            except OSError:
                pass
        found[entry.name] = version
    return found


def load_catalog(payload, install_root=None) -> list:
    """BuildDescriptors from a cached payload, annotated with local install state."""
    installed = installed_builds(install_root)
    latest_installed = {}
    for name, version in installed.items():
        runner = re.sub(r"[-_.]?\d.*$", "", name) or name
        current = latest_installed.get(runner)
        if current is None or compare_versions(current, version) > 0:
            latest_installed[runner] = version

    builds = []
    for item in payload or []:
        try:
            build = BuildDescriptor.from_dict(item)
            check_build_name(build.name)
        except (TypeError, PipelineError) as e:
            logger.warning(f"Skipping malformed catalog entry: {e}")
            continue
        if build.name in installed:
            build = replace(build, installed=True, installed_version=installed[build.name])
        else:
            family = re.sub(r"[-_.]?\d.*$", "", build.name) or build.name
            if family in latest_installed:
                build = replace(build, installed_version=latest_installed[family])
        builds.append(build)
    return builds


def find_build(builds, name):
    for build in builds:
        if build.name == name:
            return build
    return None


def latest_build(builds, runner=None):
    best = None
    for build in builds:
        if runner and build.runner != runner:
            continue
        if best is None or compare_versions(best.version, build.version) > 0:
            best = build
    return best
