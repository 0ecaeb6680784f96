from __future__ import annotations
from pathlib import Path, PurePosixPath
import hashlib, os, shutil, socket, tarfile, tempfile, urllib.error, urllib.parse, urllib.request, zipfile
from build_catalog import USER_AGENT, BuildDescriptor, check_build_name
from errors import NetworkError, OperationCancelled, PipelineError
from logging_config import setup_logger
from operation import Operation
from options import Options

logger = setup_logger(__name__)

CHUNK_SIZE = 64 * 1024
DOWNLOAD_SHARE = (0, 70)
EXTRACT_SHARE = (70, 95)
INSTALL_SHARE = (95, 100)


def _scaled(share, done, total):
    low, high = share
    if not total:
        return low
    return low + (high - low) * min(done, total) / total


def _inside(root: str, path: str) -> bool:
    return os.path.commonpath([root, path]) == root


def check_member_name(name: str, root: str) -> str:
    """Destination of an archive member under root, or PipelineError if it would escape."""
    pure = PurePosixPath(name)
    if not name or pure.is_absolute() or name.startswith("\\"):
        raise PipelineError(f"Archive contains an absolute path: {name}")
    if ".." in pure.parts:
        raise PipelineError(f"Archive contains a parent-directory entry: {name}")
    destination = os.path.normpath(os.path.join(root, *pure.parts))
    if not _inside(root, destination):
        raise PipelineError(f"Archive entry escapes the target directory: {name}")
    return destination


def check_tar_member(member: tarfile.TarInfo, root: str):
    destination = check_member_name(member.name, root)
    if member.isdev() or member.isfifo():
        raise PipelineError(f"Archive contains a device or fifo entry: {member.name}")
    if member.issym():
        if os.path.isabs(member.linkname):
            raise PipelineError(f"Archive contains an absolute symlink: {member.name} -> {member.linkname}")
        target = os.path.normpath(os.path.join(os.path.dirname(destination), member.linkname))
        if not _inside(root, target):
            raise PipelineError(f"Archive symlink leaves the tree: {member.name} -> {member.linkname}")
    elif member.islnk():
        target = os.path.normpath(os.path.join(root, member.linkname))
        if os.path.isabs(member.linkname) or not _inside(root, target):
            raise PipelineError(f"Archive hard link leaves the tree: {member.name} -> {member.linkname}")
    return destination


class DownloadPipeline(Operation):
    """Downloads a build archive, extracts it into a staging directory and swaps it into place.

    The staging directory lives under the install root so the final move is a
    rename on one filesystem. An existing install is moved aside first and put
    back if the swap fails.
    """

    def __init__(self, key, build: BuildDescriptor, install_root=None, chunk_size=CHUNK_SIZE, timeout=30):
        super().__init__(key)
        self.build = build
        self.install_root = Path(install_root or Options.install_root).expanduser()
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.staging_dir = None
        self.set_stage("Queued")

    @property
    def target_dir(self) -> Path:
        return self.install_root / self.build.install_dir_name

    def run(self):
        try:
            self.check_cancelled()
            check_build_name(self.build.name)
            self.install_root.mkdir(parents=True, exist_ok=True)
            self.staging_dir = Path(tempfile.mkdtemp(prefix=f".staging-{self.build.name}-", dir=self.install_root))
            try:
                archive = self._download()
                self.check_cancelled()
                tree = self._extract(archive)
                self.check_cancelled()
                self._install(tree)
            finally:
                shutil.rmtree(self.staging_dir, ignore_errors=True)
        except OperationCancelled:
            self.set_stage("Cancelled")
            raise
        except Exception:
            self.set_stage("Failed")
            raise
        self.set_stage("Done")

    def _archive_name(self):
        path = urllib.parse.urlparse(self.build.download_url).path
        return os.path.basename(path) or f"{self.build.name}.tar.gz"

    def _download(self) -> Path:
        self.set_stage("Downloading")
        archive = self.staging_dir / self._archive_name()
        self.log_line(f"Downloading {self.build.download_url}")
        request = urllib.request.Request(self.build.download_url, headers={"User-Agent": USER_AGENT})
        digest = hashlib.sha256()
        received = 0
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response, open(archive, "wb") as out:
                length = response.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() and int(length) > 0 else None
                self.set_bytes(0, total)
                if total is None:
                    self.set_progress(None)
                for chunk in iter(lambda: response.read(self.chunk_size), b""):
                    self.check_cancelled()
                    out.write(chunk)
                    digest.update(chunk)
                    received += len(chunk)
                    self.set_bytes(received, total)
                    if total:
                        self.set_progress(_scaled(DOWNLOAD_SHARE, received, total))
        except (urllib.error.URLError, socket.timeout, ConnectionError) as e:
            raise NetworkError(f"Download of {self.build.name} failed: {e}") from e

        self.log_line(f"Downloaded {received} bytes")
        if received == 0:
            raise PipelineError(f"Downloaded archive for {self.build.name} is empty")
        if self.build.checksum:
            actual = digest.hexdigest()
            if actual.lower() != self.build.checksum.strip().lower():
                raise PipelineError(f"Checksum mismatch for {self.build.name}: expected {self.build.checksum}, got {actual}")
            self.log_line("Checksum verified")
        self.set_progress(DOWNLOAD_SHARE[1])
        return archive

    def _extract(self, archive: Path) -> Path:
        self.set_stage("Extracting")
        destination = self.staging_dir / "tree"
        destination.mkdir()
        if zipfile.is_zipfile(archive):
            count = self._extract_zip(archive, destination)
        elif tarfile.is_tarfile(archive):
            count = self._extract_tar(archive, destination)
        else:
            raise PipelineError(f"Unsupported archive format: {archive.name}")
        self.log_line(f"Extracted {count} entries")
        self.set_progress(EXTRACT_SHARE[1])

        children = [child for child in destination.iterdir()]
        if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
            return children[0]
        return destination

    def _extract_tar(self, archive: Path, destination: Path) -> int:
        root = str(destination.resolve())
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = tar.getmembers()
                if not members:
                    raise PipelineError(f"Archive {archive.name} has no members")
                for member in members:
                    check_tar_member(member, root)
                for index, member in enumerate(members, 1):
                    self.check_cancelled()
                    tar.extract(member, path=root, set_attrs=True, filter="data")
                    self.set_progress(_scaled(EXTRACT_SHARE, index, len(members)))
                return len(members)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise PipelineError(f"Extraction of {archive.name} failed: {e}") from e

    def _extract_zip(self, archive: Path, destination: Path) -> int:
        root = str(destination.resolve())
        try:
            with zipfile.ZipFile(archive) as bundle:
                members = [m for m in bundle.infolist() if m.filename]
                if not members:
                    raise PipelineError(f"Archive {archive.name} has no members")
                targets = [check_member_name(m.filename, root) for m in members]
                for index, (member, target) in enumerate(zip(members, targets), 1):
                    self.check_cancelled()
                    if member.is_dir():
                        os.makedirs(target, exist_ok=True)
                    else:
                        os.makedirs(os.path.dirname(target), exist_ok=True)
                        with bundle.open(member) as source, open(target, "wb") as out:
                            shutil.copyfileobj(source, out)
                        mode = (member.external_attr >> 16) & 0o777
                        if mode:
                            os.chmod(target, mode)
                    self.set_progress(_scaled(EXTRACT_SHARE, index, len(members)))
                return len(members)
        except (zipfile.BadZipFile, OSError) as e:
            raise PipelineError(f"Extraction of {archive.name} failed: {e}") from e

    def _install(self, tree: Path):
        self.set_stage("Installing")
        target = self.target_dir
        backup = None
        if target.exists() or target.is_symlink():
            backup = self.staging_dir / "previous"
            os.rename(target, backup)
            self.log_line(f"Moved existing {target.name} aside")
        self.set_progress(_scaled(INSTALL_SHARE, 1, 2))
        try:
            os.rename(tree, target)
        except OSError as e:
            if backup is not None:
                os.rename(backup, target)
                logger.warning(f"Restored previous install of {target.name}")
            raise PipelineError(f"Installing {self.build.name} failed: {e}") from e
        self.log_line(f"Installed {self.build.name} to {target}")
        self.set_progress(INSTALL_SHARE[1])
