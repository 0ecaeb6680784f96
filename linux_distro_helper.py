from pathlib import Path
import subprocess, platform, os, re, shlex, json, configparser, concurrent.futures
from build_catalog import fetch_json
from errors import NetworkError
from logging_config import setup_logger
from options import Options
from process_runner import SpawnSpec

logger = setup_logger(__name__)

PACKAGE_NAME_REGEX = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9._+:-]*$')
FLATPAK_REF_REGEX = re.compile(r'^[A-Za-z0-9._/-]+$')
REPO_ID_REGEX = re.compile(r'^[A-Za-z0-9._:@+-]+$')
LD_SO_PATH = "/lib64/ld-linux-x86-64.so.2"
SCHED_EXT_OPS = "/sys/kernel/sched_ext/root/ops"

ARCH_IDS = ["arch", "manjaro", "endeavouros", "cachyos"]
DEBIAN_IDS = ["debian", "ubuntu", "pop", "mint", "linuxmint", "elementary"]
FEDORA_IDS = ["fedora", "rhel", "centos", "rocky", "almalinux", "nobara"]
SUSE_IDS = ["opensuse", "opensuse-leap", "opensuse-tumbleweed", "suse"]
KNOWN_IDS = ARCH_IDS + DEBIAN_IDS + FEDORA_IDS + SUSE_IDS

PACMAN_REMOVE_ORPHANS = ("orphans=$(pacman -Qdtq); if [ -z \"$orphans\" ]; then echo 'there is nothing to do'; "
                         "else pacman -Rns --noconfirm $orphans; fi")
ZYPPER_REMOVE_ORPHANS = ("zypper --non-interactive remove --clean-deps "
                         "$(zypper --quiet packages --unneeded | awk -F'|' 'NR>2 {print $3}')")


class LinuxDistroHelper:
    def __init__(self, os_release="/etc/os-release", distro_id=None):
        info = self._detect_distro_info(os_release)
        self.distro_id = distro_id or info["id"]
        self.distro_name = info["name"]
        self.distro_pretty_name = info["pretty_name"]

        self.package_family = None
        self.parser = "generic"
        self.pkg_check_installed = None
        self.pkg_install = []
        self.pkg_update_all = []
        self.pkg_update = []
        self.pkg_remove = []
        self.pkg_search = []
        self.pkg_info = []
        self.maintenance = {}
        self.repo_dir = None
        self.repo_toggle = None

        self._setup_commands()

    @staticmethod
    def _detect_distro_info(path="/etc/os-release"):
        distro_info = {"id": "unknown", "name": "", "pretty_name": "", "id_like": ""}
        try:
            with open(path) as f:
                for line in f:
                    if line.startswith("ID="):
                        distro_info["id"] = line.strip().split("=", 1)[1].strip('"').lower()
                    elif line.startswith("ID_LIKE="):
                        distro_info["id_like"] = line.strip().split("=", 1)[1].strip('"').lower()
                    elif line.startswith("NAME="):
                        distro_info["name"] = line.strip().split("=", 1)[1].strip('"')
                    elif line.startswith("PRETTY_NAME="):
                        distro_info["pretty_name"] = line.strip().split("=", 1)[1].strip('"')
        except OSError as e:
            logger.error(f"Error when reading {path}: {e}")
            distro_info["id"] = platform.system().lower()
        if distro_info["id"] not in KNOWN_IDS:
            for like in distro_info["id_like"].split():
                if like in KNOWN_IDS:
                    distro_info["id"] = like
                    break
        return distro_info

    def _setup_commands(self):
        distro = self.distro_id

        if distro in ARCH_IDS:
            self.package_family = self.parser = "pacman"
            self.pkg_check_installed = lambda pkg: ["pacman", "-Qi", pkg]
            self.pkg_install = ["pacman", "-S", "--noconfirm", "--needed"]
            self.pkg_update_all = ["pacman", "-Syu", "--noconfirm"]
            self.pkg_update = ["pacman", "-S", "--noconfirm"]
            self.pkg_remove = ["pacman", "-Rns", "--noconfirm"]
            self.pkg_search = ["pacman", "-Ss"]
            self.pkg_info = ["pacman", "-Si"]
            self.maintenance = {
                "rebuild_kernel_modules": ["dkms", "autoinstall"],
                "regenerate_initramfs": ["mkinitcpio", "-P"],
                "remove_orphaned_packages": ["bash", "-c", PACMAN_REMOVE_ORPHANS],
                "clean_package_cache": ["pacman", "-Scc", "--noconfirm"],
            }

        elif distro in DEBIAN_IDS:
            self.package_family = self.parser = "apt"
            self.pkg_check_installed = lambda pkg: ["dpkg", "-s", pkg]
            self.pkg_install = ["apt-get", "install", "-y", "-o", "Dpkg::Progress-Fancy=1"]
            self.pkg_update_all = ["bash", "-c", "apt-get update && apt-get upgrade -y -o Dpkg::Progress-Fancy=1"]
            self.pkg_update = ["apt-get", "install", "--only-upgrade", "-y", "-o", "Dpkg::Progress-Fancy=1"]
            self.pkg_remove = ["apt-get", "remove", "-y"]
            self.pkg_search = ["apt-cache", "search", "--names-only"]
            self.pkg_info = ["apt-cache", "show"]
            self.maintenance = {
                "rebuild_kernel_modules": ["dkms", "autoinstall"],
                "regenerate_initramfs": ["update-initramfs", "-u", "-k", "all"],
                "remove_orphaned_packages": ["apt-get", "autoremove", "-y"],
                "clean_package_cache": ["apt-get", "clean"],
            }

        elif distro in FEDORA_IDS:
            self.package_family = self.parser = "dnf"
            self.pkg_check_installed = lambda pkg: ["rpm", "-q", pkg]
            self.pkg_install = ["dnf", "install", "-y", "--assumeyes"]
            self.pkg_update_all = ["dnf", "upgrade", "-y", "--assumeyes"]
            self.pkg_update = ["dnf", "upgrade", "-y", "--assumeyes"]
            self.pkg_remove = ["dnf", "remove", "-y", "--assumeyes"]
            self.pkg_search = ["dnf", "repoquery", "--quiet", "--qf",
                               "%{name}|%{version}|%{release}|%{arch}|%{summary}|%{description}|%{size}\n"]
            self.pkg_info = ["dnf", "info"]
            self.repo_dir = "/etc/yum.repos.d"
            self.repo_toggle = lambda repo, enable: ["dnf", "config-manager", "--set-enabled" if enable else "--set-disabled", repo]
            self.maintenance = {
                "rebuild_kernel_modules": ["akmods", "--force", "--rebuild"],
                "regenerate_initramfs": ["dracut", "-f", "--regenerate-all"],
                "remove_orphaned_packages": ["dnf", "autoremove", "-y", "--assumeyes"],
                "clean_package_cache": ["dnf", "clean", "all"],
            }

        elif distro in SUSE_IDS:
            self.package_family = "zypper"
            self.pkg_check_installed = lambda pkg: ["rpm", "-q", pkg]
            self.pkg_install = ["zypper", "--non-interactive", "install"]
            self.pkg_update_all = ["zypper", "--non-interactive", "update"]
            self.pkg_update = ["zypper", "--non-interactive", "update"]
            self.pkg_remove = ["zypper", "--non-interactive", "remove"]
            self.pkg_search = ["zypper", "--quiet", "search"]
            self.pkg_info = ["zypper", "info"]
            self.repo_dir = "/etc/zypp/repos.d"
            self.repo_toggle = lambda repo, enable: ["zypper", "--non-interactive", "modifyrepo", "--enable" if enable else "--disable", repo]
            self.maintenance = {
                "regenerate_initramfs": ["dracut", "-f", "--regenerate-all"],
                "remove_orphaned_packages": ["bash", "-c", ZYPPER_REMOVE_ORPHANS],
                "clean_package_cache": ["zypper", "clean", "--all"],
            }

        else:
            logger.warning(f"Unknown distribution: {distro}, package operations are unavailable")
            self.pkg_check_installed = lambda pkg: ["which", pkg]

    @property
    def supported(self) -> bool:
        return self.package_family is not None

    def _require(self, template, what):
        if not template:
            raise ValueError(f"{what} is not supported on '{self.distro_id}'")
        return list(template)

    @staticmethod
    def _spec(command, extra=(), elevate=True, cwd=None):
        return SpawnSpec(command[0], tuple(command[1:]) + tuple(extra), elevate=elevate, cwd=cwd)

    def _valid_packages(self, packages):
        names = [pkg.strip() for pkg in packages if isinstance(pkg, str)]
        invalid = [pkg for pkg in names if not self._is_valid_package_name(pkg)]
        if invalid or not names:
            raise ValueError(f"Invalid package name(s): {', '.join(invalid) or '(none)'}")
        return names

    def install_spec(self, packages) -> SpawnSpec:
        return self._spec(self._require(self.pkg_install, "Install"), self._valid_packages(packages))

    def remove_spec(self, packages) -> SpawnSpec:
        return self._spec(self._require(self.pkg_remove, "Remove"), self._valid_packages(packages))

    def update_spec(self, packages=None) -> SpawnSpec:
        if not packages:
            return self._spec(self._require(self.pkg_update_all, "Update"))
        return self._spec(self._require(self.pkg_update, "Update"), self._valid_packages(packages))

    def search_spec(self, text) -> SpawnSpec:
        term = text.strip()
        if self.package_family == "dnf":
            term = f"*{term}*"
        return self._spec(self._require(self.pkg_search, "Search"), [term], elevate=False)

    def info_spec(self, package) -> SpawnSpec:
        return self._spec(self._require(self.pkg_info, "Info"), self._valid_packages([package]), elevate=False)

    def kernel_install_spec(self, packages) -> SpawnSpec:
        return self.install_spec(packages)

    def kernel_remove_spec(self, packages) -> SpawnSpec:
        return self.remove_spec(packages)

    def maintenance_spec(self, task) -> SpawnSpec:
        command = self.maintenance.get(task)
        if command is None:
            raise ValueError(f"Maintenance task '{task}' is not supported on '{self.distro_id}'")
        return self._spec(command)

    @staticmethod
    def _valid_refs(refs):
        refs = [ref.strip() for ref in refs if isinstance(ref, str) and ref.strip()]
        if any(not FLATPAK_REF_REGEX.match(ref) for ref in refs):
            raise ValueError(f"Invalid Flatpak ref(s): {', '.join(refs)}")
        return refs

    def flatpak_install_spec(self, refs, remote="flathub", user=False) -> SpawnSpec:
        scope = ["--user"] if user else ["--system"]
        return SpawnSpec("flatpak", ("install", "-y", "--noninteractive", *scope, remote, *self._valid_refs(refs)),
                         elevate=not user)

    def flatpak_uninstall_spec(self, refs, user=False) -> SpawnSpec:
        scope = ["--user"] if user else ["--system"]
        return SpawnSpec("flatpak", ("uninstall", "-y", "--noninteractive", *scope, *self._valid_refs(refs)),
                         elevate=not user)

    def flatpak_update_spec(self, refs=(), user=False) -> SpawnSpec:
        scope = ["--user"] if user else ["--system"]
        return SpawnSpec("flatpak", ("update", "-y", "--noninteractive", *scope, *self._valid_refs(refs)),
                         elevate=not user)

    @staticmethod
    def flatpak_remotes_spec() -> SpawnSpec:
        return SpawnSpec("flatpak", ("remotes", "--columns=name,url,options"))

    def flatpak_remote_toggle_spec(self, remote, enable) -> SpawnSpec:
        name = self._valid_refs([remote])[0]
        return SpawnSpec("flatpak", ("remote-modify", "--enable" if enable else "--disable", name), elevate=True)

    def _require_repos(self):
        if not self.repo_dir or self.repo_toggle is None:
            raise ValueError(f"Repository management is not supported on '{self.distro_id}'")

    def repo_list_spec(self) -> SpawnSpec:
        self._require_repos()
        if self.package_family == "zypper":
            return SpawnSpec("zypper", ("--non-interactive", "repos", "--details"))
        return SpawnSpec("dnf", ("repolist", "--all"))

    def list_repositories(self, directory=None):
        self._require_repos()
        return parse_repo_files(directory or self.repo_dir)

    def repo_toggle_spec(self, repo_id, enable) -> SpawnSpec:
        self._require_repos()
        repo_id = (repo_id or "").strip()
        if not REPO_ID_REGEX.match(repo_id):
            raise ValueError(f"Invalid repository id: {repo_id!r}")
        return self._spec(self.repo_toggle(repo_id, enable))

    @staticmethod
    def convert_spec(deb_path) -> SpawnSpec:
        """alien writes the rpm next to its input, and pkexec resets the working directory."""
        path = Path(deb_path).expanduser().resolve()
        if path.suffix != ".deb":
            raise ValueError(f"Not a .deb file: {path}")
        directory = str(path.parent)
        script = f"cd {shlex.quote(directory)} && alien --scripts -r {shlex.quote(path.name)}"
        return SpawnSpec("bash", ("-c", script), elevate=True, cwd=directory)

    @staticmethod
    def driver_profile_spec(script) -> SpawnSpec:
        if not script or not script.strip():
            raise ValueError("Driver profile script is empty")
        return SpawnSpec("bash", ("-c", script), elevate=True)

    def package_is_installed(self, package):
        if not self._is_valid_package_name(package):
            return False

        try:
            result = subprocess.run(
                self.pkg_check_installed(package),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
                check=False
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.warning(f"Error checking package {package}: {e}")
            return False

    @staticmethod
    def _is_valid_package_name(package):
        if not package or not isinstance(package, str):
            return False

        package = package.strip()
        if not package or len(package) > 255:
            return False

        return bool(PACKAGE_NAME_REGEX.match(package))

    def filter_not_installed(self, packages):
        if not packages or not isinstance(packages, (list, tuple)):
            return []

        valid_packages = [pkg.strip() for pkg in packages if self._is_valid_package_name(pkg)]
        if not valid_packages:
            return []

        if len(valid_packages) <= 5:
            return [pkg for pkg in valid_packages if not self.package_is_installed(pkg)]

        max_workers = min(4, max(1, len(valid_packages) // 4))
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(self.package_is_installed, valid_packages))
        return [pkg for pkg, installed in zip(valid_packages, results) if not installed]

    @staticmethod
    def parse_cpu_level(text):
        for line in (text or "").splitlines():
            if "(supported, searched)" in line:
                level = line.replace("(supported, searched)", "").strip()
                match = re.fullmatch(r"x86-64-v([2-4])", level)
                return int(match.group(1)) if match else 1
        return 1

    @staticmethod
    def cpu_feature_level(ld_so=LD_SO_PATH):
        """x86-64 micro-architecture level 1-4; 1 when it cannot be determined."""
        try:
            result = subprocess.run([ld_so, "--help"], capture_output=True, text=True, timeout=5,
                                    env={**os.environ, "LANG": "en_US"}, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.info(f"Could not query CPU feature level: {e}")
            return 1
        return LinuxDistroHelper.parse_cpu_level(result.stdout)

    @staticmethod
    def running_kernel():
        return os.uname().release

    @staticmethod
    def classify_scheduler(scx_output=None, sched_ext_ops=None, bore_value=None, kernel_release=""):
        """Best-effort scheduler name. Values ending in "?" are guesses from the kernel version."""
        scx = (scx_output or "").strip()
        if scx and scx != "no scx scheduler running":
            if scx.startswith("running "):
                details = scx[len("running "):]
                name = details.split()[0].lower() if details.split() else ""
                if name:
                    return f"sched_ext: {details}" if name.startswith("scx_") else f"sched_ext: scx_{details}"
            return f"sched_ext: {scx}"

        ops = (sched_ext_ops or "").strip()
        if ops:
            return f"sched_ext: {ops}" if ops.startswith("scx_") else f"sched_ext: scx_{ops}"

        if (bore_value or "").strip() == "1":
            return "BORE"

        match = re.match(r"^(\d+)\.(\d+)", kernel_release or "")
        if match and (int(match.group(1)), int(match.group(2))) >= (6, 6):
            return "EEVDF?"
        return "CFS?"

    @staticmethod
    def _command_output(command):
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=5, check=False)
        except (subprocess.TimeoutExpired, OSError):
            return None
        return result.stdout if result.returncode == 0 else None

    def detect_scheduler(self, kernel_release=None):
        kernel_release = kernel_release or self.running_kernel()
        scx = self._command_output(["scxctl", "get"])
        ops = None
        if not scx and Path(SCHED_EXT_OPS).exists():
            try:
                ops = Path(SCHED_EXT_OPS).read_text()
            except OSError:
                ops = None
        bore = None if scx or ops else self._command_output(["sysctl", "-n", "kernel.sched_bore"])
        return self.classify_scheduler(scx, ops, bore, kernel_release)


def load_kernel_branches(directory=None):
    """Branch definitions (name, db_url, init_script) from the kernel manager's JSON files."""
    directory = Path(directory or Options.kernel_branches_dir)
    branches = []
    if not directory.is_dir():
        logger.info(f"No kernel branch directory at {directory}")
        return branches
    for path in sorted(directory.glob("*.json")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping kernel branch file {path}: {e}")
            continue
        if isinstance(data, dict) and data.get("name") and data.get("db_url"):
            branches.append({"name": data["name"], "db_url": data["db_url"],
                             "init_script": data.get("init_script", "true")})
    return branches


def make_kernel_branches_fetcher(directory=None, fetch=None):
    """Cache fetcher for the "kernel-branches" topic: each branch with its kernel database."""
    def fetch_all():
        getter = fetch or fetch_json
        branches = load_kernel_branches(directory)
        if not branches:
            raise NetworkError("No kernel branches are configured")
        payload, failures = [], 0
        for branch in branches:
            entry = dict(branch)
            try:
                db = getter(branch["db_url"])
                db = db if isinstance(db, dict) else {}
                entry["latest_package"] = db.get("latest_kernel_version_deter_pkg")
                entry["kernels"] = [k for k in db.get("kernels", []) if isinstance(k, dict) and k.get("name")]
            except NetworkError as e:
                failures += 1
                entry["kernels"] = []
                entry["error"] = str(e)
            payload.append(entry)
        if failures == len(branches):
            raise NetworkError("Every kernel branch database failed to download")
        return payload
    return fetch_all


def _flag(value, default=None):
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_repo_file(text, file_path=""):
    """Repositories from one .repo file (INI sections). Sections default to enabled."""
    parser = configparser.ConfigParser(interpolation=None, strict=False, default_section="\0")
    try:
        parser.read_string(text, source=file_path or "<repo>")
    except configparser.Error as e:
        logger.warning(f"Skipping unreadable repository file {file_path}: {e}")
        return []
    repos = []
    for section in parser.sections():
        data = parser[section]
        urls = (data.get("baseurl") or "").split()
        repos.append({
            "id": section,
            "name": data.get("name", section).strip() or section,
            "baseurl": urls[0] if urls else None,
            "metalink": (data.get("metalink") or "").strip() or None,
            "enabled": _flag(data.get("enabled"), True),
            "gpgcheck": _flag(data.get("gpgcheck")),
            "file": file_path,
        })
    return repos


def parse_repo_files(directory):
    directory = Path(directory)
    if not directory.is_dir():
        raise ValueError(f"Repository directory not found: {directory}")
    repos = []
    for path in sorted(directory.glob("*.repo")):
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Cannot read {path}: {e}")
            continue
        repos.extend(parse_repo_file(text, str(path)))
    return sorted(repos, key=lambda repo: repo["id"])


def parse_flatpak_remotes(text):
    remotes = []
    for line in (text or "").splitlines():
        columns = line.split("\t") if "\t" in line else line.split()
        if not columns or not columns[0].strip() or columns[0].strip() == "Name":
            continue
        options = columns[2].strip() if len(columns) > 2 else ""
        remotes.append({"name": columns[0].strip(), "url": columns[1].strip() if len(columns) > 1 else "",
                        "options": options, "enabled": "disabled" not in options.split(",")})
    return remotes


def make_flatpak_remotes_fetcher():
    def fetch():
        spec = LinuxDistroHelper.flatpak_remotes_spec()
        try:
            result = subprocess.run([spec.program, *spec.args], capture_output=True, text=True, timeout=30, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise NetworkError(f"flatpak remotes failed: {e}") from e
        if result.returncode != 0:
            raise NetworkError(f"flatpak remotes failed: {result.stderr.strip() or result.returncode}")
        return parse_flatpak_remotes(result.stdout)
    return fetch
