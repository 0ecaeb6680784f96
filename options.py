from pathlib import Path
import json, os, tempfile, copy
from PyQt6.QtCore import QMutex, QMutexLocker
from logging_config import setup_logger

logger = setup_logger(__name__)

home_user = os.getenv("HOME") or str(Path.home())

CACHE_TOPICS = ["proton-builds", "kernel-branches", "flatpak-remotes"]
MAINTENANCE_TASKS = ["rebuild_kernel_modules", "regenerate_initramfs", "remove_orphaned_packages", "clean_package_cache"]
ELEVATION_TOOLS = ["pkexec", "sudo", "doas"]


def _default_config_path():
    env_path = os.getenv("PACKAGE_CONSOLE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path(home_user).joinpath(".config", "Package Console", "config.json")


class Options:
    config_file_path = _default_config_path()
    config_mutex = QMutex()

    elevation_tool = "pkexec"
    debounce_ms = 300
    search_min_length = 2
    cache_dir = str(Path(home_user).joinpath(".cache", "package-console"))
    cache_ttl = {"proton-builds": 3600, "kernel-branches": 6 * 3600, "flatpak-remotes": 600}
    install_root = str(Path(home_user).joinpath(".steam", "root", "compatibilitytools.d"))
    log_tail_lines = 20
    retention_seconds = 300
    cleanup_window = 5.0
    proton_catalog_url = "https://api.github.com/repos/GloriousEggroll/proton-ge-custom/releases"
    kernel_branches_dir = "/usr/lib/fedora-kernel-manager/kernel_branches"

    _defaults = None
    _int_keys = ("debounce_ms", "search_min_length", "log_tail_lines", "retention_seconds")
    _float_keys = ("cleanup_window",)
    _str_keys = ("elevation_tool", "cache_dir", "install_root", "proton_catalog_url", "kernel_branches_dir")

    @staticmethod
    def _snapshot_defaults():
        if Options._defaults is None:
            Options._defaults = {key: copy.deepcopy(getattr(Options, key)) for key in Options.keys()}
        return Options._defaults

    @staticmethod
    def keys():
        return Options._int_keys + Options._float_keys + Options._str_keys + ("cache_ttl",)

    @staticmethod
    def as_dict():
        with QMutexLocker(Options.config_mutex):
            return {key: copy.deepcopy(getattr(Options, key)) for key in Options.keys()}

    @staticmethod
    def reset_to_defaults():
        defaults = Options._snapshot_defaults()
        with QMutexLocker(Options.config_mutex):
            for key, value in defaults.items():
                setattr(Options, key, copy.deepcopy(value))

    @staticmethod
    def ttl_for(topic, fallback=3600):
        value = Options.cache_ttl.get(topic, fallback)
        return value if isinstance(value, (int, float)) and value > 0 else fallback

    @staticmethod
    def load_config(file_path=None):
        Options._snapshot_defaults()
        file_path = Path(file_path or Options.config_file_path)
        if not file_path.exists():
            logger.info(f"Config file not found, using defaults: {file_path}")
            return False

        try:
            with open(file_path, encoding='utf-8') as file:
                config_data = json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading config {file_path}: {e}")
            return False

        if not isinstance(config_data, dict):
            logger.warning("Invalid config format: expected dictionary")
            return False

        with QMutexLocker(Options.config_mutex):
            for key, value in config_data.items():
                if key in Options._int_keys:
                    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                        setattr(Options, key, value)
                        continue
                elif key in Options._float_keys:
                    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                        setattr(Options, key, float(value))
                        continue
                elif key in Options._str_keys:
                    if isinstance(value, str) and value.strip():
                        setattr(Options, key, os.path.expanduser(value.strip()) if key.endswith(("_dir", "_root")) else value.strip())
                        continue
                elif key == "cache_ttl":
                    if isinstance(value, dict):
                        merged = dict(Options.cache_ttl)
                        merged.update({k: v for k, v in value.items()
                                       if isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0})
                        Options.cache_ttl = merged
                        continue
                else:
                    logger.warning(f"Ignoring unknown config key: {key}")
                    continue
                logger.warning(f"Ignoring invalid value for '{key}': {value!r}")

        if Options.elevation_tool not in ELEVATION_TOOLS:
            logger.warning(f"Unusual elevation tool configured: {Options.elevation_tool}")
        return True

    @staticmethod
    def save_config(file_path=None):
        file_path = Path(file_path or Options.config_file_path)
        config_dir = file_path.parent
        try:
            config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Error creating config directory: {e}")
            return False

        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(dir=config_dir, delete=False, mode='w', encoding='utf-8') as temp_file:
                temp_path = temp_file.name
                json.dump(Options.as_dict(), temp_file, indent=4, ensure_ascii=False)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            os.replace(temp_path, file_path)
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Error saving config: {e}")
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            return False


Options._snapshot_defaults()
