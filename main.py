from build_catalog import find_build, latest_build, load_catalog, make_proton_fetcher
from cache_manager import CacheManager
from download_pipeline import DownloadPipeline
from errors import Busy, ConsoleError, NetworkError, NonZeroExit, SpawnFailed
from linux_distro_helper import LinuxDistroHelper, make_flatpak_remotes_fetcher, make_kernel_branches_fetcher
from logging_config import get_log_file_path, set_level, setup_logger
from operation import OperationState
from options import Options, CACHE_TOPICS, MAINTENANCE_TASKS
from package_queries import info_operation, search_operation
from progress_parser import Advisory, Cancelled, Failed, LogLine, StageChanged, is_terminal
from task_dispatcher import TaskDispatcher
import argparse, json, logging, sys, time
from PyQt6.QtCore import QCoreApplication

logger = setup_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 2
EXIT_USAGE = 64
EXIT_CANCELLED = 130

STATE_EXIT_CODES = {
    OperationState.SUCCEEDED: EXIT_OK,
    OperationState.FAILED: EXIT_FAILED,
    OperationState.CANCELLED: EXIT_CANCELLED,
}


class ConsoleArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_cache(cache_dir=None) -> CacheManager:
    cache = CacheManager(cache_dir)
    cache.register("proton-builds", make_proton_fetcher())
    cache.register("kernel-branches", make_kernel_branches_fetcher())
    cache.register("flatpak-remotes", make_flatpak_remotes_fetcher())
    return cache


def build_parser():
    parser = ConsoleArgumentParser(prog="package-console", description="Run and follow package manager tasks.")
    parser.add_argument("--config", help="Path to an alternative config.json")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug messages")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    commands = parser.add_subparsers(dest="command", required=True)

    search = commands.add_parser("search", help="Search the distribution repositories")
    search.add_argument("term")

    for name in ("install", "remove"):
        sub = commands.add_parser(name, help=f"{name.capitalize()} packages")
        sub.add_argument("packages", nargs="+")

    update = commands.add_parser("update", help="Update the system or the given packages")
    update.add_argument("--all", action="store_true", help="Also update Flatpak applications")
    update.add_argument("packages", nargs="*")

    info = commands.add_parser("info", help="Show package details")
    info.add_argument("package")

    flatpak = commands.add_parser("flatpak", help="Manage Flatpak applications and remotes")
    flatpak_commands = flatpak.add_subparsers(dest="flatpak_command", required=True)
    for name in ("install", "remove", "update"):
        sub = flatpak_commands.add_parser(name)
        sub.add_argument("refs", nargs="+" if name != "update" else "*")
        sub.add_argument("--user", action="store_true")
        if name == "install":
            sub.add_argument("--remote", default="flathub")
    remotes = flatpak_commands.add_parser("remotes")
    toggle = remotes.add_mutually_exclusive_group()
    toggle.add_argument("--enable", metavar="REMOTE")
    toggle.add_argument("--disable", metavar="REMOTE")

    repo = commands.add_parser("repo", help="List, enable or disable distribution repositories")
    repo_commands = repo.add_subparsers(dest="repo_command", required=True)
    repo_list = repo_commands.add_parser("list")
    repo_list.add_argument("--live", action="store_true", help="Ask the package manager instead of reading the repo files")
    for name in ("enable", "disable"):
        repo_commands.add_parser(name).add_argument("repo_id")

    convert = commands.add_parser("convert", help="Convert a .deb package to .rpm with alien")
    convert.add_argument("deb")

    maintenance = commands.add_parser("maintenance", help="Run a system maintenance task")
    maintenance.add_argument("task", choices=MAINTENANCE_TASKS)

    proton = commands.add_parser("proton", help="Compatibility layer builds")
    proton_commands = proton.add_subparsers(dest="proton_command", required=True)
    proton_list = proton_commands.add_parser("list")
    proton_list.add_argument("--runner")
    proton_install = proton_commands.add_parser("install")
    proton_install.add_argument("name", nargs="?", help="Build name, latest when omitted")
    proton_install.add_argument("--runner")

    kernel = commands.add_parser("kernel", help="Kernel branches and packages")
    kernel_commands = kernel.add_subparsers(dest="kernel_command", required=True)
    kernel_commands.add_parser("branches")
    for name in ("install", "remove"):
        sub = kernel_commands.add_parser(name)
        sub.add_argument("packages", nargs="+")

    cache = commands.add_parser("cache", help="Inspect or refresh cached metadata")
    cache.add_argument("action", choices=["show", "refresh"])
    cache.add_argument("topic", choices=CACHE_TOPICS)

    commands.add_parser("sysinfo", help="Show distribution, kernel, scheduler and CPU level")
    commands.add_parser("gui", help="Open the graphical console")
    return parser


def print_event(event, show_output=True):
    if isinstance(event, LogLine):
        if not show_output:
            return
        print(event.text, file=sys.stderr if event.stream == "stderr" else sys.stdout, flush=True)
    elif isinstance(event, StageChanged):
        print(f"==> {event.name}", flush=True)
    elif isinstance(event, Failed):
        print(f"error: {event.message}", file=sys.stderr)
    elif isinstance(event, Cancelled):
        print(f"cancelled{': ' + event.message if event.message else ''}", file=sys.stderr)


def follow(handle, dispatcher, show_output=True) -> int:
    """Print the events of one operation until it is terminal. Ctrl-C cancels it.

    With ``show_output`` off only stages and the final error are printed.
    """
    stream = handle.subscribe()
    while True:
        try:
            event = stream.get(timeout=0.2)
        except KeyboardInterrupt:
            print("\nCancelling...", file=sys.stderr)
            handle.cancel()
            continue
        if event is None:
            if stream.closed:
                break
            continue
        print_event(event, show_output)
        if is_terminal(event):
            break
    handle.wait()
    state = handle.state
    dispatcher.acknowledge(handle.key)
    return STATE_EXIT_CODES.get(state, EXIT_FAILED)


def run_spec(dispatcher, key, spec, parser="generic", resources=()) -> int:
    return follow(dispatcher.submit(key, spec, parser, resources), dispatcher)


def query(dispatcher, operation):
    """Run a read-only query through the dispatcher; returns (exit code, result)."""
    handle = dispatcher.submit_operation(operation)
    code = follow(handle, dispatcher, show_output=False)
    return code, handle.snapshot().result if code == EXIT_OK else None


def report_advisories(stream):
    for event in stream.drain():
        if isinstance(event, Advisory):
            print(f"warning: {event.topic}: {event.message}", file=sys.stderr)


def cached_payload(cache, topic):
    advisories = cache.subscribe()
    entry = cache.get(topic)
    cache.wait_idle(topic, timeout=30)
    report_advisories(advisories)
    return entry.payload


def package_key(packages):
    return "package:" + ",".join(sorted(packages))


def package_resources(packages):
    """One resource key per package, shared by every surface that changes packages."""
    return [f"package:{name.strip()}" for name in sorted(set(packages))]


def cmd_search(args, helper, dispatcher, cache):
    code, results = query(dispatcher, search_operation(helper, args.term))
    if code != EXIT_OK:
        return code
    for result in results:
        version = f" {result.version}" if result.version else ""
        print(f"{result.name}{version}  {result.summary}".rstrip())
    if not results:
        print(f"No packages found for '{args.term}'")
    return EXIT_OK


def cmd_packages(args, helper, dispatcher, cache):
    builders = {"install": helper.install_spec, "remove": helper.remove_spec}
    return run_spec(dispatcher, package_key(args.packages), builders[args.command](args.packages), helper.parser,
                    package_resources(args.packages))


def cmd_update(args, helper, dispatcher, cache):
    key = package_key(args.packages) if args.packages else "system-update"
    code = run_spec(dispatcher, key, helper.update_spec(args.packages or None), helper.parser,
                    package_resources(args.packages))
    if code == EXIT_OK and args.all:
        code = run_spec(dispatcher, "flatpak-update", helper.flatpak_update_spec(), "flatpak")
    return code


def cmd_info(args, helper, dispatcher, cache):
    code, info = query(dispatcher, info_operation(helper, args.package))
    if code != EXIT_OK:
        return code
    for label, value in (("Name", info.name), ("Version", info.version), ("Release", info.release),
                         ("Architecture", info.arch), ("Size", info.size), ("Summary", info.summary),
                         ("Description", info.description)):
        if value:
            print(f"{label:<13}: {value}")
    return EXIT_OK


def cmd_flatpak(args, helper, dispatcher, cache):
    action = args.flatpak_command
    if action == "remotes":
        if args.enable or args.disable:
            remote = args.enable or args.disable
            code = run_spec(dispatcher, f"flatpak-remote:{remote}",
                            helper.flatpak_remote_toggle_spec(remote, bool(args.enable)), "flatpak")
            cache.invalidate("flatpak-remotes")
            return code
        for remote in cached_payload(cache, "flatpak-remotes"):
            state = "enabled" if remote.get("enabled", True) else "disabled"
            print(f"{remote['name']:<20} {state:<9} {remote.get('url', '')}")
        return EXIT_OK
    if action == "install":
        spec = helper.flatpak_install_spec(args.refs, args.remote, args.user)
    elif action == "remove":
        spec = helper.flatpak_uninstall_spec(args.refs, args.user)
    else:
        spec = helper.flatpak_update_spec(args.refs, args.user)
    key = "flatpak:" + ",".join(sorted(args.refs)) if args.refs else "flatpak-update"
    return run_spec(dispatcher, key, spec, "flatpak")


def cmd_repo(args, helper, dispatcher, cache):
    if args.repo_command == "list":
        if args.live:
            return run_spec(dispatcher, "repo-list", helper.repo_list_spec(), "plain")
        for repo in helper.list_repositories():
            state = "enabled" if repo["enabled"] else "disabled"
            print(f"{repo['id']:<40} {state:<9} {repo['name']}")
        return EXIT_OK
    enable = args.repo_command == "enable"
    return run_spec(dispatcher, f"repo:{args.repo_id}", helper.repo_toggle_spec(args.repo_id, enable), helper.parser)


def cmd_convert(args, helper, dispatcher, cache):
    spec = helper.convert_spec(args.deb)
    return run_spec(dispatcher, f"convert:{spec.cwd}", spec, "alien")


def cmd_maintenance(args, helper, dispatcher, cache):
    return run_spec(dispatcher, f"maintenance:{args.task}", helper.maintenance_spec(args.task), helper.parser)


def cmd_proton(args, helper, dispatcher, cache):
    builds = load_catalog(cached_payload(cache, "proton-builds"))
    if args.runner:
        builds = [build for build in builds if build.runner == args.runner]
    cpu_level = helper.cpu_feature_level()

    if args.proton_command == "list":
        for build in builds:
            flags = []
            if build.installed:
                flags.append("installed")
            elif build.update_available:
                flags.append(f"newer than {build.installed_version}")
            if not build.is_supported(cpu_level):
                flags.append(f"needs x86-64-v{build.min_platform_requirement}")
            print(f"{build.name:<32} {build.runner:<12} {', '.join(flags)}".rstrip())
        return EXIT_OK

    build = find_build(builds, args.name) if args.name else latest_build(builds, args.runner)
    if build is None:
        print(f"error: no build named '{args.name}'" if args.name else "error: the catalog is empty", file=sys.stderr)
        return EXIT_FAILED
    if not build.is_supported(cpu_level):
        print(f"warning: {build.name} needs x86-64-v{build.min_platform_requirement}, this CPU is v{cpu_level}",
              file=sys.stderr)
    return follow(dispatcher.submit_operation(DownloadPipeline(f"proton:{build.name}", build)), dispatcher)


def cmd_kernel(args, helper, dispatcher, cache):
    if args.kernel_command == "branches":
        for branch in cached_payload(cache, "kernel-branches"):
            latest = branch.get("latest_package") or "-"
            detail = f"error: {branch['error']}" if branch.get("error") else f"{len(branch.get('kernels', []))} kernels"
            print(f"{branch['name']:<20} latest {latest:<28} {detail}")
        return EXIT_OK
    builders = {"install": helper.kernel_install_spec, "remove": helper.kernel_remove_spec}
    spec = builders[args.kernel_command](args.packages)
    return run_spec(dispatcher, "kernel:" + ",".join(sorted(args.packages)), spec, helper.parser,
                    package_resources(args.packages))


def cmd_cache(args, helper, dispatcher, cache):
    if args.action == "refresh":
        advisories = cache.subscribe()
        try:
            entry = cache.refresh(args.topic)
        finally:
            report_advisories(advisories)
    else:
        entry = cache.peek(args.topic)
        if entry is None:
            print(f"No cached data for '{args.topic}'")
            return EXIT_FAILED
    now = time.time()
    payload = entry.payload
    print(json.dumps({"topic": entry.topic, "fetched_at": entry.fetched_at, "ttl": entry.ttl,
                      "age": round(entry.age(now), 1), "stale": entry.is_stale(now),
                      "entries": len(payload) if isinstance(payload, (list, dict)) else None}, indent=2))
    return EXIT_OK


def cmd_sysinfo(args, helper, dispatcher, cache):
    print(f"Distribution : {helper.distro_name} ({helper.distro_id})")
    print(f"Packages     : {helper.package_family or 'unsupported'}")
    print(f"Kernel       : {helper.running_kernel()}")
    print(f"Scheduler    : {helper.detect_scheduler()}")
    print(f"CPU level    : x86-64-v{helper.cpu_feature_level()}")
    print(f"Log file     : {get_log_file_path()}")
    return EXIT_OK


COMMANDS = {
    "search": cmd_search,
    "install": cmd_packages,
    "remove": cmd_packages,
    "update": cmd_update,
    "info": cmd_info,
    "flatpak": cmd_flatpak,
    "repo": cmd_repo,
    "convert": cmd_convert,
    "maintenance": cmd_maintenance,
    "proton": cmd_proton,
    "kernel": cmd_kernel,
    "cache": cmd_cache,
    "sysinfo": cmd_sysinfo,
}


def run_gui(helper, dispatcher):
    from PyQt6.QtWidgets import QApplication, QMessageBox
    from console_window import ConsoleWindow

    app = QApplication.instance() or QApplication(sys.argv)

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))
        QMessageBox.critical(None, "Critical Error", f"An unexpected error occurred:\n{exc_value}")
    sys.excepthook = handle_exception
    window = ConsoleWindow(helper, dispatcher)
    window.show()
    return app.exec()


def main(argv=None, helper=None, cache=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    if args.verbose or args.quiet:
        set_level(logging.DEBUG if args.verbose else logging.WARNING)
    Options.load_config(args.config)
    helper = helper or LinuxDistroHelper()
    dispatcher = TaskDispatcher()
    if args.command == "gui":
        return run_gui(helper, dispatcher)

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    cache = cache or build_cache()
    try:
        return COMMANDS[args.command](args, helper, dispatcher, cache)
    except Busy as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_BUSY
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except (NonZeroExit, SpawnFailed, NetworkError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except ConsoleError as e:
        logger.exception(f"Command '{args.command}' failed")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        return EXIT_CANCELLED
    finally:
        dispatcher.shutdown()


if __name__ == '__main__':
    sys.exit(main())
