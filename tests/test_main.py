from __future__ import annotations

import pytest

from build_catalog import parse_github_releases
from cache_manager import CacheManager
from linux_distro_helper import LinuxDistroHelper
from main import EXIT_FAILED, EXIT_OK, EXIT_USAGE, main, package_key, package_resources

RELEASES = [
    {"tag_name": "GE-Proton10-3",
     "assets": [{"name": "GE-Proton10-3.tar.gz", "browser_download_url": "https://example.invalid/10-3.tar.gz"}]},
    {"tag_name": "GE-Proton9-20",
     "assets": [{"name": "GE-Proton9-20.tar.gz", "browser_download_url": "https://example.invalid/9-20.tar.gz"}]},
]


@pytest.fixture
def fedora(os_release):
    return LinuxDistroHelper(os_release("fedora"))


@pytest.fixture
def cache(tmp_path):
    cache = CacheManager(tmp_path / "cache")
    cache.register("proton-builds", lambda: parse_github_releases(RELEASES))
    return cache


def test_unknown_command_is_a_usage_error(capsys):
    assert main(["defragment"]) == EXIT_USAGE
    assert "invalid choice" in capsys.readouterr().err


def test_install_runs_elevated_command(fedora, cache, make_script, fake_elevation, capsys):
    fedora.pkg_install = [make_script("installer", 'echo "installing $*"')]

    assert main(["install", "vim", "git"], helper=fedora, cache=cache) == EXIT_OK
    assert "installing vim git" in capsys.readouterr().out


def test_failed_install_exits_with_failure(fedora, cache, make_script, fake_elevation, capsys):
    fedora.pkg_install = [make_script("installer", "echo 'No match for argument: nope' >&2\nexit 1")]

    assert main(["install", "nope"], helper=fedora, cache=cache) == EXIT_FAILED
    err = capsys.readouterr().err
    assert "No match for argument: nope" in err
    assert "error:" in err


def test_invalid_package_name_is_a_usage_error(fedora, cache):
    assert main(["remove", "vim;reboot"], helper=fedora, cache=cache) == EXIT_USAGE


def test_unsupported_maintenance_task(os_release, cache, capsys):
    suse = LinuxDistroHelper(os_release("opensuse-tumbleweed"))

    assert main(["maintenance", "rebuild_kernel_modules"], helper=suse, cache=cache) == EXIT_USAGE
    assert "not supported" in capsys.readouterr().err


def test_cache_show_without_data(fedora, cache, capsys):
    assert main(["cache", "show", "proton-builds"], helper=fedora, cache=cache) == EXIT_FAILED
    assert "No cached data" in capsys.readouterr().out


def test_proton_list_fills_the_cache(fedora, cache, capsys):
    assert main(["proton", "list"], helper=fedora, cache=cache) == EXIT_OK

    out = capsys.readouterr().out
    assert "GE-Proton10-3" in out and "GE-Proton9-20" in out
    assert cache.peek("proton-builds") is not None


def test_proton_install_unknown_build(fedora, cache, capsys):
    assert main(["proton", "install", "GE-Proton1-1"], helper=fedora, cache=cache) == EXIT_FAILED
    assert "no build named" in capsys.readouterr().err


def test_package_key_is_order_independent():
    assert package_key(["vim", "git"]) == package_key(["git", "vim"]) == "package:git,vim"


def test_package_resources_name_each_package_once():
    assert package_resources(["vim", "git", "vim"]) == ["package:git", "package:vim"]


def test_search_prints_results(fedora, cache, make_script, capsys):
    fedora.pkg_search = [make_script("repoquery", 'echo "vim-enhanced|9.1|1.fc40|x86_64|VIM editor|Long|4194304"')]

    assert main(["search", "vim"], helper=fedora, cache=cache) == EXIT_OK
    assert "vim-enhanced 9.1  VIM editor" in capsys.readouterr().out


def test_search_without_matches(fedora, cache, make_script, capsys):
    fedora.pkg_search = [make_script("nomatch", "echo 'No matches found.' >&2\nexit 1")]

    assert main(["search", "zzz"], helper=fedora, cache=cache) == EXIT_OK
    assert "No packages found for 'zzz'" in capsys.readouterr().out


def test_info_failure_exits_with_failure(fedora, cache, make_script, capsys):
    fedora.pkg_info = [make_script("noinfo", "echo 'Error: No matching Packages to list' >&2\nexit 1")]

    assert main(["info", "nope"], helper=fedora, cache=cache) == EXIT_FAILED
    assert "No matching Packages" in capsys.readouterr().err


REPO_FILE = """\
[updates]
name=Fedora $releasever - $basearch - Updates
metalink=https://mirrors.fedoraproject.org/metalink?repo=updates-released-f$releasever&arch=$basearch
enabled=1

[updates-testing]
name=Fedora $releasever - $basearch - Test Updates
enabled=0
"""


def test_repo_list_reads_repo_files(fedora, cache, tmp_path, capsys):
    repos = tmp_path / "yum.repos.d"
    repos.mkdir()
    (repos / "fedora-updates.repo").write_text(REPO_FILE, encoding="utf-8")
    fedora.repo_dir = str(repos)

    assert main(["repo", "list"], helper=fedora, cache=cache) == EXIT_OK
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split()[:2] == ["updates", "enabled"]
    assert lines[1].split()[:2] == ["updates-testing", "disabled"]


def test_repo_enable_runs_elevated_toggle(fedora, cache, make_script, fake_elevation, capsys):
    toggle = make_script("config-manager", 'echo "toggle $*"')
    fedora.repo_toggle = lambda repo, enable: [toggle, "--set-enabled" if enable else "--set-disabled", repo]

    assert main(["repo", "enable", "updates-testing"], helper=fedora, cache=cache) == EXIT_OK
    assert "toggle --set-enabled updates-testing" in capsys.readouterr().out
    assert main(["repo", "disable", "updates-testing"], helper=fedora, cache=cache) == EXIT_OK
    assert "toggle --set-disabled updates-testing" in capsys.readouterr().out


def test_repo_commands_reject_bad_ids_and_unsupported_distros(fedora, os_release, cache, capsys):
    debian = LinuxDistroHelper(os_release("debian"))

    assert main(["repo", "enable", "x; reboot"], helper=fedora, cache=cache) == EXIT_USAGE
    assert main(["repo", "list"], helper=debian, cache=cache) == EXIT_USAGE
    assert "not supported" in capsys.readouterr().err
