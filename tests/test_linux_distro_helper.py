from __future__ import annotations

import json

import pytest

from errors import NetworkError
from linux_distro_helper import (LinuxDistroHelper, load_kernel_branches, make_kernel_branches_fetcher,
                                 parse_flatpak_remotes, parse_repo_file, parse_repo_files)
from options import MAINTENANCE_TASKS


@pytest.mark.parametrize("distro_id, id_like, family", [
    ("fedora", "", "dnf"),
    ("nobara", "", "dnf"),
    ("ubuntu", "debian", "apt"),
    ("zorin", "ubuntu debian", "apt"),
    ("cachyos", "arch", "pacman"),
    ("opensuse-tumbleweed", "", "zypper"),
])
def test_family_detection(os_release, distro_id, id_like, family):
    helper = LinuxDistroHelper(os_release(distro_id, id_like))

    assert helper.package_family == family
    assert helper.supported


def test_unknown_distro_has_no_package_commands(os_release):
    helper = LinuxDistroHelper(os_release("plan9"))

    assert not helper.supported
    with pytest.raises(ValueError):
        helper.install_spec(["vim"])


def test_missing_os_release_does_not_crash(tmp_path):
    helper = LinuxDistroHelper(str(tmp_path / "missing"))

    assert helper.distro_id


def test_install_and_remove_specs_are_elevated(os_release):
    helper = LinuxDistroHelper(os_release("fedora"))

    install = helper.install_spec(["vim", "git"])
    remove = helper.remove_spec(["vim"])

    assert install.program == "dnf"
    assert install.args[-2:] == ("vim", "git")
    assert install.elevate and remove.elevate
    assert remove.args[0] == "remove"


def test_update_spec_with_and_without_packages(os_release):
    helper = LinuxDistroHelper(os_release("arch"))

    assert helper.update_spec().args == ("-Syu", "--noconfirm")
    assert helper.update_spec(["linux"]).args == ("-S", "--noconfirm", "linux")


def test_invalid_package_names_are_rejected(os_release):
    helper = LinuxDistroHelper(os_release("fedora"))

    with pytest.raises(ValueError):
        helper.install_spec(["vim; rm -rf /"])
    with pytest.raises(ValueError):
        helper.remove_spec([])


def test_search_is_not_elevated_and_wildcarded_on_dnf(os_release):
    fedora = LinuxDistroHelper(os_release("fedora"))
    debian = LinuxDistroHelper(os_release("debian"))

    assert fedora.search_spec(" vim ").args[-1] == "*vim*"
    assert not fedora.search_spec("vim").elevate
    assert debian.search_spec("vim").args == ("search", "--names-only", "vim")


@pytest.mark.parametrize("task", MAINTENANCE_TASKS)
def test_maintenance_tasks_exist_for_fedora(os_release, task):
    spec = LinuxDistroHelper(os_release("fedora")).maintenance_spec(task)

    assert spec.elevate


def test_unknown_maintenance_task(os_release):
    with pytest.raises(ValueError):
        LinuxDistroHelper(os_release("fedora")).maintenance_spec("defragment")


def test_flatpak_specs(os_release):
    helper = LinuxDistroHelper(os_release("fedora"))

    system = helper.flatpak_install_spec(["org.mozilla.firefox"])
    user = helper.flatpak_uninstall_spec(["org.gimp.GIMP"], user=True)

    assert system.args == ("install", "-y", "--noninteractive", "--system", "flathub", "org.mozilla.firefox")
    assert system.elevate
    assert "--user" in user.args and not user.elevate
    assert helper.flatpak_remote_toggle_spec("flathub-beta", False).args == ("remote-modify", "--disable", "flathub-beta")
    with pytest.raises(ValueError):
        helper.flatpak_install_spec(["bad ref; echo"])


def test_convert_spec_changes_directory(tmp_path):
    deb = tmp_path / "my package.deb"
    deb.write_bytes(b"")

    spec = LinuxDistroHelper.convert_spec(str(deb))

    assert spec.program == "bash"
    assert spec.cwd == str(tmp_path.resolve())
    assert spec.args[1] == f"cd {tmp_path.resolve()} && alien --scripts -r 'my package.deb'"
    with pytest.raises(ValueError):
        LinuxDistroHelper.convert_spec(str(tmp_path / "file.rpm"))


def test_driver_profile_spec():
    spec = LinuxDistroHelper.driver_profile_spec("dnf install -y akmod-nvidia")

    assert spec.args == ("-c", "dnf install -y akmod-nvidia")
    assert spec.elevate
    with pytest.raises(ValueError):
        LinuxDistroHelper.driver_profile_spec("  ")


@pytest.mark.parametrize("scx, ops, bore, release, expected", [
    ("running Lavd in Gaming mode", None, None, "6.12.1", "sched_ext: scx_Lavd in Gaming mode"),
    ("no scx scheduler running", "rusty", None, "6.12.1", "sched_ext: scx_rusty"),
    (None, None, "1", "6.12.1", "BORE"),
    (None, None, "0", "6.12.1", "EEVDF?"),
    (None, None, None, "6.1.0", "CFS?"),
    (None, None, None, "", "CFS?"),
])
def test_classify_scheduler(scx, ops, bore, release, expected):
    assert LinuxDistroHelper.classify_scheduler(scx, ops, bore, release) == expected


def test_parse_cpu_level():
    text = ("Subdirectories of glibc-hwcaps directories, in priority order:\n"
            "  x86-64-v4\n"
            "  x86-64-v3 (supported, searched)\n"
            "  x86-64-v2 (supported, searched)\n")

    assert LinuxDistroHelper.parse_cpu_level(text) == 3
    assert LinuxDistroHelper.parse_cpu_level("") == 1


def test_parse_flatpak_remotes():
    text = "flathub\thttps://dl.flathub.org/repo/\tsystem\nflathub-beta\thttps://beta.invalid/\tsystem,disabled\n"

    remotes = parse_flatpak_remotes(text)

    assert [(r["name"], r["enabled"]) for r in remotes] == [("flathub", True), ("flathub-beta", False)]


def _write_branch(directory, name, db_url, **extra):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{name}.json").write_text(json.dumps({"name": name, "db_url": db_url, **extra}), encoding="utf-8")


def test_kernel_branches_fetcher(tmp_path):
    branches = tmp_path / "branches"
    _write_branch(branches, "mainline", "https://db.invalid/mainline.json", init_script="dnf copr enable x")
    _write_branch(branches, "lts", "https://db.invalid/lts.json")
    (branches / "broken.json").write_text("{", encoding="utf-8")

    def fetch(url):
        if "lts" in url:
            raise NetworkError("timeout")
        return {"latest_kernel_version_deter_pkg": "kernel-6.12.1",
                "kernels": [{"name": "kernel", "version": "6.12.1"}, {"bogus": True}]}

    assert [branch["name"] for branch in load_kernel_branches(branches)] == ["lts", "mainline"]
    payload = make_kernel_branches_fetcher(branches, fetch)()

    lts, mainline = payload
    assert lts["error"] == "timeout" and lts["kernels"] == []
    assert mainline["latest_package"] == "kernel-6.12.1"
    assert mainline["kernels"] == [{"name": "kernel", "version": "6.12.1"}]
    assert mainline["init_script"] == "dnf copr enable x"


def test_kernel_branches_fetcher_fails_when_every_branch_fails(tmp_path):
    branches = tmp_path / "branches"
    _write_branch(branches, "mainline", "https://db.invalid/mainline.json")

    def fetch(url):
        raise NetworkError("offline")

    with pytest.raises(NetworkError):
        make_kernel_branches_fetcher(branches, fetch)()
    with pytest.raises(NetworkError):
        make_kernel_branches_fetcher(tmp_path / "empty", fetch)()


def test_filter_not_installed(os_release, make_script):
    helper = LinuxDistroHelper(os_release("fedora"))
    checker = make_script("rpm-q", 'case "$1" in vim|git) exit 0;; *) exit 1;; esac')
    helper.pkg_check_installed = lambda pkg: [checker, pkg]

    assert helper.filter_not_installed(["vim", "emacs", "git", "bad name!"]) == ["emacs"]
    assert helper.package_is_installed("vim")


def test_repo_toggle_specs(os_release):
    fedora = LinuxDistroHelper(os_release("fedora"))
    suse = LinuxDistroHelper(os_release("opensuse-tumbleweed"))

    enable = fedora.repo_toggle_spec("copr:copr.fedorainfracloud.org:user:project", True)
    assert enable.program == "dnf" and enable.elevate
    assert enable.args == ("config-manager", "--set-enabled", "copr:copr.fedorainfracloud.org:user:project")
    assert fedora.repo_toggle_spec("updates-testing", False).args[1] == "--set-disabled"
    assert suse.repo_toggle_spec("repo-oss", False).args[-2:] == ("--disable", "repo-oss")
    assert not fedora.repo_list_spec().elevate
    with pytest.raises(ValueError):
        fedora.repo_toggle_spec("updates; reboot", True)
    with pytest.raises(ValueError):
        LinuxDistroHelper(os_release("arch")).repo_toggle_spec("core", True)


def test_parse_repo_file():
    text = ("# managed by dnf\n"
            "[fedora]\n"
            "name=Fedora $releasever - $basearch\n"
            "baseurl=http://one.invalid/\n"
            "        http://two.invalid/\n"
            "gpgcheck=1\n"
            "\n"
            "[fedora-debuginfo]\n"
            "enabled=0\n"
            "gpgcheck=false\n")

    fedora, debuginfo = parse_repo_file(text, "/etc/yum.repos.d/fedora.repo")

    assert fedora["name"] == "Fedora $releasever - $basearch"
    assert fedora["baseurl"] == "http://one.invalid/"
    assert fedora["enabled"] and fedora["gpgcheck"]
    assert debuginfo["name"] == "fedora-debuginfo"
    assert not debuginfo["enabled"] and debuginfo["gpgcheck"] is False
    assert debuginfo["file"] == "/etc/yum.repos.d/fedora.repo"
    assert parse_repo_file("key=value without section") == []


def test_parse_repo_files_sorts_by_id(tmp_path, os_release):
    (tmp_path / "b.repo").write_text("[zeta]\nname=Zeta\n[alpha]\nname=Alpha\n", encoding="utf-8")
    (tmp_path / "a.repo").write_text("[middle]\nenabled=0\n", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("[ignored]\n", encoding="utf-8")

    assert [repo["id"] for repo in parse_repo_files(tmp_path)] == ["alpha", "middle", "zeta"]
    assert LinuxDistroHelper(os_release("fedora")).list_repositories(tmp_path)[1]["enabled"] is False
    with pytest.raises(ValueError):
        parse_repo_files(tmp_path / "missing")
