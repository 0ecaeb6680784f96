from __future__ import annotations

import json

import pytest

from build_catalog import (BuildDescriptor, check_build_name, compare_versions, fetch_json, find_build,
                           installed_builds, latest_build, load_catalog, make_proton_fetcher, parse_github_releases,
                           parse_runners_json, platform_level_from_name)
from errors import NetworkError, PipelineError

RELEASES = [
    {
        "tag_name": "GE-Proton10-3",
        "body": "Changelog for 10-3",
        "created_at": "2025-05-01T10:00:00Z",
        "html_url": "https://example.invalid/releases/GE-Proton10-3",
        "assets": [
            {"name": "GE-Proton10-3.sha512sum", "browser_download_url": "https://example.invalid/GE-Proton10-3.sha512sum"},
            {"name": "GE-Proton10-3.tar.gz", "size": 500, "browser_download_url": "https://example.invalid/GE-Proton10-3.tar.gz"},
        ],
    },
    {
        "tag_name": "GE-Proton9-20",
        "assets": [{"name": "GE-Proton9-20-x86_64_v3.tar.xz", "size": 400,
                    "browser_download_url": "https://example.invalid/GE-Proton9-20-x86_64_v3.tar.xz"}],
    },
    {"tag_name": "broken-release", "assets": []},
]


@pytest.mark.parametrize("current, candidate, expected", [
    ("GE-Proton9-20", "GE-Proton10-3", 1),
    ("GE-Proton10-3", "GE-Proton9-20", -1),
    ("6.9.1", "6.10.0", 1),
    ("1.0", "1.0.0", 0),
    ("wine-ge-8-26", "wine-ge-8-26", 0),
])
def test_compare_versions(current, candidate, expected):
    assert compare_versions(current, candidate) == expected


def test_platform_level_from_name():
    assert platform_level_from_name("GE-Proton9-20-x86_64_v3.tar.xz") == 3
    assert platform_level_from_name("GE-Proton9-20.tar.gz") is None


def test_parse_github_releases_picks_archives():
    builds = parse_github_releases(RELEASES)

    assert [build["name"] for build in builds] == ["GE-Proton10-3", "GE-Proton9-20"]
    first = BuildDescriptor.from_dict(builds[0])
    assert first.download_url.endswith("GE-Proton10-3.tar.gz")
    assert first.size_bytes == 500
    assert first.changelog == "Changelog for 10-3"
    assert BuildDescriptor.from_dict(builds[1]).min_platform_requirement == 3


def test_parse_github_releases_tolerates_bad_payload():
    assert parse_github_releases({"message": "rate limited"}) == []


def test_parse_runners_json_expands_github_and_inline_builds():
    data = {"compat_layers": [
        {"title": "Proton", "runners": [
            {"title": "GE-Proton", "type": "github", "endpoint": "https://api.invalid/releases"},
            {"title": "Custom", "builds": [{"name": "custom-1", "download_url": "file:///tmp/custom-1.tar.gz"}]},
        ]},
        {"title": "DXVK", "runners": [{"title": "ignored", "builds": [{"name": "x", "download_url": "y"}]}]},
    ]}
    requested = []

    def fetch(url):
        requested.append(url)
        return RELEASES

    builds = parse_runners_json(data, fetch=fetch)

    assert requested == ["https://api.invalid/releases?per_page=25&page=1"]
    assert [(build["name"], build["runner"]) for build in builds] == [
        ("GE-Proton10-3", "GE-Proton"), ("GE-Proton9-20", "GE-Proton"), ("custom-1", "Custom")]


def test_installed_builds_reads_version_files(tmp_path):
    (tmp_path / "GE-Proton9-20").mkdir()
    (tmp_path / "GE-Proton9-20" / "version").write_text("1712345678 GE-Proton9-20\n")
    (tmp_path / "Custom").mkdir()
    (tmp_path / ".staging-x").mkdir()
    (tmp_path / "notes.txt").write_text("not a build")

    assert installed_builds(tmp_path) == {"Custom": "Custom", "GE-Proton9-20": "GE-Proton9-20"}


def test_load_catalog_marks_installed_and_updates(tmp_path):
    (tmp_path / "GE-Proton9-20").mkdir()
    builds = load_catalog(parse_github_releases(RELEASES), tmp_path)

    newer = find_build(builds, "GE-Proton10-3")
    current = find_build(builds, "GE-Proton9-20")
    assert current.installed and not current.update_available
    assert not newer.installed
    assert newer.installed_version == "GE-Proton9-20"
    assert newer.update_available
    assert latest_build(builds).name == "GE-Proton10-3"


def test_is_supported_respects_cpu_level():
    build = BuildDescriptor("b", "b", "u", min_platform_requirement=3)

    assert build.is_supported(3)
    assert not build.is_supported(2)
    assert not build.is_supported(None)
    assert BuildDescriptor("c", "c", "u").is_supported(1)


def test_proton_fetcher_reads_local_file(tmp_path):
    path = tmp_path / "releases.json"
    path.write_text(json.dumps(RELEASES), encoding="utf-8")

    assert [build["name"] for build in make_proton_fetcher(str(path))()] == ["GE-Proton10-3", "GE-Proton9-20"]
    assert len(make_proton_fetcher(path.as_uri())()) == 2


def test_fetch_json_wraps_errors(tmp_path):
    with pytest.raises(NetworkError):
        fetch_json((tmp_path / "missing.json").as_uri())
    with pytest.raises(NetworkError):
        make_proton_fetcher(str(tmp_path / "missing.json"))()


def test_check_build_name():
    assert check_build_name("GE-Proton9-20") == "GE-Proton9-20"
    for name in ("", " ", ".", "..", "a/b", "../up", None):
        with pytest.raises(PipelineError):
            check_build_name(name)


def test_load_catalog_skips_unusable_names(tmp_path):
    payload = parse_github_releases(RELEASES) + [
        BuildDescriptor(name="..", version="1", download_url="https://example.invalid/up.tar.gz").to_dict(),
        BuildDescriptor(name="a/b", version="1", download_url="https://example.invalid/ab.tar.gz").to_dict(),
    ]

    names = [build.name for build in load_catalog(payload, tmp_path)]

    assert ".." not in names and "a/b" not in names
    assert "GE-Proton10-3" in names
