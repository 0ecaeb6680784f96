from __future__ import annotations

import hashlib
import io
import tarfile
import zipfile

import pytest

from build_catalog import BuildDescriptor
from download_pipeline import DownloadPipeline, check_tar_member
from errors import PipelineError
from operation import OperationState
from progress_parser import ByteProgress, Failed, PercentUpdate, StageChanged


def _add_file(tar, name, data):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def _tarball(path, build_name, extra=()):
    with tarfile.open(path, "w:gz") as tar:
        _add_file(tar, f"{build_name}/version", f"1700000000 {build_name}\n".encode())
        _add_file(tar, f"{build_name}/files/bin/wine", b"#!/bin/sh\necho wine\n")
        for name, data in extra:
            _add_file(tar, name, data)
    return path


def _build(archive, name="GE-Proton9-1", checksum=True):
    digest = hashlib.sha256(archive.read_bytes()).hexdigest() if checksum else None
    return BuildDescriptor(name=name, version=name, download_url=archive.as_uri(), checksum=digest)


def _run(pipeline):
    stream = pipeline.subscribe()
    pipeline.execute()
    return list(stream)


def _stages(events):
    return [event.name for event in events if isinstance(event, StageChanged)]


@pytest.fixture
def install_root(tmp_path):
    root = tmp_path / "compatibilitytools.d"
    root.mkdir()
    return root


def _leftovers(root):
    return [child.name for child in root.iterdir() if child.name.startswith(".staging-")]


def test_download_extract_install(tmp_path, install_root):
    archive = _tarball(tmp_path / "GE-Proton9-1.tar.gz", "GE-Proton9-1")
    pipeline = DownloadPipeline("proton:GE-Proton9-1", _build(archive), install_root, chunk_size=64)

    events = _run(pipeline)

    assert pipeline.state is OperationState.SUCCEEDED
    assert (install_root / "GE-Proton9-1" / "version").read_text() == "1700000000 GE-Proton9-1\n"
    assert (install_root / "GE-Proton9-1" / "files" / "bin" / "wine").exists()
    assert _stages(events) == ["Queued", "Downloading", "Extracting", "Installing", "Done"]
    percents = [event.value for event in events if isinstance(event, PercentUpdate) and event.value is not None]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    received = [event for event in events if isinstance(event, ByteProgress)]
    assert received[-1].received == archive.stat().st_size
    assert received[-1].total == archive.stat().st_size
    assert _leftovers(install_root) == []


def test_existing_install_is_replaced(tmp_path, install_root):
    old = install_root / "GE-Proton9-1"
    (old / "stale").mkdir(parents=True)
    archive = _tarball(tmp_path / "GE-Proton9-1.tar.gz", "GE-Proton9-1")

    _run(DownloadPipeline("proton:GE-Proton9-1", _build(archive), install_root))

    assert not (old / "stale").exists()
    assert (old / "version").exists()
    assert sorted(child.name for child in install_root.iterdir()) == ["GE-Proton9-1"]


def test_extraction_failure_keeps_previous_install(tmp_path, install_root):
    old = install_root / "GE-Proton9-1"
    old.mkdir()
    (old / "version").write_text("old\n")
    archive = tmp_path / "GE-Proton9-1.tar.gz"
    archive.write_bytes(b"\x1f\x8b\x08\x00" + b"definitely not a gzip stream" * 20)
    pipeline = DownloadPipeline("proton:GE-Proton9-1", _build(archive), install_root)

    events = _run(pipeline)

    assert pipeline.state is OperationState.FAILED
    assert isinstance(events[-1], Failed)
    assert "Failed" in _stages(events)
    assert (old / "version").read_text() == "old\n"
    assert _leftovers(install_root) == []


def test_unsafe_member_fails_pipeline(tmp_path, install_root):
    archive = _tarball(tmp_path / "evil.tar.gz", "GE-Proton9-1", extra=[("../escaped", b"gotcha")])
    pipeline = DownloadPipeline("proton:evil", _build(archive), install_root)

    events = _run(pipeline)

    assert pipeline.state is OperationState.FAILED
    assert "parent-directory" in events[-1].message
    assert not (install_root / "escaped").exists()
    assert not (install_root.parent / "escaped").exists()
    assert not (install_root / "GE-Proton9-1").exists()


def test_checksum_mismatch_fails(tmp_path, install_root):
    archive = _tarball(tmp_path / "GE-Proton9-1.tar.gz", "GE-Proton9-1")
    build = BuildDescriptor(name="GE-Proton9-1", version="GE-Proton9-1", download_url=archive.as_uri(),
                            checksum="0" * 64)
    pipeline = DownloadPipeline("proton:GE-Proton9-1", build, install_root)

    events = _run(pipeline)

    assert pipeline.state is OperationState.FAILED
    assert "Checksum mismatch" in events[-1].message
    assert not (install_root / "GE-Proton9-1").exists()


def test_missing_download_fails(tmp_path, install_root):
    build = BuildDescriptor(name="GE-Proton9-1", version="GE-Proton9-1",
                            download_url=(tmp_path / "missing.tar.gz").as_uri())
    pipeline = DownloadPipeline("proton:GE-Proton9-1", build, install_root)

    events = _run(pipeline)

    assert pipeline.state is OperationState.FAILED
    assert "Download of GE-Proton9-1 failed" in events[-1].message


def test_cancel_during_download_keeps_previous_install(tmp_path, install_root):
    old = install_root / "GE-Proton9-1"
    old.mkdir()
    (old / "version").write_text("old\n")
    archive = _tarball(tmp_path / "GE-Proton9-1.tar.gz", "GE-Proton9-1")
    pipeline = DownloadPipeline("proton:GE-Proton9-1", _build(archive), install_root, chunk_size=16)
    set_bytes = pipeline.set_bytes

    def cancel_after_first_chunk(received, total=None):
        set_bytes(received, total)
        if received:
            pipeline.cancel()

    pipeline.set_bytes = cancel_after_first_chunk
    events = _run(pipeline)

    assert pipeline.state is OperationState.CANCELLED
    assert _stages(events)[-1] == "Cancelled"
    assert (old / "version").read_text() == "old\n"
    assert _leftovers(install_root) == []


def test_zip_archive_is_supported(tmp_path, install_root):
    archive = tmp_path / "wine-ge.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("wine-ge-8-26/version", "wine-ge-8-26\n")
        bundle.writestr("wine-ge-8-26/bin/wine", "binary")
    build = BuildDescriptor(name="wine-ge-8-26", version="wine-ge-8-26", download_url=archive.as_uri(),
                            runner="Wine-GE")
    pipeline = DownloadPipeline("proton:wine-ge-8-26", build, install_root)

    _run(pipeline)

    assert pipeline.state is OperationState.SUCCEEDED
    assert (install_root / "wine-ge-8-26" / "bin" / "wine").read_text() == "binary"


def test_symlink_leaving_tree_is_rejected(tmp_path):
    link = tarfile.TarInfo("GE-Proton9-1/link")
    link.type = tarfile.SYMTYPE
    link.linkname = "../../etc/passwd"

    with pytest.raises(PipelineError):
        check_tar_member(link, str(tmp_path))


def test_relative_symlink_inside_tree_is_allowed(tmp_path):
    link = tarfile.TarInfo("GE-Proton9-1/files/lib")
    link.type = tarfile.SYMTYPE
    link.linkname = "../lib64"

    assert check_tar_member(link, str(tmp_path)).endswith("GE-Proton9-1/files/lib")


@pytest.mark.parametrize("name", ["", ".", "..", "../outside", "nested/dir", "/abs"])
def test_unusable_build_name_fails_before_touching_disk(tmp_path, name):
    install_root = tmp_path / "not-created-yet"
    build = BuildDescriptor(name=name, version="1", download_url=(tmp_path / "x.tar.gz").as_uri())
    pipeline = DownloadPipeline("proton:odd", build, install_root)

    events = _run(pipeline)

    assert pipeline.state is OperationState.FAILED
    assert "Unusable build name" in events[-1].message
    assert not install_root.exists()
    with pytest.raises(PipelineError):
        build.install_dir_name
