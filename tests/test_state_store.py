import pytest

import macos_app_installer
from macos_app_installer import ArtifactIdentity, StateStore, StorageError
from tests.fakes import JAN_1, JAN_2

ZOOM = ArtifactIdentity("Zoom")


def test_read_without_meta_file_returns_none(tmp_path):
    assert StateStore(tmp_path).read(ZOOM) is None


def test_write_then_read(tmp_path):
    store = StateStore(tmp_path / "meta")
    store.write(ZOOM, JAN_1)

    assert store.read(ZOOM) == JAN_1
    assert (tmp_path / "meta" / "Zoom.meta").read_text() == f"{JAN_1}\n"


def test_write_overwrites_whole_file(tmp_path):
    store = StateStore(tmp_path)
    store.write(ZOOM, "a much longer indicator than the next one")
    store.write(ZOOM, JAN_2)

    assert store.read(ZOOM) == JAN_2


def test_write_leaves_no_temporary_files(tmp_path):
    store = StateStore(tmp_path)
    store.write(ZOOM, JAN_1)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["Zoom.meta"]


def test_read_only_strips_trailing_newlines(tmp_path):
    # Files written by `echo "$value" > file` after awk keep the leading space
    (tmp_path / "Zoom.meta").write_text(f" {JAN_1}\n")

    assert StateStore(tmp_path).read(ZOOM) == f" {JAN_1}"


def test_variant_identities_use_separate_files(tmp_path):
    store = StateStore(tmp_path)
    store.write(ArtifactIdentity("Zoom", "intel"), JAN_1)
    store.write(ArtifactIdentity("Zoom", "arm64"), JAN_2)

    assert (tmp_path / "Zoom.intel.meta").read_text() == f"{JAN_1}\n"
    assert (tmp_path / "Zoom.arm64.meta").read_text() == f"{JAN_2}\n"
    assert store.read(ZOOM) is None


def test_failed_replace_keeps_previous_contents(tmp_path, monkeypatch):
    store = StateStore(tmp_path)
    store.write(ZOOM, JAN_1)
    before = (tmp_path / "Zoom.meta").read_bytes()

    def failingReplace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(macos_app_installer.os, "replace", failingReplace)

    with pytest.raises(StorageError, match="disk full"):
        store.write(ZOOM, JAN_2)

    assert (tmp_path / "Zoom.meta").read_bytes() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["Zoom.meta"]


def test_unusable_meta_directory_raises_storage_error(tmp_path):
    blocker = tmp_path / "meta"
    blocker.write_text("not a directory")

    with pytest.raises(StorageError):
        StateStore(blocker).write(ZOOM, JAN_1)


def test_unreadable_meta_file_raises_storage_error(tmp_path):
    (tmp_path / "Zoom.meta").mkdir()

    with pytest.raises(StorageError):
        StateStore(tmp_path).read(ZOOM)


def test_lock_is_exclusive(tmp_path):
    store = StateStore(tmp_path)

    with store.lock(ZOOM):
        with pytest.raises(StorageError, match="Another run"):
            with StateStore(tmp_path).lock(ZOOM):
                pass

    # Released once the first block exits
    with store.lock(ZOOM):
        pass
