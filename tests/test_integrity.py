"""Tests for the artifact integrity watch."""

import hashlib
import os

import pytest

from stallguard.integrity import ArtifactWatcher


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "server.bin"
    path.write_bytes(b"original build")
    return path


def bump_mtime(path, seconds: int = 10) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * 1_000_000_000))


class TestArtifactWatcher:
    """Tests for ArtifactWatcher.check."""

    def test_first_check_records_baseline(self, artifact):
        watcher = ArtifactWatcher(artifact)

        assert watcher.check() is None
        assert watcher.baseline.exists
        assert watcher.baseline.sha256 == hashlib.sha256(b"original build").hexdigest()

    def test_unchanged_artifact(self, artifact):
        watcher = ArtifactWatcher(artifact)
        watcher.check()

        assert watcher.check() is None
        assert watcher.check() is None

    def test_content_change_is_reported_once(self, artifact):
        watcher = ArtifactWatcher(artifact)
        watcher.check()

        artifact.write_bytes(b"patched build, longer")
        change = watcher.check()

        assert change is not None
        assert change.before.size == len(b"original build")
        assert change.after.size == len(b"patched build, longer")
        assert change.before.sha256 != change.after.sha256
        assert watcher.check() is None

    def test_same_size_rewrite_is_detected(self, artifact):
        watcher = ArtifactWatcher(artifact)
        watcher.check()

        artifact.write_bytes(b"ORIGINAL BUILD")
        bump_mtime(artifact)

        assert watcher.check() is not None

    def test_touch_without_content_change(self, artifact):
        watcher = ArtifactWatcher(artifact)
        watcher.check()

        bump_mtime(artifact)

        assert watcher.check() is None
        assert watcher.baseline.mtime_ns == artifact.stat().st_mtime_ns

    def test_removed_artifact(self, artifact):
        watcher = ArtifactWatcher(artifact)
        watcher.check()

        artifact.unlink()
        change = watcher.check()

        assert change is not None
        assert not change.after.exists
        details = change.describe()
        assert details["exists_after"] is False
        assert details["sha256_after"] is None
        assert details["artifact"] == str(artifact)

    def test_missing_then_created(self, tmp_path):
        path = tmp_path / "late.cfg"
        watcher = ArtifactWatcher(path)

        assert watcher.check() is None
        assert not watcher.baseline.exists

        path.write_text("threads=4")
        change = watcher.check()

        assert change is not None
        assert change.after.exists

    def test_small_chunks_hash_whole_file(self, artifact):
        payload = os.urandom(10_000)
        artifact.write_bytes(payload)
        watcher = ArtifactWatcher(artifact, chunk_size=64)

        watcher.check()

        assert watcher.baseline.sha256 == hashlib.sha256(payload).hexdigest()
