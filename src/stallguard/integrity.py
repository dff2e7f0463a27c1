"""Integrity watch over a secondary artifact (binary, config file, ...)."""

import hashlib
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ArtifactFingerprint:
    """Identity of the artifact at one point in time; exists=False if missing."""

    exists: bool
    size: int = 0
    mtime_ns: int = 0
    sha256: str = ""


@dataclass(slots=True, frozen=True)
class ArtifactChange:
    """A detected mismatch between the baseline and the current artifact."""

    path: Path
    before: ArtifactFingerprint
    after: ArtifactFingerprint

    def describe(self) -> dict[str, object]:
        return {
            "artifact": str(self.path),
            "size_before": self.before.size,
            "size_after": self.after.size,
            "sha256_before": self.before.sha256 or None,
            "sha256_after": self.after.sha256 or None,
            "exists_after": self.after.exists,
        }


class ArtifactWatcher:
    """
    Compares the artifact against a baseline on every check.

    Size and mtime are compared first; the file is only re-hashed when one
    of them moved. A confirmed change becomes the new baseline, so each
    change is reported once.
    """

    def __init__(self, path: Path, chunk_size: int = 1 << 20) -> None:
        self._path = path
        self._chunk_size = chunk_size
        self._baseline: ArtifactFingerprint | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def baseline(self) -> ArtifactFingerprint | None:
        return self._baseline

    def check(self) -> ArtifactChange | None:
        """Return the change since the last check, or None (first call sets the baseline)."""
        if self._baseline is None:
            self._baseline = self._fingerprint()
            log.info(
                "artifact_baseline_recorded",
                artifact=str(self._path),
                size=self._baseline.size,
                sha256=self._baseline.sha256 or None,
            )
            return None

        quick = self._stat()
        before = self._baseline
        if (
            quick.exists == before.exists
            and quick.size == before.size
            and quick.mtime_ns == before.mtime_ns
        ):
            return None

        current = self._fingerprint()
        if current.exists == before.exists and current.size == before.size and current.sha256 == before.sha256:
            # Touched but identical content
            self._baseline = current
            return None

        self._baseline = current
        return ArtifactChange(path=self._path, before=before, after=current)

    def _stat(self) -> ArtifactFingerprint:
        try:
            st = self._path.stat()
        except FileNotFoundError:
            return ArtifactFingerprint(exists=False)
        return ArtifactFingerprint(exists=True, size=st.st_size, mtime_ns=st.st_mtime_ns)

    def _fingerprint(self) -> ArtifactFingerprint:
        quick = self._stat()
        if not quick.exists:
            return quick
        digest = hashlib.sha256()
        try:
            with open(self._path, "rb") as fh:
                while chunk := fh.read(self._chunk_size):
                    digest.update(chunk)
        except FileNotFoundError:
            return ArtifactFingerprint(exists=False)
        return ArtifactFingerprint(
            exists=True,
            size=quick.size,
            mtime_ns=quick.mtime_ns,
            sha256=digest.hexdigest(),
        )
