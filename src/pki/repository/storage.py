"""File-system store for CA and certificate artifacts.

The directory tree under the configured root is the registry:

    ROOT/<ca>/ca/key.pem, key.pub, <ca>.csr, <ca>.crt, <ca>.crl
    ROOT/<ca>/certs/<cn>/key.pem, key.pub, <cn>.csr, <cn>.crt

Every write is atomic (temp file + rename). Key files are created with mode
0600 and never exist on disk with a looser mode.
"""

import fcntl
import logging
import os
import stat
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING

from opentelemetry import trace

from pki.domain.models import Artifact
from pki.domain.states import ArtifactKind, Ownership
from pki.errors import (
    ArtifactNotFoundError,
    IncompleteCopyError,
    StorageError,
    StoragePathError,
)
from pki.metrics import pki_metrics

if TYPE_CHECKING:
    from shared.config import Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PEM_FILE = "key.pem"
PUBLIC_PEM_FILE = "key.pub"
CA_DIR = "ca"
CERTS_DIR = "certs"

CERT_EXTENSION = ".crt"
CSR_EXTENSION = ".csr"
CRL_EXTENSION = ".crl"

# Reserved for the test suite; refused as a root unless test mode is enabled.
TEST_ONLY_CAPATH = "DoNotUseThisCAPATHTestOnly"

DIR_MODE = 0o755
KEY_MODE = 0o600
FILE_MODE = 0o644

_KEY_KINDS = (ArtifactKind.PRIVATE_KEY, ArtifactKind.PUBLIC_KEY)


class _CALock:
    """Re-entrant per-CA lock: a thread mutex plus an flock held across processes."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._mutex = threading.RLock()
        self._depth = 0
        self._fh: IO[str] | None = None

    def __enter__(self) -> "_CALock":
        self._mutex.acquire()
        try:
            if self._depth == 0:
                fh = open(self._path, "a+")
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                except OSError:
                    fh.close()
                    raise
                self._fh = fh
            self._depth += 1
        except BaseException:
            self._mutex.release()
            raise
        return self

    def __exit__(self, *exc_info: object) -> None:
        try:
            self._depth -= 1
            if self._depth == 0 and self._fh is not None:
                fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
                self._fh.close()
                self._fh = None
        finally:
            self._mutex.release()


# Shared by every FileStore in the process so two stores on one root serialize.
_locks: dict[str, _CALock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: Path) -> _CALock:
    key = str(path)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _CALock(path)
            _locks[key] = lock
        return lock


def validate_name(name: str) -> str:
    """Check that a CA or certificate common name is a single safe path segment."""
    if (
        not name
        or name in (".", "..")
        or name.startswith(".")
        or "/" in name
        or "\\" in name
        or "\x00" in name
    ):
        raise StoragePathError(f"invalid common name for storage: {name!r}")
    return name


class FileStore:
    """Maps (CA, common name, artifact kind) to files under a root directory."""

    def __init__(self, root: str | os.PathLike[str] | None = None, test_mode: bool = False):
        self.root = self.ensure_root(root, test_mode=test_mode)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "FileStore":
        """Build a store from application settings (CAPATH, CA_TEST_MODE)."""
        return cls(settings.CAPATH, test_mode=settings.CA_TEST_MODE)

    @staticmethod
    def ensure_root(root: str | os.PathLike[str] | None, test_mode: bool = False) -> Path:
        """Resolve the store root, creating it if absent.

        Args:
            root: Configured root directory. Unset means the current directory.
            test_mode: Allow the reserved test-only root.

        Raises:
            StoragePathError: If the reserved test root is used outside test mode.
            StorageError: If the directory cannot be created.
        """
        path = Path(root) if root else Path.cwd()

        if path.name == TEST_ONLY_CAPATH and not test_mode:
            raise StoragePathError(f"not allowed CAPATH={path} (reserved for tests)")

        try:
            path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create store root {path}: {e}") from e

        return path.resolve()

    def _path(self, *parts: str) -> Path:
        """Join parts under the root, refusing anything that escapes it."""
        candidate = self.root.joinpath(*parts).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise StoragePathError(f"unsafe path outside the store: {'/'.join(parts)}")
        return candidate

    def make_directory(self, *parts: str) -> Path:
        """Create a directory (and parents) under the root. Idempotent."""
        path = self._path(*parts)
        try:
            path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create directory {path}: {e}") from e
        return path

    def artifact_dir(self, ca_name: str, common_name: str, ownership: Ownership) -> Path:
        validate_name(ca_name)
        if ownership is Ownership.CA:
            return self._path(ca_name, CA_DIR)
        return self._path(ca_name, CERTS_DIR, validate_name(common_name))

    def artifact_path(
        self,
        ca_name: str,
        common_name: str,
        kind: ArtifactKind,
        ownership: Ownership,
    ) -> Path:
        """Canonical path of an artifact."""
        directory = self.artifact_dir(ca_name, common_name, ownership)
        validate_name(common_name)
        if kind is ArtifactKind.PRIVATE_KEY:
            return directory / PEM_FILE
        if kind is ArtifactKind.PUBLIC_KEY:
            return directory / PUBLIC_PEM_FILE
        if kind is ArtifactKind.CSR:
            return directory / f"{common_name}{CSR_EXTENSION}"
        if kind is ArtifactKind.CERTIFICATE:
            return directory / f"{common_name}{CERT_EXTENSION}"
        return directory / f"{common_name}{CRL_EXTENSION}"

    def save(self, artifact: Artifact) -> Path:
        """Persist an artifact atomically at its canonical path.

        Returns:
            The path written.

        Raises:
            StorageError: If the file cannot be written.
        """
        path = self.artifact_path(
            artifact.ca_name, artifact.common_name, artifact.kind, artifact.ownership
        )
        mode = KEY_MODE if artifact.kind in _KEY_KINDS else FILE_MODE

        with tracer.start_as_current_span("FileStore.save") as span:
            span.set_attribute("ca", artifact.ca_name)
            span.set_attribute("common_name", artifact.common_name)
            span.set_attribute("kind", artifact.kind.value)

            self.make_directory(*path.parent.relative_to(self.root).parts)

            self._atomic_write(path, artifact.data, mode)
            pki_metrics.record_artifact_written(artifact.kind.value)

            logger.debug(
                "artifact_saved",
                extra={
                    "ca": artifact.ca_name,
                    "common_name": artifact.common_name,
                    "kind": artifact.kind.value,
                    "path": str(path),
                },
            )
            return path

    def _atomic_write(self, path: Path, data: bytes, mode: int) -> None:
        # mkstemp creates the file 0600, so key material is never exposed.
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp.", dir=path.parent)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                if mode != KEY_MODE:
                    os.fchmod(f.fileno(), mode)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def load(self, *parts: str) -> bytes:
        """Read a file relative to the root.

        Raises:
            ArtifactNotFoundError: If the file does not exist.
            StorageError: For any other I/O failure.
        """
        path = self._path(*parts)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(str(path)) from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def load_artifact(
        self,
        ca_name: str,
        common_name: str,
        kind: ArtifactKind,
        ownership: Ownership,
    ) -> bytes:
        path = self.artifact_path(ca_name, common_name, kind, ownership)
        return self.load(*path.relative_to(self.root).parts)

    def copy(self, src: str, dest: str) -> None:
        """Copy a file byte-for-byte, preserving the source mode.

        Both paths are relative to the root.

        Raises:
            ArtifactNotFoundError: If the source does not exist.
            IncompleteCopyError: If fewer bytes were written than the source size.
            StorageError: For any other I/O failure.
        """
        src_path = self._path(src)
        dest_path = self._path(dest)

        try:
            fin = open(src_path, "rb")
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(str(src_path)) from e
        except OSError as e:
            raise StorageError(f"Failed to open {src_path}: {e}") from e

        with fin:
            try:
                src_stat = os.fstat(fin.fileno())
                fd, tmp_name = tempfile.mkstemp(prefix=".tmp.", dir=dest_path.parent)
            except OSError as e:
                raise StorageError(f"Failed to copy {src_path}: {e}") from e

            try:
                written = 0
                with os.fdopen(fd, "wb") as fout:
                    os.fchmod(fout.fileno(), stat.S_IMODE(src_stat.st_mode))
                    for chunk in iter(lambda: fin.read(64 * 1024), b""):
                        written += fout.write(chunk)
                    fout.flush()
                    os.fsync(fout.fileno())

                if written != src_stat.st_size:
                    raise IncompleteCopyError(str(src_path), written, src_stat.st_size)

                os.replace(tmp_name, dest_path)
            except OSError as e:
                raise StorageError(f"Failed to copy {src_path} to {dest_path}: {e}") from e
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)

        logger.debug("artifact_copied", extra={"src": str(src_path), "dest": str(dest_path)})

    def exists_certificate(self, ca_name: str, common_name: str) -> bool:
        path = self.artifact_path(
            ca_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE
        )
        return path.exists()

    def exists_ca(self, common_name: str) -> bool:
        return self._path(validate_name(common_name)).is_dir()

    def is_ca(self, common_name: str) -> bool:
        """Whether the directory named common_name holds a CA key pair."""
        return all(
            self.artifact_path(common_name, common_name, kind, Ownership.CA).is_file()
            for kind in _KEY_KINDS
        )

    def _list_dirs(self, *parts: str) -> list[str]:
        path = self._path(*parts)
        try:
            return [entry.name for entry in os.scandir(path) if entry.is_dir()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Failed to list {path}: {e}") from e

    def list_cas(self) -> list[str]:
        """Names of all CAs. Order is file-system dependent."""
        return self._list_dirs()

    def list_certificates(self, ca_name: str) -> list[str]:
        """Names of all certificates issued by a CA. Order is file-system dependent."""
        return self._list_dirs(validate_name(ca_name), CERTS_DIR)

    @contextmanager
    def lock(self, ca_name: str) -> Iterator[None]:
        """Exclusive critical section for mutating one CA's artifacts."""
        lock = _lock_for(self._path(f".{validate_name(ca_name)}.lock"))
        with lock:
            yield
