"""Tests for the on-disk artifact store."""

import os
import stat
import threading
from unittest.mock import patch

import pytest

from pki.domain.models import Artifact
from pki.domain.states import ArtifactKind, Ownership
from pki.errors import (
    ArtifactNotFoundError,
    IncompleteCopyError,
    StorageError,
    StoragePathError,
)
from pki.repository.storage import TEST_ONLY_CAPATH, FileStore, validate_name


def _mode(path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def _artifact(kind, ownership=Ownership.CA, common_name="example.com", data=b"pem-data"):
    return Artifact(
        ca_name="example.com",
        common_name=common_name,
        kind=kind,
        ownership=ownership,
        data=data,
    )


class TestStoreRoot:
    """Tests for resolving and creating the store root."""

    def test_root_created_if_absent(self, tmp_path):
        """A missing root directory is created."""
        root = tmp_path / "nested" / "capath"
        store = FileStore(root)
        assert store.root == root.resolve()
        assert root.is_dir()

    def test_unset_root_uses_cwd(self, tmp_path, monkeypatch):
        """No root means the current working directory."""
        monkeypatch.chdir(tmp_path)
        store = FileStore()
        assert store.root == tmp_path.resolve()

    def test_test_only_root_rejected_outside_test_mode(self, tmp_path):
        """The reserved test sentinel path is refused in normal mode."""
        with pytest.raises(StoragePathError, match="reserved for tests"):
            FileStore(tmp_path / TEST_ONLY_CAPATH)
        assert not (tmp_path / TEST_ONLY_CAPATH).exists()

    def test_test_only_root_allowed_in_test_mode(self, tmp_path):
        """Test mode may use the reserved sentinel path."""
        store = FileStore(tmp_path / TEST_ONLY_CAPATH, test_mode=True)
        assert store.root.name == TEST_ONLY_CAPATH

    def test_from_settings(self, tmp_path):
        """from_settings reads CAPATH and CA_TEST_MODE."""
        from shared.config import Settings

        settings = Settings(CAPATH=str(tmp_path / TEST_ONLY_CAPATH), CA_TEST_MODE=True)
        store = FileStore.from_settings(settings)
        assert store.root == (tmp_path / TEST_ONLY_CAPATH).resolve()


class TestNames:
    """Tests for path segment validation."""

    @pytest.mark.parametrize("name", ["", ".", "..", ".hidden", "a/b", "a\\b", "a\x00b"])
    def test_unsafe_names_rejected(self, name):
        """Names that are not a single safe segment are refused."""
        with pytest.raises(StoragePathError):
            validate_name(name)

    def test_domain_name_accepted(self):
        """Ordinary DNS-style names pass through unchanged."""
        assert validate_name("leaf.example.com") == "leaf.example.com"

    def test_path_traversal_refused(self, store):
        """An artifact cannot be written outside its CA directory."""
        with pytest.raises(StoragePathError):
            store.save(_artifact(ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE, "../evil"))


class TestSaveLoad:
    """Tests for artifact persistence."""

    @pytest.mark.parametrize(
        "kind,filename",
        [
            (ArtifactKind.PRIVATE_KEY, "key.pem"),
            (ArtifactKind.PUBLIC_KEY, "key.pub"),
            (ArtifactKind.CSR, "example.com.csr"),
            (ArtifactKind.CERTIFICATE, "example.com.crt"),
            (ArtifactKind.CRL, "example.com.crl"),
        ],
    )
    def test_ca_artifact_layout(self, store, kind, filename):
        """CA-owned artifacts land in <ca>/ca/ under their canonical name."""
        store.make_directory("example.com", "ca")
        path = store.save(_artifact(kind))
        assert path == store.root / "example.com" / "ca" / filename
        assert path.read_bytes() == b"pem-data"

    def test_ca_artifact_creates_directory(self, store):
        """CA-owned artifacts create <ca>/ca/ on demand in a fresh store."""
        path = store.save(_artifact(ArtifactKind.PRIVATE_KEY))

        assert path == store.root / "example.com" / "ca" / "key.pem"
        assert _mode(path) == 0o600

    def test_certificate_artifact_creates_directory(self, store):
        """Certificate-owned artifacts create <ca>/certs/<cn>/ on demand."""
        path = store.save(
            _artifact(ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE, "leaf.example.com")
        )
        assert path == store.root / "example.com" / "certs" / "leaf.example.com" / (
            "leaf.example.com.crt"
        )

    def test_key_files_are_private(self, store):
        """Private and public key files are written with mode 0600."""
        store.make_directory("example.com", "ca")
        private = store.save(_artifact(ArtifactKind.PRIVATE_KEY))
        public = store.save(_artifact(ArtifactKind.PUBLIC_KEY))
        assert _mode(private) == 0o600
        assert _mode(public) == 0o600

    def test_other_files_are_world_readable(self, store):
        """Certificates are written with mode 0644."""
        store.make_directory("example.com", "ca")
        path = store.save(_artifact(ArtifactKind.CERTIFICATE))
        assert _mode(path) == 0o644

    def test_save_overwrites_atomically(self, store):
        """A second save replaces the content and leaves no temp files."""
        store.make_directory("example.com", "ca")
        store.save(_artifact(ArtifactKind.CRL, data=b"first"))
        path = store.save(_artifact(ArtifactKind.CRL, data=b"second"))
        assert path.read_bytes() == b"second"
        assert [p.name for p in path.parent.iterdir()] == ["example.com.crl"]

    def test_load_artifact_round_trip(self, store):
        """load_artifact returns exactly the saved bytes."""
        store.save(_artifact(ArtifactKind.CSR, Ownership.CERTIFICATE, "leaf", b"csr-bytes"))
        data = store.load_artifact("example.com", "leaf", ArtifactKind.CSR, Ownership.CERTIFICATE)
        assert data == b"csr-bytes"

    def test_load_missing_raises_not_found(self, store):
        """A missing file is a typed not-found error."""
        with pytest.raises(ArtifactNotFoundError):
            store.load("example.com", "ca", "example.com.crt")

    def test_load_other_errors_raise_storage_error(self, store):
        """Read failures other than absence are not reported as not-found."""
        store.make_directory("example.com", "ca")
        with patch("pathlib.Path.read_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(StorageError) as exc_info:
                store.load("example.com", "ca", "example.com.crt")
        assert not isinstance(exc_info.value, ArtifactNotFoundError)

    def test_save_records_metric(self, store):
        """Every write is counted."""
        store.make_directory("example.com", "ca")
        with patch("pki.repository.storage.pki_metrics") as mock_metrics:
            store.save(_artifact(ArtifactKind.CERTIFICATE))
        mock_metrics.record_artifact_written.assert_called_once_with("certificate")


class TestCopy:
    """Tests for byte-for-byte copies."""

    def test_copy_preserves_content_and_mode(self, store):
        """The copy matches the source bytes and mode."""
        store.make_directory("example.com", "ca")
        src = store.save(_artifact(ArtifactKind.PRIVATE_KEY, data=b"secret"))
        store.make_directory("other", "ca")

        store.copy("example.com/ca/key.pem", "other/ca/key.pem")

        dest = store.root / "other" / "ca" / "key.pem"
        assert dest.read_bytes() == b"secret"
        assert _mode(dest) == _mode(src) == 0o600

    def test_copy_missing_source(self, store):
        """Copying a missing file raises not-found."""
        store.make_directory("other")
        with pytest.raises(ArtifactNotFoundError):
            store.copy("missing.crt", "other/missing.crt")

    def test_incomplete_copy_detected(self, store):
        """A short write is reported and leaves no destination file."""
        store.make_directory("example.com", "ca")
        store.save(_artifact(ArtifactKind.CERTIFICATE, data=b"0123456789"))

        real_fstat = os.fstat

        def inflated_fstat(fd):
            result = real_fstat(fd)
            values = list(result)
            values[stat.ST_SIZE] = result.st_size + 5
            return os.stat_result(values)

        with patch("pki.repository.storage.os.fstat", side_effect=inflated_fstat):
            with pytest.raises(IncompleteCopyError) as exc_info:
                store.copy("example.com/ca/example.com.crt", "example.com/ca/copy.crt")

        assert exc_info.value.written == 10
        assert exc_info.value.expected == 15
        assert not (store.root / "example.com" / "ca" / "copy.crt").exists()


class TestListing:
    """Tests for existence checks and listings."""

    def test_list_cas_returns_directories_only(self, store):
        """Files and lock files at the root are never listed as CAs."""
        store.make_directory("a.example.com")
        store.make_directory("b.example.com")
        (store.root / "stray.txt").write_text("x")
        with store.lock("a.example.com"):
            pass

        assert sorted(store.list_cas()) == ["a.example.com", "b.example.com"]

    def test_list_certificates(self, store):
        """Certificates are the subdirectories of <ca>/certs."""
        for cn in ("one", "two"):
            store.save(_artifact(ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE, cn))
        assert sorted(store.list_certificates("example.com")) == ["one", "two"]

    def test_list_certificates_without_certs_dir(self, store):
        """A CA without issued certificates lists nothing."""
        assert store.list_certificates("example.com") == []

    def test_is_ca_requires_key_pair(self, store):
        """Only a directory holding both CA key files counts as a CA."""
        store.make_directory("example.com")
        assert not store.is_ca("example.com")

        store.save(_artifact(ArtifactKind.PRIVATE_KEY))
        assert not store.is_ca("example.com")

        store.save(_artifact(ArtifactKind.PUBLIC_KEY))
        assert store.is_ca("example.com")
        assert not store.is_ca("other.example.com")

    def test_exists_checks(self, store):
        """exists_ca and exists_certificate reflect the layout."""
        assert not store.exists_ca("example.com")
        store.save(_artifact(ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE, "leaf"))
        assert store.exists_ca("example.com")
        assert store.exists_certificate("example.com", "leaf")
        assert not store.exists_certificate("example.com", "other")


class TestLock:
    """Tests for the per-CA critical section."""

    def test_lock_is_reentrant(self, store):
        """The same thread may nest the lock for one CA."""
        with store.lock("example.com"):
            with store.lock("example.com"):
                pass

    def test_lock_shared_between_store_instances(self, tmp_path):
        """Two stores on the same root exclude each other."""
        first = FileStore(tmp_path)
        second = FileStore(tmp_path)
        entered = threading.Event()
        released = threading.Event()
        order = []

        def holder():
            with first.lock("example.com"):
                entered.set()
                released.wait(timeout=5)
                order.append("holder")

        thread = threading.Thread(target=holder)
        thread.start()
        entered.wait(timeout=5)

        def contender():
            with second.lock("example.com"):
                order.append("contender")

        other = threading.Thread(target=contender)
        other.start()
        released.set()
        thread.join(timeout=5)
        other.join(timeout=5)

        assert order == ["holder", "contender"]

    def test_lock_file_location(self, store):
        """The lock file lives at ROOT/.<ca>.lock."""
        with store.lock("example.com"):
            pass
        assert (store.root / ".example.com.lock").is_file()
