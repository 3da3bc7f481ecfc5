"""Tests for domain invariant enforcement.

These tests verify that the CA invariants hold across operations, instances
and threads, and that failures leave the store untouched.
"""

import os
import stat
import threading

import pytest

from pki.domain.states import CAStatus
from pki.errors import CAExistsError, CertificateRevokedError
from pki.services.authority import CertificateAuthority


def _snapshot(root) -> dict[str, bytes]:
    """All files under a directory, keyed by relative path."""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestUniqueCommonName:
    """A CA common name is unique in the store."""

    def test_concurrent_create_yields_one_ca(self, store, make_identity):
        """Racing creators produce exactly one CA; the others fail cleanly."""
        results: list[str] = []
        lock = threading.Lock()

        def create():
            try:
                CertificateAuthority.create(store, "example.com", make_identity())
                outcome = "created"
            except CAExistsError:
                outcome = "exists"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=create) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(results) == ["created", "exists", "exists", "exists"]
        assert CertificateAuthority.load(store, "example.com").status == CAStatus.ROOT_READY


class TestKeyProtection:
    """Private key material is never world-readable."""

    def test_every_key_file_is_0600(self, store, intermediate_ca, make_identity):
        intermediate_ca.issue_certificate("leaf.example.com", make_identity())

        key_files = [p for p in store.root.rglob("key.*")]
        assert len(key_files) == 6  # root, intermediate, leaf: private + public each
        for path in key_files:
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600, path

    def test_no_temporary_files_left(self, store, intermediate_ca, make_identity):
        """Atomic writes leave only canonical files behind."""
        intermediate_ca.issue_certificate("leaf.example.com", make_identity())
        intermediate_ca.revoke_certificate("leaf.example.com")

        assert not [p for p in store.root.rglob(".tmp.*")]


class TestIssuerReference:
    """An issued certificate records its CA's certificate byte-for-byte."""

    def test_issuer_reference_matches_ca_certificate(self, store, root_ca, make_identity):
        cert = root_ca.issue_certificate("leaf.example.com", make_identity())
        on_disk = (store.root / "example.com" / "ca" / "example.com.crt").read_bytes()

        assert cert.ca_certificate.pem == on_disk
        assert root_ca.load_certificate("leaf.example.com").ca_certificate.pem == on_disk


class TestSerialNumbers:
    """Serial numbers are random, positive and distinct in practice."""

    def test_issued_serials_are_distinct(self, root_ca, make_identity):
        serials = {
            root_ca.issue_certificate(f"host{i}.example.com", make_identity()).serial_number
            for i in range(5)
        }
        assert len(serials) == 5
        assert all(0 < s < 2**128 for s in serials)


class TestRevocationList:
    """Revoked serials accumulate and are never duplicated."""

    def test_failed_revoke_leaves_crl_unchanged(self, store, root_ca, make_identity):
        root_ca.issue_certificate("leaf.example.com", make_identity())
        root_ca.revoke_certificate("leaf.example.com")
        before = _snapshot(store.root / "example.com" / "ca")

        with pytest.raises(CertificateRevokedError):
            root_ca.revoke_certificate("leaf.example.com")

        assert _snapshot(store.root / "example.com" / "ca") == before

    def test_concurrent_revocations_lose_no_update(self, store, root_ca, make_identity):
        """Revocations from separate instances and threads all reach the CRL."""
        names = [f"host{i}.example.com" for i in range(6)]
        serials = {root_ca.issue_certificate(n, make_identity()).serial_number for n in names}
        errors: list[Exception] = []

        def revoke(name):
            ca = CertificateAuthority.load(store, "example.com")
            try:
                ca.revoke_certificate(name)
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=revoke, args=(n,)) for n in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        reloaded = CertificateAuthority.load(store, "example.com")
        revoked = [e.serial_number for e in reloaded.revoked_certificates]
        assert len(revoked) == len(names)
        assert set(revoked) == serials

    def test_concurrent_double_revocation(self, store, root_ca, make_identity):
        """Two racing revocations of one certificate: one wins, one is rejected."""
        root_ca.issue_certificate("leaf.example.com", make_identity())
        outcomes: list[str] = []

        def revoke():
            ca = CertificateAuthority.load(store, "example.com")
            try:
                ca.revoke_certificate("leaf.example.com")
                outcomes.append("revoked")
            except CertificateRevokedError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=revoke) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(outcomes) == ["rejected", "revoked"]
        reloaded = CertificateAuthority.load(store, "example.com")
        assert len(reloaded.revoked_certificates) == 1


class TestStateDerivation:
    """The CA state always follows the artifacts on disk."""

    def test_status_after_each_operation(self, store, root_ca, make_identity):
        ica = CertificateAuthority.create(
            store, "ica.example.com", make_identity(intermediate=True)
        )
        assert CertificateAuthority.load(store, "ica.example.com").status == (
            CAStatus.INTERMEDIATE_PENDING
        )

        root_ca.sign_csr(ica.csr)
        ica = CertificateAuthority.load(store, "ica.example.com")
        assert ica.status == CAStatus.INTERMEDIATE_READY

        ica.issue_certificate("leaf.example.com", make_identity())
        ica.revoke_certificate("leaf.example.com")
        assert CertificateAuthority.load(store, "ica.example.com").status == (
            CAStatus.INTERMEDIATE_READY
        )
        assert CertificateAuthority.load(store, "example.com").status == CAStatus.ROOT_READY
