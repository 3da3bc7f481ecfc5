"""Shared fixtures: a throwaway store root and ready-made identities."""

import pytest

from pki.domain.models import Identity
from pki.repository.storage import FileStore
from pki.services.authority import CertificateAuthority


def _make_identity(**overrides) -> Identity:
    """Create a complete CA identity with a small, fast key."""
    values = {
        "organization": "Example Org",
        "organizational_unit": "Platform",
        "country": "NO",
        "locality": "Oslo",
        "province": "Oslo",
        "email_addresses": "pki@example.com",
        "key_bit_size": 1024,
    }
    values.update(overrides)
    return Identity(**values)


@pytest.fixture
def make_identity():
    """Factory for identities; keyword arguments override the defaults."""
    return _make_identity


@pytest.fixture
def store(tmp_path):
    """A FileStore rooted in a fresh temporary directory."""
    return FileStore(tmp_path / "pki")


@pytest.fixture
def root_ca(store):
    """A ready root CA named example.com."""
    return CertificateAuthority.create(
        store, "example.com", _make_identity(dns_names=["www.example.com"])
    )


@pytest.fixture
def intermediate_ca(store, root_ca):
    """An intermediate CA signed by example.com at creation."""
    return CertificateAuthority.create(
        store,
        "ica.example.com",
        _make_identity(intermediate=True, dns_names=["ica.example.com"]),
        parent_name=root_ca.common_name,
    )
