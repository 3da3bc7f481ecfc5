from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Generic, TypeVar

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.x509.oid import NameOID

from .states import ArtifactKind, Ownership

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Armored(Generic[T]):
    """PEM-armored bytes paired with their decoded object.

    The PEM buffer is the single source of truth. It is decoded once, on
    construction, so a malformed buffer is rejected before it can be held and
    the text and the object can never disagree.
    """

    __slots__ = ("_pem", "_value")

    def __init__(self, pem: bytes | str, decoder: Callable[[bytes], T]) -> None:
        if isinstance(pem, str):
            pem = pem.encode("utf-8")
        self._pem = bytes(pem)
        self._value = decoder(self._pem)

    @property
    def pem(self) -> bytes:
        return self._pem

    @property
    def text(self) -> str:
        return self._pem.decode("utf-8")

    @property
    def value(self) -> T:
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Armored):
            return NotImplemented
        return self._pem == other._pem

    def __hash__(self) -> int:
        return hash(self._pem)

    def __repr__(self) -> str:
        return f"Armored({type(self._value).__name__}, {len(self._pem)} bytes)"


@dataclass
class Identity:
    """Subject information for a CA or an issued certificate."""

    organization: str = ""
    organizational_unit: str = ""
    country: str = ""
    locality: str = ""
    province: str = ""
    email_addresses: str = ""
    dns_names: list[str] = field(default_factory=list)
    intermediate: bool = False
    key_bit_size: int = 0
    valid: int = 0  # days; 0 selects the default

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "organization",
        "organizational_unit",
        "country",
        "locality",
        "province",
    )

    def missing_fields(self) -> list[str]:
        """Return the mandatory CA fields that are empty."""
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    @classmethod
    def from_name(
        cls,
        name: x509.Name,
        dns_names: list[str] | None = None,
        intermediate: bool = False,
    ) -> "Identity":
        """Rebuild an identity from a certificate or CSR subject."""

        def first(oid: x509.ObjectIdentifier) -> str:
            attrs = name.get_attributes_for_oid(oid)
            return str(attrs[0].value) if attrs else ""

        return cls(
            organization=first(NameOID.ORGANIZATION_NAME),
            organizational_unit=first(NameOID.ORGANIZATIONAL_UNIT_NAME),
            country=first(NameOID.COUNTRY_NAME),
            locality=first(NameOID.LOCALITY_NAME),
            province=first(NameOID.STATE_OR_PROVINCE_NAME),
            email_addresses=first(NameOID.EMAIL_ADDRESS),
            dns_names=list(dns_names or []),
            intermediate=intermediate,
        )


@dataclass(frozen=True)
class Artifact:
    """A unit of PEM data to persist for a CA or one of its certificates."""

    ca_name: str
    common_name: str
    kind: ArtifactKind
    ownership: Ownership
    data: bytes


@dataclass(frozen=True)
class KeyPair:
    private_key: Armored[RSAPrivateKey]
    public_key: Armored[RSAPublicKey]


@dataclass(frozen=True)
class RevocationEntry:
    serial_number: int
    revocation_date: datetime


@dataclass
class CAData:
    """All artifacts held by a CA. Keys are mandatory, the rest appear over its lifecycle."""

    private_key: Armored[RSAPrivateKey]
    public_key: Armored[RSAPublicKey]
    csr: Armored[x509.CertificateSigningRequest] | None = None
    certificate: Armored[x509.Certificate] | None = None
    crl: Armored[x509.CertificateRevocationList] | None = None


def dns_names_of(obj: x509.Certificate | x509.CertificateSigningRequest) -> list[str]:
    """DNS names from the SubjectAlternativeName extension, empty if absent."""
    try:
        san = obj.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


@dataclass(frozen=True)
class Certificate:
    """A certificate issued by a CA, with the issuing CA's certificate for chain checks."""

    common_name: str
    ca_name: str
    certificate: Armored[x509.Certificate]
    ca_certificate: Armored[x509.Certificate]
    csr: Armored[x509.CertificateSigningRequest] | None = None
    private_key: Armored[RSAPrivateKey] | None = None
    public_key: Armored[RSAPublicKey] | None = None

    @property
    def serial_number(self) -> int:
        return self.certificate.value.serial_number

    @property
    def dns_names(self) -> list[str]:
        return dns_names_of(self.certificate.value)

    @property
    def not_after(self) -> datetime:
        return self.certificate.value.not_valid_after_utc

    @property
    def thumbprint(self) -> str:
        """Lowercase hex SHA-256 of the DER certificate."""
        return self.certificate.value.fingerprint(hashes.SHA256()).hex()
