from enum import StrEnum


class CAStatus(StrEnum):
    """All possible states for a Certificate Authority.

    The state is derived from which artifacts the CA holds; it is never stored.
    """

    ROOT_READY = "root_ready"
    INTERMEDIATE_PENDING = "intermediate_pending"
    INTERMEDIATE_READY = "intermediate_ready"
    INCONSISTENT = "inconsistent"

    @property
    def message(self) -> str:
        return _STATUS_MESSAGES[self]

    @property
    def is_ready(self) -> bool:
        return self in (CAStatus.ROOT_READY, CAStatus.INTERMEDIATE_READY)


_STATUS_MESSAGES = {
    CAStatus.ROOT_READY: "Certificate Authority is ready.",
    CAStatus.INTERMEDIATE_PENDING: (
        "Intermediate Certificate Authority not ready, missing Certificate."
    ),
    CAStatus.INTERMEDIATE_READY: "Intermediate Certificate Authority ready.",
    CAStatus.INCONSISTENT: "CA is inconsistent.",
}


class CAEvent(StrEnum):
    """All possible events that act on a Certificate Authority."""

    CERTIFICATE_INSTALLED = "certificate_installed"
    CSR_SIGNED = "csr_signed"
    CERTIFICATE_ISSUED = "certificate_issued"
    CERTIFICATE_REVOKED = "certificate_revoked"


class ArtifactKind(StrEnum):
    PRIVATE_KEY = "private_key"
    PUBLIC_KEY = "public_key"
    CSR = "csr"
    CERTIFICATE = "certificate"
    CRL = "crl"


class Ownership(StrEnum):
    """Whether an artifact belongs to the CA itself or to a certificate it issued."""

    CA = "ca"
    CERTIFICATE = "certificate"
