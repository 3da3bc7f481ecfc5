"""Error taxonomy for the PKI platform.

Every failure raised by the store, key manager, certificate generator and
CA services derives from PKIError, so callers can render a typed failure
plus ``str(err)`` as the human-readable status.
"""


class PKIError(Exception):
    """Base class for PKI errors."""


class MissingIdentityError(PKIError):
    """Raised when mandatory CA identity fields are empty."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            "all CA details ('Organization', 'Organizational Unit', 'Country', "
            f"'Locality', 'Province') are required, missing: {', '.join(missing)}"
        )


class CAExistsError(PKIError):
    """Raised when creating a CA whose common name already exists."""

    def __init__(self, common_name: str):
        self.common_name = common_name
        super().__init__(f"a Certificate Authority named '{common_name}' already exists")


class CANotFoundError(PKIError):
    """Raised when the requested CA does not exist in the store."""

    def __init__(self, common_name: str):
        self.common_name = common_name
        super().__init__(f"the Certificate Authority '{common_name}' does not exist")


class CertificateNotFoundError(PKIError):
    """Raised when a certificate is not managed by the CA."""

    def __init__(self, ca_name: str, common_name: str):
        self.ca_name = ca_name
        self.common_name = common_name
        super().__init__(f"certificate '{common_name}' not found under CA '{ca_name}'")


class CertificateExistsError(PKIError):
    """Raised when a certificate with the same common name was already issued."""

    def __init__(self, ca_name: str, common_name: str):
        self.ca_name = ca_name
        self.common_name = common_name
        super().__init__(f"certificate '{common_name}' already exists under CA '{ca_name}'")


class CertificateRevokedError(PKIError):
    """Raised when revoking a serial number already present in the CRL."""

    def __init__(self, common_name: str, serial_number: int):
        self.common_name = common_name
        self.serial_number = serial_number
        super().__init__(
            f"certificate '{common_name}' (serial {serial_number:x}) is already revoked"
        )


class CertificateMismatchError(PKIError):
    """Raised when a certificate does not belong to the CA's key pair."""


class ValidityRangeError(PKIError):
    """Raised when the requested validity period is outside the allowed range."""

    def __init__(self, valid_days: int, minimum: int, maximum: int):
        self.valid_days = valid_days
        super().__init__(
            f"the certificate validity ({valid_days} days) is not between {minimum} - {maximum}"
        )


class StorageError(PKIError):
    """Raised when the store cannot read or write an artifact."""


class ArtifactNotFoundError(StorageError):
    """Raised when a requested artifact file does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"artifact not found: {path}")


class IncompleteCopyError(StorageError):
    """Raised when fewer bytes were copied than the source holds."""

    def __init__(self, src: str, written: int, expected: int):
        self.written = written
        self.expected = expected
        super().__init__(f"file copy of {src} was incomplete ({written}/{expected} bytes)")


class StoragePathError(StorageError):
    """Raised for a disallowed store root or an unsafe path segment."""


class DecodeError(PKIError):
    """Raised when PEM data cannot be decoded into the expected object."""


class CryptoOperationError(PKIError):
    """Raised when an underlying cryptographic operation fails."""


class KeyManagerError(CryptoOperationError):
    """Raised when key generation fails."""


class CertificateGenerationError(CryptoOperationError):
    """Raised when building or signing a CSR, certificate or CRL fails."""


class StateInvariantError(PKIError):
    """Raised when a CA's artifacts disagree with its expected state."""
