"""Cryptographic utilities shared by the key manager and certificate generator.

Provides serial number generation, PEM decoding with typed errors and
thumbprint computation.
"""

import hashlib
import logging
import secrets
from collections.abc import Callable
from typing import TypeVar

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from pki.errors import DecodeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIAL_NUMBER_BITS = 128


def new_serial_number() -> int:
    """Draw a uniformly random 128-bit serial number.

    X.509 requires a positive serial, so the (2**-128 likely) zero is redrawn.
    """
    serial = 0
    while serial == 0:
        serial = secrets.randbits(SERIAL_NUMBER_BITS)
    return serial


def decode_pem(pem: bytes, loader: Callable[[bytes], T], what: str) -> T:
    """Run a PEM loader, turning any parse failure into DecodeError.

    Args:
        pem: PEM-armored bytes.
        loader: A cryptography ``load_pem_*`` function.
        what: Name of the object for the error message.

    Raises:
        DecodeError: If the data is not a valid PEM-encoded object.
    """
    try:
        return loader(pem)
    except (ValueError, TypeError) as e:
        raise DecodeError(f"Failed to decode {what}: {e}") from e


def compute_thumbprint(cert_pem: str | bytes) -> str:
    """Compute SHA-256 thumbprint of a certificate.

    Args:
        cert_pem: Certificate in PEM format.

    Returns:
        Lowercase hexadecimal SHA-256 thumbprint.

    Raises:
        DecodeError: If the certificate cannot be parsed.
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    cert = decode_pem(cert_pem, x509.load_pem_x509_certificate, "certificate")
    der_bytes = cert.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der_bytes).hexdigest().lower()
