"""Certificate Authority cryptography for the PKI platform.

This module provides:
- RSA key generation and decoding
- CSR, root certificate, signed certificate and CRL generation
- Serial number and thumbprint utilities
"""

from pki.ca.certificate_generator import CertificateGenerator
from pki.ca.key_manager import KeyManager

__all__ = ["CertificateGenerator", "KeyManager"]
