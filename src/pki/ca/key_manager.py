"""RSA key management for CAs and the certificates they issue.

Keys are generated with the ``cryptography`` library and persisted through the
FileStore as PKCS#1 PEM (``RSA PRIVATE KEY`` / ``RSA PUBLIC KEY``).
"""

import logging
import time

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from opentelemetry import trace

from pki.ca.crypto import decode_pem
from pki.domain.models import Armored, Artifact, KeyPair
from pki.domain.states import ArtifactKind, Ownership
from pki.errors import DecodeError, KeyManagerError
from pki.metrics import pki_metrics
from pki.repository.storage import FileStore
from shared.config import settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    """Decode an unencrypted PEM RSA private key.

    Raises:
        DecodeError: If the data is malformed or not an RSA key.
    """
    key = decode_pem(
        pem, lambda data: serialization.load_pem_private_key(data, password=None), "private key"
    )
    if not isinstance(key, rsa.RSAPrivateKey):
        raise DecodeError(f"Expected an RSA private key, got {type(key).__name__}")
    return key


def load_public_key(pem: bytes) -> rsa.RSAPublicKey:
    """Decode a PEM RSA public key (PKCS#1 or SubjectPublicKeyInfo).

    Raises:
        DecodeError: If the data is malformed or not an RSA key.
    """
    key = decode_pem(pem, serialization.load_pem_public_key, "public key")
    if not isinstance(key, rsa.RSAPublicKey):
        raise DecodeError(f"Expected an RSA public key, got {type(key).__name__}")
    return key


def encode_private_key(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def encode_public_key(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1,
    )


class KeyManager:
    """Generates and decodes RSA key pairs.

    Persistence is delegated to the FileStore: CA keys land in
    ``<ca>/ca/`` and certificate keys in ``<ca>/certs/<cn>/``.
    """

    PUBLIC_EXPONENT = 65537

    def __init__(self, store: FileStore) -> None:
        self._store = store

    def create_keys(
        self,
        ca_name: str,
        owner_name: str,
        ownership: Ownership,
        bit_size: int | None = None,
    ) -> KeyPair:
        """Generate an RSA key pair and persist both halves.

        Args:
            ca_name: Name of the owning CA.
            owner_name: Common name of the key owner (the CA itself or a certificate).
            ownership: Whether the key belongs to the CA or to an issued certificate.
            bit_size: RSA modulus size; 0 or None selects DEFAULT_KEY_BIT_SIZE.

        Returns:
            The generated KeyPair.

        Raises:
            KeyManagerError: If key generation fails.
            StorageError: If persisting the key files fails.
        """
        key_size = bit_size or settings.DEFAULT_KEY_BIT_SIZE

        with tracer.start_as_current_span("KeyManager.create_keys") as span:
            span.set_attribute("ca", ca_name)
            span.set_attribute("owner", owner_name)
            span.set_attribute("key_size", key_size)

            start_time = time.time()
            try:
                private_key = rsa.generate_private_key(
                    public_exponent=self.PUBLIC_EXPONENT,
                    key_size=key_size,
                )
            except (ValueError, TypeError) as e:
                logger.error(
                    "key_generation_failed",
                    extra={"ca": ca_name, "owner": owner_name, "error": str(e)},
                )
                raise KeyManagerError(f"Failed to generate RSA key: {e}") from e

            private_pem = encode_private_key(private_key)
            public_pem = encode_public_key(private_key.public_key())

            for kind, data in (
                (ArtifactKind.PRIVATE_KEY, private_pem),
                (ArtifactKind.PUBLIC_KEY, public_pem),
            ):
                self._store.save(
                    Artifact(
                        ca_name=ca_name,
                        common_name=owner_name,
                        kind=kind,
                        ownership=ownership,
                        data=data,
                    )
                )

            pki_metrics.record_key_generated(key_size)
            logger.info(
                "key_pair_generated",
                extra={
                    "ca": ca_name,
                    "owner": owner_name,
                    "ownership": ownership.value,
                    "key_size": key_size,
                    "duration_seconds": time.time() - start_time,
                },
            )

            return KeyPair(
                private_key=Armored(private_pem, load_private_key),
                public_key=Armored(public_pem, load_public_key),
            )

    @staticmethod
    def load_private_key(pem: bytes | str) -> Armored[rsa.RSAPrivateKey]:
        """Wrap PEM private key bytes, decoding them strictly."""
        return Armored(pem, load_private_key)

    @staticmethod
    def load_public_key(pem: bytes | str) -> Armored[rsa.RSAPublicKey]:
        """Wrap PEM public key bytes, decoding them strictly."""
        return Armored(pem, load_public_key)
