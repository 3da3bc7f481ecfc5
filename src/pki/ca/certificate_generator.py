"""X.509 CSR, certificate and CRL generation.

Builds CSRs, self-signed root certificates, CA-signed certificates and CRLs,
enforcing the validity window and serial number policy, and persists every
result through the FileStore.
"""

import logging
import time
from collections.abc import Sequence
from datetime import timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from opentelemetry import trace

from pki.ca.crypto import decode_pem, new_serial_number
from pki.domain.models import Artifact, Identity, KeyPair, RevocationEntry, utc_now
from pki.domain.states import ArtifactKind, Ownership
from pki.errors import (
    CertificateExistsError,
    CertificateGenerationError,
    ValidityRangeError,
)
from pki.metrics import pki_metrics
from pki.repository.storage import FileStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def load_csr(pem: bytes) -> x509.CertificateSigningRequest:
    return decode_pem(pem, x509.load_pem_x509_csr, "certificate request")


def load_certificate(pem: bytes) -> x509.Certificate:
    return decode_pem(pem, x509.load_pem_x509_certificate, "certificate")


def load_crl(pem: bytes) -> x509.CertificateRevocationList:
    return decode_pem(pem, x509.load_pem_x509_crl, "certificate revocation list")


def revoked_entries(crl: x509.CertificateRevocationList) -> list[RevocationEntry]:
    """Revoked entries of a CRL, in list order."""
    return [
        RevocationEntry(
            serial_number=revoked.serial_number,
            revocation_date=revoked.revocation_date_utc,
        )
        for revoked in crl
    ]


def _with_common_name(dns_names: Sequence[str], common_name: str) -> list[str]:
    names = list(dict.fromkeys(dns_names))
    if common_name not in names:
        names.append(common_name)
    return names


def _subject(common_name: str, identity: Identity) -> x509.Name:
    """Distinguished name with the email attribute appended after the standard sequence."""
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    for oid, value in (
        (NameOID.COUNTRY_NAME, identity.country),
        (NameOID.STATE_OR_PROVINCE_NAME, identity.province),
        (NameOID.LOCALITY_NAME, identity.locality),
        (NameOID.ORGANIZATION_NAME, identity.organization),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, identity.organizational_unit),
        (NameOID.EMAIL_ADDRESS, identity.email_addresses),
    ):
        if value:
            attributes.append(x509.NameAttribute(oid, value))
    return x509.Name(attributes)


def common_name_of(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        raise CertificateGenerationError("Certificate request has no common name")
    return str(attrs[0].value)


class CertificateGenerator:
    """Builds and signs X.509 objects for a CA hierarchy.

    Certificate policy:
    - Root: self-signed, CA=true, Key Usage {Digital Signature, Cert Sign, CRL Sign},
      Extended Key Usage {Client Auth, Server Auth}
    - Signed: Key Usage Digital Signature, Extended Key Usage Client Auth
    - Validity: 1 to 825 days, 397 when unset
    - CRL: next update one day after this update
    """

    MIN_VALIDITY_DAYS = 1
    MAX_VALIDITY_DAYS = 825
    DEFAULT_VALIDITY_DAYS = 397
    CRL_NEXT_UPDATE = timedelta(days=1)

    def __init__(self, store: FileStore) -> None:
        self._store = store

    def _save(
        self,
        ca_name: str,
        common_name: str,
        kind: ArtifactKind,
        ownership: Ownership,
        data: bytes,
    ) -> None:
        self._store.save(
            Artifact(
                ca_name=ca_name,
                common_name=common_name,
                kind=kind,
                ownership=ownership,
                data=data,
            )
        )

    def resolve_validity(self, valid_days: int | None) -> int:
        """Apply the default and bounds to a requested validity.

        Raises:
            ValidityRangeError: If an explicit value is outside [1, 825].
        """
        if not valid_days:
            return self.DEFAULT_VALIDITY_DAYS
        if not self.MIN_VALIDITY_DAYS <= valid_days <= self.MAX_VALIDITY_DAYS:
            raise ValidityRangeError(valid_days, self.MIN_VALIDITY_DAYS, self.MAX_VALIDITY_DAYS)
        return valid_days

    def create_csr(
        self,
        ca_name: str,
        common_name: str,
        identity: Identity,
        private_key: rsa.RSAPrivateKey,
        ownership: Ownership,
    ) -> bytes:
        """Build a CSR and persist it.

        The DNS names always include the common name, even if the caller
        omitted it.

        Returns:
            The CSR as PEM bytes.

        Raises:
            CertificateGenerationError: If the request cannot be built or signed.
        """
        with tracer.start_as_current_span("CertificateGenerator.create_csr") as span:
            span.set_attribute("ca", ca_name)
            span.set_attribute("common_name", common_name)

            dns_names = _with_common_name(identity.dns_names, common_name)
            try:
                csr = (
                    x509.CertificateSigningRequestBuilder()
                    .subject_name(_subject(common_name, identity))
                    .add_extension(
                        x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                        critical=False,
                    )
                    .sign(private_key, hashes.SHA256())
                )
            except (ValueError, TypeError) as e:
                logger.error(
                    "csr_creation_failed",
                    extra={"ca": ca_name, "common_name": common_name, "error": str(e)},
                )
                raise CertificateGenerationError(f"Failed to create CSR: {e}") from e

            csr_pem = csr.public_bytes(serialization.Encoding.PEM)
            self._save(ca_name, common_name, ArtifactKind.CSR, ownership, csr_pem)

            logger.info(
                "csr_created",
                extra={"ca": ca_name, "common_name": common_name, "dns_names": dns_names},
            )
            return csr_pem

    def create_root_certificate(
        self,
        ca_name: str,
        common_name: str,
        identity: Identity,
        key_pair: KeyPair,
    ) -> bytes:
        """Build a self-signed CA certificate and persist it.

        Returns:
            The certificate as PEM bytes.

        Raises:
            ValidityRangeError: If the validity is negative.
            CertificateGenerationError: If the certificate cannot be built or signed.
        """
        with tracer.start_as_current_span("CertificateGenerator.create_root_certificate") as span:
            span.set_attribute("ca", ca_name)

            valid_days = identity.valid or self.DEFAULT_VALIDITY_DAYS
            if valid_days < self.MIN_VALIDITY_DAYS:
                raise ValidityRangeError(
                    valid_days, self.MIN_VALIDITY_DAYS, self.MAX_VALIDITY_DAYS
                )
            span.set_attribute("validity_days", valid_days)

            start_time = time.time()
            subject = issuer = _subject(common_name, identity)
            public_key = key_pair.public_key.value
            dns_names = _with_common_name(identity.dns_names, common_name)
            now = utc_now()

            try:
                certificate = (
                    x509.CertificateBuilder()
                    .subject_name(subject)
                    .issuer_name(issuer)
                    .public_key(public_key)
                    .serial_number(new_serial_number())
                    .not_valid_before(now)
                    .not_valid_after(now + timedelta(days=valid_days))
                    .add_extension(
                        x509.BasicConstraints(ca=True, path_length=None),
                        critical=True,
                    )
                    .add_extension(
                        x509.KeyUsage(
                            digital_signature=True,
                            key_cert_sign=True,
                            crl_sign=True,
                            key_encipherment=False,
                            content_commitment=False,
                            data_encipherment=False,
                            key_agreement=False,
                            encipher_only=False,
                            decipher_only=False,
                        ),
                        critical=True,
                    )
                    .add_extension(
                        x509.ExtendedKeyUsage(
                            [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]
                        ),
                        critical=False,
                    )
                    .add_extension(
                        x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                        critical=False,
                    )
                    .add_extension(
                        x509.SubjectKeyIdentifier.from_public_key(public_key),
                        critical=False,
                    )
                    .sign(key_pair.private_key.value, hashes.SHA256())
                )
            except (ValueError, TypeError) as e:
                logger.error(
                    "root_certificate_creation_failed",
                    extra={"ca": ca_name, "error": str(e)},
                )
                raise CertificateGenerationError(f"Failed to create root certificate: {e}") from e

            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
            self._save(ca_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CA, cert_pem)

            pki_metrics.record_certificate_signed(Ownership.CA.value, time.time() - start_time)
            logger.info(
                "root_certificate_created",
                extra={
                    "ca": ca_name,
                    "serial": format(certificate.serial_number, "x"),
                    "not_after": certificate.not_valid_after_utc.isoformat(),
                },
            )
            return cert_pem

    def sign_csr(
        self,
        ca_name: str,
        csr: x509.CertificateSigningRequest,
        issuer_certificate: x509.Certificate,
        issuer_key: rsa.RSAPrivateKey,
        valid_days: int | None = None,
    ) -> bytes:
        """Sign a CSR into a certificate and persist it under the issuing CA.

        Args:
            ca_name: Name of the issuing CA.
            csr: Parsed certificate signing request.
            issuer_certificate: The issuing CA's certificate.
            issuer_key: The issuing CA's private key.
            valid_days: Validity in days (1 to 825, default 397).

        Returns:
            The certificate as PEM bytes.

        Raises:
            ValidityRangeError: If valid_days is out of range.
            CertificateExistsError: If the CA already issued this common name.
            CertificateGenerationError: If the CSR is invalid or signing fails.
        """
        with tracer.start_as_current_span("CertificateGenerator.sign_csr") as span:
            valid_days = self.resolve_validity(valid_days)
            common_name = common_name_of(csr.subject)

            span.set_attribute("ca", ca_name)
            span.set_attribute("common_name", common_name)
            span.set_attribute("validity_days", valid_days)

            if self._store.exists_certificate(ca_name, common_name):
                raise CertificateExistsError(ca_name, common_name)

            if not csr.is_signature_valid:
                raise CertificateGenerationError(
                    f"Certificate request for '{common_name}' has an invalid signature"
                )

            start_time = time.time()
            serial_number = new_serial_number()
            now = utc_now()
            hash_algorithm = csr.signature_hash_algorithm or hashes.SHA256()

            try:
                builder = (
                    x509.CertificateBuilder()
                    .subject_name(csr.subject)
                    .issuer_name(issuer_certificate.subject)
                    .public_key(csr.public_key())
                    .serial_number(serial_number)
                    .not_valid_before(now)
                    .not_valid_after(now + timedelta(days=valid_days))
                    .add_extension(
                        x509.KeyUsage(
                            digital_signature=True,
                            key_encipherment=False,
                            key_cert_sign=False,
                            crl_sign=False,
                            content_commitment=False,
                            data_encipherment=False,
                            key_agreement=False,
                            encipher_only=False,
                            decipher_only=False,
                        ),
                        critical=True,
                    )
                    .add_extension(
                        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                        critical=False,
                    )
                    .add_extension(
                        x509.AuthorityKeyIdentifier.from_issuer_public_key(
                            issuer_key.public_key()
                        ),
                        critical=False,
                    )
                )

                try:
                    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
                    builder = builder.add_extension(san.value, critical=False)
                except x509.ExtensionNotFound:
                    pass

                certificate = builder.sign(issuer_key, hash_algorithm)  # type: ignore[arg-type]
            except (ValueError, TypeError) as e:
                logger.error(
                    "certificate_signing_failed",
                    extra={"ca": ca_name, "common_name": common_name, "error": str(e)},
                )
                raise CertificateGenerationError(f"Failed to sign certificate: {e}") from e

            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
            self._save(
                ca_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE, cert_pem
            )

            signing_time = time.time() - start_time
            pki_metrics.record_certificate_signed(Ownership.CERTIFICATE.value, signing_time)

            serial_str = format(serial_number, "x")
            span.set_attribute("serial", serial_str)
            logger.info(
                "certificate_signed",
                extra={
                    "ca": ca_name,
                    "common_name": common_name,
                    "serial": serial_str,
                    "not_after": certificate.not_valid_after_utc.isoformat(),
                    "duration_seconds": signing_time,
                },
            )
            return cert_pem

    def revoke(
        self,
        ca_name: str,
        entries: Sequence[RevocationEntry],
        issuer_certificate: x509.Certificate,
        issuer_key: rsa.RSAPrivateKey,
    ) -> bytes:
        """Build the complete CRL for the given entries and persist it.

        The CRL is rebuilt from scratch: callers must pass every previously
        revoked entry along with the new ones.

        Returns:
            The CRL as PEM bytes.

        Raises:
            CertificateGenerationError: If the CRL cannot be built or signed.
        """
        with tracer.start_as_current_span("CertificateGenerator.revoke") as span:
            span.set_attribute("ca", ca_name)
            span.set_attribute("revoked_entries", len(entries))

            now = utc_now()
            try:
                builder = (
                    x509.CertificateRevocationListBuilder()
                    .issuer_name(issuer_certificate.subject)
                    .last_update(now)
                    .next_update(now + self.CRL_NEXT_UPDATE)
                    .add_extension(x509.CRLNumber(new_serial_number()), critical=False)
                    .add_extension(
                        x509.AuthorityKeyIdentifier.from_issuer_public_key(
                            issuer_key.public_key()
                        ),
                        critical=False,
                    )
                )
                for entry in entries:
                    builder = builder.add_revoked_certificate(
                        x509.RevokedCertificateBuilder()
                        .serial_number(entry.serial_number)
                        .revocation_date(entry.revocation_date)
                        .build()
                    )
                crl = builder.sign(issuer_key, hashes.SHA256())
            except (ValueError, TypeError) as e:
                logger.error("crl_generation_failed", extra={"ca": ca_name, "error": str(e)})
                raise CertificateGenerationError(f"Failed to generate CRL: {e}") from e

            crl_pem = crl.public_bytes(serialization.Encoding.PEM)
            self._save(ca_name, ca_name, ArtifactKind.CRL, Ownership.CA, crl_pem)

            pki_metrics.record_crl_generated(ca_name, len(entries))
            logger.info(
                "crl_generated",
                extra={
                    "ca": ca_name,
                    "revoked_entries": len(entries),
                    "next_update": (now + self.CRL_NEXT_UPDATE).isoformat(),
                },
            )
            return crl_pem
