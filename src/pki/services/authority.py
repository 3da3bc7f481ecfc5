"""Certificate Authority service: create, load, sign, issue and revoke.

A CertificateAuthority composes the KeyManager, the CertificateGenerator and
the FileStore for one CA. Mutating operations run inside the store's per-CA
lock, so at most one mutation per CA name is in flight at a time.
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from opentelemetry import trace

from pki.ca.certificate_generator import (
    CertificateGenerator,
    common_name_of,
    load_certificate,
    load_crl,
    load_csr,
    revoked_entries,
)
from pki.ca.crypto import compute_thumbprint
from pki.ca.key_manager import KeyManager, load_private_key, load_public_key
from pki.domain.models import (
    Armored,
    Artifact,
    CAData,
    Certificate,
    Identity,
    RevocationEntry,
    dns_names_of,
    utc_now,
)
from pki.domain.state_machines import CertificateAuthorityStateMachine, compute_status
from pki.domain.states import ArtifactKind, CAEvent, CAStatus, Ownership
from pki.errors import (
    ArtifactNotFoundError,
    CAExistsError,
    CANotFoundError,
    CertificateExistsError,
    CertificateMismatchError,
    CertificateNotFoundError,
    CertificateRevokedError,
    MissingIdentityError,
    StateInvariantError,
    ValidityRangeError,
)
from pki.metrics import pki_metrics
from pki.repository.storage import CA_DIR, CERTS_DIR, FileStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


def _load_optional(
    store: FileStore,
    ca_name: str,
    common_name: str,
    kind: ArtifactKind,
    ownership: Ownership,
    decoder: Callable[[bytes], T],
) -> Armored[T] | None:
    """Load an artifact that may legitimately be absent.

    Only a missing file yields None; decode and I/O failures propagate.
    """
    try:
        pem = store.load_artifact(ca_name, common_name, kind, ownership)
    except ArtifactNotFoundError:
        return None
    return Armored(pem, decoder)


def _same_key(a: rsa.RSAPublicKey, b: object) -> bool:
    return isinstance(b, rsa.RSAPublicKey) and a.public_numbers() == b.public_numbers()


class CertificateAuthority:
    """One CA in the store and the operations it performs.

    States (see CertificateAuthorityStateMachine):
        ROOT_READY, INTERMEDIATE_PENDING, INTERMEDIATE_READY, INCONSISTENT
    """

    def __init__(
        self,
        store: FileStore,
        common_name: str,
        data: CAData,
        identity: Identity | None = None,
    ) -> None:
        self.store = store
        self.common_name = common_name
        self._data = data
        self.identity = identity or self._identity_from_data()
        self._keys = KeyManager(store)
        self._generator = CertificateGenerator(store)
        self._machine = CertificateAuthorityStateMachine(common_name, data)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        store: FileStore,
        common_name: str,
        identity: Identity,
        parent_name: str | None = None,
    ) -> "CertificateAuthority":
        """Create a new root or intermediate CA.

        A root CA gets its key pair, a self-signed certificate and an empty
        CRL. An intermediate CA gets its key pair and a CSR; when parent_name
        is given the parent signs that CSR straight away.

        Args:
            store: The file store.
            common_name: Unique CA name, also its directory name.
            identity: Subject and key parameters.
            parent_name: Optional parent CA that signs an intermediate's CSR.

        Returns:
            The new CertificateAuthority.

        Raises:
            CAExistsError: If a CA with this name exists (nothing is written).
            MissingIdentityError: If mandatory identity fields are empty.
            CANotFoundError: If parent_name does not exist.
            InvalidTransitionError: If the parent CA is not ready to sign.
            ValidityRangeError: If identity.valid is out of range.
            CertificateExistsError: If the parent already issued this common name.
        """
        with tracer.start_as_current_span("CertificateAuthority.create") as span:
            span.set_attribute("ca", common_name)
            span.set_attribute("intermediate", identity.intermediate)

            parent: CertificateAuthority | None = None

            with store.lock(common_name):
                if store.exists_ca(common_name):
                    raise CAExistsError(common_name)

                missing = identity.missing_fields()
                if missing:
                    raise MissingIdentityError(missing)

                if identity.intermediate and parent_name:
                    span.set_attribute("parent", parent_name)
                    parent = cls.load(store, parent_name)
                    parent._machine.guard(CAEvent.CSR_SIGNED)
                    parent._generator.resolve_validity(identity.valid)
                    if store.exists_certificate(parent_name, common_name):
                        raise CertificateExistsError(parent_name, common_name)
                elif not identity.intermediate and identity.valid < 0:
                    raise ValidityRangeError(
                        identity.valid,
                        CertificateGenerator.MIN_VALIDITY_DAYS,
                        CertificateGenerator.MAX_VALIDITY_DAYS,
                    )

                store.make_directory(common_name, CA_DIR)
                store.make_directory(common_name, CERTS_DIR)

                keys = KeyManager(store).create_keys(
                    common_name, common_name, Ownership.CA, identity.key_bit_size
                )
                data = CAData(private_key=keys.private_key, public_key=keys.public_key)
                ca = cls(store, common_name, data, identity)

                if identity.intermediate:
                    csr_pem = ca._generator.create_csr(
                        common_name, common_name, identity, keys.private_key.value, Ownership.CA
                    )
                    data.csr = Armored(csr_pem, load_csr)
                else:
                    cert_pem = ca._generator.create_root_certificate(
                        common_name, common_name, identity, keys
                    )
                    data.certificate = Armored(cert_pem, load_certificate)
                    ca._write_crl([])

                ca_type = "intermediate" if identity.intermediate else "root"
                pki_metrics.record_ca_created(ca_type)
                logger.info(
                    "ca_created",
                    extra={"ca": common_name, "type": ca_type, "status": ca.status.value},
                )

            if parent is not None and data.csr is not None:
                # The child lock is released first: signing locks parent, then child.
                parent.sign_csr(data.csr, identity.valid)
                ca = cls.load(store, common_name)
                ca.identity = identity

            span.set_attribute("status", ca.status.value)
            return ca

    @classmethod
    def load(cls, store: FileStore, common_name: str) -> "CertificateAuthority":
        """Load an existing CA from the store.

        The private and public keys are mandatory; CSR, certificate and CRL
        are loaded when present.

        Raises:
            CANotFoundError: If the CA does not exist.
            ArtifactNotFoundError: If a key file is missing.
            DecodeError: If an artifact is malformed.
            StorageError: On any other read failure.
        """
        with tracer.start_as_current_span("CertificateAuthority.load") as span:
            span.set_attribute("ca", common_name)

            if not store.exists_ca(common_name):
                raise CANotFoundError(common_name)

            private_pem = store.load_artifact(
                common_name, common_name, ArtifactKind.PRIVATE_KEY, Ownership.CA
            )
            public_pem = store.load_artifact(
                common_name, common_name, ArtifactKind.PUBLIC_KEY, Ownership.CA
            )

            data = CAData(
                private_key=KeyManager.load_private_key(private_pem),
                public_key=KeyManager.load_public_key(public_pem),
                csr=_load_optional(
                    store, common_name, common_name, ArtifactKind.CSR, Ownership.CA, load_csr
                ),
                certificate=_load_optional(
                    store,
                    common_name,
                    common_name,
                    ArtifactKind.CERTIFICATE,
                    Ownership.CA,
                    load_certificate,
                ),
                crl=_load_optional(
                    store, common_name, common_name, ArtifactKind.CRL, Ownership.CA, load_crl
                ),
            )

            ca = cls(store, common_name, data)
            span.set_attribute("status", ca.status.value)
            pki_metrics.record_ca_loaded(ca.status.value)
            logger.debug("ca_loaded", extra={"ca": common_name, "status": ca.status.value})
            return ca

    @staticmethod
    def list_cas(store: FileStore) -> list[str]:
        """Names of all CAs in the store."""
        return store.list_cas()

    def _identity_from_data(self) -> Identity:
        source: x509.Certificate | x509.CertificateSigningRequest | None = None
        if self._data.certificate is not None:
            source = self._data.certificate.value
        elif self._data.csr is not None:
            source = self._data.csr.value
        if source is None:
            return Identity(intermediate=self._data.csr is not None)
        return Identity.from_name(
            source.subject,
            dns_names=dns_names_of(source),
            intermediate=self._data.csr is not None,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> CAStatus:
        return compute_status(self._data)

    @property
    def status_message(self) -> str:
        return self.status.message

    @property
    def is_intermediate(self) -> bool:
        return self._data.csr is not None

    @property
    def data(self) -> CAData:
        return self._data

    @property
    def private_key(self) -> Armored[rsa.RSAPrivateKey]:
        return self._data.private_key

    @property
    def public_key(self) -> Armored[rsa.RSAPublicKey]:
        return self._data.public_key

    @property
    def csr(self) -> Armored[x509.CertificateSigningRequest] | None:
        return self._data.csr

    @property
    def certificate(self) -> Armored[x509.Certificate] | None:
        return self._data.certificate

    @property
    def crl(self) -> Armored[x509.CertificateRevocationList] | None:
        return self._data.crl

    @property
    def revoked_certificates(self) -> list[RevocationEntry]:
        if self._data.crl is None:
            return []
        return revoked_entries(self._data.crl.value)

    def _require_certificate(self) -> Armored[x509.Certificate]:
        if self._data.certificate is None:
            raise StateInvariantError(f"CA '{self.common_name}' has no certificate")
        return self._data.certificate

    def _write_crl(self, entries: list[RevocationEntry]) -> None:
        crl_pem = self._generator.revoke(
            self.common_name,
            entries,
            self._require_certificate().value,
            self._data.private_key.value,
        )
        self._data.crl = Armored(crl_pem, load_crl)

    # ------------------------------------------------------------------
    # Signing and issuing
    # ------------------------------------------------------------------

    def sign_csr(
        self,
        csr: (
            x509.CertificateSigningRequest | Armored[x509.CertificateSigningRequest] | bytes | str
        ),
        valid_days: int = 0,
    ) -> Certificate:
        """Sign a certificate signing request with this CA.

        The certificate and the request are stored under
        ``<ca>/certs/<csr common name>/``. If that common name is a local
        intermediate CA still pending and holding the CSR's key, the
        certificate is installed into it as well.

        Args:
            csr: The request, parsed or PEM.
            valid_days: Validity in days (1 to 825, default 397).

        Returns:
            The issued Certificate.

        Raises:
            InvalidTransitionError: If this CA is not ready.
            ValidityRangeError: If valid_days is out of range.
            CertificateExistsError: If the common name was already issued.
            DecodeError: If the CSR PEM is malformed.
        """
        if isinstance(csr, x509.CertificateSigningRequest):
            csr = csr.public_bytes(serialization.Encoding.PEM)
        request = csr if isinstance(csr, Armored) else Armored(csr, load_csr)

        with tracer.start_as_current_span("CertificateAuthority.sign_csr") as span:
            span.set_attribute("ca", self.common_name)

            def sign() -> tuple[Certificate, str | None]:
                target = self._promotion_target(request)
                return self._sign(request, valid_days), target

            with self.store.lock(self.common_name):
                certificate, target = self._machine.transition(CAEvent.CSR_SIGNED, sign)

            span.set_attribute("common_name", certificate.common_name)
            if target is not None:
                self._promote_local_intermediate(target, certificate)
            return certificate

    def _sign(
        self, request: Armored[x509.CertificateSigningRequest], valid_days: int
    ) -> Certificate:
        ca_certificate = self._require_certificate()
        cert_pem = self._generator.sign_csr(
            self.common_name,
            request.value,
            ca_certificate.value,
            self._data.private_key.value,
            valid_days,
        )
        common_name = common_name_of(request.value.subject)
        self.store.save(
            Artifact(
                ca_name=self.common_name,
                common_name=common_name,
                kind=ArtifactKind.CSR,
                ownership=Ownership.CERTIFICATE,
                data=request.pem,
            )
        )
        logger.info(
            "csr_signed",
            extra={
                "ca": self.common_name,
                "common_name": common_name,
                "thumbprint": compute_thumbprint(cert_pem),
            },
        )
        return Certificate(
            common_name=common_name,
            ca_name=self.common_name,
            certificate=Armored(cert_pem, load_certificate),
            ca_certificate=ca_certificate,
            csr=request,
        )

    def _promotion_target(self, request: Armored[x509.CertificateSigningRequest]) -> str | None:
        """Name of the pending local intermediate this request belongs to, if any."""
        common_name = common_name_of(request.value.subject)
        if common_name == self.common_name or not self.store.is_ca(common_name):
            return None

        child = CertificateAuthority.load(self.store, common_name)
        if child.status is not CAStatus.INTERMEDIATE_PENDING:
            return None
        if not _same_key(child.public_key.value, request.value.public_key()):
            logger.warning(
                "intermediate_key_mismatch",
                extra={"ca": self.common_name, "intermediate": common_name},
            )
            return None
        return common_name

    def _promote_local_intermediate(self, common_name: str, certificate: Certificate) -> None:
        with self.store.lock(common_name):
            child = CertificateAuthority.load(self.store, common_name)
            if child.status is not CAStatus.INTERMEDIATE_PENDING or not _same_key(
                child.public_key.value, certificate.certificate.value.public_key()
            ):
                logger.warning(
                    "intermediate_promotion_skipped",
                    extra={"ca": self.common_name, "intermediate": common_name},
                )
                return

            src = self.store.artifact_path(
                self.common_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE
            )
            dest = self.store.artifact_path(
                common_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CA
            )
            child._machine.transition(
                CAEvent.CERTIFICATE_INSTALLED,
                lambda: child._adopt_certificate(
                    str(src.relative_to(self.store.root)), str(dest.relative_to(self.store.root))
                ),
            )

        logger.info(
            "intermediate_promoted",
            extra={"ca": self.common_name, "intermediate": common_name},
        )

    def _adopt_certificate(self, src: str, dest: str) -> None:
        self.store.copy(src, dest)
        self._data.certificate = Armored(self.store.load(dest), load_certificate)
        self._write_crl([])
        pki_metrics.record_intermediate_installed()

    def install_certificate(self, certificate_pem: bytes | str) -> None:
        """Install an externally signed certificate into a pending intermediate CA.

        Also generates the CA's initial, empty CRL.

        Raises:
            InvalidTransitionError: If the CA is not a pending intermediate.
            CertificateMismatchError: If the certificate is not for this CA's key.
            DecodeError: If the certificate PEM is malformed.
        """
        certificate = Armored(certificate_pem, load_certificate)

        def install() -> None:
            if not _same_key(self._data.public_key.value, certificate.value.public_key()):
                raise CertificateMismatchError(
                    f"certificate public key does not match CA '{self.common_name}'"
                )
            self.store.save(
                Artifact(
                    ca_name=self.common_name,
                    common_name=self.common_name,
                    kind=ArtifactKind.CERTIFICATE,
                    ownership=Ownership.CA,
                    data=certificate.pem,
                )
            )
            self._data.certificate = certificate
            self._write_crl([])
            pki_metrics.record_intermediate_installed()

        with tracer.start_as_current_span("CertificateAuthority.install_certificate") as span:
            span.set_attribute("ca", self.common_name)
            with self.store.lock(self.common_name):
                self._machine.transition(CAEvent.CERTIFICATE_INSTALLED, install)

    def issue_certificate(self, common_name: str, identity: Identity) -> Certificate:
        """Generate a key pair and CSR for a new identity and sign it with this CA.

        Args:
            common_name: Certificate common name, unique under this CA.
            identity: Subject, DNS names, key size and validity.

        Returns:
            The issued Certificate, including its private key.

        Raises:
            InvalidTransitionError: If this CA is not ready.
            CertificateExistsError: If the common name was already issued.
            ValidityRangeError: If identity.valid is out of range.
        """
        with tracer.start_as_current_span("CertificateAuthority.issue_certificate") as span:
            span.set_attribute("ca", self.common_name)
            span.set_attribute("common_name", common_name)

            with self.store.lock(self.common_name):
                return self._machine.transition(
                    CAEvent.CERTIFICATE_ISSUED, lambda: self._issue(common_name, identity)
                )

    def _issue(self, common_name: str, identity: Identity) -> Certificate:
        if self.store.exists_certificate(self.common_name, common_name):
            raise CertificateExistsError(self.common_name, common_name)

        valid_days = self._generator.resolve_validity(identity.valid)
        ca_certificate = self._require_certificate()

        keys = self._keys.create_keys(
            self.common_name, common_name, Ownership.CERTIFICATE, identity.key_bit_size
        )
        csr_pem = self._generator.create_csr(
            self.common_name,
            common_name,
            identity,
            keys.private_key.value,
            Ownership.CERTIFICATE,
        )
        request = Armored(csr_pem, load_csr)
        cert_pem = self._generator.sign_csr(
            self.common_name,
            request.value,
            ca_certificate.value,
            self._data.private_key.value,
            valid_days,
        )

        logger.info(
            "certificate_issued",
            extra={
                "ca": self.common_name,
                "common_name": common_name,
                "thumbprint": compute_thumbprint(cert_pem),
            },
        )
        return Certificate(
            common_name=common_name,
            ca_name=self.common_name,
            certificate=Armored(cert_pem, load_certificate),
            ca_certificate=ca_certificate,
            csr=request,
            private_key=keys.private_key,
            public_key=keys.public_key,
        )

    # ------------------------------------------------------------------
    # Certificates managed by this CA
    # ------------------------------------------------------------------

    def list_certificates(self) -> list[str]:
        """Names of all certificates issued by this CA."""
        return self.store.list_certificates(self.common_name)

    def load_certificate(self, common_name: str) -> Certificate:
        """Load a certificate issued by this CA.

        Raises:
            CertificateNotFoundError: If the certificate file does not exist.
            DecodeError: If an artifact is malformed.
        """
        with tracer.start_as_current_span("CertificateAuthority.load_certificate") as span:
            span.set_attribute("ca", self.common_name)
            span.set_attribute("common_name", common_name)

            try:
                cert_pem = self.store.load_artifact(
                    self.common_name, common_name, ArtifactKind.CERTIFICATE, Ownership.CERTIFICATE
                )
            except ArtifactNotFoundError as e:
                raise CertificateNotFoundError(self.common_name, common_name) from e

            def optional(kind: ArtifactKind, decoder: Callable[[bytes], T]) -> Armored[T] | None:
                return _load_optional(
                    self.store,
                    self.common_name,
                    common_name,
                    kind,
                    Ownership.CERTIFICATE,
                    decoder,
                )

            return Certificate(
                common_name=common_name,
                ca_name=self.common_name,
                certificate=Armored(cert_pem, load_certificate),
                ca_certificate=self._require_certificate(),
                csr=optional(ArtifactKind.CSR, load_csr),
                private_key=optional(ArtifactKind.PRIVATE_KEY, load_private_key),
                public_key=optional(ArtifactKind.PUBLIC_KEY, load_public_key),
            )

    def revoke_certificate(self, common_name: str) -> None:
        """Revoke a certificate issued by this CA and rebuild the CRL.

        Raises:
            InvalidTransitionError: If this CA is not ready.
            CertificateNotFoundError: If the certificate does not exist.
            CertificateRevokedError: If its serial number is already in the CRL.
        """
        with tracer.start_as_current_span("CertificateAuthority.revoke_certificate") as span:
            span.set_attribute("ca", self.common_name)
            span.set_attribute("common_name", common_name)

            with self.store.lock(self.common_name):
                self._machine.transition(
                    CAEvent.CERTIFICATE_REVOKED, lambda: self._revoke(common_name)
                )

    def _revoke(self, common_name: str) -> None:
        target = self.load_certificate(common_name)

        # Another instance may have rewritten the CRL since this one was loaded.
        self._data.crl = _load_optional(
            self.store,
            self.common_name,
            self.common_name,
            ArtifactKind.CRL,
            Ownership.CA,
            load_crl,
        )
        entries = self.revoked_certificates
        serial_number = target.serial_number

        if any(entry.serial_number == serial_number for entry in entries):
            logger.warning(
                "certificate_already_revoked",
                extra={"ca": self.common_name, "common_name": common_name},
            )
            raise CertificateRevokedError(common_name, serial_number)

        entries.append(RevocationEntry(serial_number=serial_number, revocation_date=utc_now()))
        self._write_crl(entries)

        pki_metrics.record_certificate_revoked()
        logger.info(
            "certificate_revoked",
            extra={
                "ca": self.common_name,
                "common_name": common_name,
                "serial": format(serial_number, "x"),
                "revoked_entries": len(entries),
            },
        )
