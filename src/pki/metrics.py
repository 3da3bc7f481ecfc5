"""OpenTelemetry metrics for the PKI module."""

from collections.abc import Iterator

from opentelemetry import metrics

# Get meter for pki module
meter = metrics.get_meter("pki")

# ============================================================================
# Certificate Authority lifecycle
# ============================================================================

cas_created_total = meter.create_counter(
    name="pki_cas_created_total",
    description="Total certificate authorities created",
    unit="1",
)

cas_loaded_total = meter.create_counter(
    name="pki_cas_loaded_total",
    description="Total certificate authorities loaded from the store",
    unit="1",
)

intermediates_installed_total = meter.create_counter(
    name="pki_intermediate_certificates_installed_total",
    description="Total intermediate CAs promoted to ready",
    unit="1",
)

# ============================================================================
# Keys and certificates
# ============================================================================

keys_generated_total = meter.create_counter(
    name="pki_keys_generated_total",
    description="Total RSA key pairs generated",
    unit="1",
)

certificates_signed_total = meter.create_counter(
    name="pki_certificates_signed_total",
    description="Total certificates signed by a CA",
    unit="1",
)

certificate_signing_duration = meter.create_histogram(
    name="pki_certificate_signing_duration_seconds",
    description="Certificate signing duration in seconds",
    unit="s",
)

certificates_revoked_total = meter.create_counter(
    name="pki_certificates_revoked_total",
    description="Total certificates revoked",
    unit="1",
)

crls_generated_total = meter.create_counter(
    name="pki_crls_generated_total",
    description="Total certificate revocation lists generated",
    unit="1",
)

artifacts_written_total = meter.create_counter(
    name="pki_artifacts_written_total",
    description="Total artifacts written to the store",
    unit="1",
)

# Size of the most recent CRL per CA
_crl_sizes: dict[str, int] = {}


def _get_crl_sizes(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    """Callback to report revoked entries per CA."""
    for ca_name, size in _crl_sizes.items():
        yield metrics.Observation(size, {"ca": ca_name})


crl_revoked_entries_gauge = meter.create_observable_gauge(
    name="pki_crl_revoked_entries",
    description="Revoked entries in the latest CRL of each CA",
    unit="1",
    callbacks=[_get_crl_sizes],
)


class PKIMetrics:
    """Facade for PKI metrics with proper labels."""

    def record_ca_created(self, ca_type: str) -> None:
        """Record CA creation. Labels: type=root|intermediate"""
        cas_created_total.add(1, {"type": ca_type})

    def record_ca_loaded(self, status: str) -> None:
        """Record CA load. Labels: status=<CAStatus>"""
        cas_loaded_total.add(1, {"status": status})

    def record_intermediate_installed(self) -> None:
        intermediates_installed_total.add(1)

    def record_key_generated(self, key_size: int) -> None:
        """Record key generation. Labels: key_size=2048|4096|..."""
        keys_generated_total.add(1, {"key_size": str(key_size)})

    def record_certificate_signed(self, ownership: str, duration_seconds: float) -> None:
        """Record certificate signing with duration. Labels: ownership=ca|certificate"""
        certificates_signed_total.add(1, {"ownership": ownership})
        certificate_signing_duration.record(duration_seconds)

    def record_certificate_revoked(self) -> None:
        certificates_revoked_total.add(1)

    def record_crl_generated(self, ca_name: str, revoked_entries: int) -> None:
        """Record CRL generation and remember its size for the gauge."""
        crls_generated_total.add(1)
        _crl_sizes[ca_name] = revoked_entries

    def record_artifact_written(self, kind: str) -> None:
        """Record artifact write. Labels: kind=private_key|public_key|csr|certificate|crl"""
        artifacts_written_total.add(1, {"kind": kind})


# Singleton instance
pki_metrics = PKIMetrics()
