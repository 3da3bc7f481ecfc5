from pki.ca.crypto import compute_thumbprint
from pki.domain.models import Certificate, Identity
from pki.domain.state_machine import StateMachine
from pki.metrics import _get_crl_sizes
from pki.repository.storage import FileStore
from pki.services.authority import CertificateAuthority
from shared.config import Settings
from shared.logging import logger
from shared.tracing import setup_telemetry

# Pydantic Settings
Settings.model_config
Settings.APP_ENV
Settings.CAPATH
Settings.CA_TEST_MODE

# Entry points used by embedding processes
FileStore.from_settings
setup_telemetry
logger

# Public API read by callers
CertificateAuthority.list_cas
CertificateAuthority.data
CertificateAuthority.is_intermediate
Certificate.thumbprint
Certificate.not_after
Identity.from_name
StateMachine.can_transition
StateMachine.get_valid_events
compute_thumbprint

# OpenTelemetry observable gauge callback signature
_get_crl_sizes
options
