"""State machine implementations for domain entities.

Invariants:
    A root CA holds a certificate and no CSR.
    An intermediate CA holds a CSR; it becomes ready once a certificate is installed.
    Only a ready CA signs, issues or revokes.
    INCONSISTENT (neither CSR nor certificate) has no transitions.
"""

from typing import TYPE_CHECKING

from pki.domain.state_machine import StateMachine
from pki.domain.states import CAEvent, CAStatus

if TYPE_CHECKING:
    from pki.domain.models import CAData

CATransitions = dict[tuple[CAStatus, CAEvent], CAStatus]


def compute_status(data: "CAData") -> CAStatus:
    """Map CSR/certificate presence to a CA state."""
    has_csr = data.csr is not None
    has_certificate = data.certificate is not None

    if has_csr and not has_certificate:
        return CAStatus.INTERMEDIATE_PENDING
    if has_csr and has_certificate:
        return CAStatus.INTERMEDIATE_READY
    if has_certificate:
        return CAStatus.ROOT_READY
    return CAStatus.INCONSISTENT


class CertificateAuthorityStateMachine(StateMachine[CAStatus, CAEvent]):
    """State machine for a Certificate Authority.

    States:
        ROOT_READY: Self-signed certificate, no CSR
        INTERMEDIATE_PENDING: CSR awaiting a signed certificate
        INTERMEDIATE_READY: CSR and signed certificate
        INCONSISTENT: Neither CSR nor certificate, no transitions

    Transition Table:
        (INTERMEDIATE_PENDING, CERTIFICATE_INSTALLED) -> INTERMEDIATE_READY
        (ROOT_READY, CSR_SIGNED | CERTIFICATE_ISSUED | CERTIFICATE_REVOKED) -> ROOT_READY
        (INTERMEDIATE_READY, CSR_SIGNED | CERTIFICATE_ISSUED | CERTIFICATE_REVOKED)
            -> INTERMEDIATE_READY
    """

    TRANSITIONS: CATransitions = {
        # From INTERMEDIATE_PENDING
        (CAStatus.INTERMEDIATE_PENDING, CAEvent.CERTIFICATE_INSTALLED): (
            CAStatus.INTERMEDIATE_READY
        ),
        # From ROOT_READY
        (CAStatus.ROOT_READY, CAEvent.CSR_SIGNED): CAStatus.ROOT_READY,
        (CAStatus.ROOT_READY, CAEvent.CERTIFICATE_ISSUED): CAStatus.ROOT_READY,
        (CAStatus.ROOT_READY, CAEvent.CERTIFICATE_REVOKED): CAStatus.ROOT_READY,
        # From INTERMEDIATE_READY
        (CAStatus.INTERMEDIATE_READY, CAEvent.CSR_SIGNED): CAStatus.INTERMEDIATE_READY,
        (CAStatus.INTERMEDIATE_READY, CAEvent.CERTIFICATE_ISSUED): CAStatus.INTERMEDIATE_READY,
        (CAStatus.INTERMEDIATE_READY, CAEvent.CERTIFICATE_REVOKED): (
            CAStatus.INTERMEDIATE_READY
        ),
        # INCONSISTENT has no transitions
    }

    def __init__(self, common_name: str, data: "CAData"):
        self._common_name = common_name
        self._data = data

    def _get_state(self) -> CAStatus:
        return compute_status(self._data)

    def _get_entity_id(self) -> str:
        return self._common_name
