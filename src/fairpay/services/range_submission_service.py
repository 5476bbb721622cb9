"""Range submission — encrypt, submit and confirm one party's salary range."""

import logging

from fairpay.domain.enums import PartyRole
from fairpay.domain.errors import InvalidInputError, NotInitializedError
from fairpay.domain.models import Negotiation
from fairpay.infra.ledger import LedgerClient
from fairpay.services.fhe_service import FheService
from fairpay.services.negotiation_state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)

UINT64_MAX = 2**64 - 1


def validate_range(min_value: int, max_value: int) -> None:
    """Local range checks; raise InvalidInputError before any ledger work."""
    if isinstance(min_value, bool) or isinstance(max_value, bool):
        raise InvalidInputError("Range values must be integers")
    if not isinstance(min_value, int) or not isinstance(max_value, int):
        raise InvalidInputError("Range values must be integers")
    if min_value > max_value:
        raise InvalidInputError("Min must be <= max")
    if min_value < 0 or max_value > UINT64_MAX:
        raise InvalidInputError("Range values must be between 0 and 2^64 - 1")


class RangeSubmissionService:
    """Drives encrypt -> submit -> confirm for employer and candidate ranges.

    Submissions are never retried automatically: resubmitting after an
    ambiguous failure risks a duplicate-range rejection on the ledger.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        fhe: FheService,
        state_machine: NegotiationStateMachine | None = None,
    ):
        self.ledger = ledger
        self.fhe = fhe
        self.state_machine = state_machine or NegotiationStateMachine()

    async def submit_range(
        self,
        role: PartyRole,
        negotiation_id: int,
        min_value: int,
        max_value: int,
        identity: str,
    ) -> str:
        """Submit *identity*'s encrypted range as *role*. Returns the tx reference."""
        role = PartyRole(role)
        validate_range(min_value, max_value)
        if not self.fhe.is_ready():
            raise NotInitializedError("FHE instance not initialized")

        record = await self.ledger.read_negotiation(negotiation_id)
        negotiation = Negotiation.from_record(record)
        is_expired = await self.ledger.is_expired(negotiation_id)
        self.state_machine.validate_submission(negotiation, role, identity, is_expired)

        encrypted = await self.fhe.encrypt_range(min_value, max_value, identity)
        logger.info(
            "Submitting %s range: negotiation=%s sender=%s",
            role.value,
            negotiation_id,
            identity,
        )

        if role == PartyRole.EMPLOYER:
            tx_ref = await self.ledger.submit_employer_range(
                identity, negotiation_id, encrypted.enc_min, encrypted.enc_max, encrypted.proof
            )
        else:
            tx_ref = await self.ledger.submit_candidate_range(
                identity, negotiation_id, encrypted.enc_min, encrypted.enc_max, encrypted.proof
            )

        logger.info("%s range confirmed: negotiation=%s tx=%s", role.value, negotiation_id, tx_ref)
        return tx_ref
