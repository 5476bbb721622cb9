"""Match trigger: ask the ledger to compare both encrypted ranges."""

import logging

from fairpay.domain.enums import NegotiationState
from fairpay.domain.errors import InvalidInputError
from fairpay.domain.models import Negotiation
from fairpay.infra.ledger import LedgerClient
from fairpay.services.negotiation_state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)


class MatchService:
    """Requests the on-chain encrypted comparison once both ranges exist."""

    def __init__(self, ledger: LedgerClient, state_machine: NegotiationStateMachine | None = None):
        self.ledger = ledger
        self.state_machine = state_machine or NegotiationStateMachine()

    async def trigger_match(self, negotiation_id: int, identity: str) -> str:
        """Trigger match computation. Returns the tx reference.

        Not retried: a failed trigger is repeated explicitly by the caller,
        and repeating it once MATCH_READY is rejected rather than applied.
        """
        negotiation = Negotiation.from_record(await self.ledger.read_negotiation(negotiation_id))

        if negotiation.role_of(identity) is None:
            raise InvalidInputError("Only the employer or candidate can calculate the match")
        if negotiation.state >= NegotiationState.MATCH_READY:
            raise InvalidInputError(
                f"Match already calculated for negotiation {negotiation_id} "
                f"(state: {negotiation.state.name})"
            )
        self.state_machine.require_state(
            negotiation, NegotiationState.CANDIDATE_SUBMITTED, "calculate match"
        )

        tx_ref = await self.ledger.trigger_match(identity, negotiation_id)
        logger.info("Match calculation confirmed: negotiation=%s tx=%s", negotiation_id, tx_ref)
        return tx_ref
