"""Negotiation state machine — validates transitions and enforces turn order.

States only move forward (0 -> 1 -> 2 -> 3 -> 4). The state itself is always
read from the ledger; this module only decides whether a caller may attempt
the next step from the state that was read.
"""

from typing import Optional

from fairpay.domain.enums import STATE_NAMES, NegotiationState, PartyRole
from fairpay.domain.errors import InvalidTransitionError
from fairpay.domain.models import Negotiation, same_identity

S = NegotiationState
R = PartyRole

# ---------------------------------------------------------------------------
# Transition map: from_state -> {to_state: set_of_allowed_roles}
# ---------------------------------------------------------------------------

TRANSITION_MAP: dict[NegotiationState, dict[NegotiationState, set[PartyRole]]] = {
    S.NOT_STARTED: {
        S.EMPLOYER_SUBMITTED: {R.EMPLOYER},
    },
    S.EMPLOYER_SUBMITTED: {
        S.CANDIDATE_SUBMITTED: {R.CANDIDATE},
    },
    S.CANDIDATE_SUBMITTED: {
        S.MATCH_READY: {R.EMPLOYER, R.CANDIDATE},
    },
    S.MATCH_READY: {
        S.COMPLETED: {R.EMPLOYER, R.CANDIDATE},
    },
}

# State each role must observe before submitting its range
SUBMISSION_STATES: dict[PartyRole, NegotiationState] = {
    R.EMPLOYER: S.NOT_STARTED,
    R.CANDIDATE: S.EMPLOYER_SUBMITTED,
}

# Transitions that deadline expiry blocks
EXPIRY_BLOCKED_TARGETS: set[NegotiationState] = {
    S.EMPLOYER_SUBMITTED,
    S.CANDIDATE_SUBMITTED,
}

TERMINAL_STATES: set[NegotiationState] = {S.COMPLETED}


class NegotiationStateMachine:
    """Validates negotiation state transitions for a given party."""

    def validate_transition(
        self,
        current_state: NegotiationState,
        target_state: NegotiationState,
        role: PartyRole,
        is_expired: bool = False,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        allowed_targets = TRANSITION_MAP.get(current_state)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_state,
                target_state,
                f"No transitions allowed from {current_state.name}",
            )

        if target_state not in allowed_targets:
            raise InvalidTransitionError(
                current_state,
                target_state,
                f"Transition from {current_state.name} to {target_state.name} is not allowed",
            )

        allowed_roles = allowed_targets[target_state]
        if role not in allowed_roles:
            raise InvalidTransitionError(
                current_state,
                target_state,
                f"Role {role.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(r.value for r in allowed_roles))})",
            )

        if is_expired and target_state in EXPIRY_BLOCKED_TARGETS:
            raise InvalidTransitionError(current_state, target_state, "Negotiation has expired")

        return True

    def validate_submission(
        self,
        negotiation: Negotiation,
        role: PartyRole,
        identity: str,
        is_expired: bool,
    ) -> NegotiationState:
        """Check that *identity* may submit a range as *role* right now.

        Returns the state the negotiation will move to.
        """
        required = SUBMISSION_STATES[role]
        target = NegotiationState(required + 1)

        if not same_identity(identity, negotiation.party_for(role)):
            raise InvalidTransitionError(
                negotiation.state,
                target,
                f"Only the {role.value} of this negotiation can submit the {role.value} range",
            )

        if negotiation.state != required:
            raise InvalidTransitionError(
                negotiation.state,
                target,
                f"The {role.value} range can only be submitted while the negotiation is "
                f"{required.name} (current: {negotiation.state.name})",
            )

        self.validate_transition(negotiation.state, target, role, is_expired=is_expired)
        return target

    def require_state(
        self,
        negotiation: Negotiation,
        expected: NegotiationState,
        action: str,
    ) -> None:
        """Raise unless the negotiation is exactly in *expected* for *action*."""
        if negotiation.state in TERMINAL_STATES and expected not in TERMINAL_STATES:
            raise InvalidTransitionError(
                negotiation.state,
                negotiation.state,
                f"Cannot {action}: negotiation is already {STATE_NAMES[negotiation.state].lower()}",
            )
        if negotiation.state != expected:
            target = NegotiationState(min(int(expected) + 1, int(S.COMPLETED)))
            raise InvalidTransitionError(
                negotiation.state,
                target,
                f"Cannot {action}: negotiation is {negotiation.state.name}, "
                f"expected {expected.name}",
            )

    @staticmethod
    def is_forward(previous: Optional[NegotiationState], current: NegotiationState) -> bool:
        """True when *current* does not move backwards from *previous*."""
        return previous is None or current >= previous
