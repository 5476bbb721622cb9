"""Domain enumerations for FairPay negotiations.

String enums use the (str, Enum) pattern for JSON serialization compatibility.
The negotiation state is an IntEnum because the ledger stores it as uint8.
"""

from enum import Enum, IntEnum


class NegotiationState(IntEnum):
    """Lifecycle phase of a negotiation as stored on the ledger."""

    NOT_STARTED = 0
    EMPLOYER_SUBMITTED = 1
    CANDIDATE_SUBMITTED = 2
    MATCH_READY = 3
    COMPLETED = 4


STATE_NAMES: dict[NegotiationState, str] = {
    NegotiationState.NOT_STARTED: "Not Started",
    NegotiationState.EMPLOYER_SUBMITTED: "Employer Submitted",
    NegotiationState.CANDIDATE_SUBMITTED: "Candidate Submitted",
    NegotiationState.MATCH_READY: "Match Ready",
    NegotiationState.COMPLETED: "Completed",
}


class PartyRole(str, Enum):
    """Which side of the negotiation a caller acts for."""

    EMPLOYER = "employer"
    CANDIDATE = "candidate"


class LedgerEventKind(str, Enum):
    """Contract events the synchronization layer listens for."""

    NEGOTIATION_CREATED = "NegotiationCreated"
    EMPLOYER_RANGE_SUBMITTED = "EmployerRangeSubmitted"
    CANDIDATE_RANGE_SUBMITTED = "CandidateRangeSubmitted"
    MATCH_CALCULATION_STARTED = "MatchCalculationStarted"
    MATCH_REVEALED = "MatchRevealed"
    CALLBACK_FAILED = "CallbackFailed"


class ErrorKind(str, Enum):
    """Classification carried by every FairPayError."""

    INVALID_INPUT = "invalid_input"
    NOT_INITIALIZED = "not_initialized"
    INVALID_HANDLES = "invalid_handles"
    NOT_MARKED_FOR_DECRYPTION = "not_marked_for_decryption"
    DECRYPTION_TRANSIENT = "decryption_transient"
    DECRYPTION_TIMEOUT = "decryption_timeout"
    MALFORMED_DECRYPTION_RESULT = "malformed_decryption_result"
    LEDGER_REJECTED = "ledger_rejected"
    NETWORK_ERROR = "network_error"
