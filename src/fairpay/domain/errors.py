"""Error taxonomy for the negotiation orchestrator.

Every public operation either returns its result or raises exactly one
FairPayError subclass. ``kind`` identifies the classification, ``str(exc)``
is the technical message and ``user_message`` is what a presentation layer
should show.
"""

from typing import Optional

from fairpay.domain.enums import ErrorKind


class FairPayError(Exception):
    """Base class for all classified orchestrator errors."""

    kind: ErrorKind = ErrorKind.NETWORK_ERROR
    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        self.user_message = user_message or self.default_user_message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.DECRYPTION_TRANSIENT


class InvalidInputError(FairPayError):
    """Caller supplied bad values or acted outside their role/state."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, user_message or message)


class InvalidTransitionError(InvalidInputError):
    """Raised when a role tries to move a negotiation out of turn."""

    def __init__(self, current_state, target_state, reason: str):
        self.current_state = current_state
        self.target_state = target_state
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_state.name} to {target_state.name}: {reason}",
            user_message=reason,
        )


class RevealInProgressError(InvalidInputError):
    """A reveal for this negotiation is already running."""

    def __init__(self, negotiation_id: int):
        self.negotiation_id = negotiation_id
        super().__init__(
            f"Reveal already in progress for negotiation {negotiation_id}",
            user_message="A reveal is already in progress for this negotiation.",
        )


class NotInitializedError(FairPayError):
    """Encryption/decryption primitive used before bootstrap completed."""

    kind = ErrorKind.NOT_INITIALIZED
    default_user_message = "Encryption is not ready yet. Please wait a moment and try again."


class WrongNetworkError(NotInitializedError):
    """Connected ledger reports a different chain than configured."""

    def __init__(self, expected_chain_id: int, actual_chain_id: int):
        self.expected_chain_id = expected_chain_id
        self.actual_chain_id = actual_chain_id
        super().__init__(
            f"Wrong network: expected chain {expected_chain_id}, got {actual_chain_id}",
            user_message=f"Wrong network. Please switch to chain ID {expected_chain_id}.",
        )


class ContractNotFoundError(NotInitializedError):
    """No contract code deployed at the configured address."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(
            f"Contract not found at address: {address}",
            user_message="The FairPay contract was not found on this network.",
        )


class InvalidHandlesError(FairPayError):
    kind = ErrorKind.INVALID_HANDLES
    default_user_message = "Invalid encryption handles. Ensure the match was calculated correctly."


class NotMarkedForDecryptionError(FairPayError):
    kind = ErrorKind.NOT_MARKED_FOR_DECRYPTION
    default_user_message = (
        "Contract error: values are not marked for public decryption. Please contact support."
    )


class DecryptionTransientError(FairPayError):
    kind = ErrorKind.DECRYPTION_TRANSIENT
    default_user_message = (
        "Decryption not ready. The gateway needs more time to process. "
        "Please wait 2-3 minutes and try again."
    )


class DecryptionTimeoutError(FairPayError):
    """Retry budget exhausted while the gateway kept reporting not-ready."""

    kind = ErrorKind.DECRYPTION_TIMEOUT

    def __init__(self, attempts: int):
        self.attempts = attempts
        message = (
            f"Decryption timed out after {attempts} attempts. "
            "The gateway may be slow. Please try again in a few minutes."
        )
        super().__init__(message, user_message=message)


class MalformedDecryptionResultError(FairPayError):
    kind = ErrorKind.MALFORMED_DECRYPTION_RESULT
    default_user_message = "The decryption gateway returned an unexpected result."


class LedgerRejectedError(FairPayError):
    """Transaction reverted or failed to confirm."""

    kind = ErrorKind.LEDGER_REJECTED

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        detail = f"Contract reverted: {reason}" if reason else message
        super().__init__(message, user_message=f"Contract error: {detail}")


class NetworkError(FairPayError):
    kind = ErrorKind.NETWORK_ERROR
    default_user_message = "Network error. Please check your connection and try again."
