"""Decrypt-and-reveal protocol.

Once a negotiation is MATCH_READY the ledger holds two encrypted result
handles (has-match, meeting point). Revealing them:

1. Fetch both handles; empty handles mean the match was never computed.
2. Best-effort check that both handles are marked for public decryption.
3. Ask the gateway to public-decrypt both handles, retrying on "not ready"
   with a fixed delay (the gateway works on a human timescale, so there is
   no exponential back-off here).
4. Submit the cleartext values back to the ledger in a reveal transaction.

At most one reveal runs per negotiation at a time; a second concurrent call
is rejected, not queued. The loop has no cancellation signal: a caller may
stop awaiting, but the reveal runs to success, hard failure or timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from fairpay.domain.enums import NegotiationState
from fairpay.domain.errors import (
    DecryptionTimeoutError,
    DecryptionTransientError,
    FairPayError,
    InvalidHandlesError,
    InvalidInputError,
    MalformedDecryptionResultError,
    NotMarkedForDecryptionError,
    RevealInProgressError,
)
from fairpay.domain.models import (
    DecryptedMatch,
    DecryptionAttempt,
    MatchHandles,
    Negotiation,
    is_empty_handle,
)
from fairpay.infra.ledger import LedgerClient
from fairpay.services.fhe_service import FheService
from fairpay.services.negotiation_state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 20
DEFAULT_RETRY_DELAY_SECONDS = 15.0
UINT64_MAX = 2**64 - 1

ProgressCallback = Callable[[DecryptionAttempt], None]


@dataclass(frozen=True)
class RevealOutcome:
    negotiation_id: int
    tx_ref: str
    attempts: int
    has_match: bool
    meeting_point: int


# ---------------------------------------------------------------------------
# Result decoding
# ---------------------------------------------------------------------------


def _parse_int(raw: Any) -> int:
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip().lower()
        try:
            return int(text, 16) if text.startswith("0x") else int(text)
        except ValueError:
            pass
    raise MalformedDecryptionResultError(f"Cannot interpret decrypted value {raw!r}")


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    value = _parse_int(raw)
    if value not in (0, 1):
        raise MalformedDecryptionResultError(f"Decrypted has-match value is not a boolean: {raw!r}")
    return bool(value)


def _as_uint64(raw: Any) -> int:
    if isinstance(raw, bool):
        raise MalformedDecryptionResultError("Decrypted meeting point is a boolean, expected uint64")
    value = _parse_int(raw)
    if not 0 <= value <= UINT64_MAX:
        raise MalformedDecryptionResultError(f"Decrypted meeting point out of uint64 range: {value}")
    return value


def decode_public_decrypt_result(result: Any, handles: MatchHandles) -> DecryptedMatch:
    """Extract (has_match, meeting_point) from a gateway payload.

    Only the ``clearValues`` map keyed by handle is accepted; any other
    shape is rejected instead of guessed at.
    """
    if not isinstance(result, Mapping):
        raise MalformedDecryptionResultError(
            f"Decryption result is a {type(result).__name__}, expected an object"
        )

    clear_values = result.get("clearValues")
    if not isinstance(clear_values, Mapping):
        raise MalformedDecryptionResultError(
            "Could not extract values from decryption result "
            f"(keys: {', '.join(sorted(map(str, result.keys())))})"
        )

    if len(clear_values) != 2:
        raise MalformedDecryptionResultError(f"Expected 2 values, got {len(clear_values)}")

    by_handle = {str(key).lower(): value for key, value in clear_values.items()}
    try:
        raw_has_match = by_handle[handles.has_match_handle.lower()]
        raw_meeting_point = by_handle[handles.meeting_point_handle.lower()]
    except KeyError as exc:
        raise MalformedDecryptionResultError(
            "Decryption result is not keyed by the requested handles"
        ) from exc

    return DecryptedMatch(
        has_match=_as_bool(raw_has_match),
        meeting_point=_as_uint64(raw_meeting_point),
        proof=str(result.get("decryptionProof") or "0x"),
    )


# ---------------------------------------------------------------------------
# Reveal protocol
# ---------------------------------------------------------------------------


class RevealService:
    """Runs the decrypt-and-reveal protocol with single-flight per negotiation."""

    def __init__(
        self,
        ledger: LedgerClient,
        fhe: FheService,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        state_machine: Optional[NegotiationStateMachine] = None,
    ):
        self.ledger = ledger
        self.fhe = fhe
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.state_machine = state_machine or NegotiationStateMachine()
        self._in_flight: dict[int, DecryptionAttempt] = {}

    def is_running(self, negotiation_id: int) -> bool:
        return negotiation_id in self._in_flight

    def status(self, negotiation_id: int) -> Optional[DecryptionAttempt]:
        """Copy of the in-flight attempt record, or None when idle."""
        attempt = self._in_flight.get(negotiation_id)
        return attempt.snapshot() if attempt else None

    async def reveal_match(
        self,
        negotiation_id: int,
        identity: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RevealOutcome:
        """Decrypt the match handles and publish the cleartext result."""
        if negotiation_id in self._in_flight:
            raise RevealInProgressError(negotiation_id)

        attempt = DecryptionAttempt(negotiation_id=negotiation_id, max_attempts=self.max_attempts)
        self._in_flight[negotiation_id] = attempt
        try:
            negotiation = Negotiation.from_record(await self.ledger.read_negotiation(negotiation_id))
            if negotiation.role_of(identity) is None:
                raise InvalidInputError("Only the employer or candidate can reveal the match")
            self.state_machine.require_state(negotiation, NegotiationState.MATCH_READY, "reveal match")
            await self.fhe.initialize()

            handles = await self._fetch_handles(attempt, on_progress)
            await self._verify_marked(attempt, on_progress)
            decrypted = await self._decrypt_with_retry(handles, attempt, on_progress)

            self._report(attempt, "Submitting to blockchain...", on_progress)
            tx_ref = await self.ledger.reveal_match(
                identity, negotiation_id, decrypted.has_match, decrypted.meeting_point
            )
            self._report(attempt, "Success!", on_progress)
            logger.info(
                "Match revealed: negotiation=%s attempts=%d tx=%s",
                negotiation_id,
                attempt.attempts,
                tx_ref,
            )
            return RevealOutcome(
                negotiation_id=negotiation_id,
                tx_ref=tx_ref,
                attempts=attempt.attempts,
                has_match=decrypted.has_match,
                meeting_point=decrypted.meeting_point,
            )
        except FairPayError as exc:
            attempt.last_error_kind = exc.kind.value
            attempt.last_error = str(exc)
            logger.warning(
                "Reveal failed: negotiation=%s kind=%s error=%s",
                negotiation_id,
                exc.kind.value,
                exc,
            )
            raise
        finally:
            self._in_flight.pop(negotiation_id, None)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _fetch_handles(
        self, attempt: DecryptionAttempt, on_progress: Optional[ProgressCallback]
    ) -> MatchHandles:
        self._report(attempt, "Getting encrypted handles...", on_progress)
        handles = await self.ledger.get_match_handles(attempt.negotiation_id)
        if is_empty_handle(handles.has_match_handle) or is_empty_handle(handles.meeting_point_handle):
            raise InvalidHandlesError("Invalid handles - match may not be calculated yet")
        return handles

    async def _verify_marked(
        self, attempt: DecryptionAttempt, on_progress: Optional[ProgressCallback]
    ) -> None:
        """Diagnostic only: a failing status query does not abort the reveal."""
        self._report(attempt, "Verifying decryption status...", on_progress)
        try:
            status = await self.ledger.get_match_handles_with_status(attempt.negotiation_id)
        except Exception as exc:
            logger.warning(
                "Could not verify decryption status for negotiation %s: %s",
                attempt.negotiation_id,
                exc,
            )
            return

        if not status.fully_marked:
            raise NotMarkedForDecryptionError(
                "Values not marked for public decryption in contract "
                f"(has_match={status.has_match_marked}, meeting_point={status.meeting_point_marked})"
            )

    async def _decrypt_with_retry(
        self,
        handles: MatchHandles,
        attempt: DecryptionAttempt,
        on_progress: Optional[ProgressCallback],
    ) -> DecryptedMatch:
        while attempt.attempts < self.max_attempts:
            attempt.attempts += 1
            self._report(
                attempt,
                f"Decrypting... (attempt {attempt.attempts}/{self.max_attempts})",
                on_progress,
            )
            try:
                result = await self.fhe.public_decrypt(handles.as_list)
            except DecryptionTransientError as exc:
                attempt.last_error_kind = exc.kind.value
                attempt.last_error = str(exc)
                logger.info(
                    "Decryption attempt %d/%d not ready: %s",
                    attempt.attempts,
                    self.max_attempts,
                    exc,
                )
                if attempt.attempts < self.max_attempts:
                    self._report(
                        attempt,
                        f"Decryption not ready yet. Waiting {self.retry_delay:g}s "
                        f"before retry {attempt.attempts + 1}...",
                        on_progress,
                    )
                    await self._sleep(self.retry_delay)
                continue

            return decode_public_decrypt_result(result, handles)

        raise DecryptionTimeoutError(attempt.attempts)

    @staticmethod
    def _report(
        attempt: DecryptionAttempt, message: str, on_progress: Optional[ProgressCallback]
    ) -> None:
        attempt.progress = message
        if on_progress is not None:
            on_progress(attempt.snapshot())
