"""Negotiation orchestrator, the single entry point callers drive.

Wires range submission, match trigger, decrypt-and-reveal and the
monitor together. After every confirmed transaction the affected
negotiation is re-read from the ledger so watchers see the new state
without waiting for an event or the periodic sweep.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, replace
from typing import Optional

from fairpay.domain.enums import PartyRole
from fairpay.domain.errors import FairPayError, InvalidInputError, RevealInProgressError
from fairpay.domain.models import (
    CreatedNegotiation,
    DecryptionAttempt,
    NegotiationProgress,
    same_identity,
)
from fairpay.infra.ledger import LedgerClient
from fairpay.services.fhe_service import FheService
from fairpay.services.match_service import MatchService
from fairpay.services.negotiation_monitor import NegotiationMonitor
from fairpay.services.range_submission_service import RangeSubmissionService, validate_range
from fairpay.services.reveal_service import RevealOutcome, RevealService

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600


@dataclass(frozen=True)
class RevealStatus:
    """What a caller can observe about the latest reveal of a negotiation."""

    negotiation_id: int
    running: bool
    attempts: int = 0
    max_attempts: int = 0
    progress: str = ""
    last_error_kind: Optional[str] = None
    last_error: Optional[str] = None
    tx_ref: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: DecryptionAttempt, running: bool = True) -> "RevealStatus":
        return cls(
            negotiation_id=attempt.negotiation_id,
            running=running,
            attempts=attempt.attempts,
            max_attempts=attempt.max_attempts,
            progress=attempt.progress,
            last_error_kind=attempt.last_error_kind,
            last_error=attempt.last_error,
        )


class NegotiationOrchestrator:
    """Facade over the lifecycle services for one ledger deployment."""

    def __init__(
        self,
        ledger: LedgerClient,
        fhe: FheService,
        monitor: NegotiationMonitor,
        reveal_service: RevealService,
        range_service: Optional[RangeSubmissionService] = None,
        match_service: Optional[MatchService] = None,
    ):
        self.ledger = ledger
        self.fhe = fhe
        self.monitor = monitor
        self.reveal_service = reveal_service
        self.range_service = range_service or RangeSubmissionService(ledger, fhe)
        self.match_service = match_service or MatchService(ledger)
        self._reveal_tasks: dict[int, asyncio.Task] = {}
        self._reveal_status: dict[int, RevealStatus] = {}

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_negotiation(
        self, employer: str, candidate: str, title: str, deadline_hours: int
    ) -> CreatedNegotiation:
        """Open a negotiation with *employer* as the sender."""
        title = (title or "").strip()
        if not title:
            raise InvalidInputError("Title is required")
        if not candidate:
            raise InvalidInputError("Candidate address is required")
        if same_identity(employer, candidate):
            raise InvalidInputError("Employer and candidate must be different accounts")
        if isinstance(deadline_hours, bool) or not isinstance(deadline_hours, int) or deadline_hours <= 0:
            raise InvalidInputError("Deadline must be a positive number of hours")

        created = await self.ledger.create_negotiation(
            employer, candidate, title, deadline_hours * SECONDS_PER_HOUR
        )
        logger.info(
            "Negotiation created: id=%s employer=%s candidate=%s tx=%s",
            created.negotiation_id,
            employer,
            candidate,
            created.tx_ref,
        )
        await self._sync(created.negotiation_id)
        return created

    async def submit_range(
        self,
        role: PartyRole,
        negotiation_id: int,
        min_value: int,
        max_value: int,
        identity: str,
    ) -> str:
        validate_range(min_value, max_value)
        await self.fhe.initialize()
        tx_ref = await self.range_service.submit_range(
            role, negotiation_id, min_value, max_value, identity
        )
        await self._sync(negotiation_id)
        return tx_ref

    async def trigger_match(self, negotiation_id: int, identity: str) -> str:
        tx_ref = await self.match_service.trigger_match(negotiation_id, identity)
        await self._sync(negotiation_id)
        return tx_ref

    async def reveal_match(self, negotiation_id: int, identity: str) -> RevealOutcome:
        """Run the reveal protocol and wait for it to finish."""
        outcome = await self.reveal_service.reveal_match(
            negotiation_id, identity, on_progress=self._record_progress
        )
        await self._sync(negotiation_id)
        return outcome

    def start_reveal(self, negotiation_id: int, identity: str) -> RevealStatus:
        """Launch the reveal in the background and return its initial status.

        The task is owned by the orchestrator, so a caller that goes away
        (closed tab, dropped request) does not stop it.
        """
        task = self._reveal_tasks.get(negotiation_id)
        if (task is not None and not task.done()) or self.reveal_service.is_running(negotiation_id):
            raise RevealInProgressError(negotiation_id)

        status = RevealStatus(
            negotiation_id=negotiation_id,
            running=True,
            max_attempts=self.reveal_service.max_attempts,
            progress="Initializing...",
        )
        self._reveal_status[negotiation_id] = status
        task = asyncio.create_task(self._run_reveal(negotiation_id, identity))
        self._reveal_tasks[negotiation_id] = task
        task.add_done_callback(functools.partial(self._forget_task, negotiation_id))
        return status

    def reveal_status(self, negotiation_id: int) -> RevealStatus:
        live = self.reveal_service.status(negotiation_id)
        if live is not None:
            return RevealStatus.from_attempt(live)
        return self._reveal_status.get(
            negotiation_id, RevealStatus(negotiation_id=negotiation_id, running=False)
        )

    async def wait_for_reveal(self, negotiation_id: int) -> RevealStatus:
        """Wait for a background reveal (if any) and return its final status."""
        task = self._reveal_tasks.get(negotiation_id)
        if task is not None:
            await asyncio.shield(task)
        return self.reveal_status(negotiation_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_negotiation(self, negotiation_id: int) -> NegotiationProgress:
        return await self.monitor.refresh(negotiation_id)

    async def list_user_negotiations(self, address: str) -> list[NegotiationProgress]:
        if not address:
            raise InvalidInputError("Address is required")
        return await self.monitor.load_user_negotiations(address)

    async def get_match_result(self, negotiation_id: int) -> tuple[bool, int]:
        return await self.ledger.get_match_result(negotiation_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_reveal(self, negotiation_id: int, identity: str) -> None:
        try:
            outcome = await self.reveal_match(negotiation_id, identity)
        except FairPayError as exc:
            last = self._reveal_status.get(negotiation_id) or RevealStatus(negotiation_id, running=False)
            self._reveal_status[negotiation_id] = replace(
                last,
                running=False,
                last_error_kind=exc.kind.value,
                last_error=exc.user_message,
            )
            return
        except Exception as exc:
            logger.exception("Background reveal of negotiation %s crashed", negotiation_id)
            last = self._reveal_status.get(negotiation_id) or RevealStatus(negotiation_id, running=False)
            self._reveal_status[negotiation_id] = replace(last, running=False, last_error=str(exc))
            return

        self._reveal_status[negotiation_id] = RevealStatus(
            negotiation_id=negotiation_id,
            running=False,
            attempts=outcome.attempts,
            max_attempts=self.reveal_service.max_attempts,
            progress="Success!",
            tx_ref=outcome.tx_ref,
        )

    def _forget_task(self, negotiation_id: int, task: asyncio.Task) -> None:
        if self._reveal_tasks.get(negotiation_id) is task:
            del self._reveal_tasks[negotiation_id]

    def _record_progress(self, attempt: DecryptionAttempt) -> None:
        self._reveal_status[attempt.negotiation_id] = RevealStatus.from_attempt(attempt)

    async def _sync(self, negotiation_id: int) -> None:
        """Re-read after a confirmed transaction; the transaction itself already succeeded."""
        try:
            await self.monitor.refresh(negotiation_id)
        except Exception as exc:
            logger.warning("Post-transaction refresh of negotiation %s failed: %s", negotiation_id, exc)
