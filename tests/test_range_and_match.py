"""Tests for range submission and the match trigger."""

from unittest.mock import AsyncMock

import pytest

from fairpay.domain.enums import ErrorKind, NegotiationState, PartyRole
from fairpay.domain.errors import (
    InvalidInputError,
    InvalidTransitionError,
    LedgerRejectedError,
    NotInitializedError,
)
from fairpay.services.range_submission_service import RangeSubmissionService, validate_range

from conftest import CANDIDATE, EMPLOYER, STRANGER

S = NegotiationState
R = PartyRole


# ---------------------------------------------------------------------------
# Local range validation
# ---------------------------------------------------------------------------


class TestValidateRange:
    @pytest.mark.parametrize("min_value,max_value", [(0, 0), (1, 1), (10_000, 100_000), (0, 2**64 - 1)])
    def test_valid_ranges(self, min_value, max_value):
        validate_range(min_value, max_value)

    @pytest.mark.parametrize(
        "min_value,max_value,message",
        [
            (5, 1, "Min must be <= max"),
            (-1, 10, "between 0 and"),
            (0, 2**64, "between 0 and"),
            (1.5, 10, "integers"),
            ("1", 10, "integers"),
            (True, 10, "integers"),
        ],
    )
    def test_invalid_ranges(self, min_value, max_value, message):
        with pytest.raises(InvalidInputError, match=message):
            validate_range(min_value, max_value)


# ---------------------------------------------------------------------------
# Range submission
# ---------------------------------------------------------------------------


class TestSubmitRange:
    @pytest.mark.asyncio
    async def test_employer_then_candidate(self, ready_services, chain, make_negotiation):
        negotiation_id = await make_negotiation()
        submit = ready_services.orchestrator.range_service.submit_range

        tx_employer = await submit(R.EMPLOYER, negotiation_id, 10_000, 100_000, EMPLOYER)
        assert (await chain.read_negotiation(negotiation_id))["state"] == S.EMPLOYER_SUBMITTED

        tx_candidate = await submit(R.CANDIDATE, negotiation_id, 20_000, 50_000, CANDIDATE)
        assert (await chain.read_negotiation(negotiation_id))["state"] == S.CANDIDATE_SUBMITTED
        assert tx_employer != tx_candidate

    @pytest.mark.asyncio
    async def test_role_given_as_string(self, ready_services, chain, make_negotiation):
        negotiation_id = await make_negotiation()
        await ready_services.orchestrator.range_service.submit_range(
            "employer", negotiation_id, 1, 2, EMPLOYER
        )
        assert (await chain.read_negotiation(negotiation_id))["state"] == S.EMPLOYER_SUBMITTED

    @pytest.mark.asyncio
    async def test_inverted_range_rejected_before_any_ledger_call(self):
        ledger = AsyncMock()
        fhe = AsyncMock()
        service = RangeSubmissionService(ledger, fhe)

        with pytest.raises(InvalidInputError):
            await service.submit_range(R.EMPLOYER, 1, 100, 10, EMPLOYER)

        ledger.read_negotiation.assert_not_awaited()
        fhe.encrypt_range.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_initialized_before_any_side_effect(self, services, chain, make_negotiation):
        negotiation_id = await make_negotiation()

        with pytest.raises(NotInitializedError) as exc_info:
            await services.orchestrator.range_service.submit_range(
                R.EMPLOYER, negotiation_id, 1, 2, EMPLOYER
            )

        assert exc_info.value.kind == ErrorKind.NOT_INITIALIZED
        assert (await chain.read_negotiation(negotiation_id))["state"] == S.NOT_STARTED

    @pytest.mark.asyncio
    async def test_candidate_out_of_turn(self, ready_services, make_negotiation):
        negotiation_id = await make_negotiation()
        with pytest.raises(InvalidTransitionError):
            await ready_services.orchestrator.range_service.submit_range(
                R.CANDIDATE, negotiation_id, 1, 2, CANDIDATE
            )

    @pytest.mark.asyncio
    async def test_non_party_cannot_submit(self, ready_services, make_negotiation):
        negotiation_id = await make_negotiation()
        with pytest.raises(InvalidInputError):
            await ready_services.orchestrator.range_service.submit_range(
                R.EMPLOYER, negotiation_id, 1, 2, STRANGER
            )

    @pytest.mark.asyncio
    async def test_expired_negotiation_rejected(self, ready_services, clock, make_negotiation, advance_to):
        negotiation_id = await make_negotiation(deadline_seconds=3600)
        await advance_to(negotiation_id, S.EMPLOYER_SUBMITTED)
        clock.advance(3601)

        with pytest.raises(InvalidTransitionError, match="expired"):
            await ready_services.orchestrator.range_service.submit_range(
                R.CANDIDATE, negotiation_id, 1, 2, CANDIDATE
            )

    @pytest.mark.asyncio
    async def test_ledger_rejection_surfaces_unchanged(
        self, ready_services, chain, make_negotiation, monkeypatch
    ):
        negotiation_id = await make_negotiation()
        range_service = ready_services.orchestrator.range_service
        rejected = AsyncMock(
            side_effect=LedgerRejectedError("execution reverted: Invalid proof", reason="Invalid proof")
        )
        monkeypatch.setattr(chain, "submit_employer_range", rejected)

        with pytest.raises(LedgerRejectedError, match="Invalid proof") as exc_info:
            await range_service.submit_range(R.EMPLOYER, negotiation_id, 1, 2, EMPLOYER)

        assert exc_info.value.user_message == "Contract error: Contract reverted: Invalid proof"
        rejected.assert_awaited_once()


# ---------------------------------------------------------------------------
# Match trigger
# ---------------------------------------------------------------------------


class TestTriggerMatch:
    @pytest.mark.asyncio
    async def test_trigger_moves_to_match_ready(self, ready_services, chain, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, S.CANDIDATE_SUBMITTED)

        tx_ref = await ready_services.orchestrator.match_service.trigger_match(negotiation_id, CANDIDATE)

        assert tx_ref.startswith("0x")
        record = await chain.read_negotiation(negotiation_id)
        assert record["state"] == S.MATCH_READY
        handles = await chain.get_match_handles(negotiation_id)
        assert handles.has_match_handle != handles.meeting_point_handle

    @pytest.mark.asyncio
    async def test_trigger_before_both_ranges(self, ready_services, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, S.EMPLOYER_SUBMITTED)

        with pytest.raises(InvalidTransitionError, match="Cannot calculate match"):
            await ready_services.orchestrator.match_service.trigger_match(negotiation_id, EMPLOYER)

    @pytest.mark.asyncio
    async def test_repeat_trigger_is_rejected_without_state_change(
        self, ready_services, chain, make_negotiation, advance_to
    ):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, S.MATCH_READY)
        before = await chain.get_match_handles(negotiation_id)

        with pytest.raises(InvalidInputError, match="already calculated"):
            await ready_services.orchestrator.match_service.trigger_match(negotiation_id, EMPLOYER)

        assert await chain.get_match_handles(negotiation_id) == before
        assert (await chain.read_negotiation(negotiation_id))["state"] == S.MATCH_READY

    @pytest.mark.asyncio
    async def test_non_party_cannot_trigger(self, ready_services, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, S.CANDIDATE_SUBMITTED)

        with pytest.raises(InvalidInputError, match="Only the employer or candidate"):
            await ready_services.orchestrator.match_service.trigger_match(negotiation_id, STRANGER)
