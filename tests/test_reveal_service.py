"""Tests for the decrypt-and-reveal protocol."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fairpay.domain.enums import ErrorKind, NegotiationState
from fairpay.domain.errors import (
    DecryptionTimeoutError,
    DecryptionTransientError,
    InvalidHandlesError,
    InvalidInputError,
    InvalidTransitionError,
    MalformedDecryptionResultError,
    NotMarkedForDecryptionError,
    RevealInProgressError,
)
from fairpay.domain.models import ZERO_HANDLE, MatchHandles, MatchHandlesStatus
from fairpay.services.reveal_service import RevealService, decode_public_decrypt_result

from conftest import CANDIDATE, EMPLOYER, STRANGER, FakeSleep

HANDLE_A = "0x" + "0a" * 32
HANDLE_B = "0x" + "0b" * 32
HANDLES = MatchHandles(HANDLE_A, HANDLE_B)


def _match_ready_record(negotiation_id: int = 1) -> dict:
    return {
        "negotiation_id": negotiation_id,
        "employer": EMPLOYER,
        "candidate": CANDIDATE,
        "title": "Staff Engineer",
        "state": int(NegotiationState.MATCH_READY),
        "created_at": 1_700_000_000,
        "deadline": 1_700_086_400,
        "has_match": HANDLE_A,
        "meeting_point": HANDLE_B,
    }


def _mock_ledger(handles: MatchHandles = HANDLES, marked: bool = True) -> AsyncMock:
    ledger = AsyncMock()
    ledger.read_negotiation.return_value = _match_ready_record()
    ledger.get_match_handles.return_value = handles
    ledger.get_match_handles_with_status.return_value = MatchHandlesStatus(
        handles.has_match_handle, handles.meeting_point_handle, marked, marked
    )
    ledger.reveal_match.return_value = "0xtx"
    return ledger


def _mock_fhe(*results) -> AsyncMock:
    fhe = AsyncMock()
    fhe.public_decrypt.side_effect = list(results) or [
        {"clearValues": {HANDLE_A: True, HANDLE_B: 35000}, "decryptionProof": "0xproof"}
    ]
    return fhe


# ---------------------------------------------------------------------------
# Result decoding
# ---------------------------------------------------------------------------


class TestDecodeResult:
    def test_decodes_clear_values_by_handle(self):
        result = {"clearValues": {HANDLE_B: 35000, HANDLE_A: True}, "decryptionProof": "0xp"}
        decoded = decode_public_decrypt_result(result, HANDLES)
        assert decoded.has_match is True
        assert decoded.meeting_point == 35000
        assert decoded.proof == "0xp"

    def test_handle_keys_compare_case_insensitively(self):
        result = {"clearValues": {HANDLE_A.upper().replace("0X", "0x"): False, HANDLE_B: 0}}
        decoded = decode_public_decrypt_result(result, HANDLES)
        assert decoded.has_match is False
        assert decoded.meeting_point == 0

    def test_accepts_hex_and_decimal_strings(self):
        result = {"clearValues": {HANDLE_A: "0x01", HANDLE_B: "35000"}}
        decoded = decode_public_decrypt_result(result, HANDLES)
        assert decoded.has_match is True
        assert decoded.meeting_point == 35000

    def test_meeting_point_at_uint64_max(self):
        result = {"clearValues": {HANDLE_A: True, HANDLE_B: 2**64 - 1}}
        assert decode_public_decrypt_result(result, HANDLES).meeting_point == 2**64 - 1

    @pytest.mark.parametrize(
        "result",
        [
            [True, 35000],
            "0x01",
            {"values": [True, 35000]},
            {"clearValues": [True, 35000]},
            {"clearValues": {HANDLE_A: True}},
            {"clearValues": {HANDLE_A: True, HANDLE_B: 1, "0x03": 2}},
            {"clearValues": {"0x01": True, "0x02": 35000}},
            {"clearValues": {HANDLE_A: 2, HANDLE_B: 35000}},
            {"clearValues": {HANDLE_A: True, HANDLE_B: 2**64}},
            {"clearValues": {HANDLE_A: True, HANDLE_B: -1}},
            {"clearValues": {HANDLE_A: True, HANDLE_B: True}},
            {"clearValues": {HANDLE_A: True, HANDLE_B: "not a number"}},
        ],
    )
    def test_malformed_shapes_are_rejected(self, result):
        with pytest.raises(MalformedDecryptionResultError):
            decode_public_decrypt_result(result, HANDLES)


# ---------------------------------------------------------------------------
# Protocol against the simulated devnet
# ---------------------------------------------------------------------------


class TestRevealOnDevnet:
    @pytest.mark.asyncio
    async def test_reveal_publishes_midpoint(self, ready_services, chain, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)

        outcome = await ready_services.reveal.reveal_match(negotiation_id, EMPLOYER)

        assert outcome.has_match is True
        assert outcome.meeting_point == 35000
        assert outcome.attempts == 1
        record = await chain.read_negotiation(negotiation_id)
        assert record["state"] == NegotiationState.COMPLETED
        assert await chain.get_match_result(negotiation_id) == (True, 35000)

    @pytest.mark.asyncio
    async def test_no_overlap_reveals_no_match(self, ready_services, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(
            negotiation_id,
            NegotiationState.MATCH_READY,
            employer_range=(10_000, 20_000),
            candidate_range=(30_000, 40_000),
        )

        outcome = await ready_services.reveal.reveal_match(negotiation_id, CANDIDATE)

        assert outcome.has_match is False
        assert outcome.meeting_point == 0

    @pytest.mark.asyncio
    async def test_succeeds_on_fourth_attempt(
        self, ready_services, sim_fhe, fake_sleep, make_negotiation, advance_to
    ):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)
        sim_fhe.ready_after = 3

        outcome = await ready_services.reveal.reveal_match(negotiation_id, EMPLOYER)

        assert outcome.attempts == 4
        assert fake_sleep.calls == [15.0, 15.0, 15.0]

    @pytest.mark.asyncio
    async def test_retry_budget_is_twenty_attempts(
        self, ready_services, chain, sim_fhe, fake_sleep, make_negotiation, advance_to
    ):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)
        sim_fhe.ready_after = 1000

        with pytest.raises(DecryptionTimeoutError) as exc_info:
            await ready_services.reveal.reveal_match(negotiation_id, EMPLOYER)

        assert exc_info.value.attempts == 20
        assert exc_info.value.kind == ErrorKind.DECRYPTION_TIMEOUT
        assert len(fake_sleep.calls) == 19
        assert fake_sleep.total >= 19 * 15
        record = await chain.read_negotiation(negotiation_id)
        assert record["state"] == NegotiationState.MATCH_READY
        assert not ready_services.reveal.is_running(negotiation_id)

    @pytest.mark.asyncio
    async def test_reveal_before_match_is_rejected(self, ready_services, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.CANDIDATE_SUBMITTED)

        with pytest.raises(InvalidTransitionError):
            await ready_services.reveal.reveal_match(negotiation_id, EMPLOYER)

    @pytest.mark.asyncio
    async def test_non_party_is_rejected(self, ready_services, make_negotiation, advance_to):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)

        with pytest.raises(InvalidInputError, match="Only the employer or candidate"):
            await ready_services.reveal.reveal_match(negotiation_id, STRANGER)

    @pytest.mark.asyncio
    async def test_second_concurrent_reveal_is_rejected(
        self, ready_services, make_negotiation, advance_to
    ):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)
        reveal = ready_services.reveal

        first = asyncio.create_task(reveal.reveal_match(negotiation_id, EMPLOYER))
        await asyncio.sleep(0)
        assert reveal.is_running(negotiation_id)

        with pytest.raises(RevealInProgressError):
            await reveal.reveal_match(negotiation_id, CANDIDATE)

        outcome = await first
        assert outcome.meeting_point == 35000
        assert not reveal.is_running(negotiation_id)

    @pytest.mark.asyncio
    async def test_progress_is_reported_in_order(
        self, ready_services, sim_fhe, make_negotiation, advance_to
    ):
        negotiation_id = await make_negotiation()
        await advance_to(negotiation_id, NegotiationState.MATCH_READY)
        sim_fhe.ready_after = 1
        seen = []

        await ready_services.reveal.reveal_match(
            negotiation_id, EMPLOYER, on_progress=lambda attempt: seen.append(attempt.progress)
        )

        assert seen == [
            "Getting encrypted handles...",
            "Verifying decryption status...",
            "Decrypting... (attempt 1/20)",
            "Decryption not ready yet. Waiting 15s before retry 2...",
            "Decrypting... (attempt 2/20)",
            "Submitting to blockchain...",
            "Success!",
        ]


# ---------------------------------------------------------------------------
# Protocol against mocked collaborators
# ---------------------------------------------------------------------------


class TestRevealFailureModes:
    @pytest.mark.asyncio
    async def test_wrong_state_is_rejected_before_bootstrap(self):
        ledger = _mock_ledger()
        ledger.read_negotiation.return_value = {
            **_match_ready_record(),
            "state": int(NegotiationState.CANDIDATE_SUBMITTED),
        }
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        with pytest.raises(InvalidTransitionError, match="Cannot reveal match"):
            await service.reveal_match(1, EMPLOYER)

        fhe.initialize.assert_not_awaited()
        ledger.get_match_handles.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_party_is_rejected_before_bootstrap(self):
        ledger = _mock_ledger()
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        with pytest.raises(InvalidInputError, match="Only the employer or candidate"):
            await service.reveal_match(1, STRANGER)

        fhe.initialize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bootstraps_once_checks_pass(self):
        ledger = _mock_ledger()
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        await service.reveal_match(1, CANDIDATE)

        fhe.initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_handles_fail_without_decrypting(self):
        ledger = _mock_ledger(handles=MatchHandles(ZERO_HANDLE, ZERO_HANDLE))
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        with pytest.raises(InvalidHandlesError):
            await service.reveal_match(1, EMPLOYER)

        fhe.public_decrypt.assert_not_awaited()
        ledger.reveal_match.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unmarked_handles_fail_without_decrypting(self):
        ledger = _mock_ledger(marked=False)
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        with pytest.raises(NotMarkedForDecryptionError):
            await service.reveal_match(1, EMPLOYER)

        fhe.public_decrypt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_query_failure_does_not_abort(self):
        ledger = _mock_ledger()
        ledger.get_match_handles_with_status.side_effect = RuntimeError("method not found")
        fhe = _mock_fhe()
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        outcome = await service.reveal_match(1, EMPLOYER)

        assert outcome.meeting_point == 35000
        ledger.reveal_match.assert_awaited_once_with(EMPLOYER, 1, True, 35000)

    @pytest.mark.asyncio
    async def test_gateway_gives_up_marking_as_not_marked(self):
        ledger = _mock_ledger()
        fhe = _mock_fhe(
            DecryptionTransientError("not ready"),
            NotMarkedForDecryptionError("not allowed for public decryption"),
        )
        sleep = FakeSleep()
        service = RevealService(ledger, fhe, sleep=sleep)

        with pytest.raises(NotMarkedForDecryptionError):
            await service.reveal_match(1, EMPLOYER)

        assert fhe.public_decrypt.await_count == 2
        assert sleep.calls == [15.0]

    @pytest.mark.asyncio
    async def test_malformed_result_is_not_retried(self):
        ledger = _mock_ledger()
        fhe = _mock_fhe({"unexpected": True})
        service = RevealService(ledger, fhe, sleep=FakeSleep())

        with pytest.raises(MalformedDecryptionResultError):
            await service.reveal_match(1, EMPLOYER)

        assert fhe.public_decrypt.await_count == 1
        ledger.reveal_match.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_tracks_in_flight_attempt(self):
        gate = asyncio.Event()
        ledger = _mock_ledger()

        async def slow_decrypt(handles):
            await gate.wait()
            return {"clearValues": {HANDLE_A: 1, HANDLE_B: 42}}

        fhe = AsyncMock()
        fhe.public_decrypt.side_effect = slow_decrypt
        service = RevealService(ledger, fhe, max_attempts=5, sleep=FakeSleep())

        task = asyncio.create_task(service.reveal_match(7, EMPLOYER))
        for _ in range(5):
            await asyncio.sleep(0)

        status = service.status(7)
        assert status is not None
        assert status.attempts == 1
        assert status.max_attempts == 5
        assert status.progress == "Decrypting... (attempt 1/5)"

        gate.set()
        outcome = await task
        assert outcome.meeting_point == 42
        assert service.status(7) is None
