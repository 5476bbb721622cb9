"""Shared test infrastructure for the FairPay test suite.

Provides:
- settings: Settings pinned to the simulated backend
- fake_sleep: records requested delays instead of sleeping
- sim_fhe / chain: the in-process devnet (FHE primitive + contract)
- services: full service graph wired onto the devnet
- make_negotiation / advance_to: helpers to put a negotiation in a given state
"""

import pytest

from fairpay.app.config import Settings
from fairpay.domain.enums import NegotiationState
from fairpay.infra.simulated_chain import SimulatedFairPayContract, SimulatedFhe
from fairpay.services.container import build_services

EMPLOYER = "0x1111111111111111111111111111111111111111"
CANDIDATE = "0x2222222222222222222222222222222222222222"
STRANGER = "0x3333333333333333333333333333333333333333"

CONTRACT_ADDRESS = "0x5C4B2F0a1b7d1E0f3cA9F6d2B8e4A7c1D3f5E9a2"
CHAIN_ID = 11155111


class FakeSleep:
    """Async stand-in for asyncio.sleep that only records the delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)

    @property
    def total(self) -> float:
        return sum(self.calls)


class FakeClock:
    """Controllable wall clock for deadline tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        backend="simulated",
        chain_id=CHAIN_ID,
        contract_address=CONTRACT_ADDRESS,
        simulated_decrypt_ready_after=0,
        decrypt_max_attempts=20,
        decrypt_retry_delay_seconds=15.0,
        sync_interval_seconds=30.0,
        debug=False,
    )


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Simulated devnet
# ---------------------------------------------------------------------------


@pytest.fixture
def sim_fhe():
    return SimulatedFhe(ready_after=0)


@pytest.fixture
def chain(sim_fhe, clock):
    return SimulatedFairPayContract(sim_fhe, CONTRACT_ADDRESS, CHAIN_ID, clock=clock)


@pytest.fixture
async def services(settings, chain, fake_sleep):
    built = build_services(settings, ledger=chain, sleep=fake_sleep)
    yield built
    await built.monitor.stop()


@pytest.fixture
async def ready_services(services):
    """Service graph with the FHE bootstrap already completed."""
    await services.fhe.initialize()
    return services


# ---------------------------------------------------------------------------
# Negotiation helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_negotiation(chain):
    """Factory: create a negotiation on the devnet, return its id."""

    async def _make(title: str = "Senior Engineer", deadline_seconds: int = 24 * 3600) -> int:
        created = await chain.create_negotiation(EMPLOYER, CANDIDATE, title, deadline_seconds)
        return created.negotiation_id

    return _make


@pytest.fixture
def advance_to(chain, sim_fhe):
    """Drive a negotiation straight through the devnet up to *state*."""

    async def _advance(
        negotiation_id: int,
        state: NegotiationState,
        employer_range: tuple[int, int] = (10_000, 100_000),
        candidate_range: tuple[int, int] = (20_000, 50_000),
    ) -> None:
        if state >= NegotiationState.EMPLOYER_SUBMITTED:
            enc = await sim_fhe.encrypt_range(*employer_range, EMPLOYER, CONTRACT_ADDRESS)
            await chain.submit_employer_range(
                EMPLOYER, negotiation_id, enc.enc_min, enc.enc_max, enc.proof
            )
        if state >= NegotiationState.CANDIDATE_SUBMITTED:
            enc = await sim_fhe.encrypt_range(*candidate_range, CANDIDATE, CONTRACT_ADDRESS)
            await chain.submit_candidate_range(
                CANDIDATE, negotiation_id, enc.enc_min, enc.enc_max, enc.proof
            )
        if state >= NegotiationState.MATCH_READY:
            await chain.trigger_match(EMPLOYER, negotiation_id)
        if state >= NegotiationState.COMPLETED:
            has_match, meeting_point = _expected_result(employer_range, candidate_range)
            await chain.reveal_match(EMPLOYER, negotiation_id, has_match, meeting_point)

    return _advance


def _expected_result(employer_range, candidate_range) -> tuple[bool, int]:
    low = max(employer_range[0], candidate_range[0])
    high = min(employer_range[1], candidate_range[1])
    if low > high:
        return False, 0
    return True, (low + high) // 2
