"""Ledger access port.

The orchestrator reaches the FairPay contract only through this protocol.
Adapters own signing, gas and RPC transport; they return after the
transaction is confirmed and raise ``LedgerRejectedError`` on revert or
``NetworkError`` on transport failure.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from fairpay.domain.models import CreatedNegotiation, LedgerEvent, MatchHandles, MatchHandlesStatus

LedgerListener = Callable[[LedgerEvent], None]


@runtime_checkable
class LedgerClient(Protocol):
    # -- transactions -------------------------------------------------------

    async def create_negotiation(
        self, sender: str, candidate: str, title: str, deadline_seconds: int
    ) -> CreatedNegotiation: ...

    async def submit_employer_range(
        self, sender: str, negotiation_id: int, enc_min: str, enc_max: str, proof: str
    ) -> str: ...

    async def submit_candidate_range(
        self, sender: str, negotiation_id: int, enc_min: str, enc_max: str, proof: str
    ) -> str: ...

    async def trigger_match(self, sender: str, negotiation_id: int) -> str: ...

    async def reveal_match(
        self, sender: str, negotiation_id: int, has_match: bool, meeting_point: int
    ) -> str: ...

    # -- reads --------------------------------------------------------------

    async def read_negotiation(self, negotiation_id: int) -> Mapping[str, Any]: ...

    async def is_expired(self, negotiation_id: int) -> bool: ...

    async def get_match_handles(self, negotiation_id: int) -> MatchHandles: ...

    async def get_match_handles_with_status(self, negotiation_id: int) -> MatchHandlesStatus: ...

    async def get_match_result(self, negotiation_id: int) -> tuple[bool, int]: ...

    async def get_callback_debug_info(self, negotiation_id: int) -> str: ...

    async def get_user_negotiations(self, identity: str) -> list[int]: ...

    async def get_chain_id(self) -> int: ...

    async def get_code(self, address: str) -> str: ...

    # -- events -------------------------------------------------------------

    def subscribe(self, listener: LedgerListener) -> None: ...

    def remove_all_listeners(self) -> None: ...
