"""In-process devnet: a simulated FairPay contract and FHE primitive.

Mirrors the local-provider development mode: the contract enforces the same
role, state and expiry rules as the deployed one, "encrypted" values live in
a handle table, and the simulated gateway answers public-decrypt requests
with the same text-only errors and payload shape as the real relayer SDK.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from fairpay.domain.enums import LedgerEventKind, NegotiationState
from fairpay.domain.errors import InvalidInputError, LedgerRejectedError
from fairpay.domain.models import (
    ZERO_HANDLE,
    CreatedNegotiation,
    EncryptedRange,
    LedgerEvent,
    MatchHandles,
    MatchHandlesStatus,
    same_identity,
)
from fairpay.infra.fhe import FheNetworkConfig
from fairpay.infra.ledger import LedgerListener

logger = logging.getLogger(__name__)

UINT64_MAX = 2**64 - 1

# Any non-empty bytecode marks the address as a deployed contract
_CONTRACT_BYTECODE = "0x" + "6080604052" * 8

S = NegotiationState


def _digest(*parts: Any) -> str:
    data = "|".join(str(p) for p in parts).encode()
    return "0x" + hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# FHE primitive
# ---------------------------------------------------------------------------


@dataclass
class _Ciphertext:
    value: int
    fhe_type: str
    owner: str = ""
    contract: str = ""
    publicly_decryptable: bool = False


class SimulatedFhe:
    """Handle table standing in for the coprocessor and the decryption gateway.

    ``ready_after`` is the number of public-decrypt calls per handle set that
    are answered with "not ready" before values are released.
    """

    def __init__(self, ready_after: int = 0, available: bool = True) -> None:
        self.ready_after = ready_after
        self.available = available
        self._ciphertexts: dict[str, _Ciphertext] = {}
        self._proofs: dict[str, tuple[str, str, str, str]] = {}
        self._decrypt_calls: dict[tuple[str, ...], int] = {}
        self._nonce = itertools.count(1)

    # -- SDK side ------------------------------------------------------------

    async def is_ready(self) -> bool:
        return self.available

    async def encrypt_range(
        self, min_value: int, max_value: int, user_address: str, contract_address: str
    ) -> EncryptedRange:
        if min_value > max_value:
            raise InvalidInputError("Min must be <= max")
        if min_value < 0 or max_value > UINT64_MAX:
            raise InvalidInputError("Range values must fit in uint64")

        owner = user_address.lower()
        contract = contract_address.lower()
        enc_min = self._store(min_value, "euint64", owner, contract)
        enc_max = self._store(max_value, "euint64", owner, contract)
        proof = _digest("input-proof", enc_min, enc_max, owner, contract)
        self._proofs[proof] = (enc_min, enc_max, owner, contract)
        return EncryptedRange(enc_min=enc_min, enc_max=enc_max, proof=proof)

    async def public_decrypt(self, handles: list[str]) -> Mapping[str, Any]:
        await asyncio.sleep(0)
        for handle in handles:
            ciphertext = self._ciphertexts.get(handle)
            if ciphertext is None:
                raise RuntimeError(f"Unknown ciphertext handle {handle}")
            if not ciphertext.publicly_decryptable:
                raise RuntimeError(f"Handle {handle} is not allowed for public decryption")

        key = tuple(handles)
        calls = self._decrypt_calls.get(key, 0) + 1
        self._decrypt_calls[key] = calls
        if calls <= self.ready_after:
            raise RuntimeError("Decryption not ready: the gateway is still processing the request")

        clear_values: dict[str, Any] = {}
        words = []
        for handle in handles:
            ciphertext = self._ciphertexts[handle]
            value = bool(ciphertext.value) if ciphertext.fhe_type == "ebool" else ciphertext.value
            clear_values[handle] = value
            words.append(f"{int(value):064x}")

        return {
            "clearValues": clear_values,
            "abiEncodedClearValues": "0x" + "".join(words),
            "decryptionProof": _digest("decryption-proof", *handles),
        }

    # -- coprocessor side (used by the simulated contract) -----------------------

    def verify_input(self, enc_min: str, enc_max: str, proof: str, user: str, contract: str) -> bool:
        bound = self._proofs.get(proof)
        return bound == (enc_min, enc_max, user.lower(), contract.lower())

    def value_of(self, handle: str) -> int:
        return self._ciphertexts[handle].value

    def store_result(self, value: int, fhe_type: str) -> str:
        return self._store(int(value), fhe_type)

    def make_publicly_decryptable(self, handle: str) -> None:
        self._ciphertexts[handle].publicly_decryptable = True

    def is_publicly_decryptable(self, handle: str) -> bool:
        ciphertext = self._ciphertexts.get(handle)
        return bool(ciphertext and ciphertext.publicly_decryptable)

    def _store(self, value: int, fhe_type: str, owner: str = "", contract: str = "") -> str:
        handle = _digest("handle", next(self._nonce), fhe_type)
        self._ciphertexts[handle] = _Ciphertext(value, fhe_type, owner, contract)
        return handle


async def create_simulated_instance(fhe: SimulatedFhe, config: FheNetworkConfig) -> SimulatedFhe:
    """Instance factory used by the FHE bootstrap in simulated mode."""
    logger.info("Using simulated FHE instance for contract %s", config.contract_address)
    return fhe


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class SimulatedFairPayContract:
    """In-memory FairPay contract implementing the LedgerClient protocol."""

    def __init__(
        self,
        fhe: SimulatedFhe,
        contract_address: str,
        chain_id: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.fhe = fhe
        self.contract_address = contract_address
        self.chain_id = chain_id
        self._clock = clock
        self._negotiations: dict[int, dict[str, Any]] = {}
        self._ranges: dict[int, dict[str, str]] = {}
        self._listeners: list[LedgerListener] = []
        self._ids = itertools.count(1)
        self._tx_nonce = itertools.count(1)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return int(self._clock())

    def _tx_ref(self) -> str:
        return _digest("tx", next(self._tx_nonce))

    @staticmethod
    def _require(condition: bool, reason: str) -> None:
        if not condition:
            raise LedgerRejectedError(f"execution reverted: {reason}", reason=reason)

    def _get(self, negotiation_id: int) -> dict[str, Any]:
        record = self._negotiations.get(negotiation_id)
        self._require(record is not None, "Negotiation does not exist")
        return record

    def _emit(self, kind: LedgerEventKind, negotiation_id: int, **payload: Any) -> None:
        event = LedgerEvent(kind=kind, negotiation_id=negotiation_id, payload=payload)
        for listener in list(self._listeners):
            listener(event)

    def _expired(self, record: Mapping[str, Any]) -> bool:
        return self._now() > record["deadline"]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_negotiation(
        self, sender: str, candidate: str, title: str, deadline_seconds: int
    ) -> CreatedNegotiation:
        await asyncio.sleep(0)
        self._require(bool(candidate), "Invalid candidate")
        self._require(not same_identity(sender, candidate), "Employer cannot be candidate")
        self._require(deadline_seconds > 0, "Invalid deadline")

        negotiation_id = next(self._ids)
        now = self._now()
        self._negotiations[negotiation_id] = {
            "negotiation_id": negotiation_id,
            "employer": sender,
            "candidate": candidate,
            "title": title,
            "state": int(S.NOT_STARTED),
            "created_at": now,
            "deadline": now + deadline_seconds,
            "has_match": ZERO_HANDLE,
            "meeting_point": ZERO_HANDLE,
            "has_match_result": False,
            "match_revealed": False,
            "decrypted_meeting_point": 0,
            "last_error": "",
        }
        self._ranges[negotiation_id] = {}
        self._emit(
            LedgerEventKind.NEGOTIATION_CREATED,
            negotiation_id,
            employer=sender,
            candidate=candidate,
            title=title,
            deadline=now + deadline_seconds,
        )
        return CreatedNegotiation(negotiation_id=negotiation_id, tx_ref=self._tx_ref())

    async def submit_employer_range(
        self, sender: str, negotiation_id: int, enc_min: str, enc_max: str, proof: str
    ) -> str:
        await asyncio.sleep(0)
        record = self._get(negotiation_id)
        self._require(same_identity(sender, record["employer"]), "Only employer")
        self._require(record["state"] == S.NOT_STARTED, "Invalid state")
        self._require(not self._expired(record), "Negotiation expired")
        self._require(
            self.fhe.verify_input(enc_min, enc_max, proof, sender, self.contract_address),
            "Invalid input proof",
        )
        self._ranges[negotiation_id].update(employer_min=enc_min, employer_max=enc_max)
        record["state"] = int(S.EMPLOYER_SUBMITTED)
        self._emit(LedgerEventKind.EMPLOYER_RANGE_SUBMITTED, negotiation_id)
        return self._tx_ref()

    async def submit_candidate_range(
        self, sender: str, negotiation_id: int, enc_min: str, enc_max: str, proof: str
    ) -> str:
        await asyncio.sleep(0)
        record = self._get(negotiation_id)
        self._require(same_identity(sender, record["candidate"]), "Only candidate")
        self._require(record["state"] == S.EMPLOYER_SUBMITTED, "Invalid state")
        self._require(not self._expired(record), "Negotiation expired")
        self._require(
            self.fhe.verify_input(enc_min, enc_max, proof, sender, self.contract_address),
            "Invalid input proof",
        )
        self._ranges[negotiation_id].update(candidate_min=enc_min, candidate_max=enc_max)
        record["state"] = int(S.CANDIDATE_SUBMITTED)
        self._emit(LedgerEventKind.CANDIDATE_RANGE_SUBMITTED, negotiation_id)
        return self._tx_ref()

    async def trigger_match(self, sender: str, negotiation_id: int) -> str:
        await asyncio.sleep(0)
        record = self._get(negotiation_id)
        self._require(
            same_identity(sender, record["employer"]) or same_identity(sender, record["candidate"]),
            "Only participants",
        )
        self._require(record["state"] == S.CANDIDATE_SUBMITTED, "Invalid state")

        ranges = self._ranges[negotiation_id]
        employer_min = self.fhe.value_of(ranges["employer_min"])
        employer_max = self.fhe.value_of(ranges["employer_max"])
        candidate_min = self.fhe.value_of(ranges["candidate_min"])
        candidate_max = self.fhe.value_of(ranges["candidate_max"])

        low = max(employer_min, candidate_min)
        high = min(employer_max, candidate_max)
        has_match = low <= high
        meeting_point = (low + high) // 2 if has_match else 0

        has_match_handle = self.fhe.store_result(has_match, "ebool")
        meeting_point_handle = self.fhe.store_result(meeting_point, "euint64")
        self.fhe.make_publicly_decryptable(has_match_handle)
        self.fhe.make_publicly_decryptable(meeting_point_handle)

        record["has_match"] = has_match_handle
        record["meeting_point"] = meeting_point_handle
        record["state"] = int(S.MATCH_READY)
        self._emit(LedgerEventKind.MATCH_CALCULATION_STARTED, negotiation_id)
        return self._tx_ref()

    async def reveal_match(
        self, sender: str, negotiation_id: int, has_match: bool, meeting_point: int
    ) -> str:
        await asyncio.sleep(0)
        record = self._get(negotiation_id)
        self._require(
            same_identity(sender, record["employer"]) or same_identity(sender, record["candidate"]),
            "Only participants",
        )
        self._require(record["state"] == S.MATCH_READY, "Invalid state")
        self._require(0 <= meeting_point <= UINT64_MAX, "Meeting point out of range")
        self._require(
            bool(self.fhe.value_of(record["has_match"])) == bool(has_match)
            and self.fhe.value_of(record["meeting_point"]) == meeting_point,
            "Invalid decryption proof",
        )
        record["has_match_result"] = bool(has_match)
        record["decrypted_meeting_point"] = meeting_point
        record["match_revealed"] = True
        record["state"] = int(S.COMPLETED)
        self._emit(
            LedgerEventKind.MATCH_REVEALED,
            negotiation_id,
            has_match=bool(has_match),
            meeting_point=meeting_point,
        )
        return self._tx_ref()

    def fail_callback(self, negotiation_id: int, reason: str, request_id: Optional[int] = None) -> None:
        """Record a failed decryption-oracle callback, as the deployed contract does."""
        record = self._get(negotiation_id)
        record["last_error"] = reason
        self._emit(
            LedgerEventKind.CALLBACK_FAILED,
            negotiation_id,
            request_id=request_id,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_negotiation(self, negotiation_id: int) -> Mapping[str, Any]:
        await asyncio.sleep(0)
        return dict(self._get(negotiation_id))

    async def is_expired(self, negotiation_id: int) -> bool:
        return self._expired(self._get(negotiation_id))

    async def get_match_handles(self, negotiation_id: int) -> MatchHandles:
        record = self._get(negotiation_id)
        return MatchHandles(record["has_match"], record["meeting_point"])

    async def get_match_handles_with_status(self, negotiation_id: int) -> MatchHandlesStatus:
        record = self._get(negotiation_id)
        return MatchHandlesStatus(
            has_match_handle=record["has_match"],
            meeting_point_handle=record["meeting_point"],
            has_match_marked=self.fhe.is_publicly_decryptable(record["has_match"]),
            meeting_point_marked=self.fhe.is_publicly_decryptable(record["meeting_point"]),
        )

    async def get_match_result(self, negotiation_id: int) -> tuple[bool, int]:
        record = self._get(negotiation_id)
        self._require(record["match_revealed"], "Match not revealed")
        return record["has_match_result"], record["decrypted_meeting_point"]

    async def get_callback_debug_info(self, negotiation_id: int) -> str:
        return self._get(negotiation_id)["last_error"]

    async def get_user_negotiations(self, identity: str) -> list[int]:
        return [
            negotiation_id
            for negotiation_id, record in self._negotiations.items()
            if same_identity(identity, record["employer"]) or same_identity(identity, record["candidate"])
        ]

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_code(self, address: str) -> str:
        return _CONTRACT_BYTECODE if same_identity(address, self.contract_address) else "0x"

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
