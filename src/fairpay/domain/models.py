"""Domain value types for negotiations, handles and reveal progress.

Snapshots are immutable: the orchestrator never patches a field, it
re-reads the ledger and replaces the whole snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from fairpay.domain.enums import STATE_NAMES, LedgerEventKind, NegotiationState, PartyRole

ZERO_HANDLE = "0x" + "00" * 32


def is_empty_handle(handle: Optional[str]) -> bool:
    """True for the ledger's "no value" sentinel in any of its spellings."""
    if not handle or handle.lower() == "0x":
        return True
    try:
        return int(handle, 16) == 0
    except ValueError:
        return False


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    """Identities (addresses) compare case-insensitively."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


@dataclass(frozen=True)
class Negotiation:
    """Snapshot of one negotiation as last read from the ledger."""

    negotiation_id: int
    employer: str
    candidate: str
    title: str
    state: NegotiationState
    created_at: int
    deadline: int
    has_match_handle: Optional[str] = None
    meeting_point_handle: Optional[str] = None
    has_match_result: bool = False
    meeting_point: int = 0
    match_revealed: bool = False

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Negotiation":
        """Build a snapshot from a raw ledger record.

        Handles are exposed only while MATCH_READY; the decrypted result
        only once COMPLETED.
        """
        state = NegotiationState(int(record["state"]))

        has_match_handle = None
        meeting_point_handle = None
        if state == NegotiationState.MATCH_READY:
            has_match_handle = record.get("has_match") or None
            meeting_point_handle = record.get("meeting_point") or None

        has_match_result = False
        meeting_point = 0
        if state == NegotiationState.COMPLETED:
            has_match_result = bool(record.get("has_match_result", False))
            meeting_point = int(record.get("decrypted_meeting_point") or 0)

        return cls(
            negotiation_id=int(record["negotiation_id"]),
            employer=record["employer"],
            candidate=record["candidate"],
            title=record.get("title", ""),
            state=state,
            created_at=int(record.get("created_at") or 0),
            deadline=int(record.get("deadline") or 0),
            has_match_handle=has_match_handle,
            meeting_point_handle=meeting_point_handle,
            has_match_result=has_match_result,
            meeting_point=meeting_point,
            match_revealed=state == NegotiationState.COMPLETED,
        )

    @property
    def state_name(self) -> str:
        return STATE_NAMES[self.state]

    def role_of(self, identity: str) -> Optional[PartyRole]:
        if same_identity(identity, self.employer):
            return PartyRole.EMPLOYER
        if same_identity(identity, self.candidate):
            return PartyRole.CANDIDATE
        return None

    def party_for(self, role: PartyRole) -> str:
        return self.employer if role == PartyRole.EMPLOYER else self.candidate


@dataclass(frozen=True)
class CreatedNegotiation:
    negotiation_id: int
    tx_ref: str


@dataclass(frozen=True)
class EncryptedRange:
    """Output of the encryption primitive for one (min, max) pair."""

    enc_min: str
    enc_max: str
    proof: str


@dataclass(frozen=True)
class MatchHandles:
    has_match_handle: str
    meeting_point_handle: str

    @property
    def as_list(self) -> list[str]:
        return [self.has_match_handle, self.meeting_point_handle]


@dataclass(frozen=True)
class MatchHandlesStatus(MatchHandles):
    has_match_marked: bool = False
    meeting_point_marked: bool = False

    @property
    def fully_marked(self) -> bool:
        return self.has_match_marked and self.meeting_point_marked


@dataclass(frozen=True)
class DecryptedMatch:
    has_match: bool
    meeting_point: int
    proof: str = "0x"


@dataclass(frozen=True)
class LedgerEvent:
    """A contract event as delivered by the ledger subscription."""

    kind: LedgerEventKind
    negotiation_id: int
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class NegotiationProgress:
    """The consolidated snapshot published to watchers of one negotiation."""

    negotiation_id: int
    employer: str = ""
    candidate: str = ""
    title: str = ""
    state: Optional[NegotiationState] = None
    state_name: str = "Loading..."
    created_at: int = 0
    deadline: int = 0
    has_match_handle: Optional[str] = None
    meeting_point_handle: Optional[str] = None
    has_match_result: bool = False
    meeting_point: int = 0
    match_revealed: bool = False
    is_expired: bool = False
    last_error: str = ""
    is_loading: bool = False

    @classmethod
    def loading(cls, negotiation_id: int) -> "NegotiationProgress":
        return cls(negotiation_id=negotiation_id, is_loading=True)

    @classmethod
    def from_negotiation(
        cls,
        negotiation: Negotiation,
        is_expired: bool,
        last_error: str = "",
    ) -> "NegotiationProgress":
        return cls(
            negotiation_id=negotiation.negotiation_id,
            employer=negotiation.employer,
            candidate=negotiation.candidate,
            title=negotiation.title,
            state=negotiation.state,
            state_name=negotiation.state_name,
            created_at=negotiation.created_at,
            deadline=negotiation.deadline,
            has_match_handle=negotiation.has_match_handle,
            meeting_point_handle=negotiation.meeting_point_handle,
            has_match_result=negotiation.has_match_result,
            meeting_point=negotiation.meeting_point,
            match_revealed=negotiation.match_revealed,
            is_expired=is_expired,
            last_error=last_error,
        )

    def to_dict(self) -> dict:
        return {
            "negotiation_id": self.negotiation_id,
            "employer": self.employer,
            "candidate": self.candidate,
            "title": self.title,
            "state": int(self.state) if self.state is not None else None,
            "state_name": self.state_name,
            "created_at": self.created_at,
            "deadline": self.deadline,
            "has_match_handle": self.has_match_handle,
            "meeting_point_handle": self.meeting_point_handle,
            "has_match_result": self.has_match_result,
            "meeting_point": self.meeting_point,
            "match_revealed": self.match_revealed,
            "is_expired": self.is_expired,
            "last_error": self.last_error,
            "is_loading": self.is_loading,
        }


@dataclass
class DecryptionAttempt:
    """Transient bookkeeping for one in-flight reveal call."""

    negotiation_id: int
    max_attempts: int
    attempts: int = 0
    progress: str = "Initializing..."
    last_error_kind: Optional[str] = None
    last_error: Optional[str] = None

    def snapshot(self) -> "DecryptionAttempt":
        return replace(self)
