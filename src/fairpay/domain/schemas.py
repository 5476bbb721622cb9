"""Pydantic v2 schemas for API request/response validation."""

from typing import Optional

from pydantic import BaseModel

from fairpay.domain.enums import PartyRole


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateNegotiationRequest(BaseModel):
    """Schema for opening a negotiation (caller becomes the employer)."""

    candidate: str
    title: str
    deadline_hours: int = 24


class SubmitRangeRequest(BaseModel):
    """Schema for an encrypted salary range submission."""

    role: PartyRole
    min_value: int
    max_value: int


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class CreatedNegotiationResponse(BaseModel):
    negotiation_id: int
    tx_ref: str


class TransactionResponse(BaseModel):
    """Confirmation reference of a mined transaction."""

    negotiation_id: int
    tx_ref: str


class NegotiationView(BaseModel):
    """Consolidated negotiation snapshot."""

    negotiation_id: int
    employer: str
    candidate: str
    title: str
    state: Optional[int] = None
    state_name: str
    created_at: int
    deadline: int
    has_match_handle: Optional[str] = None
    meeting_point_handle: Optional[str] = None
    has_match_result: bool
    meeting_point: int
    match_revealed: bool
    is_expired: bool
    last_error: str = ""
    is_loading: bool = False


class UserNegotiationsResponse(BaseModel):
    address: str
    negotiation_ids: list[int]
    negotiations: list[NegotiationView] = []


class RevealStatusResponse(BaseModel):
    """Progress of the most recent reveal for a negotiation."""

    negotiation_id: int
    running: bool
    attempts: int = 0
    max_attempts: int = 0
    progress: str = ""
    last_error_kind: Optional[str] = None
    last_error: Optional[str] = None
    tx_ref: Optional[str] = None


class MatchResultResponse(BaseModel):
    negotiation_id: int
    has_match: bool
    meeting_point: int


class ErrorResponse(BaseModel):
    kind: str
    detail: str
    message: str
