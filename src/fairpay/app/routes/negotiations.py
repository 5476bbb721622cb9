"""Negotiation lifecycle API endpoints.

Thin HTTP layer over the NegotiationOrchestrator. The acting wallet is
taken from the ``X-Wallet-Address`` header; signing stays with the
ledger client, so the header only says which party is acting.
"""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, Request

from fairpay.domain.schemas import (
    CreatedNegotiationResponse,
    CreateNegotiationRequest,
    ErrorResponse,
    MatchResultResponse,
    NegotiationView,
    RevealStatusResponse,
    SubmitRangeRequest,
    TransactionResponse,
    UserNegotiationsResponse,
)
from fairpay.services.negotiation_orchestrator import NegotiationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/negotiations",
    tags=["negotiations"],
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)


def get_orchestrator(request: Request) -> NegotiationOrchestrator:
    return request.app.state.services.orchestrator


async def get_wallet_address(x_wallet_address: str = Header(...)) -> str:
    """Identity of the party acting on this request."""
    return x_wallet_address.strip()


@router.post("", response_model=CreatedNegotiationResponse, status_code=201)
async def create_negotiation(
    body: CreateNegotiationRequest,
    wallet: str = Depends(get_wallet_address),
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    """Open a negotiation; the caller becomes the employer."""
    created = await orchestrator.create_negotiation(
        wallet, body.candidate, body.title, body.deadline_hours
    )
    return CreatedNegotiationResponse(negotiation_id=created.negotiation_id, tx_ref=created.tx_ref)


@router.get("/user/{address}", response_model=UserNegotiationsResponse)
async def list_user_negotiations(
    address: str,
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    """Every negotiation *address* is employer or candidate of."""
    snapshots = await orchestrator.list_user_negotiations(address)
    return UserNegotiationsResponse(
        address=address,
        negotiation_ids=[s.negotiation_id for s in snapshots],
        negotiations=[NegotiationView(**s.to_dict()) for s in snapshots],
    )


@router.get("/{negotiation_id}", response_model=NegotiationView)
async def get_negotiation(
    negotiation_id: int,
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    progress = await orchestrator.get_negotiation(negotiation_id)
    return NegotiationView(**progress.to_dict())


@router.post("/{negotiation_id}/range", response_model=TransactionResponse)
async def submit_range(
    negotiation_id: int,
    body: SubmitRangeRequest,
    wallet: str = Depends(get_wallet_address),
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    """Encrypt and submit the caller's salary range."""
    tx_ref = await orchestrator.submit_range(
        body.role, negotiation_id, body.min_value, body.max_value, wallet
    )
    return TransactionResponse(negotiation_id=negotiation_id, tx_ref=tx_ref)


@router.post("/{negotiation_id}/match", response_model=TransactionResponse)
async def trigger_match(
    negotiation_id: int,
    wallet: str = Depends(get_wallet_address),
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    tx_ref = await orchestrator.trigger_match(negotiation_id, wallet)
    return TransactionResponse(negotiation_id=negotiation_id, tx_ref=tx_ref)


@router.post("/{negotiation_id}/reveal", response_model=RevealStatusResponse, status_code=202)
async def start_reveal(
    negotiation_id: int,
    wallet: str = Depends(get_wallet_address),
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    """Start decrypt-and-reveal in the background; poll the status endpoint."""
    status = orchestrator.start_reveal(negotiation_id, wallet)
    logger.info("Reveal started: negotiation=%s by=%s", negotiation_id, wallet)
    return RevealStatusResponse(**asdict(status))


@router.get("/{negotiation_id}/reveal", response_model=RevealStatusResponse)
async def reveal_status(
    negotiation_id: int,
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    return RevealStatusResponse(**asdict(orchestrator.reveal_status(negotiation_id)))


@router.get("/{negotiation_id}/result", response_model=MatchResultResponse)
async def get_match_result(
    negotiation_id: int,
    orchestrator: NegotiationOrchestrator = Depends(get_orchestrator),
):
    has_match, meeting_point = await orchestrator.get_match_result(negotiation_id)
    return MatchResultResponse(
        negotiation_id=negotiation_id, has_match=has_match, meeting_point=meeting_point
    )
