"""Builds the process-wide service graph from settings."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from fairpay.app.config import Settings
from fairpay.infra.fhe import FheInstanceFactory, FheNetworkConfig, SdkProbe
from fairpay.infra.ledger import LedgerClient
from fairpay.infra.relayer_client import RelayerClient, create_relayer_instance
from fairpay.infra.simulated_chain import (
    SimulatedFairPayContract,
    SimulatedFhe,
    create_simulated_instance,
)
from fairpay.services.fhe_service import FheService
from fairpay.services.negotiation_monitor import NegotiationMonitor
from fairpay.services.negotiation_orchestrator import NegotiationOrchestrator
from fairpay.services.reveal_service import RevealService

logger = logging.getLogger(__name__)

BACKENDS = ("simulated", "relayer")


@dataclass
class Services:
    settings: Settings
    ledger: LedgerClient
    fhe: FheService
    monitor: NegotiationMonitor
    reveal: RevealService
    orchestrator: NegotiationOrchestrator


def build_services(
    settings: Settings,
    ledger: Optional[LedgerClient] = None,
    fhe_instance_factory: Optional[FheInstanceFactory] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Services:
    """Wire ledger, FHE service, monitor and orchestrator for *settings.backend*.

    ``simulated`` runs the in-process devnet (an injected simulated
    contract is reused as-is). ``relayer`` talks to the HTTP gateway and
    needs the caller to supply the ledger client.
    """
    if settings.backend not in BACKENDS:
        raise ValueError(f"Unknown backend {settings.backend!r}; expected one of {BACKENDS}")

    config = FheNetworkConfig.from_settings(settings)
    sdk_probe: SdkProbe

    if settings.backend == "simulated":
        if ledger is None:
            simulated_fhe = SimulatedFhe(ready_after=settings.simulated_decrypt_ready_after)
            ledger = SimulatedFairPayContract(
                simulated_fhe, settings.contract_address, settings.chain_id
            )
        elif isinstance(ledger, SimulatedFairPayContract):
            simulated_fhe = ledger.fhe
        else:
            raise ValueError("The simulated backend only accepts a SimulatedFairPayContract ledger")
        sdk_probe = simulated_fhe.is_ready
        factory = fhe_instance_factory or functools.partial(create_simulated_instance, simulated_fhe)
    else:
        if ledger is None:
            raise ValueError("The relayer backend requires a LedgerClient")
        client = RelayerClient(settings.relayer_url, timeout=settings.relayer_timeout_seconds)
        sdk_probe = client.is_ready
        factory = fhe_instance_factory or functools.partial(create_relayer_instance, client)

    fhe = FheService(
        config,
        ledger,
        sdk_probe,
        factory,
        poll_base_delay=settings.sdk_poll_base_delay_seconds,
        poll_max_attempts=settings.sdk_poll_max_attempts,
        sleep=sleep,
    )
    monitor = NegotiationMonitor(ledger, sync_interval=settings.sync_interval_seconds)
    reveal = RevealService(
        ledger,
        fhe,
        max_attempts=settings.decrypt_max_attempts,
        retry_delay=settings.decrypt_retry_delay_seconds,
        sleep=sleep,
    )
    orchestrator = NegotiationOrchestrator(ledger, fhe, monitor, reveal)

    logger.info(
        "Services built: backend=%s chain=%s contract=%s",
        settings.backend,
        settings.chain_id,
        settings.contract_address,
    )
    return Services(
        settings=settings,
        ledger=ledger,
        fhe=fhe,
        monitor=monitor,
        reveal=reveal,
        orchestrator=orchestrator,
    )
