"""FHE service: one-time SDK bootstrap plus the encrypt/decrypt facade.

Bootstrap sequence:
1. Poll the relayer SDK for readiness with exponential back-off.
2. Verify the ledger is on the configured chain and the contract is deployed.
3. Create the decryption-capable instance bound to the network config.

Concurrent ``initialize()`` callers all await the same in-flight attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from fairpay.domain.errors import (
    ContractNotFoundError,
    FairPayError,
    InvalidInputError,
    NotInitializedError,
    WrongNetworkError,
)
from fairpay.domain.models import EncryptedRange
from fairpay.infra.fhe import FheInstance, FheInstanceFactory, FheNetworkConfig, SdkProbe
from fairpay.infra.gateway_errors import classify_gateway_error
from fairpay.infra.ledger import LedgerClient

logger = logging.getLogger(__name__)


class FheService:
    """Process-wide owner of the FHE instance."""

    def __init__(
        self,
        config: FheNetworkConfig,
        ledger: LedgerClient,
        sdk_probe: SdkProbe,
        instance_factory: FheInstanceFactory,
        poll_base_delay: float = 0.02,
        poll_max_attempts: int = 12,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._ledger = ledger
        self._sdk_probe = sdk_probe
        self._instance_factory = instance_factory
        self._poll_base_delay = poll_base_delay
        self._poll_max_attempts = poll_max_attempts
        self._sleep = sleep
        self._instance: Optional[FheInstance] = None
        self._init_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._instance is not None

    async def initialize(self) -> None:
        """Idempotent bootstrap; every concurrent caller shares one attempt."""
        if self._instance is not None:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._do_initialize())

        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            # Let a later caller start a fresh attempt
            if self._init_task is task:
                self._init_task = None
            raise

    async def _do_initialize(self) -> None:
        await self._wait_for_sdk()
        logger.info("Relayer SDK ready")

        chain_id = await self._ledger.get_chain_id()
        if chain_id != self.config.chain_id:
            raise WrongNetworkError(self.config.chain_id, chain_id)

        code = await self._ledger.get_code(self.config.contract_address)
        if not code or code == "0x":
            raise ContractNotFoundError(self.config.contract_address)

        self._instance = await self._instance_factory(self.config)
        logger.info(
            "FHE instance ready: chain=%s contract=%s",
            self.config.chain_id,
            self.config.contract_address,
        )

    async def _wait_for_sdk(self) -> None:
        """Poll the SDK probe; base delay doubles after each miss."""
        for attempt in range(1, self._poll_max_attempts + 1):
            if await self._sdk_probe():
                logger.debug("SDK ready after %d attempt(s)", attempt)
                return
            if attempt < self._poll_max_attempts:
                await self._sleep(self._poll_base_delay * (2 ** (attempt - 1)))

        raise NotInitializedError(
            f"Relayer SDK failed to load after {self._poll_max_attempts} attempts"
        )

    def _require_instance(self) -> FheInstance:
        if self._instance is None:
            raise NotInitializedError("FHE instance not initialized")
        return self._instance

    # ------------------------------------------------------------------
    # Primitive facade
    # ------------------------------------------------------------------

    async def encrypt_range(
        self, min_value: int, max_value: int, user_address: str
    ) -> EncryptedRange:
        """Encrypt (min, max) for the configured contract and *user_address*."""
        instance = self._require_instance()
        if min_value > max_value:
            raise InvalidInputError("Min must be <= max")
        try:
            return await instance.encrypt_range(
                min_value, max_value, user_address, self.config.contract_address
            )
        except FairPayError:
            raise
        except Exception as exc:
            logger.error("Encryption failed: %s", exc)
            raise classify_gateway_error(str(exc)) from exc

    async def public_decrypt(self, handles: list[str]) -> Mapping[str, Any]:
        """Public-decrypt *handles*; failures come back as classified errors."""
        instance = self._require_instance()
        try:
            return await instance.public_decrypt(handles)
        except FairPayError:
            raise
        except Exception as exc:
            raise classify_gateway_error(str(exc)) from exc
