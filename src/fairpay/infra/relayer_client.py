"""Relayer/gateway client over async HTTP via httpx.

Endpoints used:
- GET  /v1/keyurl          -- published key material; 200 once the SDK side is ready
- POST /v1/input-proof     -- encrypted input handles + proof for (contract, user, values)
- POST /v1/public-decrypt  -- threshold decryption of publicly decryptable handles

The public-decrypt response shape this client is written against:

    {"clearValues": {"<handle>": <bool|int|hex str>, ...},
     "abiEncodedClearValues": "0x...",
     "decryptionProof": "0x..."}
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from fairpay.domain.errors import DecryptionTransientError, FairPayError, NetworkError
from fairpay.domain.models import EncryptedRange
from fairpay.infra.fhe import FheNetworkConfig
from fairpay.infra.gateway_errors import classify_gateway_error

logger = logging.getLogger(__name__)

# The gateway answers these while a decryption is still being produced
TRANSIENT_STATUS_CODES = {202, 425, 429, 503}
PENDING_BODY_STATUSES = {"pending", "processing", "queued"}


def _error_message(data: Any) -> str:
    if isinstance(data, Mapping):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


class RelayerClient:
    """Async client for the relayer/gateway HTTP API."""

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def is_ready(self) -> bool:
        """Return True once the relayer publishes its key material."""
        try:
            data = await self._request("GET", "/v1/keyurl")
        except FairPayError as exc:
            logger.debug("Relayer not ready yet: %s", exc)
            return False
        return bool(data.get("response"))

    async def create_encrypted_input(
        self,
        contract_address: str,
        user_address: str,
        values: list[int],
        bits: int = 64,
    ) -> dict:
        """Request encrypted input handles and the input proof for *values*."""
        payload = {
            "contractAddress": contract_address,
            "userAddress": user_address,
            "values": [str(v) for v in values],
            "bits": bits,
        }
        data = await self._request("POST", "/v1/input-proof", payload)
        handles = data.get("handles") or []
        if len(handles) != len(values) or not data.get("inputProof"):
            raise NetworkError(
                f"Relayer returned {len(handles)} input handles for {len(values)} values"
            )
        return data

    async def public_decrypt(self, handles: list[str]) -> dict:
        """Request public decryption of *handles*; returns the raw gateway payload."""
        logger.info("Relayer public decrypt: %d handles", len(handles))
        return await self._request(
            "POST",
            "/v1/public-decrypt",
            {"ciphertextHandles": handles, "extraData": "0x00"},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        """Execute one HTTP request and turn failures into classified errors."""
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                if method == "GET":
                    resp = await client.get(url)
                else:
                    resp = await client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Relayer request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Relayer request failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise DecryptionTransientError(
                f"Relayer HTTP {resp.status_code}: {_error_message(data) or 'not ready'}"
            )

        if resp.status_code >= 400:
            message = _error_message(data) or f"HTTP {resp.status_code}"
            logger.warning("Relayer %s %s failed: %s", method, path, message)
            raise classify_gateway_error(f"Relayer HTTP {resp.status_code}: {message}")

        if not isinstance(data, dict):
            raise NetworkError(f"Relayer returned a non-object body for {path}")

        if str(data.get("status", "")).lower() in PENDING_BODY_STATUSES:
            raise DecryptionTransientError(
                f"Relayer reports {data['status']}: {_error_message(data) or 'decryption pending'}"
            )

        return data


class RelayerFheInstance:
    """FHE instance backed by the relayer HTTP API."""

    def __init__(self, client: RelayerClient, config: FheNetworkConfig) -> None:
        self._client = client
        self._config = config

    async def encrypt_range(
        self, min_value: int, max_value: int, user_address: str, contract_address: str
    ) -> EncryptedRange:
        data = await self._client.create_encrypted_input(
            contract_address, user_address, [min_value, max_value]
        )
        handles = data["handles"]
        return EncryptedRange(enc_min=handles[0], enc_max=handles[1], proof=data["inputProof"])

    async def public_decrypt(self, handles: list[str]) -> Mapping[str, Any]:
        return await self._client.public_decrypt(handles)


async def create_relayer_instance(client: RelayerClient, config: FheNetworkConfig) -> RelayerFheInstance:
    """Instance factory used by the FHE bootstrap in relayer mode."""
    logger.info(
        "Creating relayer FHE instance: chain=%s contract=%s gateway=%s",
        config.chain_id,
        config.contract_address,
        config.gateway_url,
    )
    return RelayerFheInstance(client, config)
