"""Encryption/decryption primitive port and its network configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from fairpay.domain.models import EncryptedRange


@dataclass(frozen=True)
class FheNetworkConfig:
    """Everything an FHE instance needs to bind to one deployment."""

    chain_id: int
    contract_address: str
    relayer_url: str
    gateway_url: str
    acl_contract_address: str
    kms_verifier_address: str

    @classmethod
    def from_settings(cls, settings) -> "FheNetworkConfig":
        return cls(
            chain_id=settings.chain_id,
            contract_address=settings.contract_address,
            relayer_url=settings.relayer_url,
            gateway_url=settings.gateway_url,
            acl_contract_address=settings.acl_contract_address,
            kms_verifier_address=settings.kms_verifier_address,
        )


@runtime_checkable
class FheInstance(Protocol):
    """A decryption-capable instance produced by the SDK bootstrap.

    ``public_decrypt`` returns the gateway payload
    ``{"clearValues": {handle: value}, "decryptionProof": ...}``.
    Implementations may raise plain exceptions with text messages; the
    FHE service classifies them.
    """

    async def encrypt_range(
        self, min_value: int, max_value: int, user_address: str, contract_address: str
    ) -> EncryptedRange: ...

    async def public_decrypt(self, handles: list[str]) -> Mapping[str, Any]: ...


SdkProbe = Callable[[], Awaitable[bool]]
FheInstanceFactory = Callable[[FheNetworkConfig], Awaitable[FheInstance]]
