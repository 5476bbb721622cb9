"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # "simulated" runs the in-process devnet; "relayer" talks to the HTTP gateway
    backend: str = "simulated"

    # Network / contract
    chain_id: int = 11155111
    contract_address: str = "0x5C4B2F0a1b7d1E0f3cA9F6d2B8e4A7c1D3f5E9a2"
    acl_contract_address: str = "0x687820221192C5B662b25367F70076A37bc79b6c"
    kms_verifier_address: str = "0x9D6891A6240D6130c54ae243d8005063D05fE14b"

    # Relayer / decryption gateway
    relayer_url: str = "https://relayer.testnet.zama.cloud"
    gateway_url: str = "https://gateway.testnet.zama.ai"
    relayer_timeout_seconds: float = 30.0

    # SDK bootstrap: base delay doubles each attempt (~40s ceiling at 12 attempts)
    sdk_poll_base_delay_seconds: float = 0.02
    sdk_poll_max_attempts: int = 12

    # Decrypt-and-reveal retry budget
    decrypt_max_attempts: int = 20
    decrypt_retry_delay_seconds: float = 15.0

    # Synchronization sweep
    sync_interval_seconds: float = 30.0

    # Simulated gateway latency, in decrypt attempts answered with "pending"
    simulated_decrypt_ready_after: int = 2

    # CORS / Frontend
    cors_origins: str = "http://localhost:4200"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
