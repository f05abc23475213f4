"""
Bridge configuration using pydantic-settings.

Values come from the environment (prefix NEURAI_WC_) or a .env file.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from neuraiwc.chain_identity import ChainId, ChainIdentity, chain_id_from_genesis
from neuraiwc.constants import NetworkParams, NetworkType, get_network_params


class CoinSelectionPolicy(str, Enum):
    LARGEST_FIRST = "largest_first"
    SMALLEST_FIRST = "smallest_first"
    OLDEST_FIRST = "oldest_first"


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NEURAI_WC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: NetworkType = NetworkType.MAINNET
    # Either the 32-char CAIP-2 reference or the full genesis hash
    chain_reference: str | None = None

    rpc_url: str | None = None
    rpc_user: str = ""
    rpc_password: str = ""

    # Timeouts (seconds)
    rpc_timeout: float = Field(default=30.0, gt=0)
    custody_timeout: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)

    # UTXO ledger
    utxo_max_age: float = Field(
        default=60.0, gt=0, description="Seconds before a cached UTXO set is stale"
    )
    min_confirmations: int = Field(default=1, ge=0)
    coin_selection: CoinSelectionPolicy = CoinSelectionPolicy.LARGEST_FIRST

    # Retry policy
    fetch_max_attempts: int = Field(default=3, ge=1)
    broadcast_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    resume_max_attempts: int = Field(default=5, ge=1)
    resume_base_delay: float = Field(default=1.0, ge=0)

    # Sessions and accounts
    session_store_path: Path | None = Path.home() / ".neurai-wc" / "sessions.json"
    session_ttl: float = Field(default=7 * 24 * 3600, gt=0)
    account_count: int = Field(default=1, ge=1, le=100)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_chain_reference(self) -> BridgeSettings:
        if self.chain_reference is None and self.network_params.chain_reference is None:
            raise ValueError(
                f"chain_reference (genesis hash) must be configured for {self.network.value}"
            )
        # Validates format; raises InvalidChainId (a ValueError) when malformed
        _ = self.chain_id
        return self

    @property
    def network_params(self) -> NetworkParams:
        return get_network_params(self.network)

    @property
    def chain_id(self) -> ChainId:
        reference = self.chain_reference or self.network_params.chain_reference
        assert reference is not None
        return chain_id_from_genesis(reference)

    @property
    def effective_rpc_url(self) -> str:
        return self.rpc_url or self.network_params.default_rpc_url

    def chain_identity(self) -> ChainIdentity:
        return ChainIdentity(self.chain_id, self.network_params)


def get_settings() -> BridgeSettings:
    return BridgeSettings()
