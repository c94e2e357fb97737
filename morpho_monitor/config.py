from pydantic_settings import BaseSettings
from pydantic import BaseModel, ConfigDict, Field, model_validator
from functools import lru_cache
import math
from typing import Self


def validate_threshold_order(danger_threshold: float, warning_threshold: float) -> None:
    """Reject threshold pairs the health calculator cannot classify against."""
    if not (math.isfinite(danger_threshold) and math.isfinite(warning_threshold)):
        raise ValueError("Health factor thresholds must be finite numbers")
    if danger_threshold <= 0 or warning_threshold <= 0:
        raise ValueError("Health factor thresholds must be greater than 0")
    if danger_threshold >= warning_threshold:
        raise ValueError("Danger threshold must be less than warning threshold")


class HealthThresholds(BaseModel):
    """Status thresholds applied to a health factor value."""

    model_config = ConfigDict(frozen=True)

    warning_threshold: float = Field(default=1.5, description="Below this HF the status is 'warning'")
    danger_threshold: float = Field(default=1.2, description="Below this HF the status is 'danger'")

    @model_validator(mode="after")
    def check_order(self) -> Self:
        validate_threshold_order(self.danger_threshold, self.warning_threshold)
        return self


class Settings(BaseSettings):
    # World Chain hosts Morpho Blue and the MetaMorpho vaults
    rpc_url: str = Field(
        default="https://worldchain-mainnet.g.alchemy.com/public",
        description="World Chain RPC URL",
    )
    # The World App WLD vault lives on OP Mainnet
    vault_rpc_url: str = Field(
        default="https://mainnet.optimism.io",
        description="OP Mainnet RPC URL for the World App vault",
    )

    morpho_blue_address: str = Field(
        default="0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
        description="Morpho Blue contract address",
    )
    multicall_address: str = Field(
        default="0xcA11bde05977b3631167028862bE2a173976CA11",
        description="Multicall3 contract address",
    )
    price_api_url: str = Field(
        default="https://app-backend.worldcoin.dev/public/v1/miniapps/prices",
        description="Bulk USD price endpoint",
    )
    morpho_api_url: str = Field(
        default="https://api.morpho.org/graphql",
        description="Morpho GraphQL API for positions on other chains",
    )
    morpho_api_enabled: bool = Field(
        default=True, description="Query the Morpho API alongside the contract reads"
    )

    price_cache_ttl_seconds: float = Field(
        default=60.0, description="How long a fetched USD price stays fresh"
    )
    position_cache_ttl_seconds: float = Field(
        default=60.0, description="How long a wallet's positions stay fresh"
    )
    rpc_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single contract read"
    )
    price_timeout_seconds: float = Field(
        default=10.0, description="Timeout for the bulk price request"
    )
    morpho_api_timeout_seconds: float = Field(
        default=10.0, description="Timeout for one Morpho API chain query"
    )

    warning_threshold: float = Field(
        default=1.5, description="Health factor threshold for warnings"
    )
    danger_threshold: float = Field(
        default=1.2, description="Health factor threshold for danger status"
    )
    trust_onchain_lltv: bool = Field(
        default=True,
        description="Prefer the LLTV reported by the market over the configured one",
    )

    api_host: str = Field(default="0.0.0.0", description="Host for the HTTP API")
    api_port: int = Field(default=8080, description="Port for the HTTP API and metrics")
    log_level: str = Field(default="INFO", description="Root log level")

    @model_validator(mode="after")
    def check_thresholds(self) -> Self:
        validate_threshold_order(self.danger_threshold, self.warning_threshold)
        return self

    @property
    def thresholds(self) -> HealthThresholds:
        return HealthThresholds(
            warning_threshold=self.warning_threshold,
            danger_threshold=self.danger_threshold,
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
