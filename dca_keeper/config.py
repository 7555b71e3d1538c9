import os

from decimal import Decimal
from pathlib import Path
from typing import Any, Dict

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Pick up legacy environment variable aliases."""

        super().model_post_init(__context)

        if not self.coingecko_api_key:
            fallback = os.getenv("CG_API_KEY") or os.getenv("COINGECKO_KEY")
            if fallback:
                object.__setattr__(self, "coingecko_api_key", fallback)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Price feed
    coingecko_api_key: str = Field(default="", description="Coingecko API key")
    coingecko_base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="Coingecko API base URL",
    )
    coingecko_asset_ids: Dict[str, str] = Field(
        default_factory=lambda: {"XFI": "crossfi-2"},
        description="Asset symbol -> Coingecko coin id",
    )
    coingecko_quote_currencies: Dict[str, str] = Field(
        default_factory=lambda: {"USDT": "usd", "USDC": "usd", "TUSDC": "usd"},
        description="Quote asset symbol -> Coingecko vs_currency",
    )
    price_cache_ttl_seconds: float = Field(
        default=30,
        gt=0,
        description="How long a fetched price is considered fresh",
    )
    price_fetch_timeout_seconds: float = Field(
        default=10,
        gt=0,
        description="Timeout for one upstream price request",
    )

    # Traded pair
    dca_base_asset: str = Field(default="XFI", description="Asset being bought or sold")
    dca_quote_asset: str = Field(default="USDT", description="Asset prices are quoted in")

    # Scheduler
    scheduler_interval_seconds: float = Field(
        default=30,
        gt=0,
        description="Fixed interval between scheduler ticks",
    )
    scheduler_max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum concurrent order executions within one tick",
    )
    store_timeout_seconds: float = Field(default=10, gt=0, description="Timeout for order store calls")
    swap_timeout_seconds: float = Field(default=20, gt=0, description="Timeout for swap submission")
    notification_timeout_seconds: float = Field(
        default=5,
        gt=0,
        description="Upper bound on time spent delivering one notification",
    )
    stuck_execution_seconds: int = Field(
        default=900,
        ge=1,
        description="EXECUTING orders older than this are reported as stuck",
    )

    # Order defaults and limits
    default_max_retries: int = Field(default=3, ge=0, description="Retries granted to new orders")
    default_slippage_bps: int = Field(default=100, ge=0, description="Slippage used when none is given")
    max_slippage_bps: int = Field(default=5000, ge=0, le=10000, description="Largest accepted slippage")
    min_order_amount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Orders must spend strictly more than this amount",
    )

    # Retry backoff (0 means retry on the next tick)
    retry_backoff_initial_seconds: float = Field(default=0, ge=0)
    retry_backoff_max_seconds: float = Field(default=600, ge=0)
    retry_backoff_jitter: bool = Field(default=True)

    # Execution
    require_confirmation: bool = Field(
        default=False,
        description="Wait for an on-chain receipt before marking an order EXECUTED",
    )
    confirmation_timeout_seconds: float = Field(default=8, gt=0)
    confirmation_poll_seconds: float = Field(default=1.5, gt=0)
    rpc_url: str = Field(
        default="",
        description="JSON-RPC endpoint used for receipt lookups",
        validation_alias=AliasChoices("rpc_url", "RPC_URL", "CROSSFI_RPC_URL"),
    )
    swap_signer_url: str = Field(default="", description="Signing service that submits swaps")
    swap_signer_api_key: str = Field(default="", description="API key for the signing service")

    # Persistence
    order_store_backend: str = Field(default="memory", description="memory or convex")
    convex_url: str = Field(default="", description="Convex deployment URL")
    convex_deploy_key: str = Field(default="", description="Convex deploy key")

    # Notifications
    notification_webhook_url: str = Field(default="", description="Where order events are POSTed")
    notification_webhook_secret: str = Field(default="", description="HMAC secret for webhook signatures")

    @model_validator(mode="after")
    def _timeouts_fit_interval(self) -> "Settings":
        interval = self.scheduler_interval_seconds
        for name in (
            "price_fetch_timeout_seconds",
            "store_timeout_seconds",
            "swap_timeout_seconds",
            "notification_timeout_seconds",
        ):
            if getattr(self, name) >= interval:
                raise ValueError(
                    f"{name} ({getattr(self, name)}s) must be shorter than "
                    f"scheduler_interval_seconds ({interval}s)"
                )
        if self.execution_bound_seconds >= interval:
            raise ValueError(
                f"Swap execution bound ({self.execution_bound_seconds}s) must be shorter than "
                f"scheduler_interval_seconds ({interval}s)"
            )
        if self.order_store_backend not in ("memory", "convex"):
            raise ValueError(f"Unknown order_store_backend: {self.order_store_backend}")
        return self

    @property
    def execution_bound_seconds(self) -> float:
        """Longest one swap may take: submission plus confirmation when required."""
        bound = self.swap_timeout_seconds
        if self.require_confirmation:
            bound += self.confirmation_timeout_seconds
        return bound

    @property
    def has_coingecko_key(self) -> bool:
        return bool(self.coingecko_api_key)

    @property
    def has_swap_signer(self) -> bool:
        return bool(self.swap_signer_url)

    @property
    def has_webhook(self) -> bool:
        return bool(self.notification_webhook_url)


# Global settings instance
settings = Settings()
