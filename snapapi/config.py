"""Settings loader for the rendering API."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# USDC uses 6 decimals on both Polygon and Base.
USDC_DECIMALS = 6
ATOMIC_PER_USDC = Decimal(10) ** USDC_DECIMALS


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    price: Decimal
    limit: int
    period: str = "month"


PLANS: Dict[str, Plan] = {
    "pro": Plan(plan_id="pro", name="Pro", price=Decimal("10.00"), limit=1000),
    "enterprise": Plan(plan_id="enterprise", name="Enterprise", price=Decimal("50.00"), limit=10000),
}


@dataclass(frozen=True)
class RoutePrice:
    route: str
    price_usd: Decimal
    description: str
    mime_type: str


# Per-request micropayment prices, paid in USDC.
ROUTE_PRICES: Dict[str, RoutePrice] = {
    "capture": RoutePrice(
        route="capture",
        price_usd=Decimal("0.01"),
        description="Capture screenshot or PDF from a URL",
        mime_type="image/png",
    ),
    "md2pdf": RoutePrice(
        route="md2pdf",
        price_usd=Decimal("0.005"),
        description="Convert Markdown to PDF",
        mime_type="application/pdf",
    ),
    "md2png": RoutePrice(
        route="md2png",
        price_usd=Decimal("0.005"),
        description="Convert Markdown to PNG image",
        mime_type="image/png",
    ),
}

ROUTE_PATHS: Dict[str, str] = {
    "capture": "/api/capture",
    "md2pdf": "/api/md2pdf",
    "md2png": "/api/md2png",
}


def _validate_address(value: Optional[str], name: str) -> Optional[str]:
    if value is None:
        return value
    candidate = value.strip()
    if not candidate.startswith("0x") or len(candidate) != 42:
        raise ValueError(f"{name} must be a 42-character hex string")
    if not all(ch in "0123456789abcdef" for ch in candidate[2:].lower()):
        raise ValueError(f"{name} must be a valid hex string")
    return candidate


class SnapSettings(BaseSettings):
    data_dir: Path = Field(default=Path("/app/data"), validation_alias="SNAPAPI_DATA_DIR")
    credentials_path: Optional[Path] = Field(default=None, validation_alias="SNAPAPI_CREDENTIALS_PATH")
    invoices_path: Optional[Path] = Field(default=None, validation_alias="SNAPAPI_INVOICES_PATH")

    api_host: str = Field(default="0.0.0.0", validation_alias="SNAPAPI_HOST")
    api_port: int = Field(default=3001, validation_alias="PORT")
    api_root_path: str = Field(default="", validation_alias="SNAPAPI_ROOT_PATH")
    api_admin_token: Optional[str] = Field(default=None, validation_alias="SNAPAPI_ADMIN_TOKEN")

    max_concurrent: int = Field(default=3, validation_alias="SNAPAPI_MAX_CONCURRENT")
    rate_limit_per_minute: int = Field(default=10, validation_alias="SNAPAPI_RATE_LIMIT_PER_MINUTE")
    rate_limit_window_seconds: int = Field(default=60, validation_alias="SNAPAPI_RATE_LIMIT_WINDOW_SECONDS")
    free_tier_limit: int = Field(default=100, validation_alias="SNAPAPI_FREE_TIER_LIMIT")

    renderer_url: str = Field(default="http://localhost:3000", validation_alias="SNAPAPI_RENDERER_URL")
    renderer_timeout_seconds: float = Field(default=90.0, validation_alias="SNAPAPI_RENDERER_TIMEOUT_SECONDS")

    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", validation_alias="POLYGON_RPC_URL")
    usdc_contract_address: str = Field(
        default="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        validation_alias="POLYGON_USDC_CONTRACT",
    )
    wallet_address: str = Field(
        default="0x7483a9F237cf8043704D6b17DA31c12BfFF860DD",
        validation_alias="SNAPAPI_WALLET_ADDRESS",
    )
    invoice_ttl_seconds: int = Field(default=3600, validation_alias="SNAPAPI_INVOICE_TTL_SECONDS")
    invoice_lookback_blocks: int = Field(default=5000, validation_alias="SNAPAPI_INVOICE_LOOKBACK_BLOCKS")
    invoice_poll_interval_seconds: int = Field(default=30, validation_alias="SNAPAPI_INVOICE_POLL_SECONDS")

    x402_enabled: bool = Field(default=True, validation_alias="X402_ENABLED")
    x402_network: str = Field(default="eip155:8453", validation_alias="X402_NETWORK")
    x402_asset_address: str = Field(
        default="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        validation_alias="X402_ASSET_ADDRESS",
    )
    x402_facilitator_url: str = Field(default="https://facilitator.payai.network", validation_alias="X402_FACILITATOR_URL")
    x402_facilitator_timeout_seconds: float = Field(default=15.0, validation_alias="X402_FACILITATOR_TIMEOUT_SECONDS")
    x402_pay_to: Optional[str] = Field(default=None, validation_alias="X402_PAY_TO")
    x402_max_timeout_seconds: int = Field(default=120, validation_alias="X402_MAX_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("usdc_contract_address", "wallet_address", "x402_asset_address", "x402_pay_to")
    @classmethod
    def validate_address(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        return _validate_address(value, info.field_name)

    @field_validator(
        "api_port",
        "max_concurrent",
        "rate_limit_per_minute",
        "rate_limit_window_seconds",
        "free_tier_limit",
        "invoice_ttl_seconds",
        "invoice_lookback_blocks",
        "invoice_poll_interval_seconds",
        "x402_max_timeout_seconds",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("renderer_timeout_seconds", "x402_facilitator_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def populate_paths(self) -> "SnapSettings":
        if self.credentials_path is None:
            self.credentials_path = self.data_dir / "api-keys.json"
        if self.invoices_path is None:
            self.invoices_path = self.data_dir / "invoices.json"
        if self.x402_pay_to is None:
            self.x402_pay_to = self.wallet_address
        return self


def load_settings() -> SnapSettings:
    return SnapSettings()
