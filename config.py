# config.py
"""
King of the Hill - Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator

from payouts import BURN_ADDRESS, SplitPercentages


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".hill.env",
        env_prefix="",            # read raw names (e.g., DB_PATH)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS (optional)
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Roles
    # =========================
    OWNER_ADDRESS: str = "0x0000000000000000000000000000000000000001"
    DEV_ADDRESS: Optional[str] = None     # defaults to OWNER_ADDRESS
    BURN_ADDRESS: str = BURN_ADDRESS

    # =========================
    # Economics
    # =========================
    TOKEN_DECIMALS: int = 18
    MIN_BUY: int = 10 ** 15               # base units (0.001 at 18 decimals)
    TIME_WINDOW: int = 300                # seconds, [60, 3600]

    SPLT_WINNER: int = 40
    SPLT_BURN: int = 30
    SPLT_DIVIDENDS: int = 25
    SPLT_DEV: int = 5

    @field_validator("MIN_BUY")
    @classmethod
    def _positive_min_buy(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("MIN_BUY must be > 0")
        return v

    @field_validator("TIME_WINDOW")
    @classmethod
    def _bounded_time_window(cls, v: int) -> int:
        if not 60 <= v <= 3600:
            raise ValueError("TIME_WINDOW must be within [60, 3600] seconds")
        return v

    @model_validator(mode="after")
    def _splits_sum(self) -> "Settings":
        total = self.SPLT_WINNER + self.SPLT_BURN + self.SPLT_DIVIDENDS + self.SPLT_DEV
        if total != 100:
            raise ValueError(f"SPLT_* must sum to 100 (got {total})")
        return self

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/hill.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def splits(self) -> SplitPercentages:
        return SplitPercentages(
            winner=self.SPLT_WINNER,
            burn=self.SPLT_BURN,
            dividends=self.SPLT_DIVIDENDS,
            dev=self.SPLT_DEV,
        )

    @property
    def dev_address(self) -> str:
        return self.DEV_ADDRESS or self.OWNER_ADDRESS

    @property
    def min_buy_display(self) -> str:
        """MIN_BUY in whole tokens, for humans."""
        return format_units(self.MIN_BUY, self.TOKEN_DECIMALS)


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a decimal string, e.g. 10**15 at 18 decimals -> "0.001"."""
    whole, frac = divmod(amount, 10 ** decimals)
    frac_s = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{frac_s}" if frac_s else str(whole)


# Instantiate global settings (values resolved from environment)
settings = Settings()
