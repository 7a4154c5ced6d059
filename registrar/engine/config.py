"""
Learn2Earn Registrar — Configuration
=====================================
Explicit settings objects. Only from_env() reads the process environment;
everything downstream receives these objects at construction.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_MODERATOR_KEY = "l2e-dev-moderator-key-change-in-prod"
DEFAULT_CONTRACT_ADDRESS = "0xa56903cf66bacca8fb5911eb759a8566bda978ac"
DEFAULT_NETWORK_URL = "http://127.0.0.1:8545"
DEFAULT_RATE_LIMIT_SUBMIT = "20/minute"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw, 0) if raw else default


@dataclass(frozen=True)
class LedgerConfig:
    network_url:              str           = DEFAULT_NETWORK_URL
    contract_address:         str           = DEFAULT_CONTRACT_ADDRESS
    registrar_private_key:    Optional[str] = field(default=None, repr=False)
    chain_id:                 Optional[int] = None   # None → ask the node
    gas_limit:                int           = 200_000
    confirmation_timeout_sec: float         = 120.0
    poll_interval_sec:        float         = 1.0
    rpc_timeout_sec:          float         = 10.0

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        key = os.getenv("REGISTRAR_PRIVATE_KEY", "").strip() or None
        return cls(
            network_url              = os.getenv("LEDGER_NETWORK_URL", DEFAULT_NETWORK_URL),
            contract_address         = os.getenv("LEDGER_CONTRACT_ADDRESS", DEFAULT_CONTRACT_ADDRESS),
            registrar_private_key    = key,
            chain_id                 = _env_int("LEDGER_CHAIN_ID", None),
            gas_limit                = _env_int("LEDGER_GAS_LIMIT", 200_000),
            confirmation_timeout_sec = _env_float("LEDGER_CONFIRMATION_TIMEOUT_SEC", 120.0),
            poll_interval_sec        = _env_float("LEDGER_POLL_INTERVAL_SEC", 1.0),
            rpc_timeout_sec          = _env_float("LEDGER_RPC_TIMEOUT_SEC", 10.0),
        )


@dataclass(frozen=True)
class Settings:
    database_url:             str           = "sqlite:///./submissions.db"
    moderator_key:            Optional[str] = field(default=None, repr=False)
    allowed_origins:          List[str]     = field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )
    moderation_lock_wait_sec: float         = 0.0
    rate_limit_submit:        str           = DEFAULT_RATE_LIMIT_SUBMIT
    ledger:                   LedgerConfig  = field(default_factory=LedgerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        # e.g. ALLOWED_ORIGINS=https://learn.example.org,https://admin.example.org
        raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173")
        return cls(
            database_url             = os.getenv("DATABASE_URL", "sqlite:///./submissions.db"),
            moderator_key            = os.getenv("MODERATOR_KEY", "").strip() or None,
            allowed_origins          = [o.strip() for o in raw_origins.split(",") if o.strip()],
            moderation_lock_wait_sec = _env_float("MODERATION_LOCK_WAIT_SEC", 0.0),
            rate_limit_submit        = os.getenv("RATE_LIMIT_SUBMIT", "").strip() or DEFAULT_RATE_LIMIT_SUBMIT,
            ledger                   = LedgerConfig.from_env(),
        )
