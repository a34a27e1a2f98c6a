"""
config.py

Runtime configuration for the Work Order service, read from environment
variables.

    LEDGER_MODE                  transactional | best_effort   (default transactional)
    AUDIT_RETRY_ATTEMPTS         audit insert attempts in best_effort mode (default 3)
    AUDIT_RETRY_BACKOFF_SECONDS  linear backoff step between attempts (default 0.05)
    STORAGE_TIMEOUT_SECONDS      deadline for entity locks / storage calls (default 5)
    MIN_REPORT_PHOTOS            photos required before a report is registered (default 4)
    STAGE_TEMPLATE               JSON list of {"name", "description", "weight"}
    LOG_LEVEL                    default INFO
    CORS_ORIGINS                 comma separated, default "*"
    HOST / PORT                  uvicorn bind address
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

LEDGER_TRANSACTIONAL = "transactional"
LEDGER_BEST_EFFORT = "best_effort"
LEDGER_MODES = (LEDGER_TRANSACTIONAL, LEDGER_BEST_EFFORT)


@dataclass
class Settings:
    ledger_mode: str = LEDGER_TRANSACTIONAL
    audit_retry_attempts: int = 3
    audit_retry_backoff_seconds: float = 0.05
    storage_timeout_seconds: float = 5.0
    min_report_photos: int = 4
    stage_template: Optional[List[Dict[str, Any]]] = None   # None -> built-in default
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "127.0.0.1"
    port: int = 8000

    def __post_init__(self):
        if self.ledger_mode not in LEDGER_MODES:
            raise ValueError(
                f"LEDGER_MODE must be one of {list(LEDGER_MODES)}, got '{self.ledger_mode}'."
            )
        if self.audit_retry_attempts < 1:
            raise ValueError("AUDIT_RETRY_ATTEMPTS must be at least 1.")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("STORAGE_TIMEOUT_SECONDS must be positive.")
        if self.min_report_photos < 0:
            raise ValueError("MIN_REPORT_PHOTOS must not be negative.")

    @classmethod
    def from_env(cls) -> "Settings":
        template = os.getenv("STAGE_TEMPLATE")
        return cls(
            ledger_mode=os.getenv("LEDGER_MODE", LEDGER_TRANSACTIONAL).strip().lower(),
            audit_retry_attempts=int(os.getenv("AUDIT_RETRY_ATTEMPTS", "3")),
            audit_retry_backoff_seconds=float(os.getenv("AUDIT_RETRY_BACKOFF_SECONDS", "0.05")),
            storage_timeout_seconds=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "5")),
            min_report_photos=int(os.getenv("MIN_REPORT_PHOTOS", "4")),
            stage_template=json.loads(template) if template else None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[
                origin.strip()
                for origin in os.getenv("CORS_ORIGINS", "*").split(",")
                if origin.strip()
            ],
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8000")),
        )
