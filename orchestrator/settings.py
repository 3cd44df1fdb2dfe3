"""
Runtime settings read from the environment (and `.env`).

Variables:
  - POLICY_CONFIG_PATH: YAML policy document
  - RECORDS_DATABASE_URL: SQLAlchemy URL of the record store (unset = in-memory)
  - AUDIT_SINK: memory | jsonl | database
  - AUDIT_LOG_PATH: JSON Lines file for the jsonl sink
  - AUDIT_DATABASE_URL: SQLAlchemy URL for the database sink (defaults to RECORDS_DATABASE_URL)
  - AUDIT_RETRY_QUEUE_PATH: durable retry queue (empty = no queue)
  - AUDIT_MAX_ATTEMPTS / AUDIT_RETRY_BASE_DELAY: immediate retry policy
  - AUDIT_PERSONAL_READS: also audit reads of Personal fields (default true)
  - REQUEST_TIMEOUT_S: deadline passed to storage and audit-sink calls
  - LOG_LEVEL / LOG_FILE: loguru configuration
"""

import os
from typing import Optional

import dotenv
from loguru import logger

dotenv.load_dotenv()

AUDIT_SINKS = ("memory", "jsonl", "database")


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Configuration for one process."""

    def __init__(self, **overrides):
        self.policy_config_path = os.getenv("POLICY_CONFIG_PATH", "configs/policies/default.yaml")
        self.records_database_url: Optional[str] = os.getenv("RECORDS_DATABASE_URL") or None

        self.audit_sink = os.getenv("AUDIT_SINK", "jsonl").lower()
        self.audit_log_path = os.getenv("AUDIT_LOG_PATH", "data/audit/events.jsonl")
        self.audit_database_url: Optional[str] = os.getenv("AUDIT_DATABASE_URL") or self.records_database_url
        self.audit_retry_queue_path: Optional[str] = os.getenv(
            "AUDIT_RETRY_QUEUE_PATH", "data/audit/pending.jsonl"
        ) or None
        self.audit_max_attempts = int(os.getenv("AUDIT_MAX_ATTEMPTS", "3"))
        self.audit_retry_base_delay = float(os.getenv("AUDIT_RETRY_BASE_DELAY", "0.05"))
        self.audit_personal_reads = _bool(os.getenv("AUDIT_PERSONAL_READS", "true"))

        timeout = os.getenv("REQUEST_TIMEOUT_S", "5")
        self.request_timeout_s: Optional[float] = float(timeout) if timeout else None

        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_file: Optional[str] = os.getenv("LOG_FILE") or None

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        if self.audit_sink not in AUDIT_SINKS:
            raise ValueError(f"AUDIT_SINK must be one of {AUDIT_SINKS}, got {self.audit_sink!r}")

        logger.debug(
            f"Settings: policy={self.policy_config_path}, audit_sink={self.audit_sink}, "
            f"records_db={'sql' if self.records_database_url else 'memory'}, timeout={self.request_timeout_s}"
        )
