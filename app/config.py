"""Core application configuration & tunable pipeline rules.

Everything that may need tuning per deployment (chunk sizes, archive limits,
worker concurrency, job rate limits, SMTP, storage) is centralized here so it
can be adjusted without diving into job logic. Values are module constants
(mutable dicts so tests can monkeypatch them); environment variables override
the defaults where a deployment is expected to differ.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# Period key accepted on upload (YYYY-MM)
PAY_MONTH_PATTERN: str = r"^\d{4}-(0[1-9]|1[0-2])$"

# --------------------------------- Ingest --------------------------------- #
INGEST_SETTINGS: dict[str, int | str] = {
	# Candidates persisted per transaction; buffers are released after each chunk.
	"chunk_size": 50,
	# Substituted when no identifier can be read so resolution fails cleanly.
	"fallback_identifier": os.getenv("PAYSLIP_FALLBACK_IDENTIFIER", "IPPIS4536"),
	"identifier_tag": "IPPIS",
	"identifier_qualifier": "Number",
	# Text that leaks into the captured code from the next table cell.
	"identifier_noise_token": "Step",
}

# ------------------------------- Extraction ------------------------------- #
EXTRACTION_SETTINGS: dict[str, int] = {
	# Top-level archive counts as depth 1.
	"max_depth": 3,
	"max_total_uncompressed_bytes": 200 * 1024 * 1024,  # 200MB across all nested entries
}

# ------------------------------ Distribution ------------------------------ #
DISTRIBUTION_SETTINGS: dict[str, int | float] = {
	"chunk_size": 10,             # Outbound SMTP is the bottleneck, keep it small
	"chunk_delay_seconds": 1.0,   # Pause between chunks to respect mail server limits
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict = {
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
	"use_redis": _env_bool("QUEUE_USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("QUEUE_REDIS_PREFIX", "payslip"),
	"redis_health_check_timeout": 2.0,
	"poll_timeout": 1.0,
	# Per job type worker slots and rolling-window start limits. Both jobs are
	# memory/IO heavy so each runs one at a time.
	"job_types": {
		"payslip-upload": {"concurrency": 1, "rate_limit": 5, "window_seconds": 60},
		"payslip-send": {"concurrency": 1, "rate_limit": 5, "window_seconds": 60},
	},
}

# ------------------------------ Application ------------------------------ #
APP_SETTINGS: dict[str, str | float | list[str]] = {
	"log_level": os.getenv("LOG_LEVEL", "INFO"),
	"log_file": os.getenv("LOG_FILE", "logs/app.log"),
	"cors_origins": os.getenv("CORS_ORIGINS", "*").split(","),
	# Seconds the lifespan waits for queued and running jobs on shutdown.
	"job_shutdown_timeout": float(os.getenv("JOB_SHUTDOWN_TIMEOUT", "30")),
}

# -------------------------------- Storage --------------------------------- #
STORAGE_SETTINGS: dict[str, str] = {
	"root": os.getenv("PAYSLIP_STORAGE_ROOT", "uploads"),
}

# ---------------------------------- SMTP ---------------------------------- #
SMTP_SETTINGS: dict[str, str | int | float | bool | None] = {
	"host": os.getenv("SMTP_HOST", "localhost"),
	"port": int(os.getenv("SMTP_PORT", "587")),
	"user": os.getenv("SMTP_USER") or None,
	"password": os.getenv("SMTP_PASS") or None,
	"from_address": os.getenv("SMTP_FROM", "payroll@localhost"),
	"use_tls": _env_bool("SMTP_USE_TLS", False),
	"timeout_seconds": float(os.getenv("SMTP_TIMEOUT", "30")),
}

__all__ = [
	"PAY_MONTH_PATTERN",
	"APP_SETTINGS",
	"INGEST_SETTINGS",
	"EXTRACTION_SETTINGS",
	"DISTRIBUTION_SETTINGS",
	"QUEUE_SETTINGS",
	"STORAGE_SETTINGS",
	"SMTP_SETTINGS",
]
