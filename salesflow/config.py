"""
Centralized Configuration - Single source of truth for all settings.

All environment variables are read here, validated, and exposed as module-level
constants. Other modules import from here instead of reading os.environ directly.

Usage:
    from salesflow.config import DB_PATH, SEQUENCE_SENDING_ENABLED, LOG_LEVEL
"""

import os
import sys

# ─── PATHS ───────────────────────────────────────────────────

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOGS_DIR = os.path.join(PROJECT_ROOT, "logs")

# ─── DATABASE ────────────────────────────────────────────────

DB_PATH = os.environ.get("SALESFLOW_DB_PATH", os.path.join(PROJECT_ROOT, "salesflow.db"))
DB_JOURNAL_MODE = os.environ.get("SALESFLOW_JOURNAL_MODE", "WAL")

# ─── SEQUENCES ───────────────────────────────────────────────

SEQUENCE_SENDING_ENABLED = os.environ.get("SEQUENCE_SENDING_ENABLED", "false").lower() == "true"
SEQUENCE_BOOKING_URL = os.environ.get("SEQUENCE_BOOKING_URL", "https://booking.example.com")
SEQUENCE_SENDER_NAME = os.environ.get("SEQUENCE_SENDER_NAME", "The Sales Team")
SEQUENCE_PROCESS_LIMIT = int(os.environ.get("SEQUENCE_PROCESS_LIMIT", "100"))
SEQUENCE_TICK_SECONDS = int(os.environ.get("SEQUENCE_TICK_SECONDS", "600"))
AUTO_ENROLL_SEQUENCE_ID = os.environ.get("AUTO_ENROLL_SEQUENCE_ID", "")

# ─── THROUGHPUT ──────────────────────────────────────────────

EMAILS_PER_WINDOW = int(os.environ.get("EMAILS_PER_WINDOW", "5"))
SEND_WINDOW_SECONDS = int(os.environ.get("SEND_WINDOW_SECONDS", "3600"))

# ─── SCORING / LEARNING ──────────────────────────────────────

LEARNING_SUCCESS_STEP = int(os.environ.get("LEARNING_SUCCESS_STEP", "2"))
LEARNING_FAILURE_STEP = int(os.environ.get("LEARNING_FAILURE_STEP", "3"))
WEIGHT_MIN = int(os.environ.get("WEIGHT_MIN", "10"))
WEIGHT_MAX = int(os.environ.get("WEIGHT_MAX", "100"))

PRIORITY_THRESHOLDS = {
    "urgent": int(os.environ.get("PRIORITY_URGENT", "90")),
    "high": int(os.environ.get("PRIORITY_HIGH", "60")),
    "medium": int(os.environ.get("PRIORITY_MEDIUM", "30")),
}

# ─── DISPATCH ────────────────────────────────────────────────

DISPATCH_WEBHOOK_URL = os.environ.get("DISPATCH_WEBHOOK_URL", "")  # empty = local dispatcher
DISPATCH_TIMEOUT = int(os.environ.get("DISPATCH_TIMEOUT_SECONDS", "15"))
LOCAL_OUTBOX_LIMIT = int(os.environ.get("LOCAL_OUTBOX_LIMIT", "1000"))  # newest entries kept

# ─── API ─────────────────────────────────────────────────────

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "8000"))

# ─── LOGGING ─────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "text" or "json"
LOG_FILE = os.environ.get("LOG_FILE", "")  # empty = stdout only

# ─── VALIDATION ──────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_LOG_FORMATS = {"text", "json"}
_VALID_JOURNAL_MODES = {"WAL", "DELETE", "MEMORY", "OFF"}

_errors = []

if LOG_LEVEL not in _VALID_LOG_LEVELS:
    _errors.append(f"LOG_LEVEL must be one of {_VALID_LOG_LEVELS}, got '{LOG_LEVEL}'")

if LOG_FORMAT not in _VALID_LOG_FORMATS:
    _errors.append(f"LOG_FORMAT must be one of {_VALID_LOG_FORMATS}, got '{LOG_FORMAT}'")

if DB_JOURNAL_MODE not in _VALID_JOURNAL_MODES:
    _errors.append(f"SALESFLOW_JOURNAL_MODE must be one of {_VALID_JOURNAL_MODES}, got '{DB_JOURNAL_MODE}'")

if SEQUENCE_PROCESS_LIMIT < 1:
    _errors.append(f"SEQUENCE_PROCESS_LIMIT must be positive, got {SEQUENCE_PROCESS_LIMIT}")

if SEQUENCE_TICK_SECONDS < 1:
    _errors.append(f"SEQUENCE_TICK_SECONDS must be positive, got {SEQUENCE_TICK_SECONDS}")

if EMAILS_PER_WINDOW < 1:
    _errors.append(f"EMAILS_PER_WINDOW must be positive, got {EMAILS_PER_WINDOW}")

if SEND_WINDOW_SECONDS < 1:
    _errors.append(f"SEND_WINDOW_SECONDS must be positive, got {SEND_WINDOW_SECONDS}")

if WEIGHT_MIN >= WEIGHT_MAX:
    _errors.append(f"WEIGHT_MIN ({WEIGHT_MIN}) must be below WEIGHT_MAX ({WEIGHT_MAX})")

if not (PRIORITY_THRESHOLDS["urgent"] > PRIORITY_THRESHOLDS["high"] > PRIORITY_THRESHOLDS["medium"] > 0):
    _errors.append(f"PRIORITY thresholds must be strictly descending and positive, got {PRIORITY_THRESHOLDS}")

if DISPATCH_TIMEOUT < 1:
    _errors.append(f"DISPATCH_TIMEOUT_SECONDS must be positive, got {DISPATCH_TIMEOUT}")

if LOCAL_OUTBOX_LIMIT < 1:
    _errors.append(f"LOCAL_OUTBOX_LIMIT must be positive, got {LOCAL_OUTBOX_LIMIT}")

if _errors:
    for e in _errors:
        print(f"[config] ERROR: {e}", file=sys.stderr)
    # Don't crash during import - the API and the scheduler may not need all config


def validate(strict: bool = False) -> list:
    """Validate all configuration settings.

    Args:
        strict: If True, raise ValueError on any errors.

    Returns:
        List of error messages (empty if all valid).
    """
    if strict and _errors:
        raise ValueError(f"Configuration errors: {'; '.join(_errors)}")
    return list(_errors)


def print_config():
    """Print current configuration (safe - no secrets)."""
    print("=" * 50)
    print("Salesflow Configuration")
    print("=" * 50)
    print(f"  DB_PATH:                  {DB_PATH}")
    print(f"  DB_JOURNAL_MODE:          {DB_JOURNAL_MODE}")
    print(f"  SEQUENCE_SENDING_ENABLED: {SEQUENCE_SENDING_ENABLED}")
    print(f"  SEQUENCE_PROCESS_LIMIT:   {SEQUENCE_PROCESS_LIMIT}")
    print(f"  SEQUENCE_TICK_SECONDS:    {SEQUENCE_TICK_SECONDS}s")
    print(f"  AUTO_ENROLL_SEQUENCE_ID:  {AUTO_ENROLL_SEQUENCE_ID or '(off)'}")
    print(f"  EMAILS_PER_WINDOW:        {EMAILS_PER_WINDOW} / {SEND_WINDOW_SECONDS}s")
    print(f"  LEARNING_STEPS:           +{LEARNING_SUCCESS_STEP} / -{LEARNING_FAILURE_STEP}")
    print(f"  WEIGHT_RANGE:             [{WEIGHT_MIN}, {WEIGHT_MAX}]")
    print(f"  PRIORITY_THRESHOLDS:      {PRIORITY_THRESHOLDS}")
    print(f"  DISPATCH:                 {'webhook' if DISPATCH_WEBHOOK_URL else 'local'}")
    print(f"  LOCAL_OUTBOX_LIMIT:       {LOCAL_OUTBOX_LIMIT}")
    print(f"  API_HOST:                 {API_HOST}")
    print(f"  API_PORT:                 {API_PORT}")
    print(f"  LOG_LEVEL:                {LOG_LEVEL}")
    print(f"  LOG_FORMAT:               {LOG_FORMAT}")
    print(f"  PROJECT_ROOT:             {PROJECT_ROOT}")
    print("=" * 50)
