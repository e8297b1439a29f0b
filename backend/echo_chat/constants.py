"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for the behavioral invariants of the chat core.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment settings (paths, service names) live in config.py instead.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Streaming Commit Batching
# =============================================================================
# A durable commit of streamed content happens when EITHER trigger fires
# first. The in-memory view is updated on every delta regardless.

COMMIT_BATCH_MAX_BYTES: Final[int] = 512
COMMIT_BATCH_INTERVAL_MS: Final[int] = 250

# =============================================================================
# Turn Timing
# =============================================================================

# No stream event within this window fails the turn with Timeout
TURN_INACTIVITY_TIMEOUT_MS: Final[int] = 60_000

# Stream pump must acknowledge a close within this window
CANCEL_ACK_TIMEOUT_MS: Final[int] = 500

# =============================================================================
# Storage Retry Policy
# =============================================================================

# One entry per retry; len() is the retry budget
STORAGE_RETRY_DELAYS_MS: Final[Tuple[int, ...]] = (50, 100, 200)

# =============================================================================
# Provider Wire Defaults
# =============================================================================

CLAUDE_DEFAULT_BASE_URL: Final[str] = "https://api.anthropic.com/v1"
CLAUDE_API_VERSION: Final[str] = "2023-06-01"
CLAUDE_DEFAULT_MAX_TOKENS: Final[int] = 8192

GEMINI_DEFAULT_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com/v1beta"

LOCAL_DEFAULT_BASE_URL: Final[str] = "http://localhost:11434"

# Connect / read timeouts for provider HTTP clients (seconds).
# Read timeout is per network read, not per response.
PROVIDER_CONNECT_TIMEOUT_S: Final[float] = 10.0
PROVIDER_READ_TIMEOUT_S: Final[float] = 120.0

# Error bodies are truncated to this many characters in details
PROVIDER_ERROR_DETAIL_MAX_CHARS: Final[int] = 500

# =============================================================================
# Conversations
# =============================================================================

DEFAULT_CONVERSATION_TITLE: Final[str] = "New Conversation"
TITLE_MAX_CHARS: Final[int] = 50
TITLE_ELLIPSIS: Final[str] = "..."

# =============================================================================
# Chat Settings Defaults
# =============================================================================

SETTINGS_KEY: Final[str] = "app_settings"
DEFAULT_STREAM_RESPONSES: Final[bool] = True

# Temperature equal to this value is treated as "provider default" and
# is not sent on the wire.
PROVIDER_DEFAULT_TEMPERATURE: Final[float] = 1.0

# =============================================================================
# Observability
# =============================================================================

# Keys whose values are replaced before a log record is serialized
REDACTED_LOG_KEYS: Final[Tuple[str, ...]] = (
    "api_key",
    "secret",
    "authorization",
    "x-api-key",
    "x-goog-api-key",
    "password",
    "token",
)
REDACTED_PLACEHOLDER: Final[str] = "[redacted]"
