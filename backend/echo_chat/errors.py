"""Typed chat-core exceptions and canonical error kinds.

Every failure the core can surface maps to one ErrorKind. Validation
failures are raised as ChatError subclasses before any network call;
mid-stream failures travel as StreamError events and end up attached to
the failed Message (kind, reason, detail) instead of being raised.

Usage:
    # In the orchestrator
    raise TurnInProgress(conversation_id)

    # In the HTTP layer
    except ChatError as e:
        return JSONResponse(status_code=http_status_for(e.kind), ...)
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNKNOWN_PROVIDER_KIND = "unknown_provider_kind"
    MISSING_CREDENTIAL = "missing_credential"
    UNSUPPORTED_ATTACHMENT = "unsupported_attachment"
    TURN_IN_PROGRESS = "turn_in_progress"
    NETWORK = "network"
    PROVIDER_REJECTED = "provider_rejected"
    TIMEOUT = "timeout"
    STORAGE_FAILURE = "storage_failure"
    UNKNOWN_CONVERSATION = "unknown_conversation"
    UNKNOWN_MESSAGE = "unknown_message"
    UNKNOWN_ACCOUNT = "unknown_account"
    INVALID_REQUEST = "invalid_request"
    INTERRUPTED = "interrupted"


class RejectionReason(str, Enum):
    """Sub-kind of PROVIDER_REJECTED."""

    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    CONTEXT_LENGTH = "context_length"
    CONTENT_POLICY = "content_policy"
    OVERLOADED = "overloaded"
    OTHER = "other"


class ChatError(Exception):
    """Base exception for all chat-core errors."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(
        self,
        detail: str = "",
        *,
        reason: RejectionReason | None = None,
    ) -> None:
        super().__init__(detail or self.kind.value)
        self.detail = detail
        self.reason = reason

    def describe(self) -> str:
        return describe_failure(self.kind, self.reason, self.detail)


# -----------------------------------------------------------------------------
# Validation errors (raised before any network call)
# -----------------------------------------------------------------------------

class UnknownProviderKind(ChatError):
    kind = ErrorKind.UNKNOWN_PROVIDER_KIND


class MissingCredential(ChatError):
    kind = ErrorKind.MISSING_CREDENTIAL


class UnsupportedAttachment(ChatError):
    kind = ErrorKind.UNSUPPORTED_ATTACHMENT


class TurnInProgress(ChatError):
    kind = ErrorKind.TURN_IN_PROGRESS

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"conversation '{conversation_id}' already has a turn in progress")
        self.conversation_id = conversation_id


class InvalidRequest(ChatError):
    kind = ErrorKind.INVALID_REQUEST


# -----------------------------------------------------------------------------
# Lookup errors
# -----------------------------------------------------------------------------

class NotFound(ChatError):
    """Resource was not found."""

    resource_type = "resource"

    def __init__(self, identifier: str) -> None:
        super().__init__(f"{self.resource_type} '{identifier}' not found")
        self.identifier = identifier


class UnknownConversation(NotFound):
    kind = ErrorKind.UNKNOWN_CONVERSATION
    resource_type = "conversation"


class UnknownMessage(NotFound):
    kind = ErrorKind.UNKNOWN_MESSAGE
    resource_type = "message"


class UnknownAccount(NotFound):
    kind = ErrorKind.UNKNOWN_ACCOUNT
    resource_type = "account"


# -----------------------------------------------------------------------------
# Provider / transport / storage errors
# -----------------------------------------------------------------------------

class NetworkError(ChatError):
    kind = ErrorKind.NETWORK


class ProviderRejected(ChatError):
    kind = ErrorKind.PROVIDER_REJECTED

    def __init__(self, detail: str = "", *, reason: RejectionReason = RejectionReason.OTHER) -> None:
        super().__init__(detail, reason=reason)


class ProviderTimeout(ChatError):
    kind = ErrorKind.TIMEOUT


class StorageFailure(ChatError):
    kind = ErrorKind.STORAGE_FAILURE


_ERROR_CLASSES: dict[ErrorKind, type[ChatError]] = {
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.PROVIDER_REJECTED: ProviderRejected,
    ErrorKind.TIMEOUT: ProviderTimeout,
    ErrorKind.STORAGE_FAILURE: StorageFailure,
    ErrorKind.UNSUPPORTED_ATTACHMENT: UnsupportedAttachment,
    ErrorKind.MISSING_CREDENTIAL: MissingCredential,
    ErrorKind.UNKNOWN_PROVIDER_KIND: UnknownProviderKind,
    ErrorKind.INVALID_REQUEST: InvalidRequest,
}


def error_from_kind(
    kind: ErrorKind,
    detail: str = "",
    reason: RejectionReason | None = None,
) -> ChatError:
    """Build the exception matching a kind carried by a StreamError."""
    cls = _ERROR_CLASSES.get(kind, ChatError)
    if cls is ProviderRejected:
        return ProviderRejected(detail, reason=reason or RejectionReason.OTHER)
    err = cls(detail, reason=reason)
    err.kind = kind
    return err


# -----------------------------------------------------------------------------
# Human-readable causes
# -----------------------------------------------------------------------------

_CAUSES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "No network connection",
    ErrorKind.PROVIDER_REJECTED: "Provider refused the request",
    ErrorKind.TIMEOUT: "Timed out waiting for the provider",
    ErrorKind.STORAGE_FAILURE: "Could not save the response",
    ErrorKind.INTERRUPTED: "Response was interrupted before it finished",
    ErrorKind.UNKNOWN_PROVIDER_KIND: "Account has an unknown provider",
    ErrorKind.MISSING_CREDENTIAL: "No API key is stored for this account",
    ErrorKind.UNSUPPORTED_ATTACHMENT: "This provider does not accept images",
}


def describe_failure(
    kind: ErrorKind | str,
    reason: RejectionReason | str | None = None,
    detail: str | None = None,
) -> str:
    """
    Human-readable cause for a failed turn.

    Always distinguishes network, provider refusal (with sub-reason),
    timeout and storage failures; never a bare generic message.
    """
    kind = ErrorKind(kind)
    cause = _CAUSES.get(kind, kind.value.replace("_", " ").capitalize())
    if kind is ErrorKind.PROVIDER_REJECTED and reason:
        cause = f"{cause} ({RejectionReason(reason).value.replace('_', ' ')})"
    if detail:
        return f"{cause}: {detail}"
    return cause
