from __future__ import annotations

from enum import Enum


class AskGateError(Exception):
    """Request-level failure rendered as a vendor error body or a terminal stream event."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_body(self) -> dict:
        return {"type": "error", "error": {"type": self.error_type, "message": self.message}}


class MalformedRequest(AskGateError):
    status_code = 400
    error_type = "invalid_request_error"


class CapabilityMismatch(AskGateError):
    status_code = 400
    error_type = "invalid_request_error"


class Unauthorized(AskGateError):
    status_code = 401
    error_type = "authentication_error"


class ModelNotFound(AskGateError):
    status_code = 404
    error_type = "not_found_error"


class ProtocolViolation(AskGateError):
    """An internal streaming invariant was broken. Never retried."""

    status_code = 500
    error_type = "api_error"


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    OVERLOADED = "overloaded"
    UNAVAILABLE = "unavailable"
    BAD_RESPONSE = "bad_response"
    TRANSPORT = "transport"
    NOT_CONFIGURED = "not_configured"


_PROVIDER_STATUS: dict[ProviderErrorKind, tuple[int, str]] = {
    ProviderErrorKind.AUTH: (502, "api_error"),
    ProviderErrorKind.RATE_LIMIT: (429, "rate_limit_error"),
    ProviderErrorKind.TIMEOUT: (504, "timeout_error"),
    ProviderErrorKind.OVERLOADED: (529, "overloaded_error"),
    ProviderErrorKind.UNAVAILABLE: (502, "api_error"),
    ProviderErrorKind.BAD_RESPONSE: (502, "api_error"),
    ProviderErrorKind.TRANSPORT: (502, "api_error"),
    ProviderErrorKind.NOT_CONFIGURED: (501, "api_error"),
}


class ProviderError(AskGateError):
    """Failure surfaced by the provider abstraction (network, auth, rate limit, backend)."""

    def __init__(self, kind: ProviderErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code, self.error_type = _PROVIDER_STATUS[kind]


class SchemaConversionError(Exception):
    """A tool schema uses a construct the native schema cannot express."""

    def __init__(self, reason: str, path: str) -> None:
        super().__init__(f"{reason} at '{path or '<root>'}'")
        self.reason = reason
        self.path = path


def malformed_request(detail: str) -> MalformedRequest:
    return MalformedRequest(detail)


def unauthorized(detail: str = "Unauthorized") -> Unauthorized:
    return Unauthorized(detail)


def gateway_timeout(detail: str = "Gateway timeout") -> ProviderError:
    return ProviderError(ProviderErrorKind.TIMEOUT, detail)


def not_configured(detail: str = "Provider is not configured") -> ProviderError:
    return ProviderError(ProviderErrorKind.NOT_CONFIGURED, detail)
