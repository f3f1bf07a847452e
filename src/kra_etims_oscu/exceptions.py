import re
from enum import Enum
from typing import Any, Dict, List, Optional

TOKEN_EXPIRED = "TOKEN_EXPIRED"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    API = "api"


class KRAeTIMSError(Exception):
    """Base exception for all KRA eTIMS OSCU SDK errors."""
    kind = ErrorKind.API

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Plain structure safe for logging or re-exposing through an API."""
        return {"kind": self.kind.value, "message": self.message, "details": self.details}


class KRAeTIMSValidationError(KRAeTIMSError):
    """
    Raised before any network call when a payload does not match its schema.
    `errors` holds one "field: reason" entry per violation, in order.
    """
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str = "Validation failed", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    @property
    def details(self) -> Dict[str, Any]:
        return {"errors": list(self.errors)}

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: " + "; ".join(self.errors)


class KRAeTIMSAuthError(KRAeTIMSError):
    """Raised when token acquisition fails or a refreshed token is still rejected."""
    kind = ErrorKind.AUTHENTICATION

    def __init__(self, message: str = "Authentication failed", status_code: Optional[int] = 401,
                 error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_token_expired(self) -> bool:
        if self.status_code != 401:
            return False
        return self.error_code == TOKEN_EXPIRED or bool(re.search(r"token.*expired", self.message, re.IGNORECASE))

    @property
    def details(self) -> Dict[str, Any]:
        return {"status_code": self.status_code, "error_code": self.error_code}


class KRAeTIMSApiError(KRAeTIMSError):
    """
    Raised for a non-success business result code or a non-2xx HTTP status.
    Callers branch on `error_code`; the subclasses only sharpen the message.
    """
    kind = ErrorKind.API

    def __init__(self, message: str, status_code: Optional[int] = 400, error_code: Optional[str] = None,
                 response_body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.response_body = response_body

    @property
    def details(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "error_code": self.error_code,
            "response_body": self.response_body,
        }


class KRAeTIMSClientError(KRAeTIMSApiError):
    """Result codes 891-899: the request was rejected as malformed by KRA."""


class KRAeTIMSServerError(KRAeTIMSApiError):
    """Result codes 900 and above: KRA failed to process the request."""


class KRAeTIMSBusinessError(KRAeTIMSApiError):
    """Any other non-success result code."""


class TransportError(KRAeTIMSApiError):
    """
    Raised when no HTTP response was received (connection refused, DNS, timeout).
    Never retried automatically.
    """

    def __init__(self, message: str = "KRA eTIMS unreachable: no response received."):
        super().__init__(message, status_code=None)


class AmbiguousStateError(TransportError):
    """
    Raised when a write request was sent but the connection dropped before a
    response arrived. Whether KRA recorded it is unknown; reconcile before resubmitting.
    """

    def __init__(self, message: str = "KRA eTIMS ambiguous state: request sent but no response was received."):
        super().__init__(message)


class ConfigurationError(KRAeTIMSApiError):
    """Raised for an unknown or path-like endpoint key, or incomplete configuration."""

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class UnknownSchemaError(LookupError):
    """Programming error: a validation schema was requested by a name that does not exist."""
