import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

import requests

from .auth import TokenProvider
from .config import EtimsConfig
from .exceptions import (
    TOKEN_EXPIRED,
    AmbiguousStateError,
    ConfigurationError,
    KRAeTIMSApiError,
    KRAeTIMSAuthError,
    KRAeTIMSBusinessError,
    KRAeTIMSClientError,
    KRAeTIMSServerError,
    TransportError,
)

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST")
TOKEN_FAULT_PATTERN = re.compile(r"access token expired|invalid token", re.IGNORECASE)
CLIENT_ERROR_CODES = range(891, 900)
SERVER_ERROR_FLOOR = 900


@dataclass(frozen=True)
class RequestContext:
    """One dispatch attempt. A retry builds a fresh context."""
    method: str
    endpoint_key: str
    path: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class RawResponse:
    status_code: int
    text: str
    body: Any = None  # parsed JSON, None when the body is empty or not JSON
    malformed: bool = False

    @classmethod
    def parse(cls, status_code: int, text: str) -> "RawResponse":
        if not text or not text.strip():
            return cls(status_code, text or "", {})
        try:
            return cls(status_code, text, json.loads(text))
        except ValueError:
            return cls(status_code, text, None, malformed=True)


def resolve_endpoint(endpoints: Mapping[str, str], key: str) -> str:
    if key.startswith("/"):
        raise ConfigurationError(f"Endpoint key expected, path given [{key}]. Pass endpoint keys only.")
    try:
        return endpoints[key]
    except KeyError:
        raise ConfigurationError(f"Endpoint [{key}] not configured") from None


def build_headers(config: EtimsConfig, token: str, endpoint_key: str) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    # The initialization call is what issues cmcKey, so it cannot carry one
    if endpoint_key == config.init_endpoint_key:
        return headers
    headers.update({
        "tin": config.oscu.tin or "",
        "bhfId": config.oscu.bhf_id or "",
        "cmcKey": config.oscu.cmc_key or "",
    })
    return headers


def _fault_string(body: Any) -> str:
    if isinstance(body, dict) and isinstance(body.get("fault"), dict):
        return str(body["fault"].get("faultstring") or "")
    return ""


def is_token_expired(response: RawResponse) -> bool:
    if response.status_code == 401:
        return True
    return bool(TOKEN_FAULT_PATTERN.search(_fault_string(response.body)))


def _result_message(body: Any, default: str) -> str:
    if isinstance(body, dict) and body.get("resultMsg"):
        return str(body["resultMsg"])
    return _fault_string(body) or default


def classify_result_code(result_cd: str, message: str, body: Any) -> KRAeTIMSApiError:
    code = int(result_cd) if result_cd.isdigit() else None
    if code in CLIENT_ERROR_CODES:
        return KRAeTIMSClientError(f"Client Error ({result_cd}): {message}", 400, result_cd, body)
    if code is not None and code >= SERVER_ERROR_FLOOR:
        return KRAeTIMSServerError(f"Server Error ({result_cd}): {message}", 500, result_cd, body)
    return KRAeTIMSBusinessError(f"Business Error ({result_cd}): {message}", 400, result_cd, body)


def unwrap(response: RawResponse, success_codes: FrozenSet[str]) -> Any:
    """
    Turns a raw response into the success body or raises; first match wins:
    401, non-2xx, unparseable body, no resultCd, success resultCd, other resultCd.
    """
    status, body = response.status_code, response.body

    if status == 401:
        raise KRAeTIMSAuthError("Unauthorized: Invalid or expired token", status_code=401)

    if not 200 <= status < 300:
        message = _result_message(body, response.text.strip()[:200] or "Unknown API response")
        raise KRAeTIMSApiError(f"HTTP Error ({status}): {message}", status, response_body=body)

    if response.malformed:
        raise KRAeTIMSApiError(
            f"Malformed response from KRA (HTTP {status}): body is not valid JSON", status,
            response_body=response.text,
        )

    result_cd = body.get("resultCd") if isinstance(body, dict) else None
    if result_cd is None or result_cd == "":
        # Some endpoints omit the business envelope entirely
        return body

    result_cd = str(result_cd)
    if result_cd in success_codes:
        return body

    raise classify_result_code(result_cd, _result_message(body, "Unknown API response"), body)


class RequestPipeline:
    """
    Authenticated dispatcher for OSCU endpoints.
    Performs at most one transparent retry, and only after a token-expiry signal.
    """

    def __init__(self, config: EtimsConfig, token_provider: TokenProvider,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.tokens = token_provider
        self._session = session or requests.Session()

    def get(self, endpoint_key: str, query: Optional[Mapping[str, Any]] = None) -> Any:
        return self.execute("GET", endpoint_key, query)

    def post(self, endpoint_key: str, body: Optional[Mapping[str, Any]] = None) -> Any:
        return self.execute("POST", endpoint_key, body)

    def execute(self, method: str, endpoint_key: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        method = method.upper()
        if method not in METHODS:
            raise ConfigurationError(f"Unsupported HTTP method [{method}]")
        path = resolve_endpoint(self.config.endpoints, endpoint_key)
        payload = dict(payload or {})

        response = self._dispatch(RequestContext(method, endpoint_key, path, payload))
        if is_token_expired(response):
            logger.info("Access token rejected on [%s], refreshing and retrying once", endpoint_key)
            self.tokens.clear_token()
            self.tokens.get_token(force_refresh=True)
            response = self._dispatch(RequestContext(method, endpoint_key, path, payload, attempt=2))
            if is_token_expired(response):
                raise KRAeTIMSAuthError(
                    "Access token still rejected after refresh", status_code=401, error_code=TOKEN_EXPIRED
                )

        return unwrap(response, self.config.success_codes)

    def _dispatch(self, ctx: RequestContext) -> RawResponse:
        url = f"{self.config.active_urls.base_url}{ctx.path}"
        headers = build_headers(self.config, self.tokens.get_token(), ctx.endpoint_key)
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.config.http.timeout}
        if ctx.method == "GET":
            kwargs["params"] = ctx.payload or None
        else:
            kwargs["data"] = json.dumps(ctx.payload)

        logger.debug("%s %s (attempt %d)", ctx.method, url, ctx.attempt)
        try:
            resp = self._session.request(ctx.method, url, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            # A write may have reached KRA before the connection dropped
            if ctx.method == "POST":
                raise AmbiguousStateError() from e
            raise TransportError(f"KRA eTIMS unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        return RawResponse.parse(resp.status_code, resp.text)
