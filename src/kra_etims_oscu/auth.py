import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from .cache import CachedToken, TokenCache
from .config import Credentials, EtimsConfig
from .exceptions import KRAeTIMSAuthError

logger = logging.getLogger(__name__)

# Seconds subtracted from the reported lifetime so a token is never used mid-expiry
TOKEN_EXPIRY_BUFFER = 60
DEFAULT_EXPIRES_IN = 3600
GRANT_PARAMS = {"grant_type": "client_credentials"}


def require_credentials(config: EtimsConfig) -> Credentials:
    credentials = config.credentials
    if credentials is None:
        raise KRAeTIMSAuthError(f"Auth config missing for env [{config.env}]", status_code=500)
    return credentials


def parse_token_response(status_code: int, text: str) -> Tuple[str, int]:
    """
    Extracts (access_token, expires_in) from a token endpoint response.
    KRA reports failures as {"errorCode": ..., "errorMessage": ...}, sometimes with HTTP 200.
    """
    try:
        data: Any = json.loads(text) if text else {}
    except ValueError:
        data = None

    if not 200 <= status_code < 300:
        message = text or f"HTTP {status_code}"
        error_code = None
        if isinstance(data, dict):
            message = data.get("errorMessage") or message
            error_code = data.get("errorCode")
        raise KRAeTIMSAuthError(f"Token request failed: {message}", status_code=status_code, error_code=error_code)

    if not isinstance(data, dict):
        raise KRAeTIMSAuthError("Invalid token response from KRA: body is not a JSON object", status_code=status_code)

    if data.get("errorCode"):
        raise KRAeTIMSAuthError(
            data.get("errorMessage") or "Authentication failed",
            status_code=400,
            error_code=str(data["errorCode"]),
        )

    access_token = data.get("access_token")
    if not access_token:
        raise KRAeTIMSAuthError("Invalid token response from KRA: access_token missing", status_code=status_code)

    raw_expires_in = data.get("expires_in")
    if raw_expires_in is None or raw_expires_in == "":
        raw_expires_in = DEFAULT_EXPIRES_IN
    try:
        # KRA sends the lifetime as a number or a string such as "3599" or "3600.0"
        expires_in = int(float(raw_expires_in))
    except (TypeError, ValueError, OverflowError):
        raise KRAeTIMSAuthError(
            f"Invalid token response from KRA: expires_in [{data.get('expires_in')}]", status_code=status_code
        )
    return access_token, expires_in


def cached_token_for(access_token: str, expires_in: int, now: float) -> CachedToken:
    return CachedToken(access_token=access_token, expires_at=int(now) + expires_in - TOKEN_EXPIRY_BUFFER)


class TokenProvider:
    """
    OAuth2 client-credentials token source backed by a TokenCache.

    The in-process lock serializes read-check-fetch-write for threads sharing
    this provider; separate processes sharing the cache file may still race,
    which costs at most one extra token fetch.
    """

    def __init__(self, config: EtimsConfig, cache: Optional[TokenCache] = None,
                 session: Optional[requests.Session] = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.cache = cache or TokenCache(config.cache_file)
        self._session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()

    def get_token(self, force_refresh: bool = False) -> str:
        with self._lock:
            if not force_refresh:
                cached = self.cache.read()
                if cached is not None and self._clock() < cached.expires_at:
                    return cached.access_token

            access_token, expires_in = self._fetch_token()
            token = cached_token_for(access_token, expires_in, self._clock())
            self.cache.write(token)
            logger.info("Fetched KRA access token for env [%s], valid until %s", self.config.env, token.expires_at)
            return token.access_token

    def clear_token(self) -> None:
        self.cache.clear()

    def _fetch_token(self) -> Tuple[str, int]:
        credentials = require_credentials(self.config)
        headers: Dict[str, str] = {"Accept": "application/json"}
        try:
            resp = self._session.get(
                self.config.active_urls.token_url,
                params=GRANT_PARAMS,
                auth=(credentials.consumer_key, credentials.consumer_secret),
                headers=headers,
                timeout=self.config.http.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise KRAeTIMSAuthError(f"Token endpoint unreachable: {e}", status_code=None) from e
        return parse_token_response(resp.status_code, resp.text)
