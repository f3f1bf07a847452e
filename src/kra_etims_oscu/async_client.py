import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx

from .auth import GRANT_PARAMS, cached_token_for, parse_token_response, require_credentials
from .cache import TokenCache
from .client import extract_cmc_key
from .config import EtimsConfig
from .exceptions import (
    TOKEN_EXPIRED,
    AmbiguousStateError,
    ConfigurationError,
    KRAeTIMSApiError,
    KRAeTIMSAuthError,
    TransportError,
)
from .pipeline import (
    METHODS,
    RawResponse,
    RequestContext,
    build_headers,
    is_token_expired,
    resolve_endpoint,
    unwrap,
)
from .validator import Validator

logger = logging.getLogger(__name__)


class AsyncTokenProvider:
    """
    Async counterpart of TokenProvider; an asyncio.Lock serializes refreshes per event loop.
    Cache file I/O runs in a worker thread so the loop is never blocked on disk.
    """

    def __init__(self, config: EtimsConfig, cache: Optional[TokenCache] = None,
                 client: Optional[httpx.AsyncClient] = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.cache = cache or TokenCache(config.cache_file)
        self._client = client or httpx.AsyncClient(timeout=config.http.timeout)
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get_token(self, force_refresh: bool = False) -> str:
        async with self._lock:
            if not force_refresh:
                cached = await asyncio.to_thread(self.cache.read)
                if cached is not None and self._clock() < cached.expires_at:
                    return cached.access_token

            access_token, expires_in = await self._fetch_token()
            token = cached_token_for(access_token, expires_in, self._clock())
            await asyncio.to_thread(self.cache.write, token)
            logger.info("Fetched KRA access token for env [%s], valid until %s", self.config.env, token.expires_at)
            return token.access_token

    async def clear_token(self) -> None:
        await asyncio.to_thread(self.cache.clear)

    async def _fetch_token(self) -> Tuple[str, int]:
        credentials = require_credentials(self.config)
        try:
            resp = await self._client.get(
                self.config.active_urls.token_url,
                params=GRANT_PARAMS,
                auth=(credentials.consumer_key, credentials.consumer_secret),
                headers={"Accept": "application/json"},
                timeout=self.config.http.timeout,
            )
        except httpx.RequestError as e:
            raise KRAeTIMSAuthError(f"Token endpoint unreachable: {e}", status_code=None) from e
        return parse_token_response(resp.status_code, resp.text)


class AsyncRequestPipeline:
    """Non-blocking RequestPipeline for frameworks like FastAPI."""

    def __init__(self, config: EtimsConfig, token_provider: AsyncTokenProvider,
                 client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.tokens = token_provider
        self._client = client or httpx.AsyncClient(timeout=config.http.timeout)

    async def get(self, endpoint_key: str, query: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.execute("GET", endpoint_key, query)

    async def post(self, endpoint_key: str, body: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.execute("POST", endpoint_key, body)

    async def execute(self, method: str, endpoint_key: str, payload: Optional[Mapping[str, Any]] = None) -> Any:
        method = method.upper()
        if method not in METHODS:
            raise ConfigurationError(f"Unsupported HTTP method [{method}]")
        path = resolve_endpoint(self.config.endpoints, endpoint_key)
        payload = dict(payload or {})

        response = await self._dispatch(RequestContext(method, endpoint_key, path, payload))
        if is_token_expired(response):
            logger.info("Access token rejected on [%s], refreshing and retrying once", endpoint_key)
            await self.tokens.clear_token()
            await self.tokens.get_token(force_refresh=True)
            response = await self._dispatch(RequestContext(method, endpoint_key, path, payload, attempt=2))
            if is_token_expired(response):
                raise KRAeTIMSAuthError(
                    "Access token still rejected after refresh", status_code=401, error_code=TOKEN_EXPIRED
                )

        return unwrap(response, self.config.success_codes)

    async def _dispatch(self, ctx: RequestContext) -> RawResponse:
        url = f"{self.config.active_urls.base_url}{ctx.path}"
        headers = build_headers(self.config, await self.tokens.get_token(), ctx.endpoint_key)
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.config.http.timeout}
        if ctx.method == "GET":
            kwargs["params"] = dict(ctx.payload) or None
        else:
            kwargs["content"] = json.dumps(ctx.payload)

        logger.debug("%s %s (attempt %d)", ctx.method, url, ctx.attempt)
        try:
            resp = await self._client.request(ctx.method, url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Nothing reached KRA
            raise TransportError(f"KRA eTIMS unreachable: {e}") from e
        except httpx.RequestError as e:
            if ctx.method == "POST":
                raise AmbiguousStateError() from e
            raise TransportError(f"Request failed: {e}") from e

        return RawResponse.parse(resp.status_code, resp.text)


class AsyncKRAeTIMSClient:
    """
    Asynchronous SDK for the KRA eTIMS OSCU API.
    Same operations as KRAeTIMSClient, awaited.
    """

    def __init__(self, config: EtimsConfig, token_provider: Optional[AsyncTokenProvider] = None,
                 pipeline: Optional[AsyncRequestPipeline] = None, validator: Optional[Validator] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.http.timeout)
        self.auth = token_provider or AsyncTokenProvider(config, client=self._client)
        self.pipeline = pipeline or AsyncRequestPipeline(config, self.auth, client=self._client)
        self.validator = validator or Validator()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        """Close the underlying httpx client, if this client created it."""
        if self._owns_client:
            await self._client.aclose()

    def with_cmc_key(self, cmc_key: str) -> "AsyncKRAeTIMSClient":
        """
        New client bound to a config carrying `cmc_key`. It borrows this
        client's httpx client, which stays open until this client is closed.
        """
        return AsyncKRAeTIMSClient(
            self.config.with_cmc_key(cmc_key),
            token_provider=self.auth,
            validator=self.validator,
            client=self._client,
        )

    async def initialize(self, data: Mapping[str, Any]) -> "AsyncKRAeTIMSClient":
        response = await self.select_init_osdc_info(data)
        cmc_key = extract_cmc_key(response)
        if not cmc_key:
            raise KRAeTIMSApiError(
                "Initialization succeeded but no cmcKey was returned", status_code=None, response_body=response
            )
        return self.with_cmc_key(cmc_key)

    async def _submit(self, endpoint_key: str, schema: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.pipeline.post(endpoint_key, self.validator.validate(data, schema))

    async def select_init_osdc_info(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectInitOsdcInfo", "initialization", data)

    async def select_code_list(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectCodeList", "lastReqOnly", data)

    async def select_notice_list(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectNoticeList", "lastReqOnly", data)

    async def select_customer(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectCustomer", "selectCustomer", data)

    async def select_branches(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectBhfList", "lastReqOnly", data)

    async def save_branch_customer(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveBhfCustomer", "saveBhfCustomer", data)

    async def save_branch_user(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveBhfUser", "saveBhfUser", data)

    async def save_branch_insurance(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveBhfInsurance", "saveBhfInsurance", data)

    async def select_item_classes(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectItemClsList", "lastReqOnly", data)

    async def select_items(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectItemList", "lastReqOnly", data)

    async def save_item(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveItem", "saveItem", data)

    async def save_item_composition(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveItemComposition", "saveItemComposition", data)

    async def select_imported_items(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectImportItemList", "lastReqOnly", data)

    async def update_imported_item(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("updateImportItem", "updateImportItem", data)

    async def select_purchases(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectTrnsPurchaseSalesList", "lastReqOnly", data)

    async def save_purchase(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("insertTrnsPurchase", "insertTrnsPurchase", data)

    async def save_sales_transaction(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveTrnsSalesOsdc", "saveTrnsSalesOsdc", data)

    async def select_stock_movement(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("selectStockMoveList", "lastReqOnly", data)

    async def save_stock_io(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("insertStockIO", "insertStockIO", data)

    async def save_stock_master(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._submit("saveStockMaster", "saveStockMaster", data)
