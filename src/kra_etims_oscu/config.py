import os
from typing import Dict, FrozenSet, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigurationError

SANDBOX = "sbx"
PRODUCTION = "prod"

INIT_ENDPOINT_KEY = "selectInitOsdcInfo"

DEFAULT_ENDPOINTS: Dict[str, str] = {
    "selectInitOsdcInfo": "/selectInitOsdcInfo",
    "selectCodeList": "/selectCodeList",
    "selectCustomer": "/selectCustomer",
    "selectNoticeList": "/selectNoticeList",
    "selectItemClsList": "/selectItemClsList",
    "selectItemList": "/selectItemList",
    "saveItem": "/saveItem",
    "saveItemComposition": "/saveItemComposition",
    "selectBhfList": "/selectBhfList",
    "saveBhfCustomer": "/saveBhfCustomer",
    "saveBhfUser": "/saveBhfUser",
    "saveBhfInsurance": "/saveBhfInsurance",
    "selectImportItemList": "/selectImportItemList",
    "updateImportItem": "/updateImportItem",
    "saveTrnsSalesOsdc": "/saveTrnsSalesOsdc",
    "selectTrnsPurchaseSalesList": "/selectTrnsPurchaseSalesList",
    "insertTrnsPurchase": "/insertTrnsPurchase",
    "selectStockMoveList": "/selectStockMoveList",
    "insertStockIO": "/insertStockIO",
    "saveStockMaster": "/saveStockMaster",
}

DEFAULT_SUCCESS_CODES = frozenset({"000", "001"})


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Credentials(FrozenModel):
    consumer_key: str = Field(..., min_length=1)
    consumer_secret: str = Field(..., min_length=1)


class EnvironmentUrls(FrozenModel):
    token_url: str
    base_url: str

    @field_validator("token_url", "base_url")
    @classmethod
    def _sanitize(cls, value: str) -> str:
        # Trailing whitespace in KRA URLs produces silent signature failures
        return value.strip().rstrip("/")


DEFAULT_URLS: Dict[str, EnvironmentUrls] = {
    SANDBOX: EnvironmentUrls(
        token_url="https://sbx.kra.go.ke/v1/token/generate",
        base_url="https://etims-api-sbx.kra.go.ke/etims-api",
    ),
    PRODUCTION: EnvironmentUrls(
        token_url="https://api.kra.go.ke/v1/token/generate",
        base_url="https://etims-api.kra.go.ke/etims-api",
    ),
}


class OscuIdentity(FrozenModel):
    tin: str = Field(..., description="Taxpayer Identification Number")
    bhf_id: str = Field(..., description="Branch ID")
    cmc_key: Optional[str] = Field(None, description="Communication key issued by selectInitOsdcInfo")


class HttpSettings(FrozenModel):
    timeout: float = Field(30.0, gt=0, description="Seconds")


class EtimsConfig(FrozenModel):
    """
    Immutable configuration snapshot for one OSCU integration.

    A newly issued communication key produces a new snapshot through
    `with_cmc_key`; existing clients keep the snapshot they were built with.
    """
    env: Literal["sbx", "prod"] = SANDBOX
    auth: Dict[str, Credentials]
    oscu: OscuIdentity
    urls: Dict[str, EnvironmentUrls] = Field(default_factory=lambda: dict(DEFAULT_URLS))
    endpoints: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))
    init_endpoint_key: str = INIT_ENDPOINT_KEY
    success_codes: FrozenSet[str] = DEFAULT_SUCCESS_CODES
    cache_file: Optional[str] = None
    http: HttpSettings = Field(default_factory=HttpSettings)

    @field_validator("endpoints")
    @classmethod
    def _check_endpoints(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key, path in value.items():
            if key.startswith("/"):
                raise ValueError(f"endpoint key [{key}] must not be a path")
            if not path.startswith("/"):
                raise ValueError(f"endpoint path for [{key}] must start with '/'")
        return value

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.auth.get(self.env)

    @property
    def active_urls(self) -> EnvironmentUrls:
        try:
            return self.urls[self.env]
        except KeyError:
            raise ConfigurationError(f"URLs not configured for env [{self.env}]")

    def with_cmc_key(self, cmc_key: str) -> "EtimsConfig":
        oscu = self.oscu.model_copy(update={"cmc_key": cmc_key})
        return self.model_copy(update={"oscu": oscu})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EtimsConfig":
        """
        Builds a snapshot from KRA_* environment variables.
        Priority: environment variable > built-in default.
        """
        environ = os.environ if environ is None else environ

        def read(name: str, default: Optional[str] = None) -> Optional[str]:
            value = (environ.get(name) or "").strip()
            return value or default

        def require(name: str) -> str:
            value = read(name)
            if value is None:
                raise ConfigurationError(f"Missing required environment variable: {name}")
            return value

        env = read("KRA_ENV", SANDBOX)
        if env not in (SANDBOX, PRODUCTION):
            raise ConfigurationError(f"KRA_ENV must be '{SANDBOX}' or '{PRODUCTION}', got [{env}]")

        defaults = DEFAULT_URLS[env]
        urls = dict(DEFAULT_URLS)
        urls[env] = EnvironmentUrls(
            token_url=read("KRA_TOKEN_URL", defaults.token_url),
            base_url=read("KRA_BASE_URL", defaults.base_url),
        )

        timeout = read("KRA_HTTP_TIMEOUT")
        try:
            http = HttpSettings(timeout=float(timeout)) if timeout else HttpSettings()
        except ValueError:
            raise ConfigurationError(f"KRA_HTTP_TIMEOUT must be a positive number, got [{timeout}]")

        return cls(
            env=env,
            auth={
                env: Credentials(
                    consumer_key=require("KRA_CONSUMER_KEY"),
                    consumer_secret=require("KRA_CONSUMER_SECRET"),
                )
            },
            oscu=OscuIdentity(
                tin=require("KRA_TIN"),
                bhf_id=read("KRA_BHF_ID", "00"),
                cmc_key=read("KRA_CMC_KEY"),
            ),
            urls=urls,
            cache_file=read("KRA_TOKEN_CACHE_FILE"),
            http=http,
        )
