import pytest

from kra_etims_oscu.cache import CachedToken, TokenCache
from kra_etims_oscu.config import Credentials, EtimsConfig, OscuIdentity

BASE = "https://etims-api-sbx.kra.go.ke/etims-api"
TOKEN_URL = "https://sbx.kra.go.ke/v1/token/generate"
FAR_FUTURE = 9999999999


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def cache_file(tmp_path):
    return str(tmp_path / "kra" / "token.json")


@pytest.fixture
def config(cache_file) -> EtimsConfig:
    return EtimsConfig(
        env="sbx",
        auth={"sbx": Credentials(consumer_key="test_key", consumer_secret="test_secret")},
        oscu=OscuIdentity(tin="P000000000X", bhf_id="00", cmc_key="CMC-123"),
        cache_file=cache_file,
    )


@pytest.fixture
def seeded_cache(config) -> TokenCache:
    """Token cache already holding a valid token, so no token fetch is needed."""
    cache = TokenCache(config.cache_file)
    cache.write(CachedToken(access_token="cached-token", expires_at=FAR_FUTURE))
    return cache


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
