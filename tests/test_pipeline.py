import json

import pytest
import requests
import responses

from conftest import BASE, TOKEN_URL
from kra_etims_oscu.auth import TokenProvider
from kra_etims_oscu.exceptions import (
    AmbiguousStateError,
    ConfigurationError,
    KRAeTIMSApiError,
    KRAeTIMSAuthError,
    KRAeTIMSBusinessError,
    KRAeTIMSClientError,
    KRAeTIMSServerError,
    TransportError,
)
from kra_etims_oscu.pipeline import RawResponse, RequestPipeline, is_token_expired, unwrap

SAVE_ITEM_URL = f"{BASE}/saveItem"
INIT_URL = f"{BASE}/selectInitOsdcInfo"
CODE_LIST_URL = f"{BASE}/selectCodeList"


@pytest.fixture
def pipeline(config, seeded_cache, clock):
    return RequestPipeline(config, TokenProvider(config, cache=seeded_cache, clock=clock))


def _business_calls(url):
    return [c for c in responses.calls if c.request.url.startswith(url)]


def _token_calls():
    return [c for c in responses.calls if c.request.url.startswith(TOKEN_URL)]


# ---------------------------------------------------------------------------
# Headers & encoding
# ---------------------------------------------------------------------------

@responses.activate
def test_business_endpoint_receives_identity_headers(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, json={"resultCd": "000"}, status=200)

    pipeline.post("saveItem", {"itemCd": "X"})

    headers = responses.calls[0].request.headers
    assert headers["Authorization"] == "Bearer cached-token"
    assert headers["Content-Type"] == "application/json"
    assert headers["Accept"] == "application/json"
    assert headers["tin"] == "P000000000X"
    assert headers["bhfId"] == "00"
    assert headers["cmcKey"] == "CMC-123"


@responses.activate
def test_initialization_endpoint_omits_identity_headers(pipeline):
    """
    The initialization call issues cmcKey, so it must go out with the bearer token only.
    """
    responses.add(responses.POST, INIT_URL, json={"resultCd": "000"}, status=200)

    pipeline.post("selectInitOsdcInfo", {"tin": "P000000000X", "bhfId": "00", "dvcSrlNo": "D1"})

    headers = responses.calls[0].request.headers
    assert headers["Authorization"] == "Bearer cached-token"
    for name in ("tin", "bhfId", "cmcKey"):
        assert name not in headers


@responses.activate
def test_missing_cmc_key_is_sent_empty(config, seeded_cache, clock):
    no_key = config.model_copy(update={"oscu": config.oscu.model_copy(update={"cmc_key": None})})
    responses.add(responses.POST, SAVE_ITEM_URL, json={"resultCd": "000"}, status=200)

    RequestPipeline(no_key, TokenProvider(no_key, cache=seeded_cache, clock=clock)).post("saveItem", {})

    assert responses.calls[0].request.headers["cmcKey"] == ""


@responses.activate
def test_post_sends_json_body(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, json={"resultCd": "000"}, status=200)

    pipeline.post("saveItem", {"itemCd": "KE1", "dftPrc": 100.5})

    assert json.loads(responses.calls[0].request.body) == {"itemCd": "KE1", "dftPrc": 100.5}


@responses.activate
def test_get_encodes_payload_as_query_string(pipeline):
    responses.add(responses.GET, CODE_LIST_URL, json={"resultCd": "000"}, status=200)

    pipeline.get("selectCodeList", {"lastReqDt": "20240101000000"})

    request = responses.calls[0].request
    assert request.url == f"{CODE_LIST_URL}?lastReqDt=20240101000000"
    assert not request.body


# ---------------------------------------------------------------------------
# Endpoint descriptor
# ---------------------------------------------------------------------------

@responses.activate
def test_unknown_endpoint_key_fails_before_network(pipeline):
    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.post("deleteEverything", {})

    assert "not configured" in excinfo.value.message
    assert excinfo.value.status_code == 500
    assert len(responses.calls) == 0


@responses.activate
def test_path_like_key_is_rejected(pipeline):
    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.post("/saveItem", {})

    assert "path given" in excinfo.value.message
    assert len(responses.calls) == 0


def test_unsupported_method_is_rejected(pipeline):
    with pytest.raises(ConfigurationError):
        pipeline.execute("DELETE", "saveItem")


# ---------------------------------------------------------------------------
# Token-expiry retry
# ---------------------------------------------------------------------------

@responses.activate
def test_401_triggers_one_refresh_and_retry(pipeline):
    """
    Scenario: KRA rejects the cached token with 401, then accepts the refreshed one.
    Assertion: one forced token fetch, two dispatches, the second with the new token.
    """
    responses.add(responses.POST, SAVE_ITEM_URL, status=401, json={})
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json={"resultCd": "000", "resultMsg": "OK"})
    responses.add(responses.GET, TOKEN_URL, status=200, json={"access_token": "fresh-token", "expires_in": 3600})

    result = pipeline.post("saveItem", {"itemCd": "X"})

    assert result == {"resultCd": "000", "resultMsg": "OK"}
    calls = _business_calls(SAVE_ITEM_URL)
    assert len(calls) == 2
    assert calls[0].request.headers["Authorization"] == "Bearer cached-token"
    assert calls[1].request.headers["Authorization"] == "Bearer fresh-token"
    assert len(_token_calls()) == 1
    assert pipeline.tokens.cache.read().access_token == "fresh-token"


@responses.activate
def test_fault_string_expiry_triggers_retry(pipeline):
    responses.add(
        responses.POST, SAVE_ITEM_URL, status=500,
        json={"fault": {"faultstring": "Access Token expired", "detail": {"errorcode": "keymanagement"}}},
    )
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json={"resultCd": "000"})
    responses.add(responses.GET, TOKEN_URL, status=200, json={"access_token": "fresh-token", "expires_in": 3600})

    assert pipeline.post("saveItem", {}) == {"resultCd": "000"}
    assert len(_business_calls(SAVE_ITEM_URL)) == 2


@responses.activate
def test_second_expiry_signal_raises_auth_error_without_looping(pipeline):
    """
    Retry-once: [expired, expired] yields exactly two dispatches and a final
    KRAeTIMSAuthError flagged as a token-expiry situation.
    """
    responses.add(responses.POST, SAVE_ITEM_URL, status=401, json={})
    responses.add(responses.GET, TOKEN_URL, status=200, json={"access_token": "fresh-token", "expires_in": 3600})

    with pytest.raises(KRAeTIMSAuthError) as excinfo:
        pipeline.post("saveItem", {})

    assert excinfo.value.is_token_expired
    assert len(_business_calls(SAVE_ITEM_URL)) == 2
    assert len(_token_calls()) == 1


@responses.activate
def test_failed_refresh_surfaces_auth_error(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, status=401, json={})
    responses.add(responses.GET, TOKEN_URL, status=401, json={"errorCode": "401.002", "errorMessage": "Bad creds"})

    with pytest.raises(KRAeTIMSAuthError) as excinfo:
        pipeline.post("saveItem", {})

    assert excinfo.value.error_code == "401.002"
    assert len(_business_calls(SAVE_ITEM_URL)) == 1


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@responses.activate
def test_body_without_result_code_is_returned_as_is(pipeline):
    body = {"data": {"clsList": []}, "extra": [1, 2]}
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json=body)

    assert pipeline.post("saveItem", {}) == body


@responses.activate
@pytest.mark.parametrize("code", ["000", "001"])
def test_success_codes_return_body(pipeline, code):
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json={"resultCd": code, "data": {"ok": True}})
    assert pipeline.post("saveItem", {})["data"] == {"ok": True}


@responses.activate
@pytest.mark.parametrize("code, error_type, status", [
    ("894", KRAeTIMSClientError, 400),
    ("910", KRAeTIMSServerError, 500),
    ("999", KRAeTIMSServerError, 500),
    ("101", KRAeTIMSBusinessError, 400),
    ("E01", KRAeTIMSBusinessError, 400),
])
def test_non_success_codes_are_classified(pipeline, code, error_type, status):
    body = {"resultCd": code, "resultMsg": "Rejected by KRA", "resultDt": "20240101000000"}
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json=body)

    with pytest.raises(error_type) as excinfo:
        pipeline.post("saveItem", {})

    assert excinfo.value.error_code == code
    assert excinfo.value.status_code == status
    assert excinfo.value.response_body == body
    assert "Rejected by KRA" in excinfo.value.message


@responses.activate
def test_success_codes_are_configuration(config, seeded_cache, clock):
    four_digit = config.model_copy(update={"success_codes": frozenset({"0000"})})
    pipeline = RequestPipeline(four_digit, TokenProvider(four_digit, cache=seeded_cache, clock=clock))
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json={"resultCd": "0000"})
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, json={"resultCd": "000"})

    assert pipeline.post("saveItem", {}) == {"resultCd": "0000"}
    with pytest.raises(KRAeTIMSApiError) as excinfo:
        pipeline.post("saveItem", {})
    assert excinfo.value.error_code == "000"


@responses.activate
def test_non_2xx_status_raises_api_error(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, status=502, body="Bad Gateway")

    with pytest.raises(KRAeTIMSApiError) as excinfo:
        pipeline.post("saveItem", {})

    assert not isinstance(excinfo.value, KRAeTIMSAuthError)
    assert excinfo.value.status_code == 502
    assert "Bad Gateway" in excinfo.value.message


@responses.activate
def test_malformed_success_body_raises_api_error(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, status=200, body="<html>maintenance</html>")

    with pytest.raises(KRAeTIMSApiError) as excinfo:
        pipeline.post("saveItem", {})
    assert excinfo.value.response_body == "<html>maintenance</html>"


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------

@responses.activate
def test_timeout_is_transport_failure_and_not_retried(pipeline):
    responses.add(responses.GET, CODE_LIST_URL, body=requests.exceptions.ReadTimeout("timed out"))

    with pytest.raises(TransportError) as excinfo:
        pipeline.get("selectCodeList", {"lastReqDt": "20240101000000"})

    assert excinfo.value.status_code is None
    assert not isinstance(excinfo.value, AmbiguousStateError)
    assert len(responses.calls) == 1


@responses.activate
def test_dropped_connection_on_post_is_ambiguous(pipeline):
    responses.add(responses.POST, SAVE_ITEM_URL, body=requests.exceptions.ConnectionError("Connection reset"))

    with pytest.raises(AmbiguousStateError):
        pipeline.post("saveItem", {})
    assert len(responses.calls) == 1


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def test_unwrap_401_is_auth_error_regardless_of_body():
    with pytest.raises(KRAeTIMSAuthError):
        unwrap(RawResponse.parse(401, '{"resultCd": "000"}'), frozenset({"000"}))


def test_unwrap_empty_success_body_is_empty_dict():
    assert unwrap(RawResponse.parse(200, ""), frozenset({"000"})) == {}


def test_unwrap_non_object_json_is_returned_as_is():
    assert unwrap(RawResponse.parse(200, "[1, 2]"), frozenset({"000"})) == [1, 2]


def test_is_token_expired_signals():
    assert is_token_expired(RawResponse.parse(401, ""))
    assert is_token_expired(RawResponse.parse(500, '{"fault": {"faultstring": "Invalid Token"}}'))
    assert not is_token_expired(RawResponse.parse(500, '{"fault": {"faultstring": "Quota exceeded"}}'))
    assert not is_token_expired(RawResponse.parse(200, '{"resultCd": "000"}'))
