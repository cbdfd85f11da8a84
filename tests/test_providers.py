"""
Tests for audionotary/providers.py
Production adapters with ``requests`` patched out.
"""
from unittest.mock import Mock, patch

import pytest
import requests

from audionotary.errors import AuthError, NotaryError, UpstreamError, UpstreamTimeout, ValidationError
from audionotary.providers import (
    AcoustIdClient,
    AlgorandNotarizationProvider,
    HeaderIdentityProvider,
    LighthouseUploader,
    extract_cid,
    parse_duration,
)


def _response(status=200, json_body=None, text=""):
    resp = Mock()
    resp.status_code = status
    resp.ok = status < 400
    resp.text = text
    if json_body is None:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = json_body
    return resp


class TestHeaderIdentity:
    def test_reads_configured_header(self, address):
        provider = HeaderIdentityProvider("X-Wallet")
        assert provider.get_address({"x-wallet": address}) == address

    def test_missing_header(self):
        assert HeaderIdentityProvider().get_address({}) is None
        assert HeaderIdentityProvider().get_address({"x-address": "  "}) is None

    def test_rejects_invalid_address(self):
        with pytest.raises(AuthError) as exc_info:
            HeaderIdentityProvider().get_address({"x-address": "abc"})
        assert exc_info.value.http_status == 401


class TestAlgorandNotary:
    @pytest.fixture
    def provider(self):
        return AlgorandNotarizationProvider("https://algod.example/", network="testnet", timeout=5)

    def _chain(self, rnd=42, ts=1_700_000_123):
        def fake_get(url, params=None, headers=None, timeout=None):
            if url.endswith("/v2/status"):
                return _response(json_body={"last-round": rnd})
            if url.endswith(f"/v2/blocks/{rnd}"):
                return _response(json_body={"block": {"rnd": rnd, "ts": ts}})
            return _response(404, {"message": "not found"})
        return fake_get

    def test_now_uses_block_timestamp(self, provider):
        with patch("audionotary.providers.requests.get", side_effect=self._chain()) as mock_get:
            assert provider.now() == 1_700_000_123
        assert mock_get.call_args_list[0].args[0] == "https://algod.example/v2/status"
        assert all(call.kwargs["timeout"] == 5 for call in mock_get.call_args_list)

    def test_notarize_returns_built_value_and_block_commitment(self, provider):
        with patch("audionotary.providers.requests.get", side_effect=self._chain(rnd=7, ts=99)):
            result = provider.notarize(lambda: {"a": 1, "timestamp": provider.now()})
        assert result.value == {"a": 1, "timestamp": 99}
        assert result.commitment == "algorand:testnet:7"

    def test_notarize_without_time_has_no_commitment(self, provider):
        result = provider.notarize(lambda: {"a": 1})
        assert result.commitment is None

    def test_token_header(self):
        provider = AlgorandNotarizationProvider("https://algod.example", token="secret")
        with patch("audionotary.providers.requests.get", side_effect=self._chain()) as mock_get:
            provider.now()
        assert mock_get.call_args.kwargs["headers"]["X-Algo-API-Token"] == "secret"

    def test_timeout(self, provider):
        with patch("audionotary.providers.requests.get", side_effect=requests.Timeout("slow")):
            with pytest.raises(UpstreamTimeout) as exc_info:
                provider.now()
        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 504

    def test_non_success(self, provider):
        with patch("audionotary.providers.requests.get", return_value=_response(503, text="down")):
            with pytest.raises(UpstreamError) as exc_info:
                provider.now()
        assert exc_info.value.upstream_status == 503
        assert exc_info.value.upstream_body == {"raw": "down"}

    def test_unexpected_shape(self, provider):
        with patch("audionotary.providers.requests.get", return_value=_response(json_body={"nope": 1})):
            with pytest.raises(UpstreamError):
                provider.now()


class TestExtractCid:
    @pytest.mark.parametrize("response, expected", [
        ({"Name": "a.wav", "Hash": "bafyA", "Size": "3"}, "bafyA"),
        ({"cid": "bafyB"}, "bafyB"),
        ({"data": {"Hash": "bafyC"}}, "bafyC"),
        ({"data": {"cid": "bafyD"}}, "bafyD"),
        ({"data": [{"Hash": "bafyE"}]}, "bafyE"),
        ({"data": {}}, None),
        ({"raw": "oops"}, None),
        (None, None),
    ])
    def test_shapes(self, response, expected):
        assert extract_cid(response) == expected


class TestLighthouseUploader:
    def test_upload(self):
        uploader = LighthouseUploader("key", "https://lh.example/add", timeout=3)
        ok = _response(json_body={"Name": "a.wav", "Hash": "bafyA", "Size": "3"})
        with patch("audionotary.providers.requests.post", return_value=ok) as mock_post:
            assert uploader.upload(b"abc", "a.wav") == "bafyA"
        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer key"
        assert kwargs["files"]["file"] == ("a.wav", b"abc")
        assert kwargs["timeout"] == 3

    def test_missing_key(self):
        with pytest.raises(NotaryError) as exc_info:
            LighthouseUploader("", "https://lh.example/add").upload(b"abc", "a.wav")
        assert exc_info.value.http_status == 500

    def test_no_cid_is_502(self):
        uploader = LighthouseUploader("key", "https://lh.example/add")
        with patch("audionotary.providers.requests.post", return_value=_response(json_body={"weird": True})):
            with pytest.raises(UpstreamError) as exc_info:
                uploader.upload(b"abc", "a.wav")
        assert exc_info.value.http_status == 502
        assert exc_info.value.details["extra"]["raw"] == {"weird": True}

    def test_sdk_error_is_502(self):
        uploader = LighthouseUploader("key", "https://lh.example/add")
        with patch("audionotary.providers.requests.post", return_value=_response(401, {"error": "bad key"})):
            with pytest.raises(UpstreamError) as exc_info:
                uploader.upload(b"abc", "a.wav")
        assert exc_info.value.http_status == 502
        assert exc_info.value.upstream_status == 401

    def test_timeout(self):
        uploader = LighthouseUploader("key", "https://lh.example/add")
        with patch("audionotary.providers.requests.post", side_effect=requests.Timeout()):
            with pytest.raises(UpstreamTimeout):
                uploader.upload(b"abc", "a.wav")


class TestParseDuration:
    @pytest.mark.parametrize("value, expected", [(30, 30), ("30", 30), (29.5, 30), ("12.4", 12), (0.6, 1)])
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", [0, -3, 0.2, "abc", "", float("nan"), float("inf"), True, [1], 10 ** 400])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_duration(value)


class TestAcoustIdClient:
    URL = "https://api.acoustid.org/v2/lookup"

    @pytest.fixture
    def lookup(self):
        return AcoustIdClient("client-key", self.URL, timeout=4)

    def test_post_success(self, lookup):
        body = {"status": "ok", "results": [{"id": "r1", "score": 0.9}]}
        with patch("audionotary.providers.requests.post", return_value=_response(json_body=body)) as mock_post, \
                patch("audionotary.providers.requests.get") as mock_get:
            assert lookup.lookup("AQAD", "30.2") == (200, body)
        sent = mock_post.call_args.kwargs["data"]
        assert sent == {
            "client": "client-key",
            "format": "json",
            "meta": "recordings+releasegroups+compress",
            "duration": "30",
            "fingerprint": "AQAD",
        }
        assert mock_post.call_args.kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
        mock_get.assert_not_called()

    def test_falls_back_to_get(self, lookup):
        with patch("audionotary.providers.requests.post", return_value=_response(405, text="no POST")), \
                patch("audionotary.providers.requests.get",
                      return_value=_response(json_body={"status": "ok"})) as mock_get:
            assert lookup.lookup("AQAD", 30) == (200, {"status": "ok"})
        assert mock_get.call_args.kwargs["params"]["fingerprint"] == "AQAD"

    def test_post_transport_error_falls_back_to_get(self, lookup):
        with patch("audionotary.providers.requests.post", side_effect=requests.ConnectionError("reset")), \
                patch("audionotary.providers.requests.get", return_value=_response(json_body={"status": "ok"})):
            assert lookup.lookup("AQAD", 30) == (200, {"status": "ok"})

    def test_non_json_success_is_wrapped(self, lookup):
        with patch("audionotary.providers.requests.post", return_value=_response(200, text="plain")):
            assert lookup.lookup("AQAD", 30) == (200, {"raw": "plain"})

    def test_both_fail(self, lookup):
        with patch("audionotary.providers.requests.post", return_value=_response(500, text="boom")), \
                patch("audionotary.providers.requests.get", return_value=_response(429, {"status": "error"})):
            with pytest.raises(UpstreamError) as exc_info:
                lookup.lookup("AQAD", 30)
        err = exc_info.value
        assert err.http_status == 429
        assert err.details["post"] == {"status": 500, "body": {"raw": "boom"}}
        assert err.details["get"] == {"status": 429, "body": {"status": "error"}}

    def test_get_timeout(self, lookup):
        with patch("audionotary.providers.requests.post", return_value=_response(500, text="boom")), \
                patch("audionotary.providers.requests.get", side_effect=requests.Timeout("slow")):
            with pytest.raises(UpstreamTimeout):
                lookup.lookup("AQAD", 30)

    def test_input_validation(self, lookup):
        with pytest.raises(ValidationError, match="Missing fingerprint"):
            lookup.lookup(None, 30)
        with pytest.raises(ValidationError, match="Missing duration"):
            lookup.lookup("AQAD", None)
        with pytest.raises(ValidationError):
            lookup.lookup("AQAD", 0)
