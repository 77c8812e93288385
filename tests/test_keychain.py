"""Tests for the keychain service client."""

import asyncio
import base64
from unittest.mock import patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from pydantic import SecretStr

from flightlog.config import KeychainConfig
from flightlog.errors import ApiKeyError, EmptyKeychainError, NetworkError
from flightlog.keychain import (
    DeviceInfo, KeychainClient, KeyRange, fetch_keychains, parse_keychain_response,
)

KEY = bytes(range(32))
IV = bytes(range(16))
DEVICE = DeviceInfo(serial="0K1CH2R00B0001", version=13)
RANGES = [KeyRange(start_ms=0, end_ms=60000, feature_point=3, ciphertext=b"\xab" * 16)]


def _body(*entries, code=0):
    return {"result": {"code": code, "msg": "ok", "data": list(entries)}}


def _entry(start=0, end=60000, key=KEY, iv=IV):
    return {
        "start": start,
        "end": end,
        "aesKey": base64.b64encode(key).decode(),
        "aesIv": base64.b64encode(iv).decode(),
    }


def _config(**kwargs):
    kwargs.setdefault("api_key", SecretStr("test-key"))
    kwargs.setdefault("retry_backoff_s", 0)
    return KeychainConfig(**kwargs)


async def _fetch_from(handler):
    """Run one fetch against a local server. Returns (result or exception, client, calls)."""
    calls = []

    async def counting(request):
        calls.append(await request.json())
        calls[-1]["_api_key"] = request.headers.get("Api-Key")
        return await handler(request)

    app = web.Application()
    app.router.add_post("/keychains", counting)
    async with TestServer(app) as server:
        client = KeychainClient(_config(endpoint=str(server.make_url("/keychains"))))
        try:
            outcome = await client.fetch_keychains(DEVICE, RANGES)
        except Exception as e:
            outcome = e
    return outcome, client, calls


class TestParseResponse:
    def test_valid(self):
        chains = parse_keychain_response(_body(_entry(0, 1000), _entry(1000, 2000)))
        assert len(chains) == 2
        assert chains[0].key == KEY
        assert chains[1].iv == IV
        assert chains[0].covers(0)
        assert not chains[0].covers(1000)
        assert chains[1].covers(1000)

    def test_non_zero_code(self):
        with pytest.raises(ApiKeyError):
            parse_keychain_response(_body(code=401))

    def test_empty_data(self):
        with pytest.raises(EmptyKeychainError):
            parse_keychain_response(_body())

    def test_missing_result(self):
        with pytest.raises(EmptyKeychainError):
            parse_keychain_response({"error": "nope"})

    def test_unusable_entries_skipped(self):
        chains = parse_keychain_response(_body(
            _entry(key=b"short"),
            {"start": 0},
            _entry(5, 5),
            _entry(0, 10),
        ))
        assert len(chains) == 1
        assert chains[0].end_ms == 10

    def test_all_unusable(self):
        with pytest.raises(EmptyKeychainError):
            parse_keychain_response(_body(_entry(iv=b"x")))


class TestKeychainClient:
    def test_requires_api_key(self):
        with pytest.raises(ApiKeyError):
            KeychainClient(KeychainConfig())

    def test_request_body(self):
        client = KeychainClient(_config(department=3))
        body = client._build_request(DEVICE, RANGES)
        assert body["serial"] == "0K1CH2R00B0001"
        assert body["version"] == 13
        assert body["department"] == 3
        assert body["ranges"][0]["featurePoint"] == 3
        assert base64.b64decode(body["ranges"][0]["aesCiphertext"]) == b"\xab" * 16

    def test_retries_network_error_once(self):
        client = KeychainClient(_config())
        with patch.object(KeychainClient, "_post", side_effect=[NetworkError("timeout"), _body(_entry())]):
            chains = asyncio.run(client.fetch_keychains(DEVICE, RANGES))
        assert client.attempts == 2
        assert len(chains) == 1

    def test_second_network_error_raised(self):
        client = KeychainClient(_config())
        with patch.object(KeychainClient, "_post", side_effect=[NetworkError("a"), NetworkError("b")]):
            with pytest.raises(NetworkError):
                asyncio.run(client.fetch_keychains(DEVICE, RANGES))
        assert client.attempts == 2

    def test_api_key_error_not_retried(self):
        client = KeychainClient(_config())
        with patch.object(KeychainClient, "_post", side_effect=ApiKeyError("rejected")) as post:
            with pytest.raises(ApiKeyError):
                asyncio.run(client.fetch_keychains(DEVICE, RANGES))
        assert client.attempts == 1
        assert post.call_count == 1

    def test_empty_keychain_not_retried(self):
        client = KeychainClient(_config())
        with patch.object(KeychainClient, "_post", return_value=_body()):
            with pytest.raises(EmptyKeychainError):
                asyncio.run(client.fetch_keychains(DEVICE, RANGES))
        assert client.attempts == 1

    def test_module_level_fetch(self):
        with patch.object(KeychainClient, "_post", return_value=_body(_entry())):
            chains = asyncio.run(fetch_keychains("k", DEVICE, RANGES, _config(api_key=None)))
        assert chains[0].key == KEY


class TestKeychainHttp:
    def test_success_sends_api_key(self):
        async def ok(request):
            return web.json_response(_body(_entry()))

        outcome, client, calls = asyncio.run(_fetch_from(ok))
        assert len(outcome) == 1
        assert calls[0]["_api_key"] == "test-key"
        assert calls[0]["serial"] == DEVICE.serial

    def test_unauthorized_not_retried(self):
        async def denied(request):
            return web.json_response({"msg": "bad key"}, status=401)

        outcome, client, calls = asyncio.run(_fetch_from(denied))
        assert isinstance(outcome, ApiKeyError)
        assert len(calls) == 1

    def test_server_error_retried_once(self):
        async def broken(request):
            return web.Response(status=503)

        outcome, client, calls = asyncio.run(_fetch_from(broken))
        assert isinstance(outcome, NetworkError)
        assert len(calls) == 2
        assert client.attempts == 2

    def test_recovers_after_server_error(self):
        responses = [web.Response(status=502), web.json_response(_body(_entry()))]

        async def flaky(request):
            return responses.pop(0)

        outcome, client, calls = asyncio.run(_fetch_from(flaky))
        assert len(outcome) == 1
        assert client.attempts == 2

    def test_non_json_body(self):
        async def html(request):
            return web.Response(text="<html>maintenance</html>", content_type="text/html")

        outcome, client, calls = asyncio.run(_fetch_from(html))
        assert isinstance(outcome, EmptyKeychainError)
        assert len(calls) == 1
