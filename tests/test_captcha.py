"""Tests for the siteverify-style CAPTCHA client."""

from urllib.parse import parse_qs

import httpx

from sessionguard.service.captcha import HttpCaptchaVerifier

VERIFY_URL = "https://captcha.example.com/siteverify"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_success_response_passes():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json={"success": True})

    async with _client(handler) as client:
        verifier = HttpCaptchaVerifier(VERIFY_URL, "shh", client=client)
        assert await verifier.verify("solved-token", "203.0.113.5")

    assert seen == {"secret": "shh", "response": "solved-token", "remoteip": "203.0.113.5"}


async def test_rejected_response_fails():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})

    async with _client(handler) as client:
        verifier = HttpCaptchaVerifier(VERIFY_URL, "shh", client=client)
        assert not await verifier.verify("bogus", None)


async def test_transport_errors_fail_closed():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with _client(handler) as client:
        verifier = HttpCaptchaVerifier(VERIFY_URL, "shh", client=client)
        assert not await verifier.verify("solved-token", None)


async def test_server_error_and_garbage_fail():
    def server_error(request):
        return httpx.Response(502, text="bad gateway")

    def garbage(request):
        return httpx.Response(200, text="<html>")

    for handler in (server_error, garbage):
        async with _client(handler) as client:
            verifier = HttpCaptchaVerifier(VERIFY_URL, "shh", client=client)
            assert not await verifier.verify("solved-token", None)


async def test_empty_token_short_circuits():
    def handler(request):
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        verifier = HttpCaptchaVerifier(VERIFY_URL, "shh", client=client)
        assert not await verifier.verify("", None)
