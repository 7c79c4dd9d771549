"""小程序客户端测试（使用 httpx.MockTransport 模拟服务端）"""
import asyncio
import json
import time

import httpx
import pytest

from microapp_demo.infrastructure.microapp import (
    MicroAppAPIError,
    MicroAppClient,
    MicroAppError,
)


def _json(data, status_code=200):
    return httpx.Response(status_code, json=data)


class FakePlatform:
    """按路径返回预设响应，并记录收到的请求"""

    def __init__(self):
        self.requests = []
        self.token_requests = 0
        self.routes = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/apps/token":
            self.token_requests += 1
            return _json({"access_token": f"token-{self.token_requests}", "expires_in": 7200})
        handler = self.routes.get(request.url.path)
        if handler is None:
            return _json({"errcode": 0, "errmsg": "ok"})
        return handler(request)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def microapp(platform):
    return MicroAppClient(
        "tt_appid",
        "tt_secret",
        api_base="https://developer.example.com",
        transport=httpx.MockTransport(platform),
    )


class TestAccessToken:

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, microapp, platform):
        assert await microapp.get_access_token() == "token-1"
        assert await microapp.get_access_token() == "token-1"
        assert platform.token_requests == 1

        request = platform.requests[0]
        assert request.method == "GET"
        assert request.url.params["appid"] == "tt_appid"
        assert request.url.params["secret"] == "tt_secret"
        assert request.url.params["grant_type"] == "client_credential"

    @pytest.mark.asyncio
    async def test_refresh_after_expiry(self, microapp, platform):
        await microapp.get_access_token()
        microapp.token_expires_at = time.time() - 1

        assert await microapp.get_access_token() == "token-2"

    @pytest.mark.asyncio
    async def test_expiry_keeps_refresh_margin(self, microapp):
        await microapp.get_access_token()
        assert microapp.token_expires_at <= time.time() + 7200 - 300 + 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_refresh_once(self, microapp, platform):
        tokens = await asyncio.gather(*(microapp.get_access_token() for _ in range(10)))

        assert set(tokens) == {"token-1"}
        assert platform.token_requests == 1

    @pytest.mark.asyncio
    async def test_missing_credentials(self, platform):
        client = MicroAppClient("", "", transport=httpx.MockTransport(platform))

        with pytest.raises(MicroAppError):
            await client.get_access_token()
        assert platform.requests == []

    @pytest.mark.asyncio
    async def test_error_response(self):
        def handler(request):
            return _json({"errcode": 40015, "errmsg": "bad appid"})

        client = MicroAppClient("a", "b", transport=httpx.MockTransport(handler))

        with pytest.raises(MicroAppAPIError) as exc_info:
            await client.get_access_token()
        assert b"40015" in exc_info.value.body

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"[]",
            b"null",
            b'"token"',
            b'{"data": "x"}',
            b'{"access_token": 123}',
            b'{"access_token": "t", "expires_in": "abc"}',
            b'{"access_token": "t", "expires_in": [7200]}',
        ],
    )
    async def test_malformed_token_response(self, body):
        """返回结构异常时统一抛出 MicroAppAPIError"""

        def handler(request):
            return httpx.Response(200, content=body, headers={"Content-Type": "application/json"})

        client = MicroAppClient("a", "b", transport=httpx.MockTransport(handler))

        with pytest.raises(MicroAppAPIError) as exc_info:
            await client.get_access_token()
        assert exc_info.value.body == body
        assert client.access_token is None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = MicroAppClient("a", "b", transport=httpx.MockTransport(handler))

        with pytest.raises(MicroAppError) as exc_info:
            await client.get_access_token()
        assert not isinstance(exc_info.value, MicroAppAPIError)
        assert exc_info.value.body == b""


class TestCapabilities:

    @pytest.mark.asyncio
    async def test_code2session(self, microapp, platform):
        platform.routes["/api/apps/jscode2session"] = lambda r: _json(
            {"error": 0, "session_key": "sk", "openid": "oid"}
        )

        resp = await microapp.code2session({"code": "CODE"})

        assert json.loads(resp)["openid"] == "oid"
        params = platform.requests[-1].url.params
        assert params["appid"] == "tt_appid"
        assert params["secret"] == "tt_secret"
        assert params["code"] == "CODE"

    @pytest.mark.asyncio
    async def test_content_security_sends_token_header(self, microapp, platform):
        payload = b'{"tasks":[{"content":"text"}]}'

        await microapp.text_anti_dirty(payload)
        await microapp.image(payload)

        text_request, image_request = platform.requests[-2], platform.requests[-1]
        assert text_request.url.path == "/api/v2/tags/text/antidirt"
        assert image_request.url.path == "/api/v2/tags/image/"
        for request in (text_request, image_request):
            assert request.method == "POST"
            assert request.headers["X-Token"] == "token-1"
            assert request.content == payload

    @pytest.mark.asyncio
    async def test_set_user_storage_query_params(self, microapp, platform):
        params = {
            "access_token": "T1",
            "openid": "O1",
            "signature": "SIG1",
            "sig_method": "hmac_sha256",
        }

        await microapp.set_user_storage(b"{}", params)

        request = platform.requests[-1]
        assert request.url.path == "/api/apps/set_user_storage"
        assert dict(request.url.params) == params
        assert request.headers["Content-Type"].startswith("application/json")

    @pytest.mark.asyncio
    async def test_remove_user_storage(self, microapp, platform):
        await microapp.remove_user_storage(b'{"key":["test"]}', {"openid": "O1"})

        assert platform.requests[-1].url.path == "/api/apps/remove_user_storage"

    @pytest.mark.asyncio
    async def test_qrcode_returns_image_bytes(self, microapp, platform):
        png = b"\x89PNG\r\n\x1a\nfake"
        platform.routes["/api/apps/qrcode"] = lambda r: httpx.Response(
            200, content=png, headers={"Content-Type": "image/png"}
        )

        assert await microapp.create_qrcode(b'{"access_token":"T1"}') == png

    @pytest.mark.asyncio
    async def test_api_error_carries_body(self, microapp, platform):
        body = {"err_no": 40014, "err_tips": "bad params"}
        platform.routes["/api/apps/game/template/send"] = lambda r: _json(body)

        with pytest.raises(MicroAppAPIError) as exc_info:
            await microapp.send_template_message(b"{}")
        assert json.loads(exc_info.value.body) == body

    @pytest.mark.asyncio
    async def test_http_error_status(self, microapp, platform):
        platform.routes["/api/apps/subscribe_notification/developer/v1/notify"] = (
            lambda r: httpx.Response(502, content=b"bad gateway")
        )

        with pytest.raises(MicroAppAPIError) as exc_info:
            await microapp.notify_subscription(b"{}")
        assert exc_info.value.body == b"bad gateway"
