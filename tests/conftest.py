"""测试公共 fixture"""
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from microapp_demo.config_loader import Settings
from microapp_demo.infrastructure.microapp import MicroAppError
from microapp_demo.main import create_app
from microapp_demo.presentation.routes.microapp import get_microapp_client, get_signer


class StubMicroAppClient:
    """记录调用并返回固定内容的小程序客户端"""

    def __init__(self, token: str = "T1", token_error: bool = False):
        self.token = token
        self.token_error = token_error
        self.responses: Dict[str, bytes] = {}
        self.errors: Dict[str, MicroAppError] = {}
        self.calls: List[Tuple[str, tuple]] = []

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def get_access_token(self) -> str:
        self.calls.append(("get_access_token", ()))
        if self.token_error:
            raise MicroAppError("token unavailable")
        return self.token

    async def _call(self, name: str, *args) -> bytes:
        self.calls.append((name, args))
        if name in self.errors:
            raise self.errors[name]
        return self.responses.get(name, b"")

    async def code2session(self, params):
        return await self._call("code2session", params)

    async def text_anti_dirty(self, payload):
        return await self._call("text_anti_dirty", payload)

    async def image(self, payload):
        return await self._call("image", payload)

    async def set_user_storage(self, payload, params):
        return await self._call("set_user_storage", payload, params)

    async def create_qrcode(self, payload):
        return await self._call("create_qrcode", payload)

    async def send_template_message(self, payload):
        return await self._call("send_template_message", payload)

    async def notify_subscription(self, payload):
        return await self._call("notify_subscription", payload)


@pytest.fixture
def settings() -> Settings:
    return Settings(appid="test_appid", secret="test_secret", log_dir=None)


@pytest.fixture
def stub_client() -> StubMicroAppClient:
    return StubMicroAppClient()


@pytest.fixture
def signer_calls() -> List[Tuple[bytes, Optional[bytes]]]:
    return []


@pytest.fixture
def app(settings, stub_client, signer_calls):
    def fake_signer(payload: bytes, session_key: Optional[bytes] = None) -> str:
        signer_calls.append((payload, session_key))
        return "SIG1"

    application = create_app(settings)
    application.dependency_overrides[get_microapp_client] = lambda: stub_client
    application.dependency_overrides[get_signer] = lambda: fake_signer
    return application


@pytest.fixture
def client(app) -> TestClient:
    """不进入 lifespan 的测试客户端"""
    return TestClient(app)
