"""字节跳动小程序服务端接口"""
import asyncio
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx
from loguru import logger

API_TOKEN = "/api/apps/token"
API_CODE2SESSION = "/api/apps/jscode2session"
API_TEXT_ANTI_DIRTY = "/api/v2/tags/text/antidirt"
API_IMAGE = "/api/v2/tags/image/"
API_SET_USER_STORAGE = "/api/apps/set_user_storage"
API_REMOVE_USER_STORAGE = "/api/apps/remove_user_storage"
API_QRCODE = "/api/apps/qrcode"
API_TEMPLATE_SEND = "/api/apps/game/template/send"
API_SUBSCRIBE_NOTIFY = "/api/apps/subscribe_notification/developer/v1/notify"

JSON_CONTENT_TYPE = "application/json;charset=utf-8"

# access_token 提前刷新的秒数
TOKEN_REFRESH_MARGIN = 300


class MicroAppError(Exception):
    """调用小程序接口失败，body 为服务端返回的原始内容（可能为空）"""

    def __init__(self, message: str, body: bytes = b""):
        super().__init__(message)
        self.body = body


class MicroAppAPIError(MicroAppError):
    """服务端返回了错误码"""


def _error_code(data: Dict[str, Any]) -> Optional[Any]:
    for key in ("errcode", "err_no", "error"):
        value = data.get(key)
        if value not in (None, 0, "0", ""):
            return value
    return None


class MicroAppClient:
    """小程序客户端"""

    def __init__(
        self,
        appid: str,
        secret: str,
        api_base: str = "https://developer.toutiao.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.appid = appid
        self.secret = secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.access_token: Optional[str] = None
        self.token_expires_at: Optional[float] = None
        self._token_lock = asyncio.Lock()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
        )

    def _token_valid(self) -> bool:
        return bool(
            self.access_token
            and self.token_expires_at
            and self.token_expires_at > time.time()
        )

    async def get_access_token(self) -> str:
        """获取 access_token，过期前 5 分钟刷新"""
        if self._token_valid():
            return self.access_token

        async with self._token_lock:
            # 等锁期间可能已被其他请求刷新
            if self._token_valid():
                return self.access_token

            if not self.appid or not self.secret:
                raise MicroAppError("AppID 或 Secret 未配置")

            params = {
                "appid": self.appid,
                "secret": self.secret,
                "grant_type": "client_credential",
            }
            body = await self._request("GET", API_TOKEN, params=params)
            try:
                data = json.loads(body)
            except ValueError:
                raise MicroAppAPIError("access_token 响应不是合法 JSON", body) from None

            if not isinstance(data, dict):
                raise MicroAppAPIError(f"access_token 响应格式错误: {data!r}", body)
            nested = data.get("data") or {}
            if not isinstance(nested, dict):
                raise MicroAppAPIError(f"access_token 响应格式错误: {data!r}", body)

            token = data.get("access_token") or nested.get("access_token")
            if not token or not isinstance(token, str):
                raise MicroAppAPIError(f"获取 access_token 失败: {data}", body)

            expires_in = data.get("expires_in") or nested.get("expires_in") or 7200
            try:
                expires_in = int(expires_in)
            except (TypeError, ValueError):
                raise MicroAppAPIError(f"expires_in 不是合法数字: {expires_in!r}", body) from None

            self.access_token = token
            self.token_expires_at = time.time() + expires_in - TOKEN_REFRESH_MARGIN
            logger.info(f"[小程序] access_token 已刷新，有效期 {expires_in} 秒")
            return token

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        try:
            async with self._http() as client:
                resp = await client.request(
                    method, path, params=params, content=content, headers=headers
                )
        except httpx.HTTPError as exc:
            raise MicroAppError(f"{method} {path} 请求异常: {exc}") from exc

        body = resp.content
        if resp.status_code >= 400:
            raise MicroAppAPIError(f"{method} {path} HTTP {resp.status_code}", body)

        if "json" in resp.headers.get("content-type", ""):
            try:
                data = resp.json()
            except ValueError:
                return body
            if isinstance(data, dict):
                code = _error_code(data)
                if code is not None:
                    raise MicroAppAPIError(f"{method} {path} 返回错误码 {code}", body)
        return body

    async def _post_json(
        self,
        path: str,
        payload: bytes,
        params: Optional[Mapping[str, str]] = None,
        with_token_header: bool = False,
    ) -> bytes:
        headers = {"Content-Type": JSON_CONTENT_TYPE}
        if with_token_header:
            headers["X-Token"] = await self.get_access_token()
        return await self._request("POST", path, params=params, content=payload, headers=headers)

    async def code2session(self, params: Mapping[str, str]) -> bytes:
        """用 login 获得的 code / anonymous_code 换取 session_key 和 openid"""
        query = {"appid": self.appid, "secret": self.secret}
        query.update(params)
        return await self._request("GET", API_CODE2SESSION, params=query)

    async def text_anti_dirty(self, payload: bytes) -> bytes:
        """文本内容安全检测"""
        return await self._post_json(API_TEXT_ANTI_DIRTY, payload, with_token_header=True)

    async def image(self, payload: bytes) -> bytes:
        """图片内容安全检测"""
        return await self._post_json(API_IMAGE, payload, with_token_header=True)

    async def set_user_storage(self, payload: bytes, params: Mapping[str, str]) -> bytes:
        """设置用户托管数据，params 需包含 access_token / openid / signature / sig_method"""
        return await self._post_json(API_SET_USER_STORAGE, payload, params=params)

    async def remove_user_storage(self, payload: bytes, params: Mapping[str, str]) -> bytes:
        """删除用户托管数据"""
        return await self._post_json(API_REMOVE_USER_STORAGE, payload, params=params)

    async def create_qrcode(self, payload: bytes) -> bytes:
        """生成二维码，成功时返回图片内容"""
        return await self._post_json(API_QRCODE, payload)

    async def send_template_message(self, payload: bytes) -> bytes:
        return await self._post_json(API_TEMPLATE_SEND, payload)

    async def notify_subscription(self, payload: bytes) -> bytes:
        return await self._post_json(API_SUBSCRIBE_NOTIFY, payload)
