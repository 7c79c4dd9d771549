"""
小程序服务端接口演示

每个路由调用一个接口并原样返回响应内容。接口报错只记录日志，
仍然写回返回的内容，状态码保持 200。
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from loguru import logger

from ...infrastructure.microapp import MicroAppClient, MicroAppError
from ...infrastructure.signer import SIG_METHOD, Signer

router = APIRouter()


def _dump(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")


TEXT_ANTI_DIRTY_PAYLOAD = _dump({"tasks": [{"content": "要检测的文本/赌博/涩情"}]})

IMAGE_PAYLOAD = _dump(
    {
        "targets": ["ad", "porn", "politics", "disgusting"],
        "tasks": [
            {
                "image": "https://s3.pstatp.com/toutiao/resource/developer_ssr/img/user-arrive-1@3x.86a3dc7.png"
            }
        ],
    }
)

USER_STORAGE_PAYLOAD = _dump(
    {"kv_list": [{"key": "test", "value": json.dumps({"ttgame": {"score": 1}})}]}
)

# 演示中 session_key 为空，真实场景应使用 code2session 返回的 session_key
DEMO_SESSION_KEY = b""


def get_microapp_client(request: Request) -> MicroAppClient:
    return request.app.state.microapp_client


def get_signer(request: Request) -> Signer:
    return request.app.state.signer


async def _fetch_access_token(client: MicroAppClient, route: str) -> Optional[str]:
    try:
        return await client.get_access_token()
    except MicroAppError as exc:
        logger.error(f"[小程序] {route} 获取 access_token 失败: {exc}")
        return None


def _log_result(route: str, resp: bytes, error: Optional[Exception] = None) -> None:
    text = resp.decode("utf-8", errors="replace")
    if error is not None:
        logger.error(f"[小程序] {route} 调用失败: {error}, 响应: {text}")
    else:
        logger.info(f"[小程序] {route} 响应: {text}")


@router.get("/code2session")
async def code2session(client: MicroAppClient = Depends(get_microapp_client)) -> Response:
    """用固定的 code 换取 session"""
    try:
        resp = await client.code2session({"code": "CODE"})
        _log_result("code2session", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("code2session", resp, exc)
    return Response(content=resp)


@router.get("/content_security")
async def content_security(client: MicroAppClient = Depends(get_microapp_client)) -> Response:
    """文本 + 图片内容安全检测，两次响应依次写回"""
    chunks = []

    try:
        resp = await client.text_anti_dirty(TEXT_ANTI_DIRTY_PAYLOAD)
        _log_result("text_anti_dirty", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("text_anti_dirty", resp, exc)
    chunks.append(resp)

    try:
        resp = await client.image(IMAGE_PAYLOAD)
        _log_result("image", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("image", resp, exc)
    chunks.append(resp)

    return Response(content=b"".join(chunks))


@router.get("/data_caching")
async def data_caching(
    openid: str = Query(""),
    client: MicroAppClient = Depends(get_microapp_client),
    signer: Signer = Depends(get_signer),
) -> Response:
    """签名后写入用户托管数据"""
    signature = signer(USER_STORAGE_PAYLOAD, DEMO_SESSION_KEY)

    access_token = await _fetch_access_token(client, "data_caching")
    if access_token is None:
        return Response()

    params = {
        "access_token": access_token,
        "openid": openid,
        "signature": signature,
        "sig_method": SIG_METHOD,
    }
    try:
        resp = await client.set_user_storage(USER_STORAGE_PAYLOAD, params)
        _log_result("set_user_storage", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("set_user_storage", resp, exc)
    return Response(content=resp)


@router.get("/qrcode")
async def qrcode(client: MicroAppClient = Depends(get_microapp_client)) -> Response:
    access_token = await _fetch_access_token(client, "qrcode")
    if access_token is None:
        return Response()

    payload = _dump({"access_token": access_token})

    try:
        resp = await client.create_qrcode(payload)
        logger.info(f"[小程序] qrcode 返回 {len(resp)} 字节")
    except MicroAppError as exc:
        resp = exc.body
        _log_result("qrcode", resp, exc)
    return Response(content=resp)


@router.get("/template_message")
async def template_message(client: MicroAppClient = Depends(get_microapp_client)) -> Response:
    access_token = await _fetch_access_token(client, "template_message")
    if access_token is None:
        return Response()

    payload = _dump(
        {
            "access_token": access_token,
            "app_id": "YOUR_APP_ID",
            "data": {
                "keyword1": {"value": "v1"},
                "keyword2": {"value": "v2"},
            },
            "page": "pages/index",
            "form_id": "YOUR_FORM_ID",
            "touser": "USER_OPEN_ID",
            "template_id": "YOUR_TPL_ID",
        }
    )

    try:
        resp = await client.send_template_message(payload)
        _log_result("template_message", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("template_message", resp, exc)
    return Response(content=resp)


@router.get("/subscribe_notification")
async def subscribe_notification(client: MicroAppClient = Depends(get_microapp_client)) -> Response:
    access_token = await _fetch_access_token(client, "subscribe_notification")
    if access_token is None:
        return Response()

    payload = _dump(
        {
            "access_token": access_token,
            "app_id": "31198cf00b********",
            "tpl_id": "MSG38489d04608c5f0fdeb565fc5114afff6410*******",
            "open_id": "36d4bd3c8****",
            "data": {
                "版本号": "v1.0",
                "版本描述": "新版本发布了",
            },
            "page": "pages/index?a=b",
        }
    )

    try:
        resp = await client.notify_subscription(payload)
        _log_result("subscribe_notification", resp)
    except MicroAppError as exc:
        resp = exc.body
        _log_result("subscribe_notification", resp, exc)
    return Response(content=resp)
