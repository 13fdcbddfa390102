from __future__ import annotations

import hmac

from config.settings import ADMIN_AUTH_TOKEN
from fastapi import HTTPException, Request
from logger import logger

TOKEN_HEADER = "X-Notify-Token"


def extract_token(request: Request) -> tuple[str, str] | None:
    """返回 (来源, token); 优先 Bearer, 其次 X-Notify-Token"""
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return "bearer", credentials.strip()
    header_token = request.headers.get(TOKEN_HEADER, "").strip()
    if header_token:
        return "header", header_token
    return None


async def require_admin_auth(request: Request, expected_token: str | None = None) -> dict[str, str]:
    expected = ADMIN_AUTH_TOKEN if expected_token is None else expected_token
    if not expected:
        # 未配置 token 时管理 API 整体关闭, 而不是放行
        raise HTTPException(status_code=503, detail="ADMIN_AUTH_TOKEN 未配置")

    found = extract_token(request)
    if found is not None and hmac.compare_digest(found[1].encode(), expected.encode()):
        return {"auth": found[0], "user": "admin"}

    client = request.client.host if request.client else "unknown"
    logger.warning(f"管理 API 鉴权失败: {request.method} {request.url.path} from {client}")
    raise HTTPException(status_code=401, detail="未授权", headers={"WWW-Authenticate": "Bearer"})
