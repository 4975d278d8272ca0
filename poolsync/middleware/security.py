from __future__ import annotations
from typing import Callable
from fastapi import Request
from fastapi.responses import JSONResponse

OPEN_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")


async def require_wallet(request: Request, call_next: Callable):
    if request.url.path in OPEN_PATHS:
        return await call_next(request)
    wallet = request.headers.get("x-wallet-address")
    if not wallet:
        return JSONResponse(status_code=401, content={"detail": "Missing x-wallet-address header"})
    request.state.owner = wallet.strip().lower()
    response = await call_next(request)
    return response
