from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from apps.api.batches import create_batches_router
from services.ingestion.storage import Storage

_bearer = HTTPBearer(auto_error=False)


def create_app(*, storage: Storage, api_token: Optional[str] = None, prefix: str = "/api") -> FastAPI:
    app = FastAPI(title="Lab Report Review API")

    def require_token(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> None:
        if not api_token:
            return
        if creds is None or not secrets.compare_digest(creds.credentials, api_token):
            raise HTTPException(status_code=401, detail="Unauthenticated.")

    @app.exception_handler(HTTPException)
    async def http_error(_: Request, exc: HTTPException):
        # same {message} shape the client reads from every error response
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    app.include_router(create_batches_router(storage=storage), prefix=prefix, dependencies=[Depends(require_token)])
    return app
