from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import routes_messages, routes_orders
from api.socket import realtime_channel
from market.errors import MarketError
from utils.config import Settings
from utils.logger import get_logger
from utils.state import AppState

_logger = get_logger(__name__)

STATUS_BY_CATEGORY = {
    "validation": 400,
    "unauthenticated": 401,
    "forbidden": 403,
    "not_found": 404,
    "conflict": 400,
    "internal": 500,
}


async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    code = STATUS_BY_CATEGORY.get(exc.category, 500)
    if code >= 500:
        _logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={"success": False, **exc.to_dict()},
        headers={"WWW-Authenticate": "Bearer"} if code == 401 else None,
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "reason": "invalid_request",
            "message": "Malformed request body.",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def create_app(
    settings: Optional[Settings] = None, state: Optional[AppState] = None
) -> FastAPI:
    """Build the API. Pass state to reuse services built elsewhere (tests do)."""
    state = state or AppState(settings=settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await state.startup()
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(title="RamiKart API", lifespan=lifespan)
    app.state.market = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(state.settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(MarketError, market_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(routes_orders.router)
    app.include_router(routes_messages.router)
    app.add_api_websocket_route("/ws", realtime_channel)

    @app.get("/")
    def root():
        return {"message": "RamiKart API is running"}

    return app
