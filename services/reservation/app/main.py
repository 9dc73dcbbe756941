"""
Reservation Service — FastAPI エントリーポイント

在庫予約 API。商品の登録、在庫の一時確保(予約)、確定、キャンセル、
期限切れ予約のスイープを提供する。

レスポンスはすべて共通の形:
    成功: {"success": true,  "data": ...}
    失敗: {"success": false, "error": {"code": ..., "message": ...}}
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, StringConstraints, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import commands, config, maintenance, queries
from .errors import (
    ErrorCode,
    InternalServerError,
    ReservationServiceError,
    TooManyRequests,
    ValidationError,
)
from .rate_limit import RateLimiter, client_ip
from .store import ReservationStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("reservation_service")

STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ITEM_NOT_FOUND: 404,
    ErrorCode.RESERVATION_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_QUANTITY: 409,
    ErrorCode.RESERVATION_EXPIRED: 409,
    ErrorCode.RESERVATION_CANCELLED: 409,
    ErrorCode.RESERVATION_CONFIRMED: 409,
    ErrorCode.RESERVATION_STATE_CHANGED: 409,
    ErrorCode.TOO_MANY_REQUESTS: 429,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(config.DATABASE_URL, echo=False, pool_pre_ping=True)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    app.state.store = ReservationStore(async_session)
    app.state.redis = redis_pool
    app.state.rate_limiter = RateLimiter(
        redis_pool, config.RATE_LIMIT_WINDOW_MS, config.RATE_LIMIT_MAX
    )
    logger.info("Reservation service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


# ── Dependencies ─────────────────────────────────


def get_store(request: Request) -> ReservationStore:
    return request.app.state.store


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def enforce_rate_limit(
    request: Request,
    response: Response,
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> None:
    result = await limiter.hit(client_ip(request))
    headers = {
        "RateLimit-Limit": str(result.limit),
        "RateLimit-Remaining": str(result.remaining),
        "RateLimit-Reset": str(result.reset_seconds),
    }
    response.headers.update(headers)
    # 例外レスポンスでは response が捨てられるので、ハンドラ用に残しておく
    request.state.rate_limit_headers = headers
    if not result.allowed:
        raise TooManyRequests()


Store = Annotated[ReservationStore, Depends(get_store)]
Redis = Annotated[aioredis.Redis, Depends(get_redis)]


app = FastAPI(
    title="Inventory Reservation API",
    lifespan=lifespan,
    dependencies=[Depends(enforce_rate_limit)],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request Models ───────────────────────────────


class CreateItemRequest(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
    initial_quantity: Annotated[int, Field(strict=True, ge=1)]


class CreateReservationRequest(BaseModel):
    item_id: UUID
    customer_id: Annotated[str, StringConstraints(min_length=1, max_length=255)]
    quantity: Annotated[int, Field(strict=True, ge=1)]

    @field_validator("customer_id")
    @classmethod
    def customer_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Customer ID is required")
        return value


def success(data) -> dict:
    return {"success": True, "data": jsonable_encoder(data)}


def failure(
    code: ErrorCode | str,
    message: str,
    status_code: int,
    request: Request | None = None,
) -> JSONResponse:
    headers = getattr(request.state, "rate_limit_headers", None) if request else None
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


# ── Error Handlers ───────────────────────────────


@app.exception_handler(ReservationServiceError)
async def handle_service_error(request: Request, exc: ReservationServiceError):
    status_code = STATUS_BY_CODE.get(exc.code, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return failure(exc.code.value, exc.message, status_code, request)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    messages = ", ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:])}: {err['msg']}"
        for err in exc.errors()
    )
    error = ValidationError(messages)
    return failure(error.code.value, error.message, 400, request)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code in (404, 405):
        return failure(
            ErrorCode.NOT_FOUND.value,
            f"Route {request.method} {request.url.path} not found",
            404,
        )
    return failure(ErrorCode.INTERNAL_SERVER_ERROR.value, str(exc.detail), exc.status_code)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalServerError()
    return failure(error.code.value, error.message, 500, request)


# ── Items ────────────────────────────────────────


@app.get("/v1/items")
async def list_items(store: Store):
    """全商品を取得（新しい順）"""
    return success(await queries.list_items(store))


@app.post("/v1/items", status_code=201)
async def create_item(req: CreateItemRequest, store: Store, redis: Redis):
    """商品登録"""
    item = await commands.create_item(store, redis, req.name, req.initial_quantity)
    return success(item)


@app.get("/v1/items/{item_id}")
async def get_item_status(item_id: UUID, store: Store):
    """商品の在庫内訳（available / reserved / confirmed）"""
    return success(await queries.get_item_status(store, item_id))


# ── Reservations ─────────────────────────────────


@app.get("/v1/reservations")
async def list_reservations(store: Store):
    """全予約を取得（新しい順）"""
    return success(await queries.list_reservations(store))


@app.get("/v1/reservations/{reservation_id}")
async def get_reservation(reservation_id: UUID, store: Store):
    return success(await queries.get_reservation(store, reservation_id))


@app.post("/v1/reservations", status_code=201)
async def create_reservation(req: CreateReservationRequest, store: Store, redis: Redis):
    """予約作成（数量を一時確保。確定・キャンセル・期限切れまで保持）"""
    reservation = await commands.create_reservation(
        store, redis, req.item_id, req.customer_id, req.quantity
    )
    return success(reservation)


@app.post("/v1/reservations/{reservation_id}/confirm")
async def confirm_reservation(reservation_id: UUID, store: Store, redis: Redis):
    """予約確定（確保数量を恒久的に差し引く）"""
    return success(await commands.confirm_reservation(store, redis, reservation_id))


@app.post("/v1/reservations/{reservation_id}/cancel")
async def cancel_reservation(reservation_id: UUID, store: Store, redis: Redis):
    """予約キャンセル（確保数量を解放）"""
    return success(await commands.cancel_reservation(store, redis, reservation_id))


# ── Maintenance ──────────────────────────────────


@app.post("/v1/maintenance/expire-reservations")
async def expire_reservations(store: Store, redis: Redis):
    """期限切れ予約のスイープ（外部トリガー用）"""
    return success(await maintenance.expire_reservations(store, redis))


# ── Misc ─────────────────────────────────────────


@app.get("/", include_in_schema=False)
async def root():
    return RedirectResponse("/docs")


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "reservation-service",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
