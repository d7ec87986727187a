"""
Orders — FastAPI entry point

    ┌──────────┐  POST /orders  ┌───────────┐  INSERT   ┌──────────┐
    │ Frontend │──────────────▶ │ Order API │─────────▶ │ Postgres │
    │          │  GET /orders   │           │           └────▲─────┘
    └──────────┘ (polling)      └─────┬─────┘                │
                                      │ XADD OrderCreated    │ status
                                ┌─────▼─────┐          ┌─────┴────┐
                                │   Redis   │────────▶ │  Worker  │
                                │  Stream   │          │          │
                                └───────────┘          └──────────┘

Run with:  uvicorn orders.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import commands, queries, store
from .aggregate import Order, OrderStatus
from .channel import EventChannel
from .config import Settings, configure_logging, get_settings
from .errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────


class CreateOrderRequest(BaseModel):
    # Untyped so that every field, well-formed or not, reaches the command's
    # validation and all errors are reported together
    customer: Any = None
    product: Any = None
    amount: Any = None


class OrderResponse(BaseModel):
    id: UUID
    customer: str
    product: str
    amount: float
    status: OrderStatus
    created_at: datetime = Field(serialization_alias="createdAt")

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            customer=order.customer,
            product=order.product,
            amount=float(order.amount),
            status=order.status,
            created_at=order.created_at,
        )


# ── Dependencies ─────────────────────────────────


async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


def get_channel(request: Request) -> EventChannel:
    return request.app.state.channel


# ── Order Endpoints ──────────────────────────────

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", status_code=201, response_model=OrderResponse, response_model_by_alias=True)
async def create_order(
    req: CreateOrderRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    channel: EventChannel = Depends(get_channel),
):
    """Create an order; processing happens asynchronously in the worker."""
    order = await commands.create_order(
        session, channel, req.customer, req.product, req.amount
    )
    response.headers["Location"] = f"/orders/{order.id}"
    return OrderResponse.from_order(order)


@router.get("", response_model=list[OrderResponse], response_model_by_alias=True)
async def list_orders(session: AsyncSession = Depends(get_session)):
    return [OrderResponse.from_order(o) for o in await queries.list_orders(session)]


@router.get("/{order_id}", response_model=OrderResponse, response_model_by_alias=True)
async def get_order(order_id: str, session: AsyncSession = Depends(get_session)):
    # A malformed id cannot name an order
    try:
        parsed = UUID(order_id)
    except ValueError:
        raise NotFoundError(order_id) from None
    return OrderResponse.from_order(await queries.get_order(session, parsed))


# ── Health ───────────────────────────────────────

health_router = APIRouter(prefix="/health", tags=["health"])


@health_router.get("")
async def health():
    return {"status": "ok", "service": "order-api"}


@health_router.get("/live")
async def health_live():
    return {"status": "Healthy"}


@health_router.get("/ready")
async def health_ready(request: Request):
    """Database down is Unhealthy; Redis down only degrades the service."""
    checks: dict[str, str] = {}

    try:
        async with request.app.state.session_factory() as session:
            await store.ping(session)
        checks["database"] = "Healthy"
    except Exception:
        logger.exception("Readiness check failed for database")
        checks["database"] = "Unhealthy"

    try:
        await request.app.state.channel.redis.ping()
        checks["messaging"] = "Healthy"
    except Exception:
        logger.exception("Readiness check failed for messaging")
        checks["messaging"] = "Degraded"

    if checks["database"] == "Unhealthy":
        return JSONResponse({"status": "Unhealthy", "checks": checks}, status_code=503)
    if checks["messaging"] == "Degraded":
        return {"status": "Degraded", "checks": checks}
    return {"status": "Healthy", "checks": checks}


# ── Error Handlers ───────────────────────────────


async def _validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"detail": str(exc), "errors": exc.errors}, status_code=400)


async def _request_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "path", "query")]
        errors[".".join(loc) or "body"] = err.get("msg", "invalid value")
    return JSONResponse({"detail": "Invalid request", "errors": errors}, status_code=400)


async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=404)


async def _persistence_error(_request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure: %s", exc)
    return JSONResponse({"detail": "Order store unavailable"}, status_code=503)


# ── Application Factory ──────────────────────────


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    channel: EventChannel | None = None,
) -> FastAPI:
    """
    Build the API. Collaborators that are not passed in are created in the
    lifespan from settings and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        engine = None
        redis_conn = None

        if app.state.session_factory is None:
            engine = create_async_engine(settings.database_url, echo=settings.database_echo)
            await store.create_schema(engine)
            app.state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
        if app.state.channel is None:
            redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
            app.state.channel = EventChannel(
                redis_conn,
                stream=settings.order_stream,
                group=settings.consumer_group,
                consumer=settings.consumer_name,
                max_length=settings.stream_max_length,
            )
        yield
        if redis_conn is not None:
            await redis_conn.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Order API", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.channel = channel

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(PersistenceError, _persistence_error)

    app.include_router(router)
    app.include_router(health_router)
    return app


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "orders.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
