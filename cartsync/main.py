"""
FastAPI application exposing the local cart/stock view to the UI layer.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cartsync.backend_client import ShopBackend
from cartsync.cart_store import CartStore
from cartsync.config import Config
from cartsync.exceptions import (
    BackendError,
    MutationFailedError,
    NoIdentityError,
    OperationBusyError,
    PermissionDeniedError,
    PreconditionError,
    RedisConnectionError
)
from cartsync.middleware import MetricsMiddleware
from cartsync.models import (
    AddItemRequest,
    CartEnabledRequest,
    CartResponse,
    CartState,
    LoginRequest,
    MutationResult,
    OrderRequest,
    StockEntry
)
from cartsync.order_service import OrderService
from cartsync.reconcile import ReconcileEngine
from cartsync.session import SessionBinding
from cartsync.snapshot_store import SnapshotStore
from cartsync.stock_cache import StockCache

logger = logging.getLogger(__name__)


def _cart_response(session: SessionBinding, state: Optional[CartState] = None) -> CartResponse:
    store = session.store
    state = state or store.state
    aggregates = store.aggregates()
    context = session.context
    return CartResponse(
        owner_email=state.owner_email,
        lines=state.lines,
        enabled=state.enabled,
        error=state.error,
        item_count=aggregates.item_count,
        total_price=aggregates.total_price,
        viewing_as_admin=bool(context and context.viewing_as_admin)
    )


def create_app(backend=None, snapshots: Optional[SnapshotStore] = None) -> FastAPI:
    """Wire the reconciliation core and build the FastAPI application"""
    backend = backend or ShopBackend()
    stock_cache = StockCache()
    snapshots = snapshots or SnapshotStore()
    store = CartStore(snapshots=snapshots, stock_cache=stock_cache)
    engine = ReconcileEngine(store, stock_cache, backend)
    session = SessionBinding(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if hasattr(backend, "aclose"):
            await backend.aclose()

    app = FastAPI(
        title="Cart Sync API",
        description="Optimistic cart and stock reconciliation against the shop backend",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.snapshots = snapshots
    app.state.session = session
    app.state.orders = OrderService(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)

    _register_routes(app)
    _register_error_handlers(app)
    return app


def _session(request: Request) -> SessionBinding:
    return request.app.state.session


def _engine(request: Request) -> ReconcileEngine:
    return request.app.state.engine


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint.
        Always returns HTTP 200 if the application is running; reports
        whether the snapshot store is reachable.
        """
        redis_status = "healthy"
        redis_latency_ms = None

        ping_start = time.time()
        if request.app.state.snapshots.redis.ping():
            redis_latency_ms = round((time.time() - ping_start) * 1000, 2)
        else:
            redis_status = "unhealthy"

        return {
            "status": "healthy",
            "service": "cartsync",
            "redis": {"status": redis_status, "latency_ms": redis_latency_ms},
            "timestamp": time.time()
        }

    @app.post("/session/login", response_model=CartResponse)
    async def login(request: Request, body: LoginRequest):
        """Bind an identity; the snapshot is restored and then resynced"""
        session = _session(request)
        state = await session.login(body.email, is_admin=body.is_admin, token=body.token)
        return _cart_response(session, state)

    @app.post("/session/logout")
    async def logout(request: Request):
        _session(request).logout()
        return {"success": True, "message": "Session cleared"}

    @app.post("/session/view/{email}", response_model=CartResponse)
    async def view_cart_of(request: Request, email: str):
        """Administrator opens another user's cart"""
        session = _session(request)
        state = await session.view_cart_of(email)
        return _cart_response(session, state)

    @app.post("/session/view-own", response_model=CartResponse)
    async def view_own_cart(request: Request):
        session = _session(request)
        state = await session.view_own_cart()
        return _cart_response(session, state)

    @app.get("/cart", response_model=CartResponse)
    async def get_cart(request: Request):
        session = _session(request)
        session.require_context()
        return _cart_response(session)

    @app.post("/cart/items/{record_id}", response_model=MutationResult)
    async def add_cart_item(request: Request, record_id: int, body: Optional[AddItemRequest] = None):
        """Optimistically add one unit; rolled back if the backend fails"""
        session = _session(request)
        record = body.to_record(record_id) if body is not None else None
        return await _engine(request).add_to_cart(session.require_context(), record_id, record)

    @app.delete("/cart/items/{record_id}", response_model=MutationResult)
    async def remove_cart_item(request: Request, record_id: int):
        session = _session(request)
        return await _engine(request).remove_from_cart(session.require_context(), record_id)

    @app.get("/cart/count")
    async def get_cart_count(request: Request):
        """Item count as the backend reports it, without touching the local cart"""
        context = _session(request).require_context()
        count = await _engine(request).backend.fetch_cart_item_count(context.owner_email)
        return {"owner_email": context.owner_email, "item_count": count}

    @app.post("/cart/resync", response_model=CartResponse)
    async def resync_cart(request: Request):
        session = _session(request)
        state = await session.refresh()
        return _cart_response(session, state)

    @app.post("/cart/enabled", response_model=CartResponse)
    async def set_cart_enabled(request: Request, body: CartEnabledRequest):
        """Administrator enables or disables the viewed cart"""
        session = _session(request)
        state = await _engine(request).set_cart_enabled(session.require_context(), body.enabled)
        return _cart_response(session, state)

    @app.get("/stock/{record_id}")
    async def get_stock(request: Request, record_id: int):
        quantity = _session(request).store.stock_for(record_id)
        if quantity is None:
            return {"record_id": record_id, "quantity": None, "known": False}
        return {**StockEntry(record_id=record_id, quantity=quantity).model_dump(), "known": True}

    @app.post("/orders")
    async def create_order(request: Request, body: OrderRequest):
        session = _session(request)
        result = await request.app.state.orders.create_order(session.require_context(), body.payment_method)
        return {
            "success": True,
            "message": result["message"],
            "order": result["order"],
            "cart": _cart_response(session, result["cart"]).model_dump(mode="json")
        }


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(NoIdentityError)
    async def no_identity_handler(request, exc):
        return JSONResponse(status_code=401, content={"error": "Not signed in", "message": str(exc)})

    @app.exception_handler(PermissionDeniedError)
    async def permission_handler(request, exc):
        return JSONResponse(status_code=403, content={"error": "Forbidden", "message": str(exc)})

    @app.exception_handler(PreconditionError)
    async def precondition_handler(request, exc):
        return JSONResponse(status_code=400, content={"error": "Rejected", "message": str(exc)})

    @app.exception_handler(OperationBusyError)
    async def busy_handler(request, exc):
        return JSONResponse(status_code=409, content={"error": "Busy", "message": str(exc)})

    @app.exception_handler(MutationFailedError)
    async def mutation_failed_handler(request, exc):
        return JSONResponse(
            status_code=502,
            content={"error": "Cart update failed", "message": str(exc), "record_id": exc.record_id}
        )

    @app.exception_handler(BackendError)
    async def backend_error_handler(request, exc):
        return JSONResponse(
            status_code=502,
            content={"error": "Shop backend unavailable", "message": str(exc), "status_code": exc.status_code}
        )

    @app.exception_handler(RedisConnectionError)
    async def redis_error_handler(request, exc):
        return JSONResponse(
            status_code=503,
            content={"error": "Service unavailable", "message": "Redis connection failed"}
        )

    # Generic exception handler for unhandled errors
    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc):
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc),
                "type": type(exc).__name__
            }
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
