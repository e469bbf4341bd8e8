from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig
from pymongo.errors import PyMongoError

from .configuration import load_config
from .database import DuplicateAcceptError, IdCardStore
from .middleware import ConnectionGateMiddleware
from .models import (
    AcceptanceHistory,
    AcceptedIdCard,
    AcceptIdCardRequest,
    AcceptResult,
    HealthStatus,
    LoginRequest,
    LoginResult,
    PrintRequest,
    encode_document,
)

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "ID card request accepted successfully"
INVALID_ADMIN_MESSAGE = "Invalid admin ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    store: IdCardStore = app.state.store
    loop = asyncio.get_running_loop()
    # Serve (and answer 503) while the first connection is still being made
    opening = loop.run_in_executor(None, store.open)
    try:
        yield
    finally:
        store.close()
        await opening


def get_store(request: Request) -> IdCardStore:
    return request.app.state.store


def _storage_error(action: str, exc: PyMongoError) -> JSONResponse:
    logger.error(f"{action}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


def _is_unparseable_body(exc: RequestValidationError) -> bool:
    for error in exc.errors():
        if error.get("type") == "json_invalid":
            return True
        if error.get("type") == "missing" and tuple(error.get("loc", ())) == ("body",):
            return True
    return False


def _format_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request body"


def create_app(config: Optional[DictConfig] = None, store: Optional[IdCardStore] = None) -> FastAPI:
    """
    Build the ID-card API.

    Args:
        config: Service configuration; loaded from the environment when omitted
        store: Storage handle; built from ``config`` when omitted

    Returns:
        The FastAPI application, not yet started
    """
    if config is None:
        config = load_config()
    if store is None:
        store = IdCardStore.from_config(config)

    app = FastAPI(title="ID Card Request API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.config = config

    # Added first so CORS wraps it and 503 responses still carry CORS headers
    app.add_middleware(ConnectionGateMiddleware, get_store=lambda: app.state.store)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.allowed_origins),
        allow_methods=list(config.allowed_methods),
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Unparseable JSON is the client's fault; a value that cannot be cast
        # to a record field is reported like any other failed save
        status_code = 400 if _is_unparseable_body(exc) else 500
        return JSONResponse(status_code=status_code, content={"error": _format_validation_error(exc)})

    @app.get("/healthz", response_model=HealthStatus)
    def healthcheck(store: IdCardStore = Depends(get_store)) -> HealthStatus:
        return HealthStatus(ok=True, db=store.is_connected)

    @app.get("/api/printed", responses={200: {"model": list[PrintRequest]}})
    def list_printed(store: IdCardStore = Depends(get_store)):
        try:
            documents = store.list_print_requests()
        except PyMongoError as exc:
            return _storage_error("Failed to list print requests", exc)
        return [encode_document(doc) for doc in documents]

    @app.get("/api/acchistoryids", responses={200: {"model": list[AcceptanceHistory]}})
    def list_acceptance_history(store: IdCardStore = Depends(get_store)):
        try:
            documents = store.list_acceptance_history()
        except PyMongoError as exc:
            return _storage_error("Failed to list acceptance history", exc)
        return [encode_document(doc) for doc in documents]

    @app.get("/api/accepted-idcards", responses={200: {"model": list[AcceptedIdCard]}})
    def list_accepted_cards(store: IdCardStore = Depends(get_store)):
        try:
            documents = store.list_accepted_cards()
        except PyMongoError as exc:
            return _storage_error("Failed to list accepted ID cards", exc)
        return [encode_document(doc) for doc in documents]

    @app.post("/api/accept-idcard", status_code=201, responses={201: {"model": AcceptResult}})
    def accept_id_card(payload: AcceptIdCardRequest, store: IdCardStore = Depends(get_store)):
        try:
            saved = store.accept_request(payload)
        except DuplicateAcceptError as exc:
            logger.info(str(exc))
            return JSONResponse(status_code=409, content={"error": str(exc)})
        except PyMongoError as exc:
            return _storage_error("Error processing ID card request", exc)
        return {"message": ACCEPTED_MESSAGE, "data": encode_document(saved)}

    @app.post("/api/login", response_model=LoginResult, response_model_exclude_none=True)
    def login(payload: LoginRequest, store: IdCardStore = Depends(get_store)):
        try:
            found = store.is_admin(payload.adminId)
        except PyMongoError as exc:
            return _storage_error("Admin lookup failed", exc)
        if not found:
            return JSONResponse(status_code=401, content={"success": False, "message": INVALID_ADMIN_MESSAGE})
        return LoginResult(success=True)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve ``app`` on the configured host and port."""
    config = app.state.config
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=config.host, port=config.port)
