"""
HTTP API for mosquitto-sync.

This module exposes BrokerSync over REST:
- POST   /api/v1/auth/sign-up      provision a user
- GET    /api/v1/users/{user_id}   read a user
- GET    /api/v1/topics            list topics
- POST   /api/v1/topics            create a topic
- GET    /api/v1/topics/{id}       read a topic
- PUT    /api/v1/topics/{id}       change a topic's permissions
- DELETE /api/v1/topics/{id}       delete a topic
- POST   /api/v1/broker            start/stop the broker
- GET    /health                   liveness and broker state

Invariants:
    - Authenticated routes require X-User-ID; X-Role defaults to User
    - Errors are JSON {"error", "error_code"} with a status derived from the error type
    - Handlers hold no state; everything goes through app.state.sync

How to change safely:
    - Add routes, don't change the shape of existing responses
    - Map new error types in ERROR_STATUS
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from ..config import ServerConfig
from ..errors import (
    AccessDeniedError,
    AclIOError,
    BrokerSyncError,
    CommandTimeout,
    ConflictError,
    CredentialWriteFailed,
    RecordNotFoundError,
    SupervisorError,
    TopicNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from ..sync.directory import Role, TopicRecord, UserRecord
from ..sync.facade import BrokerSync

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[BrokerSyncError], int] = {
    ValidationError: 400,
    ConflictError: 400,
    AccessDeniedError: 403,
    RecordNotFoundError: 404,
    UserNotFoundError: 404,
    TopicNotFoundError: 404,
    AclIOError: 500,
    CredentialWriteFailed: 502,
    SupervisorError: 503,
    CommandTimeout: 504,
}


# --- Request/Response Models ---


class SignUpRequest(BaseModel):
    """Request to provision a user."""

    email: str = Field(..., description="E-mail, also the broker username")
    password: str = Field(..., description="Broker and account password")
    full_name: str = Field("", description="Display name")


class TopicCreateRequest(BaseModel):
    """Request to create a topic."""

    name: str = Field(..., description="Topic filter")
    can_read: bool = Field(False, description="Grant subscribe access")
    can_write: bool = Field(False, description="Grant publish access")


class TopicPermissionsRequest(BaseModel):
    """Request to change a topic's permissions."""

    can_read: bool = False
    can_write: bool = False


class BrokerToggleRequest(BaseModel):
    """Request to start or stop the broker."""

    enabled: bool


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str
    role: str
    mosquitto_on: bool
    created_at: int
    updated_at: int

    @classmethod
    def from_record(cls, user: UserRecord) -> UserResponse:
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role.value,
            mosquitto_on=user.mosquitto_on,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TopicResponse(BaseModel):
    id: int
    user_id: int
    name: str
    can_read: bool
    can_write: bool
    created_at: int
    updated_at: int

    @classmethod
    def from_record(cls, topic: TopicRecord) -> TopicResponse:
        return cls(
            id=topic.id,
            user_id=topic.user_id,
            name=topic.name,
            can_read=topic.can_read,
            can_write=topic.can_write,
            created_at=topic.created_at,
            updated_at=topic.updated_at,
        )


class TopicListResponse(BaseModel):
    topics: list[TopicResponse]
    count_rows: int


class BrokerStateResponse(BaseModel):
    enabled: bool
    running: bool
    pid: int | None = None


# --- Dependencies ---


def get_sync(request: Request) -> BrokerSync:
    """Get BrokerSync from app state."""
    return request.app.state.sync


def get_client_id(x_user_id: int | None = Header(None, alias="X-User-ID")) -> int:
    """Caller id from the X-User-ID header."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="X-User-ID header is required")
    return x_user_id


def get_role(x_role: str | None = Header(None, alias="X-Role")) -> Role:
    """Caller role from the X-Role header (default User)."""
    if not x_role:
        return Role.USER
    try:
        role = Role(x_role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_role}") from None
    if role is Role.ANONYMOUS:
        raise HTTPException(status_code=403, detail="access denied")
    return role


# --- Routes ---

router = APIRouter()


@router.post("/auth/sign-up", status_code=201, response_model=UserResponse)
async def sign_up(body: SignUpRequest, sync: BrokerSync = Depends(get_sync)) -> UserResponse:
    user = await sync.sign_up(body.email, body.password, body.full_name)
    return UserResponse.from_record(user)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> UserResponse:
    user = await sync.get_user(user_id, client_id, role)
    return UserResponse.from_record(user)


@router.get("/topics", response_model=TopicListResponse)
async def list_topics(
    page: int | None = None,
    page_size: int | None = None,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> TopicListResponse:
    topics, total = await sync.list_topics(client_id, role, page=page, page_size=page_size)
    return TopicListResponse(
        topics=[TopicResponse.from_record(t) for t in topics],
        count_rows=total,
    )


@router.post("/topics", status_code=201, response_model=TopicResponse)
async def create_topic(
    body: TopicCreateRequest,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> TopicResponse:
    topic = await sync.create_topic(client_id, body.name, body.can_read, body.can_write)
    return TopicResponse.from_record(topic)


@router.get("/topics/{topic_id}", response_model=TopicResponse)
async def get_topic(
    topic_id: int,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> TopicResponse:
    topic = await sync.get_topic(topic_id, client_id, role)
    return TopicResponse.from_record(topic)


@router.put("/topics/{topic_id}", response_model=TopicResponse)
async def update_topic(
    topic_id: int,
    body: TopicPermissionsRequest,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> TopicResponse:
    topic = await sync.update_topic(topic_id, client_id, body.can_read, body.can_write, role)
    return TopicResponse.from_record(topic)


@router.delete("/topics/{topic_id}", status_code=204)
async def delete_topic(
    topic_id: int,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> None:
    await sync.delete_topic(topic_id, client_id, role)


@router.post("/broker", response_model=BrokerStateResponse)
async def toggle_broker(
    body: BrokerToggleRequest,
    client_id: int = Depends(get_client_id),
    role: Role = Depends(get_role),
    sync: BrokerSync = Depends(get_sync),
) -> BrokerStateResponse:
    running = await sync.toggle_broker(client_id, body.enabled)
    return BrokerStateResponse(enabled=body.enabled, running=running, pid=sync.supervisor.pid)


# --- Application ---


async def handle_broker_sync_error(request: Request, exc: BrokerSyncError) -> JSONResponse:
    status = 500
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            status = ERROR_STATUS[error_type]
            break
    if status >= 500:
        logger.error(f"HTTP handler error: {exc.message}", extra={"error_code": exc.code})
    return JSONResponse({"error": exc.message, "error_code": exc.code}, status_code=status)


def create_http_app(
    sync: BrokerSync | None = None,
    config: ServerConfig | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        sync: Prebuilt facade (built from config on startup if omitted)
        config: Server configuration (loaded from env if omitted)

    Returns:
        FastAPI application
    """
    config = config or ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owns_sync = sync is None
        app.state.sync = sync or BrokerSync.from_config(config)
        yield
        if owns_sync:
            await app.state.sync.shutdown()

    app = FastAPI(
        title="mosquitto-sync",
        description="Provisions Mosquitto ACL and password entries for users and topics.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.cors_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-ID", "X-Role"],
    )
    app.add_exception_handler(BrokerSyncError, handle_broker_sync_error)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health(request: Request) -> dict:
        supervisor = request.app.state.sync.supervisor
        return {
            "status": "healthy",
            "service": "mosquitto-sync",
            "broker_running": supervisor.is_running,
            "broker_pid": supervisor.pid,
        }

    return app
