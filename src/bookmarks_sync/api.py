"""FastAPI application exposing the sync engine.

Routes are transport-only: resolve the caller, call one service, render the
result. Every failure is a SyncError subclass rendered by one handler as
``{"error": code, "message": ..., "action_required"?: "reconnect"}``.

The caller is identified by the ``X-User-Id`` header, set by whatever
authenticating proxy sits in front of this service.
"""

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Cookie, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from .config import AppConfig, load_config
from .errors import (
    AuthenticationError,
    InvalidRequestError,
    RateLimitedError,
    SyncError,
    UnauthenticatedError,
)
from .services import Services, build_services

logger = logging.getLogger(__name__)

SESSION_COOKIE = "x_auth_session"


class CallbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    state: str
    session_handle: str | None = Field(default=None, alias="sessionHandle")


class MapFolderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folder_id: str = Field(alias="folderId")
    folder_name: str = Field(alias="folderName")
    collection_id: int | None = Field(default=None, alias="collectionId")
    create_new: bool = Field(default=False, alias="createNew")


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("Missing X-User-Id header")
    return x_user_id.strip()


UserId = Annotated[str, Depends(get_user_id)]
ServicesDep = Annotated[Services, Depends(get_services)]

router = APIRouter(prefix="/api/x")


@router.get("/auth/start")
def auth_start(user_id: UserId, services: ServicesDep, response: Response) -> dict:
    """Begin the authorization flow; the client redirects to ``authorizationUrl``."""
    pending = services.authenticator.start_authorization(user_id)
    response.set_cookie(
        SESSION_COOKIE,
        pending.session_handle,
        max_age=int(services.config.sync.auth_session_ttl),
        httponly=True,
        samesite="lax",
    )
    return {"authorizationUrl": pending.url, "sessionHandle": pending.session_handle}


@router.post("/auth/callback")
def auth_callback(
    body: CallbackRequest,
    services: ServicesDep,
    response: Response,
    x_auth_session: Annotated[str | None, Cookie()] = None,
) -> dict:
    """Complete the flow with the code and state X redirected back with.

    The pending session is found by ``sessionHandle`` in the body, falling
    back to the cookie set by ``/auth/start``.
    """
    handle = body.session_handle or x_auth_session
    if not handle:
        raise AuthenticationError("unknown_session", "No authorization session in progress")
    username = services.authenticator.complete_authorization(body.code, body.state, handle)
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True, "username": username}


@router.get("/status")
def connection_status(user_id: UserId, services: ServicesDep) -> dict:
    status = services.authenticator.status(user_id)
    return {
        "connected": status.connected,
        "username": status.username,
        "lastSync": status.last_sync.isoformat() if status.last_sync else None,
    }


@router.post("/sync")
def sync_all(user_id: UserId, services: ServicesDep) -> dict:
    return services.orchestrator.run_sync(user_id).as_dict()


@router.post("/sync/folder/{folder_id}")
def sync_folder(folder_id: str, user_id: UserId, services: ServicesDep) -> dict:
    return services.orchestrator.run_sync(user_id, folder_id=folder_id).as_dict()


@router.get("/folders")
def list_folders(user_id: UserId, services: ServicesDep) -> list[dict]:
    return [
        {"id": f.id, "name": f.name, "collectionId": f.collection_id, "mapped": f.mapped}
        for f in services.orchestrator.list_folders(user_id)
    ]


@router.post("/folders/map")
def map_folder(body: MapFolderRequest, user_id: UserId, services: ServicesDep) -> dict:
    mapping = services.folder_mapper.map_folder(
        user_id,
        body.folder_id,
        body.folder_name,
        collection_id=body.collection_id,
        create_new=body.create_new,
    )
    return {"success": True, "collectionId": mapping.collection_id}


@router.post("/disconnect")
def disconnect(user_id: UserId, services: ServicesDep) -> dict:
    services.authenticator.disconnect(user_id)
    return {"success": True}


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    content = {"error": exc.code, "message": exc.message}
    if exc.action_required:
        content["action_required"] = exc.action_required

    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are answered like any other invalid request."""
    return await sync_error_handler(request, InvalidRequestError("Invalid request body"))


def create_app(config: AppConfig | None = None, services: Services | None = None) -> FastAPI:
    """Create the application.

    Args:
        config: Loaded configuration; read from the default path when omitted.
        services: Prebuilt service graph (tests). Built from ``config`` otherwise,
            in which case the app owns it and closes it on shutdown.
    """
    owns_services = services is None
    if services is None:
        services = build_services(config or load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_services:
            services.close()

    app = FastAPI(title="X Bookmarks Sync", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    media_base = services.config.storage.media_base_url.rstrip("/")
    if media_base:
        app.mount(
            media_base,
            StaticFiles(directory=services.config.storage.media_dir, check_dir=False),
            name="media",
        )

    return app
