"""FastAPI web server for opencode-webui."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .auth import set_api_key
from .chat import ChatOrchestrator, build_mode_policies
from .config import AppConfig
from .core import ChatRequest
from .files import (
    MAX_RECENT_DEPTH,
    FileTooLargeError,
    collect_recent_files,
    default_since_ms,
    file_info,
    read_file_payload,
    resolve_file_path,
)
from .history import HistoryService
from .models import parse_models
from .projects import ProjectError, add_project, list_projects, resolve_project_path
from .runtime import Runtime
from .server_bridge import OpencodeServer

logger = logging.getLogger(__name__)

router = APIRouter()


class ProjectCreateRequest(BaseModel):
    """Request body for adding a project."""
    path: str | None = None
    create: bool = True


class ApiKeyRequest(BaseModel):
    """Request body for storing a provider API key."""
    key: str | None = None


class OAuthAuthorizeRequest(BaseModel):
    """Request body for starting a provider OAuth flow."""
    method: int


class OAuthCallbackRequest(BaseModel):
    """Request body for finishing a provider OAuth flow."""
    method: int
    code: str | None = None


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as ``400 {"error": ...}``."""
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    logger.debug("Rejected %s %s: %s", request.method, request.url.path, messages)
    return JSONResponse({"error": "; ".join(messages) or "Invalid request body"}, status_code=400)


def create_app(
    config: AppConfig | None = None,
    runtime=None,
    opencode_server: OpencodeServer | None = None,
) -> FastAPI:
    """Build the application and its long-lived services."""
    config = config or AppConfig.from_env()
    runtime = runtime or Runtime()
    opencode_server = opencode_server or OpencodeServer(
        runtime,
        config.opencode_path,
        host=config.server_host,
        port=config.server_port,
        url=config.server_url,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await opencode_server.close()

    app = FastAPI(title="opencode-webui", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.state.config = config
    app.state.runtime = runtime
    app.state.opencode_server = opencode_server
    app.state.chat = ChatOrchestrator(
        runtime,
        config.opencode_path,
        default_model=config.opencode_model,
        mode_policies=build_mode_policies(config.mode_overrides),
    )
    app.state.history = HistoryService(runtime, config.opencode_path)

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


def _project_dir(encoded_project_name: str, path: str | None) -> str | None:
    if path:
        return path
    return resolve_project_path(encoded_project_name)


# ── Projects ─────────────────────────────────────────────────────


@router.get("/api/projects")
async def get_projects():
    try:
        return {"projects": [p.to_dict() for p in list_projects()]}
    except Exception as e:
        logger.error("Error reading projects: %s", e)
        return JSONResponse({"error": "Failed to read projects"}, status_code=500)


@router.post("/api/projects")
async def create_project(body: ProjectCreateRequest):
    path = body.path
    if not path or not path.strip():
        return JSONResponse({"success": False, "error": "Project path is required"}, status_code=400)

    try:
        project = add_project(path.strip(), create=body.create)
    except ProjectError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    except OSError as e:
        logger.error("Error creating project: %s", e)
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)

    return {"success": True, "project": project.to_dict()}


# ── Histories ────────────────────────────────────────────────────


@router.get("/api/projects/{encoded_project_name}/histories")
async def get_histories(
    request: Request,
    encoded_project_name: str,
    path: str | None = Query(None, description="Project directory"),
):
    """Return the conversation list for a project directory."""
    try:
        return await request.app.state.history.list_histories(_project_dir(encoded_project_name, path))
    except Exception as e:
        logger.error("Error fetching conversation histories: %s", e)
        return JSONResponse(
            {"error": "Failed to fetch conversation histories", "details": str(e)},
            status_code=500,
        )


@router.get("/api/projects/{encoded_project_name}/histories/{session_id}")
async def get_conversation(
    request: Request,
    encoded_project_name: str,
    session_id: str,
    path: str | None = Query(None, description="Project directory"),
):
    """Return one conversation as protocol messages."""
    try:
        conversation = await request.app.state.history.load_conversation(
            session_id, _project_dir(encoded_project_name, path)
        )
    except Exception as e:
        logger.error("Error fetching conversation %s: %s", session_id, e)
        return JSONResponse(
            {"error": "Failed to fetch conversation details", "details": str(e)},
            status_code=500,
        )

    if conversation is None:
        return JSONResponse({"error": "Conversation not found", "sessionId": session_id}, status_code=404)
    return conversation


# ── Chat ─────────────────────────────────────────────────────────


@router.post("/api/chat")
async def chat(request: Request, chat_request: ChatRequest):
    """Stream one opencode run as newline-delimited JSON."""
    logger.debug("Received chat request %s (mode=%s)", chat_request.request_id, chat_request.permission_mode)
    return StreamingResponse(
        request.app.state.chat.stream_ndjson(chat_request),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/api/abort/{request_id}")
async def abort(request: Request, request_id: str):
    orchestrator: ChatOrchestrator = request.app.state.chat
    logger.debug("Abort attempt for %s; active: %s", request_id, orchestrator.registry.ids())
    if not orchestrator.abort(request_id):
        return JSONResponse({"error": "Request not found or already completed"}, status_code=404)
    return {"success": True, "message": "Request aborted"}


# ── Files ────────────────────────────────────────────────────────


def _file_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": message, "mimeType": "application/json"},
        status_code=status_code,
    )


@router.get("/api/file")
async def get_file(
    path: str | None = Query(None),
    workingDirectory: str | None = Query(None),
):
    if not path or not workingDirectory:
        return _file_error("Missing required parameters: path and workingDirectory", 400)

    resolved = resolve_file_path(path, workingDirectory)
    if not resolved:
        return _file_error("Invalid file path or path outside working directory", 403)
    if not os.path.exists(resolved):
        return _file_error("File not found", 404)
    if not os.path.isfile(resolved):
        return _file_error("Path is not a file", 400)

    try:
        return read_file_payload(resolved)
    except FileTooLargeError as e:
        return _file_error(str(e), 413)
    except OSError as e:
        logger.error("Error reading file %s: %s", resolved, e)
        return _file_error(str(e), 500)


@router.get("/api/file/info")
async def get_file_info(
    path: str | None = Query(None),
    workingDirectory: str | None = Query(None),
):
    if not path or not workingDirectory:
        return JSONResponse({"error": "Missing required parameters: path and workingDirectory"}, status_code=400)

    resolved = resolve_file_path(path, workingDirectory)
    if not resolved:
        return JSONResponse({"error": "Invalid file path"}, status_code=403)
    if not os.path.exists(resolved):
        return JSONResponse({"error": "File not found"}, status_code=404)

    try:
        return file_info(path, resolved)
    except OSError as e:
        logger.error("Error getting file info for %s: %s", resolved, e)
        return JSONResponse({"error": "Failed to get file info"}, status_code=500)


@router.get("/api/files/recent")
async def get_recent_files(
    workingDirectory: str | None = Query(None),
    since: str | None = Query(None, description="Epoch milliseconds"),
    maxDepth: str | None = Query(None),
):
    if not workingDirectory or not os.path.isdir(workingDirectory):
        return JSONResponse({"files": []}, status_code=400)

    try:
        since_ms = float(since) if since else default_since_ms()
        max_depth = int(float(maxDepth)) if maxDepth else 4
    except ValueError:
        return JSONResponse({"files": []}, status_code=400)

    try:
        files = collect_recent_files(workingDirectory, since_ms, max(0, min(max_depth, MAX_RECENT_DEPTH)))
    except OSError as e:
        logger.error("Error listing recent files: %s", e)
        return JSONResponse({"files": []}, status_code=500)
    return {"files": files}


# ── Models and providers ─────────────────────────────────────────


@router.get("/api/models")
async def get_models(request: Request):
    config: AppConfig = request.app.state.config
    result = await request.app.state.runtime.run_command(config.opencode_path, ["models"], cwd=os.getcwd())
    if not result.success or not result.stdout.strip():
        logger.error("Failed to list models: %s", result.stderr or "No output")
        return {"models": []}
    return {"models": parse_models(result.stdout)}


@router.get("/api/providers")
async def get_providers(request: Request):
    try:
        return await request.app.state.opencode_server.list_providers()
    except Exception as e:
        logger.error("Failed to load providers: %s", e)
        return JSONResponse(
            {"providers": [], "defaults": {}, "connected": [], "authMethods": {}, "error": str(e)},
            status_code=500,
        )


@router.post("/api/providers/{provider_id}/api-key")
async def store_provider_api_key(request: Request, provider_id: str, body: ApiKeyRequest):
    key = (body.key or "").strip()
    if not key:
        return JSONResponse({"ok": False, "error": "Missing provider or key"}, status_code=400)

    try:
        set_api_key(provider_id, key)
        await request.app.state.opencode_server.restart()
    except Exception as e:
        logger.error("Failed to store api key for %s: %s", provider_id, e)
        return JSONResponse({"ok": False, "error": "Failed to store key"}, status_code=500)
    return {"ok": True}


@router.post("/api/providers/{provider_id}/oauth/authorize")
async def authorize_provider_oauth(request: Request, provider_id: str, body: OAuthAuthorizeRequest):
    try:
        return await request.app.state.opencode_server.authorize_oauth(provider_id, body.method)
    except Exception as e:
        logger.error("Failed to authorize oauth for %s: %s", provider_id, e)
        return JSONResponse({"error": "Failed to authorize"}, status_code=500)


@router.post("/api/providers/{provider_id}/oauth/callback")
async def complete_provider_oauth(request: Request, provider_id: str, body: OAuthCallbackRequest):
    code = body.code.strip() if body.code else None

    try:
        server: OpencodeServer = request.app.state.opencode_server
        await server.complete_oauth(provider_id, body.method, code)
        await server.restart()
    except Exception as e:
        logger.error("Failed to complete oauth for %s: %s", provider_id, e)
        return JSONResponse({"error": "Failed to complete oauth"}, status_code=500)
    return {"ok": True}


# ── Front-end ────────────────────────────────────────────────────


@router.get("/{full_path:path}", include_in_schema=False)
async def frontend(request: Request, full_path: str):
    """Serve built assets, falling back to index.html for client-side routes."""
    if full_path.startswith("api/"):
        return PlainTextResponse("Not found", status_code=404)

    static_path: Path | None = request.app.state.config.static_path
    if static_path is None:
        return PlainTextResponse("Frontend not found", status_code=404)

    root = static_path.resolve()
    if full_path:
        candidate = (root / full_path).resolve()
        if candidate.is_file() and candidate.is_relative_to(root):
            return FileResponse(candidate)

    index = root / "index.html"
    if not index.is_file():
        return PlainTextResponse("Frontend not found", status_code=404)
    return HTMLResponse(index.read_text(encoding="utf-8"))
