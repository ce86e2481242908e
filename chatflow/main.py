import asyncio
import functools
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse

from .chat_service import ChatService
from .config import AppSettings, CONFIG_PATH, ModelConfig, load_settings, save_settings
from .db import Database
from .errors import DuplicateSubmissionError, TurnValidationError
from .image_store import ImageStore
from .llm import BaseLLMClient, ProviderRegistry, create_llm_client
from .schemas import (
    RatingRequest,
    SessionCreateRequest,
    SessionUpdateRequest,
    TurnRequest,
    parse_message_content,
)
from .streaming import sse_format


router = APIRouter()

RATING_VALUES = {-1, 0, 1}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_image_store(request: Request) -> ImageStore:
    return request.app.state.image_store


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_principal(x_user_id: Optional[str] = Header(default=None)) -> str:
    return (x_user_id or "").strip() or "local"


async def require_session(session_id: str, principal: str, db: Database) -> Dict[str, Any]:
    session = await db.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if session["user_id"] != principal:
        raise HTTPException(status_code=403, detail="Session belongs to another user")
    return session


def message_view(row: Dict[str, Any]) -> Dict[str, Any]:
    text, images = parse_message_content(row["content"])
    return {**row, "text": text, "images": [img.to_envelope() for img in images]}


def build_providers(
    settings: AppSettings, factory: Optional[Callable[[ModelConfig], BaseLLMClient]] = None
) -> ProviderRegistry:
    factory = factory or functools.partial(create_llm_client, timeout=settings.provider_read_timeout_s)
    return ProviderRegistry(settings.models, factory=factory)


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    chat_service: ChatService = Depends(get_chat_service),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings must be a JSON object.")
    current = settings.model_dump()
    # masked keys sent back by the client keep the stored value
    for key, model in (body.get("models") or {}).items():
        if isinstance(model, dict) and model.get("api_key") == "********":
            model["api_key"] = (current["models"].get(key) or {}).get("api_key")
    try:
        new_settings = AppSettings(**{**current, **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    providers = build_providers(new_settings, request.app.state.llm_factory)
    request.app.state.settings = new_settings
    request.app.state.providers = providers
    chat_service.replace_providers(new_settings, providers)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/models")
async def list_models(settings: AppSettings = Depends(get_settings)):
    models = [
        {
            "key": model.key,
            "label": model.label or model.model_id,
            "provider": model.provider,
            "model_id": model.model_id,
            "supports_multimodal": model.supports_multimodal,
            "supports_image_generation": model.supports_image_generation,
            "default": model.key == settings.default_model,
        }
        for model in settings.models.values()
    ]
    agents = [
        {"key": agent.key, "name": agent.name or agent.key, "model": agent.model}
        for agent in settings.agents.values()
    ]
    return {"models": models, "agents": agents}


@router.get("/api/sessions")
async def list_sessions(principal: str = Depends(get_principal), db: Database = Depends(get_db)):
    return {"sessions": await db.list_sessions(principal)}


@router.post("/api/sessions")
async def create_session(
    payload: SessionCreateRequest,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
):
    title = (payload.title or "").strip() or None
    return await db.create_session(principal, title)


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, principal: str = Depends(get_principal), db: Database = Depends(get_db)):
    return await require_session(session_id, principal, db)


@router.patch("/api/sessions/{session_id}")
async def update_session(
    session_id: str,
    payload: SessionUpdateRequest,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
):
    await require_session(session_id, principal, db)
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required.")
    return await db.update_session_title(session_id, title)


@router.delete("/api/sessions/{session_id}")
async def delete_session(
    session_id: str,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
):
    await require_session(session_id, principal, db)
    chat_service.stop(session_id)
    await db.delete_session(session_id)
    return {"ok": True}


@router.post("/api/chat/{session_id}")
async def send_turn(
    session_id: str,
    payload: TurnRequest,
    principal: str = Depends(get_principal),
    chat_service: ChatService = Depends(get_chat_service),
):
    try:
        controller = await chat_service.start_turn(session_id, principal, payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc).strip("'\""))
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except TurnValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except DuplicateSubmissionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    async def event_generator():
        try:
            async for event in controller.wire_events():
                yield sse_format(event)
        except asyncio.CancelledError:
            pass
        finally:
            if not controller.closed:
                chat_service.abandon(controller.message_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Message-Id": controller.message_id},
    )


@router.post("/api/chat/{session_id}/stop")
async def stop_turn(
    session_id: str,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
):
    await require_session(session_id, principal, db)
    return {"ok": True, "stopped": chat_service.stop(session_id)}


@router.get("/api/chat/{session_id}/messages")
async def list_messages(
    session_id: str,
    limit: Optional[int] = None,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
):
    await require_session(session_id, principal, db)
    rows = await db.list_messages(session_id, limit=limit)
    return {"messages": [message_view(row) for row in rows]}


@router.patch("/api/chat/{session_id}/messages/{message_id}")
async def rate_message(
    session_id: str,
    message_id: str,
    payload: RatingRequest,
    principal: str = Depends(get_principal),
    db: Database = Depends(get_db),
):
    await require_session(session_id, principal, db)
    if payload.rating is not None and payload.rating not in RATING_VALUES:
        raise HTTPException(status_code=400, detail="Invalid rating value. Must be -1, 0, or 1")
    message = await db.get_message(message_id)
    if not message or message["session_id"] != session_id:
        raise HTTPException(status_code=404, detail="Message not found")
    return await db.update_message_rating(message_id, payload.rating)


@router.get("/api/images/{name}")
async def get_image(name: str, store: ImageStore = Depends(get_image_store)):
    try:
        path = store.path_for(name)
    except ValueError:
        raise HTTPException(status_code=404, detail="Image not found")
    if not path.exists():
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(path)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_factory: Optional[Callable[[ModelConfig], BaseLLMClient]] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        app.state.image_store.ensure_dir()
        try:
            yield
        finally:
            await app.state.chat_service.close()
            await app.state.providers.close()

    app = FastAPI(title="Chatflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_factory = llm_factory
    app.state.providers = build_providers(settings, llm_factory)
    app.state.image_store = ImageStore(Path(settings.image_dir).resolve(), settings.image_url_prefix)
    app.state.chat_service = ChatService(
        app.state.db,
        settings,
        app.state.providers,
        app.state.image_store,
    )
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatflow.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
