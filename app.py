from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import os
import time
import logging

import requests

from ai_client import EXPLANATION_TYPES, GeminiClient
from asset_splitter import build_project_zip, file_stats
from chat_manager import ChatSession, ConversationStore
from deploy_ops import DeploymentHistory, DeploymentPipeline
from errors import BuilderError, NotFoundError, ValidationFailure
from explanation import TYPE_DESCRIPTIONS, ExplanationService
from helpers import format_date, slug_for_filename, utcnow
from preview import VIEWPORTS, PreviewRegistry, PreviewRenderer
from storage import CredentialStore, LocalStorage, clear_data, create_backup, restore_backup

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("builder-api")

STATE_DIR = os.environ.get("BUILDER_STATE_DIR", "builder_state")
HTTP_TIMEOUT = float(os.environ.get("BUILDER_HTTP_TIMEOUT", "60"))
PROVIDER_TOKEN_ENV = {"github": "GITHUB_TOKEN", "netlify": "NETLIFY_TOKEN", "vercel": "VERCEL_TOKEN"}
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


def resolve_state_dir(path: str) -> str:
    """Create the state directory, falling back to /tmp when the cwd is not writable."""
    try:
        os.makedirs(path, exist_ok=True)
        logger.info("Created/verified state directory: %s", path)
        return path
    except OSError:
        logger.exception("Failed to create state directory '%s' in cwd %s; using /tmp fallback", path, os.getcwd())
        fallback = "/tmp/builder_state"
        os.makedirs(fallback, exist_ok=True)
        return fallback


@dataclass
class BuilderServices:
    storage: LocalStorage
    credentials: CredentialStore
    ai: Any
    conversations: ConversationStore
    chat: ChatSession
    explanations: ExplanationService
    previews: PreviewRenderer
    deployments: DeploymentPipeline
    history: DeploymentHistory


def build_services(state_dir: str, ai_client=None, session: Optional[requests.Session] = None,
                   sleep: Callable[[float], None] = time.sleep) -> BuilderServices:
    storage = LocalStorage(state_dir)
    seed = {p: os.environ.get(env) for p, env in PROVIDER_TOKEN_ENV.items()}
    credentials = CredentialStore(storage, seed=seed)
    session = session or requests.Session()
    ai = ai_client or GeminiClient(session=session, timeout=HTTP_TIMEOUT)
    conversations = ConversationStore(storage)
    history = DeploymentHistory(storage)
    return BuilderServices(
        storage=storage,
        credentials=credentials,
        ai=ai,
        conversations=conversations,
        chat=ChatSession(conversations, ai),
        explanations=ExplanationService(ai, storage),
        previews=PreviewRenderer(PreviewRegistry()),
        deployments=DeploymentPipeline(credentials, history, session=session, sleep=sleep, timeout=HTTP_TIMEOUT),
        history=history,
    )


def get_services(request: Request) -> BuilderServices:
    return request.app.state.services


# --- request bodies ---

class ChatRequest(BaseModel):
    message: str
    conversation_id: Optional[int] = None


class RenameRequest(BaseModel):
    title: str


class ExplainRequest(BaseModel):
    code: str
    type: str = "overview"


class SaveExplanationRequest(BaseModel):
    type: str
    content: str
    code: Optional[str] = None


class PreviewRequest(BaseModel):
    code: str
    size: Optional[str] = None


class SizeRequest(BaseModel):
    size: str


class DeployRequest(BaseModel):
    service: str
    project_name: str
    description: str = ""
    code: Optional[str] = None


class TokensRequest(BaseModel):
    github: Optional[str] = None
    netlify: Optional[str] = None
    vercel: Optional[str] = None
    validate_github: bool = False


class ExportFileRequest(BaseModel):
    content: str
    filename: str
    mime_type: str = "text/plain"


class ExportProjectRequest(BaseModel):
    code: str
    project_name: str = "my-website"


def _conversation_summary(c, current_id) -> Dict[str, Any]:
    return {
        "id": c.id,
        "title": c.title,
        "created_at": c.created_at.isoformat(),
        "created": format_date(c.created_at),
        "messages": len(c.messages),
        "active": c.id == current_id,
    }


def _attachment(content, filename: str, media_type: str) -> Response:
    return Response(content=content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


def create_app(state_dir: Optional[str] = None, ai_client=None, session: Optional[requests.Session] = None,
               sleep: Callable[[float], None] = time.sleep) -> FastAPI:
    app = FastAPI(title="AI Website Builder")
    app.state.services = build_services(resolve_state_dir(state_dir or STATE_DIR), ai_client=ai_client,
                                        session=session, sleep=sleep)

    @app.exception_handler(BuilderError)
    async def builder_error_handler(request: Request, exc: BuilderError):
        logger.warning("%s %s failed: [%s] %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"ok": False, "error": GENERIC_ERROR_MESSAGE, "kind": "unexpected"})

    app.include_router(router)
    return app


router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/debug")
def debug_info(svc: BuilderServices = Depends(get_services)):
    """Runtime diagnostics. Reports presence of credentials, never their values."""
    return {
        "cwd": os.getcwd(),
        "state_dir": svc.storage.root,
        "GEMINI_API_KEY_set": bool(getattr(svc.ai, "configured", False)),
        "credentials": svc.credentials.status(),
        "chat_generating": svc.chat.is_generating,
        "deployment_in_progress": svc.deployments.in_progress,
    }


# --- conversations ---

@router.get("/conversations")
def list_conversations(svc: BuilderServices = Depends(get_services)):
    store = svc.conversations
    return {
        "current_id": store.current_id,
        "conversations": [_conversation_summary(c, store.current_id) for c in store.conversations],
    }


@router.post("/conversations")
def create_conversation(svc: BuilderServices = Depends(get_services)):
    conversation = svc.conversations.create_conversation()
    return {"ok": True, "conversation": conversation.model_dump(mode="json")}


@router.delete("/conversations")
def clear_conversations(svc: BuilderServices = Depends(get_services)):
    conversation = svc.conversations.clear_all()
    return {"ok": True, "current_id": conversation.id}


@router.get("/conversations/export")
def export_conversation_history(svc: BuilderServices = Depends(get_services)):
    return svc.conversations.export_history()


@router.post("/conversations/import")
def import_conversation(data: Dict[str, Any], svc: BuilderServices = Depends(get_services)):
    conversation = svc.conversations.import_conversation(data)
    return {"ok": True, "conversation": conversation.model_dump(mode="json")}


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: int, svc: BuilderServices = Depends(get_services)):
    return svc.conversations.require(conversation_id).model_dump(mode="json")


@router.post("/conversations/{conversation_id}/switch")
def switch_conversation(conversation_id: int, svc: BuilderServices = Depends(get_services)):
    switched = svc.conversations.switch_conversation(conversation_id)
    return {"ok": True, "switched": switched, "current_id": svc.conversations.current_id}


@router.patch("/conversations/{conversation_id}")
def rename_conversation(conversation_id: int, req: RenameRequest, svc: BuilderServices = Depends(get_services)):
    conversation = svc.conversations.rename_conversation(conversation_id, req.title)
    return {"ok": True, "title": conversation.title}


@router.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: int, svc: BuilderServices = Depends(get_services)):
    if not svc.conversations.delete_conversation(conversation_id):
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return {"ok": True, "current_id": svc.conversations.current_id}


@router.get("/conversations/{conversation_id}/export")
def export_conversation(conversation_id: int, svc: BuilderServices = Depends(get_services)):
    exported = svc.conversations.export_conversation(conversation_id)
    return JSONResponse(content=exported["data"],
                        headers={"Content-Disposition": f'attachment; filename="{exported["filename"]}"'})


# --- chat ---

@router.post("/chat")
def send_message(req: ChatRequest, svc: BuilderServices = Depends(get_services)):
    result = svc.chat.send_message(req.message, req.conversation_id)
    if result is None:
        return {"ok": False, "ignored": True, "reason": "generation already in progress"}
    body = {
        "ok": result["ok"],
        "conversation_id": result["conversation_id"],
        "title": svc.conversations.require(result["conversation_id"]).title,
        "user_message": result["user_message"].model_dump(mode="json"),
        "reply": result["reply"].model_dump(mode="json"),
    }
    if result["error"] is not None:
        body["error"] = result["error"].to_dict()
    return body


# --- explanations ---

@router.get("/explanations/types")
def explanation_types():
    return {"types": [{"key": k, "description": TYPE_DESCRIPTIONS[k]} for k in EXPLANATION_TYPES]}


@router.post("/explanations")
def explain_code(req: ExplainRequest, svc: BuilderServices = Depends(get_services)):
    return {"ok": True, **svc.explanations.explain(req.code, req.type)}


@router.get("/explanations/saved")
def list_saved_explanations(svc: BuilderServices = Depends(get_services)):
    return {"explanations": [e.model_dump(mode="json") for e in svc.explanations.list_saved()]}


@router.post("/explanations/saved")
def save_explanation(req: SaveExplanationRequest, svc: BuilderServices = Depends(get_services)):
    entry = svc.explanations.save(req.type, req.content, req.code)
    return {"ok": True, "explanation": entry.model_dump(mode="json")}


@router.delete("/explanations/saved")
def clear_saved_explanations(svc: BuilderServices = Depends(get_services)):
    svc.explanations.clear_saved()
    return {"ok": True}


@router.delete("/explanations/saved/{explanation_id}")
def delete_saved_explanation(explanation_id: int, svc: BuilderServices = Depends(get_services)):
    svc.explanations.delete_saved(explanation_id)
    return {"ok": True}


# --- preview ---

@router.get("/preview/viewports")
def preview_viewports():
    return {"viewports": VIEWPORTS}


@router.post("/preview")
def open_preview(req: PreviewRequest, svc: BuilderServices = Depends(get_services)):
    return {"ok": True, **svc.previews.open_preview(req.code, req.size)}


@router.post("/preview/size")
def change_preview_size(req: SizeRequest, svc: BuilderServices = Depends(get_services)):
    return {"ok": True, "viewport": svc.previews.change_size(req.size)}


@router.post("/preview/refresh")
def refresh_preview(svc: BuilderServices = Depends(get_services)):
    return {"ok": True, **svc.previews.refresh()}


@router.post("/preview/new-tab")
def open_preview_new_tab(svc: BuilderServices = Depends(get_services)):
    return {"ok": True, **svc.previews.open_in_new_context()}


@router.get("/preview/{handle_id}", response_class=HTMLResponse)
def load_preview(handle_id: str, svc: BuilderServices = Depends(get_services)):
    return HTMLResponse(svc.previews.registry.load(handle_id))


@router.get("/preview/{handle_id}/frame", response_class=HTMLResponse)
def preview_frame(handle_id: str, size: Optional[str] = None, svc: BuilderServices = Depends(get_services)):
    return HTMLResponse(svc.previews.render_frame(handle_id, size))


# --- credentials ---

@router.get("/credentials")
def credential_status(svc: BuilderServices = Depends(get_services)):
    return {"credentials": svc.credentials.status()}


@router.put("/credentials")
def save_credentials(req: TokensRequest, svc: BuilderServices = Depends(get_services)):
    body: Dict[str, Any] = {"ok": True}
    if req.validate_github and req.github:
        validation = svc.deployments.validate_github_token(req.github.strip())
        body["github_validation"] = validation
        if not validation["valid"]:
            # nothing is saved when the GitHub token does not validate
            return JSONResponse(status_code=400, content={
                "ok": False, "error": f"GitHub token validation failed: {validation['error']}",
                "kind": "credential_invalid", "action": "setup_credentials"})
    body["saved"] = svc.credentials.save_tokens({"github": req.github, "netlify": req.netlify, "vercel": req.vercel})
    body["credentials"] = svc.credentials.status()
    return body


@router.delete("/credentials/{provider}")
def remove_credential(provider: str, svc: BuilderServices = Depends(get_services)):
    """Remove a saved token. A token set through the environment answers 400 and stays in effect."""
    if not svc.credentials.remove_token(provider):
        raise NotFoundError(f"No token stored for {provider}")
    return {"ok": True, "credentials": svc.credentials.status()}


# --- deployments ---

@router.get("/deployments/services")
def deployment_services(svc: BuilderServices = Depends(get_services)):
    return {"services": svc.deployments.services()}


@router.post("/deployments")
def deploy(req: DeployRequest, svc: BuilderServices = Depends(get_services)):
    code = req.code or svc.chat.current_code
    record = svc.deployments.deploy(req.service, code, req.project_name, req.description)
    if record is None:
        return {"ok": False, "ignored": True, "reason": "deployment already in progress"}
    return {
        "ok": True,
        "deployment": record.model_dump(mode="json"),
        "steps": svc.deployments.status()["steps"],
        "message": f"Successfully deployed to {record.service}!",
    }


@router.get("/deployments/progress")
def deployment_progress(svc: BuilderServices = Depends(get_services)):
    return svc.deployments.status()


@router.get("/deployments/history")
def deployment_history(limit: Optional[int] = None, svc: BuilderServices = Depends(get_services)):
    records = svc.history.recent(limit) if limit else svc.history.list()
    return {"deployments": [dict(r.model_dump(mode="json"), created=format_date(r.created_at)) for r in records]}


@router.get("/deployments/history/export")
def export_deployment_history(svc: BuilderServices = Depends(get_services)):
    return JSONResponse(content=svc.history.export(),
                        headers={"Content-Disposition": 'attachment; filename="deployment-history.json"'})


@router.delete("/deployments/history")
def clear_deployment_history(svc: BuilderServices = Depends(get_services)):
    svc.history.clear()
    return {"ok": True}


# --- export ---

@router.post("/export/file")
def export_file(req: ExportFileRequest):
    if not req.content:
        raise ValidationFailure("No content provided for download")
    if not req.filename.strip():
        raise ValidationFailure("No filename provided")
    return _attachment(req.content, req.filename.strip(), req.mime_type)


@router.post("/export/project")
def export_project(req: ExportProjectRequest):
    if not req.code:
        raise ValidationFailure("No code available to export")
    name = slug_for_filename(req.project_name.strip()) or "my-website"
    return _attachment(build_project_zip(req.code, name), f"{name}.zip", "application/zip")


@router.post("/export/stats")
def export_stats(req: ExportFileRequest):
    return file_stats(req.content, req.filename)


# --- backup ---

@router.get("/backup")
def backup_data(svc: BuilderServices = Depends(get_services)):
    filename = f"ai-website-builder-backup-{utcnow().date().isoformat()}.json"
    return JSONResponse(content=create_backup(svc.storage),
                        headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.post("/backup/restore")
def restore_data(data: Dict[str, Any], svc: BuilderServices = Depends(get_services)):
    restored = restore_backup(svc.storage, data)
    svc.conversations.reload()
    return {"ok": True, "restored": restored, "current_id": svc.conversations.current_id}


@router.delete("/data")
def clear_all_data(svc: BuilderServices = Depends(get_services)):
    """Wipe conversations, deployment history and saved explanations. Tokens are kept."""
    clear_data(svc.storage)
    svc.conversations.reload()
    svc.chat.current_code = None
    return {"ok": True, "current_id": svc.conversations.current_id}


app = create_app()
