"""
Route handlers for model listing operations.
"""
from fastapi import APIRouter, Depends
from auth import require_admin
from models.chat_models import AuthenticatedUser
from services.model_catalog import get_model_catalog
from utils.errors import internal_error
from utils.logger import app_logger

router = APIRouter()


@router.get("/api/models")
async def list_models(refresh: bool = False):
    """List every available model across providers, highest priority first."""
    try:
        models = await get_model_catalog().list_models(force_refresh=refresh)
    except Exception as e:
        app_logger.error(f"Failed to list models: {e}")
        raise internal_error("Failed to fetch models", str(e))
    return {"models": [model.to_dict() for model in models]}


@router.post("/api/models/blocklist/reload")
async def reload_blocklist(admin: AuthenticatedUser = Depends(require_admin)):
    """Re-read BLOCKED_MODELS and drop cached listings."""
    count = get_model_catalog().reload_blocklist()
    app_logger.info(f"Blocklist reloaded by {admin.user_id}")
    return {"success": True, "blockedModels": count}
