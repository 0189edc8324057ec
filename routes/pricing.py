"""
Route handlers for model pricing.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from auth import require_admin, require_user
from db.session import get_db
from db.tables import utcnow
from models.api_models import PricingUpdateRequest
from models.chat_models import AuthenticatedUser
from services.pricing_service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PricingService

router = APIRouter()


@router.get("/api/pricing/models")
async def list_model_pricing(
    provider: Optional[str] = Query(None, max_length=50),
    model_id: Optional[str] = Query(None, alias="modelId", max_length=100),
    currency: str = Query("USD", min_length=3, max_length=3),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: Optional[int] = Query(None, ge=0),
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    listing = await PricingService.list_pricing(
        db,
        provider=provider,
        model_id=model_id,
        currency=currency,
        is_active=is_active,
        page=page,
        limit=limit,
        offset=offset,
    )
    return {
        "success": True,
        "data": {"models": listing["models"], "total": listing["total"]},
        "meta": {
            "userId": user.user_id,
            "currency": currency.upper(),
            "filters": {"provider": provider, "modelId": model_id, "isActive": is_active},
            "pagination": listing["pagination"],
        },
    }


@router.put("/api/pricing/models")
async def update_model_pricing(
    pricing: PricingUpdateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Record a new price; previously active prices for the model are closed."""
    row = await PricingService.set_model_pricing(db, pricing)
    return {
        "success": True,
        "data": PricingService.pricing_to_dict(row),
        "meta": {"userId": admin.user_id, "operation": "update", "timestamp": utcnow().isoformat()},
    }
