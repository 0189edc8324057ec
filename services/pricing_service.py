"""
Model pricing rows: filtered listing and versioned updates.
"""
import math
from datetime import datetime, timezone
from typing import Optional
from fastapi import status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from db.tables import ModelPricing, utcnow
from models.api_models import PricingUpdateRequest
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def to_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class PricingService:
    """Service for the model_pricing table."""

    @staticmethod
    def pricing_to_dict(row: ModelPricing) -> dict:
        return {
            "id": row.id,
            "modelId": row.model_id,
            "provider": row.provider,
            "inputTokenPrice": row.input_token_price,
            "outputTokenPrice": row.output_token_price,
            "currency": row.currency,
            "effectiveFrom": row.effective_from.isoformat() if row.effective_from else None,
            "effectiveTo": row.effective_to.isoformat() if row.effective_to else None,
            "isActive": row.is_active,
            "createdAt": row.created_at.isoformat(),
            "updatedAt": row.updated_at.isoformat(),
        }

    @staticmethod
    async def list_pricing(
        db: AsyncSession,
        provider: Optional[str] = None,
        model_id: Optional[str] = None,
        currency: Optional[str] = "USD",
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: Optional[int] = None,
    ) -> dict:
        """
        Filtered page of pricing rows, newest effective date first.
        An explicit `offset` takes precedence over `page`.
        """
        conditions = []
        if provider:
            conditions.append(ModelPricing.provider == provider)
        if model_id:
            conditions.append(ModelPricing.model_id == model_id)
        if currency:
            conditions.append(ModelPricing.currency == currency.upper())
        if is_active is not None:
            conditions.append(ModelPricing.is_active.is_(is_active))

        total = (await db.execute(select(func.count(ModelPricing.id)).where(*conditions))).scalar_one()

        start = offset if offset is not None else (page - 1) * limit
        result = await db.execute(
            select(ModelPricing)
            .where(*conditions)
            .order_by(ModelPricing.effective_from.desc(), ModelPricing.model_id)
            .offset(start)
            .limit(limit)
        )
        rows = result.scalars().all()

        total_pages = math.ceil(total / limit) if limit else 0
        return {
            "models": [PricingService.pricing_to_dict(row) for row in rows],
            "total": total,
            "pagination": {
                "page": page if offset is None else start // limit + 1,
                "limit": limit,
                "offset": start,
                "total": total,
                "totalPages": total_pages,
                "hasMore": start + len(rows) < total,
            },
        }

    @staticmethod
    async def set_model_pricing(db: AsyncSession, request: PricingUpdateRequest) -> ModelPricing:
        """
        Record a new price for a model.

        The currently active rows for the same model, provider and currency
        are closed (inactive, effective until now) before the new row is
        inserted, so older prices stay queryable.
        """
        effective_from = to_naive_utc(request.effective_from) or utcnow()
        effective_to = to_naive_utc(request.effective_to)
        if effective_to is not None and effective_from > effective_to:
            raise ChatLimaError(
                ErrorCode.INVALID_DATE_RANGE,
                "effectiveFrom must be before effectiveTo",
                status.HTTP_400_BAD_REQUEST,
            )

        currency = request.currency.upper()
        now = utcnow()
        await db.execute(
            update(ModelPricing)
            .where(
                ModelPricing.model_id == request.model_id,
                ModelPricing.provider == request.provider,
                ModelPricing.currency == currency,
                ModelPricing.is_active.is_(True),
            )
            .values(is_active=False, effective_to=now, updated_at=now)
        )

        row = ModelPricing(
            model_id=request.model_id,
            provider=request.provider,
            input_token_price=request.input_token_price,
            output_token_price=request.output_token_price,
            currency=currency,
            is_active=request.is_active,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        db.add(row)
        await db.commit()
        await db.refresh(row)

        app_logger.info(
            f"Pricing for {request.provider}/{request.model_id} set to "
            f"{request.input_token_price}/{request.output_token_price} {currency} per token"
        )
        return row
