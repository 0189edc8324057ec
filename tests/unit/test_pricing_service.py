import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import select

from db.tables import ModelPricing
from models.api_models import PricingUpdateRequest
from services.pricing_service import PricingService, to_naive_utc
from utils.errors import ChatLimaError


def price(model_id="openai/gpt-4.1", provider="openrouter", **fields):
    return PricingUpdateRequest(
        model_id=model_id, provider=provider, input_token_price=0.000002, output_token_price=0.000008, **fields
    )


def test_to_naive_utc():
    """Given an aware datetime, to_naive_utc should convert it to naive UTC."""
    aware = datetime(2025, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2025, 1, 1, 8, 0)
    assert to_naive_utc(None) is None


@pytest.mark.anyio
async def test_set_model_pricing_closes_previous_active_row(db_session):
    """Given an existing active price, set_model_pricing should close it and insert the new one."""
    first = await PricingService.set_model_pricing(db_session, price())
    second = await PricingService.set_model_pricing(db_session, price(currency="usd"))

    rows = (await db_session.execute(select(ModelPricing))).scalars().all()
    await db_session.refresh(first)

    assert len(rows) == 2
    assert first.is_active is False
    assert first.effective_to is not None
    assert (second.is_active, second.currency) == (True, "USD")


@pytest.mark.anyio
async def test_set_model_pricing_keeps_other_currencies(db_session):
    """Given a price in another currency, set_model_pricing should leave it active."""
    eur = await PricingService.set_model_pricing(db_session, price(currency="EUR"))
    await PricingService.set_model_pricing(db_session, price())

    await db_session.refresh(eur)
    assert eur.is_active is True


@pytest.mark.anyio
async def test_set_model_pricing_rejects_inverted_range(db_session):
    """Given effectiveFrom after effectiveTo, set_model_pricing should raise INVALID_DATE_RANGE."""
    with pytest.raises(ChatLimaError) as exc_info:
        await PricingService.set_model_pricing(db_session, price(
            effective_from=datetime(2025, 3, 1), effective_to=datetime(2025, 2, 1),
        ))

    assert (exc_info.value.code, exc_info.value.status_code) == ("INVALID_DATE_RANGE", 400)


@pytest.mark.anyio
async def test_list_pricing_filters_and_paginates(db_session):
    """Given several rows, list_pricing should filter by provider and page the results."""
    for index in range(3):
        await PricingService.set_model_pricing(db_session, price(
            model_id=f"model-{index}", effective_from=datetime(2025, 1, 1 + index),
        ))
    await PricingService.set_model_pricing(db_session, price(model_id="other", provider="requesty"))

    first_page = await PricingService.list_pricing(db_session, provider="openrouter", page=1, limit=2)
    by_offset = await PricingService.list_pricing(db_session, provider="openrouter", limit=2, offset=2)

    assert first_page["total"] == 3
    assert [row["modelId"] for row in first_page["models"]] == ["model-2", "model-1"]
    assert first_page["pagination"] == {
        "page": 1, "limit": 2, "offset": 0, "total": 3, "totalPages": 2, "hasMore": True,
    }
    assert [row["modelId"] for row in by_offset["models"]] == ["model-0"]
    assert by_offset["pagination"]["page"] == 2
    assert by_offset["pagination"]["hasMore"] is False


@pytest.mark.anyio
async def test_list_pricing_active_filter(db_session):
    """Given a replaced price, the active filter should return only the current row."""
    await PricingService.set_model_pricing(db_session, price())
    await PricingService.set_model_pricing(db_session, price())

    active = await PricingService.list_pricing(db_session, is_active=True)
    everything = await PricingService.list_pricing(db_session)

    assert active["total"] == 1
    assert everything["total"] == 2
    assert active["models"][0]["currency"] == "USD"
