import secrets
from datetime import timedelta
from functools import partial
import pytest
from unittest.mock import AsyncMock, MagicMock

from db.tables import AuthSession, User, utcnow

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db_session():
    """Fresh in-memory database with all tables, closed after the test."""
    from db.session import configure_engine, dispose_engine, get_sessionmaker, init_db

    configure_engine(TEST_DATABASE_URL)
    await init_db()
    async with get_sessionmaker()() as session:
        yield session
    await dispose_engine()


async def insert_user(
    is_anonymous=False,
    is_admin=False,
    credit_balance=None,
    email=None,
    metadata=None,
    created_at=None,
    with_session=True,
):
    """Insert a user (and a live session) through the configured engine."""
    from db.session import get_sessionmaker

    async with get_sessionmaker()() as db:
        now = created_at or utcnow()
        user = User(
            is_anonymous=is_anonymous,
            is_admin=is_admin,
            role="admin" if is_admin else "user",
            credit_balance=credit_balance,
            email=email,
            name="Anonymous" if is_anonymous else "Test User",
            metadata_=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        await db.flush()

        token = None
        if with_session:
            token = secrets.token_urlsafe(16)
            db.add(AuthSession(
                token=token,
                user_id=user.id,
                expires_at=utcnow() + timedelta(days=1),
                created_at=now,
                updated_at=now,
            ))
        await db.commit()
        return user.id, token


@pytest.fixture
def model_catalog():
    """Static catalog installed as the process-wide one."""
    from services.model_catalog import set_model_catalog
    from tests.fixtures.mock_clients import StaticModelCatalog
    from tests.fixtures.responses import CATALOG_MODELS

    catalog = StaticModelCatalog(CATALOG_MODELS)
    set_model_catalog(catalog)
    yield catalog
    set_model_catalog(None)


@pytest.fixture
def configured_app(monkeypatch, model_catalog):
    """The full application over a fresh in-memory database."""
    from fastapi.testclient import TestClient
    from config import Config
    from main import app

    monkeypatch.setattr(Config, "DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.setattr(Config, "CRON_SECRET", "test-cron-secret")

    with TestClient(app) as client:
        yield client


@pytest.fixture
def create_user(configured_app):
    """Insert a user on the app's event loop; returns (user_id, auth headers)."""
    def _create(**fields):
        user_id, token = configured_app.portal.call(partial(insert_user, **fields))
        return user_id, ({"Authorization": f"Bearer {token}"} if token else {})
    return _create


@pytest.fixture
def run_db(configured_app):
    """Run `fn(db)` with a session on the app's event loop."""
    from db.session import get_sessionmaker

    def _run(fn):
        async def runner():
            async with get_sessionmaker()() as db:
                return await fn(db)
        return configured_app.portal.call(runner)
    return _run


@pytest.fixture
def scripted_provider(monkeypatch):
    """Replaces provider streaming with scripted completion steps."""
    from services.providers import ProviderService
    from tests.fixtures.mock_clients import ScriptedProvider

    provider = ScriptedProvider()
    monkeypatch.setattr(ProviderService, "stream_completion", provider.stream_completion)
    return provider


@pytest.fixture
def mock_ollama_client():
    """Reusable mock for ollama.AsyncClient streaming chat chunks."""
    client = AsyncMock()

    async def chat_side_effect(model, messages, stream=False, **kwargs):
        async def token_stream():
            yield {"message": {"role": "assistant", "content": "streamed "}, "done": False}
            yield {"message": {"role": "assistant", "content": "response"}, "done": False}
            yield {
                "message": {"role": "assistant", "content": ""},
                "done": True,
                "done_reason": "stop",
                "prompt_eval_count": 12,
                "eval_count": 4,
            }
        return token_stream()

    client.chat.side_effect = chat_side_effect
    client.list = AsyncMock(return_value={"models": [{"model": "llama3.2:3b"}, {"model": "mistral:7b"}]})
    return client


@pytest.fixture
def anonymous_user():
    from models.chat_models import AuthenticatedUser
    return AuthenticatedUser(user_id="anon-1", is_anonymous=True)


@pytest.fixture
def credit_user():
    from models.chat_models import AuthenticatedUser
    return AuthenticatedUser(user_id="user-1", is_anonymous=False, email="user@example.com", credit_balance=100)


@pytest.fixture
def chat_request():
    """Standard ChatRequest for testing."""
    from models.api_models import ChatRequest
    return ChatRequest(
        messages=[{"id": "m1", "role": "user", "content": "Hello", "parts": [{"type": "text", "text": "Hello"}]}],
        chat_id="chat-1",
        selected_model="openrouter/meta-llama/llama-3.3-70b-instruct:free",
    )


@pytest.fixture
def chat_context(chat_request, anonymous_user):
    """Standard ChatContext for testing."""
    from models.chat_models import ChatContext, WebSearchConfig
    return ChatContext(
        request=chat_request,
        user=anonymous_user,
        chat_id="chat-1",
        model_info=None,
        messages=[message.model_dump(exclude_none=True) for message in chat_request.messages],
        system_prompt="sys",
        web_search=WebSearchConfig(
            enabled=False,
            context_size="medium",
            can_use_web_search=False,
            model_supports_web_search=False,
            additional_cost=0,
        ),
    )


@pytest.fixture
def mock_webhook_client(monkeypatch):
    """Webhook client whose posts succeed."""
    from utils.http_client import HTTPClientManager

    client = MagicMock()
    response = MagicMock(status_code=200)
    response.raise_for_status = MagicMock()
    client.post = AsyncMock(return_value=response)
    monkeypatch.setattr(HTTPClientManager, "get_webhook_client", classmethod(lambda cls: client))
    return client
