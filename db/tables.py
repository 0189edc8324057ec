"""
SQLAlchemy ORM tables for users, chats, usage accounting, pricing and cleanup.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and Postgres columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    image = Column(String, nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False, index=True)
    role = Column(String, default="user", nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    # Free-form settings, e.g. {"messageLimit": 50}
    metadata_ = Column("metadata", JSON, default=dict)
    # None means the user has no billing account
    credit_balance = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def has_admin_access(self) -> bool:
        return self.role == "admin" or bool(self.is_admin)


class AuthSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    token = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, default="New Chat", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    chat_id = Column(String, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, default=0, nullable=False)
    role = Column(String, nullable=False)
    parts = Column(JSON, default=list, nullable=False)
    has_web_search = Column(Boolean, default=False, nullable=False)
    web_search_context_size = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class TokenUsage(Base):
    __tablename__ = "token_usage"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    chat_id = Column(String, nullable=True)
    model_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    estimated_cost = Column(Float, default=0.0, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class DailyMessageUsage(Base):
    __tablename__ = "daily_message_usage"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_daily_message_usage_user_date"),)

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # UTC calendar day, YYYY-MM-DD
    date = Column(String(10), nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    last_message_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UsageLimit(Base):
    __tablename__ = "usage_limits"

    id = Column(String, primary_key=True, default=new_id)
    # NULL user_id holds the global default
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    monthly_token_limit = Column(Integer, nullable=True)
    monthly_cost_limit = Column(Float, nullable=True)
    daily_token_limit = Column(Integer, nullable=True)
    daily_cost_limit = Column(Float, nullable=True)
    request_rate_limit = Column(Integer, nullable=True)
    currency = Column(String(3), default="USD", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ModelPricing(Base):
    __tablename__ = "model_pricing"

    id = Column(String, primary_key=True, default=new_id)
    model_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)
    # Price per token
    input_token_price = Column(Float, nullable=False)
    output_token_price = Column(Float, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    effective_from = Column(DateTime, default=utcnow, nullable=False)
    effective_to = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CleanupConfig(Base):
    __tablename__ = "cleanup_config"

    id = Column(String, primary_key=True, default="default")
    enabled = Column(Boolean, default=False, nullable=False)
    schedule = Column(String, default="0 2 * * 0", nullable=False)
    threshold_days = Column(Integer, default=45, nullable=False)
    batch_size = Column(Integer, default=50, nullable=False)
    notification_enabled = Column(Boolean, default=True, nullable=False)
    webhook_url = Column(String, nullable=True)
    email_enabled = Column(Boolean, default=False, nullable=False)
    last_modified = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    modified_by = Column(String, nullable=True)


class CleanupExecutionLog(Base):
    __tablename__ = "cleanup_execution_logs"

    id = Column(String, primary_key=True, default=new_id)
    executed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    executed_by = Column(String, nullable=False)
    admin_user = Column(String, nullable=True)
    users_counted = Column(Integer, default=0, nullable=False)
    users_deleted = Column(Integer, default=0, nullable=False)
    threshold_days = Column(Integer, nullable=False)
    batch_size = Column(Integer, nullable=False)
    duration_ms = Column(Integer, default=0, nullable=False)
    status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)
    error_count = Column(Integer, default=0, nullable=False)
    dry_run = Column(Boolean, default=False, nullable=False)
    deleted_user_ids = Column(JSON, default=list, nullable=False)
