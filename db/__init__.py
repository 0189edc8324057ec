"""
Database package exports.
"""
from db.session import get_db, get_sessionmaker, configure_engine, init_db, dispose_engine
from db.tables import (
    Base,
    User,
    AuthSession,
    Chat,
    Message,
    TokenUsage,
    DailyMessageUsage,
    UsageLimit,
    ModelPricing,
    CleanupConfig,
    CleanupExecutionLog,
)

__all__ = [
    'get_db',
    'get_sessionmaker',
    'configure_engine',
    'init_db',
    'dispose_engine',
    'Base',
    'User',
    'AuthSession',
    'Chat',
    'Message',
    'TokenUsage',
    'DailyMessageUsage',
    'UsageLimit',
    'ModelPricing',
    'CleanupConfig',
    'CleanupExecutionLog',
]
