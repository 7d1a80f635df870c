from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    # Converted amount in `base_currency` minor units.
    Column("amount", BigInteger, nullable=False),
    Column("original_amount", BigInteger),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("base_currency", String(3), nullable=False, server_default="USD"),
    Column("exchange_rate", Text),
    Column("description", Text, nullable=False),
    Column("date", DateTime, nullable=False),
    Column("category", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("is_recurring", Boolean, nullable=False, server_default="0"),
    Column("recurring_id", Integer, ForeignKey("recurring_expenses.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_expenses = Table(
    "recurring_expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("description", Text, nullable=False),
    Column("category", String(100), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("next_due_date", DateTime, nullable=False),
    Column("active", Boolean, nullable=False, server_default="1"),
)

settings = Table(
    "settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),
    Column("base_currency", String(3), nullable=False, server_default="USD"),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("file_url", Text, nullable=False),
    Column("processed_data", JSON),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
