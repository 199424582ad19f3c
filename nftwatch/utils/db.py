"""Database engine, session management, and SQLAlchemy 2.0 async models.

NFT event log, price state and watcher schema. All timestamps UTC.
All prices in native currency units (ether). Missing collection / token id
columns are stored as "" so the uniqueness constraints cover them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from nftwatch.config.settings import get_config

# SQLite stores NUMERIC as REAL; a shorter scale keeps round-trips exact there
_PRICE = Numeric(38, 18).with_variant(Numeric(38, 10), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


# ================================================================
# EVENTS: normalized marketplace events (idempotent append log)
# ================================================================
class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    order_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    marketplace: Mapped[str] = mapped_column(String(16), nullable=False)
    blockchain: Mapped[str] = mapped_column(String(16), nullable=False)
    collection: Mapped[str] = mapped_column(String(42), nullable=False, default="")
    token_id: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    standard: Mapped[str | None] = mapped_column(String(8), nullable=True)
    buyer: Mapped[str | None] = mapped_column(String(42), nullable=True)
    seller: Mapped[str | None] = mapped_column(String(42), nullable=True)
    initiator: Mapped[str | None] = mapped_column(String(42), nullable=True)
    intermediary: Mapped[str | None] = mapped_column(String(42), nullable=True)
    price: Mapped[Decimal | None] = mapped_column(_PRICE, nullable=True)
    gas: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    metadata_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_highest_offer: Mapped[bool] = mapped_column(Boolean, default=False)
    collection_floor: Mapped[Decimal | None] = mapped_column(_PRICE, nullable=True)
    floor_difference: Mapped[float | None] = mapped_column(Float, nullable=True)
    order_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "transaction_hash", "event_type", "collection", "token_id", name="uq_events_tx"
        ),
        UniqueConstraint("order_hash", "marketplace", "event_type", name="uq_events_order"),
        Index("idx_events_created", "created_at"),
    )


# ================================================================
# FLOOR_PRICES: append log, latest created_at per collection wins
# ================================================================
class FloorPriceRow(Base):
    __tablename__ = "floor_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(42), nullable=False)
    order_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    price: Mapped[Decimal] = mapped_column(_PRICE, nullable=False)
    marketplace: Mapped[str] = mapped_column(String(16), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_floor_prices_collection", "collection", "created_at"),
        Index("idx_floor_prices_order", "order_hash"),
    )


# ================================================================
# OFFERS: current highest offer per (collection, token_id), replaced in place
# ================================================================
class OfferRow(Base):
    __tablename__ = "offers"

    collection: Mapped[str] = mapped_column(String(42), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(80), primary_key=True, default="")
    order_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    price: Mapped[Decimal] = mapped_column(_PRICE, nullable=False)
    marketplace: Mapped[str] = mapped_column(String(16), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_offers_order", "order_hash"),)


# ================================================================
# USERS / WATCHERS: subscriptions and their settings
# ================================================================
class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(8), default="user")  # user, server
    max_offer_floor_difference: Mapped[float | None] = mapped_column(Float, nullable=True)
    allowed_marketplaces: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_events: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class WatcherRow(Base):
    __tablename__ = "watchers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(12), nullable=False)  # wallet, server, collection
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    max_offer_floor_difference: Mapped[float | None] = mapped_column(Float, nullable=True)
    allowed_marketplaces: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_events: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "address", name="uq_watchers_user_address"),
        Index("idx_watchers_address", "address"),
    )


class WatcherTokenRow(Base):
    __tablename__ = "watcher_tokens"

    watcher_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watchers.id", ondelete="CASCADE"), primary_key=True
    )
    token: Mapped[str] = mapped_column(String(128), primary_key=True)  # collection/tokenId

    __table_args__ = (Index("idx_watcher_tokens_token", "token"),)


# ================================================================
# SHARD_ASSIGNMENTS: written by the autoscaler, read by shard workers
# ================================================================
class ShardAssignmentRow(Base):
    __tablename__ = "shard_assignments"

    instance_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    shard_id: Mapped[int] = mapped_column(Integer, nullable=False)
    total_shards: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ================================================================
# Engine & Session Factory
# ================================================================

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async SQLAlchemy engine (singleton)."""
    global _engine
    if _engine is None:
        config = get_config()
        _engine = create_async_engine(
            config.database_url,
            echo=False,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create missing tables. Schema migrations are managed outside this service."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
