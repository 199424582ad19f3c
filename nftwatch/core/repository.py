"""Persistence query surface: event log, price state, watchers, shard assignments.

Interface contract:
  - Every method returns DbResult(kind, value); nothing raises on expected
    database outcomes.
  - add_event is an idempotent append: a uniqueness violation is
    ALREADY_EXISTS (debug log only); an event with neither transaction hash
    nor order hash is MISSING_ARGUMENTS before touching the database.
  - get_watched_events(since) attaches watchers in one outer-join query:
    address ∈ {buyer, seller, collection, initiator}, or the watcher's token
    set contains "collection/tokenId" (prefix "collection/" for a
    collection-wide event). ERC-1155 non-offer events skip token matching.
  - Watcher settings resolve own → account → global defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from nftwatch.core.events import (
    Blockchain,
    CollectionFloor,
    EventType,
    Marketplace,
    NFTEvent,
    Offer,
    OrderType,
    ShardAssignment,
    TokenStandard,
    WatchedEvent,
    Watcher,
    WatcherSettings,
    WatcherType,
)
from nftwatch.utils.db import (
    EventRow,
    FloorPriceRow,
    OfferRow,
    ShardAssignmentRow,
    UserRow,
    WatcherRow,
    WatcherTokenRow,
)
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger("repository")


class ResultKind(str, Enum):
    SUCCESS = "success"
    MISSING_ARGUMENTS = "missing-arguments"
    MISSING_ROW = "missing-row"
    ALREADY_EXISTS = "already-exists"
    ERROR = "error"


@dataclass(frozen=True)
class DbResult:
    kind: ResultKind
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.SUCCESS


def _success(value: Any = None) -> DbResult:
    return DbResult(ResultKind.SUCCESS, value)


def _utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from drivers without tz support."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=UTC)


# ================================================================
# Row ↔ model conversion
# ================================================================


def _event_to_row(event: NFTEvent) -> EventRow:
    return EventRow(
        transaction_hash=event.transaction_hash,
        order_hash=event.order_hash,
        event_type=event.event_type.value,
        marketplace=event.marketplace.value,
        blockchain=event.blockchain.value,
        collection=event.collection or "",
        token_id=event.token_id or "",
        standard=event.standard.value if event.standard else None,
        buyer=event.buyer,
        seller=event.seller,
        initiator=event.initiator,
        intermediary=event.intermediary,
        price=event.price,
        gas=event.gas,
        amount=event.amount,
        metadata_uri=event.metadata_uri,
        starts_at=event.starts_at,
        ends_at=event.ends_at,
        is_highest_offer=event.is_highest_offer,
        collection_floor=event.collection_floor,
        floor_difference=event.floor_difference,
        order_type=event.order_type.value if event.order_type else None,
    )


def _row_to_event(row: EventRow) -> NFTEvent:
    return NFTEvent(
        id=row.id,
        transaction_hash=row.transaction_hash,
        order_hash=row.order_hash,
        event_type=EventType(row.event_type),
        marketplace=Marketplace(row.marketplace),
        blockchain=Blockchain(row.blockchain),
        collection=row.collection or None,
        token_id=row.token_id or None,
        standard=TokenStandard(row.standard) if row.standard else None,
        buyer=row.buyer,
        seller=row.seller,
        initiator=row.initiator,
        intermediary=row.intermediary,
        price=Decimal(str(row.price)) if row.price is not None else None,
        gas=row.gas,
        amount=row.amount,
        metadata_uri=row.metadata_uri,
        starts_at=_utc(row.starts_at),
        ends_at=_utc(row.ends_at),
        is_highest_offer=bool(row.is_highest_offer),
        collection_floor=(
            Decimal(str(row.collection_floor)) if row.collection_floor is not None else None
        ),
        floor_difference=row.floor_difference,
        order_type=OrderType(row.order_type) if row.order_type else None,
        created_at=_utc(row.created_at),
    )


def _row_to_floor(row: FloorPriceRow) -> CollectionFloor:
    return CollectionFloor(
        collection=row.collection,
        price=Decimal(str(row.price)),
        marketplace=Marketplace(row.marketplace),
        order_hash=row.order_hash,
        ends_at=_utc(row.ends_at),  # type: ignore[arg-type]
        created_at=_utc(row.created_at),
    )


def _row_to_offer(row: OfferRow) -> Offer:
    return Offer(
        collection=row.collection,
        token_id=row.token_id,
        price=Decimal(str(row.price)),
        marketplace=Marketplace(row.marketplace),
        order_hash=row.order_hash,
        ends_at=_utc(row.ends_at),  # type: ignore[arg-type]
        created_at=_utc(row.created_at),
    )


def _first_set(*values: Any) -> Any:
    return next((v for v in values if v is not None), None)


# ================================================================
# Repository
# ================================================================


class Repository:
    """Async data access over a SQLAlchemy session factory.

    Args:
        session_factory: async_sessionmaker bound to the pooled engine.
        defaults: Global watcher settings used when neither the watcher nor
            its account overrides a field.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        defaults: WatcherSettings,
    ) -> None:
        self._session_factory = session_factory
        self._defaults = defaults

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def add_event(self, event: NFTEvent) -> DbResult:
        """Append one event. Returns the stored event (with id / created_at)."""
        if not event.transaction_hash and not event.order_hash:
            logger.warning(
                "event_missing_identity",
                event_type=event.event_type.value,
                marketplace=event.marketplace.value,
            )
            return DbResult(ResultKind.MISSING_ARGUMENTS)

        row = _event_to_row(event)
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except IntegrityError:
            logger.debug(
                "event_already_exists",
                tx_hash=event.transaction_hash,
                order_hash=event.order_hash,
                event_type=event.event_type.value,
            )
            return DbResult(ResultKind.ALREADY_EXISTS)
        except SQLAlchemyError as e:
            logger.error("add_event_failed", error=str(e), tx_hash=event.transaction_hash)
            return DbResult(ResultKind.ERROR, str(e))

        return _success(event.with_changes(id=row.id, created_at=_utc(row.created_at)))

    async def get_watched_events(self, since: datetime) -> DbResult:
        """Events created at or after `since`, each with its matching watchers."""
        token_key = EventRow.collection + "/" + EventRow.token_id
        token_listed = exists().where(
            WatcherTokenRow.watcher_id == WatcherRow.id,
            or_(
                and_(EventRow.token_id != "", WatcherTokenRow.token == token_key),
                and_(
                    EventRow.token_id == "",
                    EventRow.collection != "",
                    WatcherTokenRow.token.like(EventRow.collection + "/%"),
                ),
            ),
        ).correlate(EventRow, WatcherRow)
        token_match_allowed = or_(
            EventRow.standard.is_(None),
            EventRow.standard != TokenStandard.ERC1155.value,
            EventRow.event_type == EventType.OFFER.value,
        )
        address_match = or_(
            WatcherRow.address == EventRow.buyer,
            WatcherRow.address == EventRow.seller,
            WatcherRow.address == EventRow.collection,
            WatcherRow.address == EventRow.initiator,
        )
        stmt = (
            select(EventRow, WatcherRow, UserRow)
            .select_from(EventRow)
            .outerjoin(WatcherRow, or_(address_match, and_(token_match_allowed, token_listed)))
            .outerjoin(UserRow, UserRow.id == WatcherRow.user_id)
            .where(EventRow.created_at >= since)
            .order_by(EventRow.created_at, EventRow.id, WatcherRow.id)
        )

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                watcher_ids = {w.id for _, w, _ in rows if w is not None}
                tokens = await self._load_tokens(session, watcher_ids)
        except SQLAlchemyError as e:
            logger.error("get_watched_events_failed", error=str(e))
            return DbResult(ResultKind.ERROR, str(e))

        grouped: dict[int, WatchedEvent] = {}
        for event_row, watcher_row, user_row in rows:
            watched = grouped.get(event_row.id)
            if watched is None:
                watched = grouped[event_row.id] = WatchedEvent(_row_to_event(event_row))
            if watcher_row is not None and user_row is not None:
                watched.watchers.append(
                    self._to_watcher(watcher_row, user_row, tokens.get(watcher_row.id, set()))
                )
        return _success(list(grouped.values()))

    # ------------------------------------------------------------------
    # Price state
    # ------------------------------------------------------------------

    async def get_collection_floor(self, collection: str) -> DbResult:
        stmt = (
            select(FloorPriceRow)
            .where(FloorPriceRow.collection == collection)
            .order_by(FloorPriceRow.created_at.desc(), FloorPriceRow.id.desc())
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalars().first()
        except SQLAlchemyError as e:
            logger.error("get_collection_floor_failed", collection=collection, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        if row is None:
            return DbResult(ResultKind.MISSING_ROW)
        return _success(_row_to_floor(row))

    async def set_collection_floor(self, floor: CollectionFloor) -> DbResult:
        """Append a floor row; it becomes authoritative for the collection."""
        row = FloorPriceRow(
            collection=floor.collection,
            order_hash=floor.order_hash,
            price=floor.price,
            marketplace=floor.marketplace.value,
            ends_at=floor.ends_at,
        )
        if floor.created_at is not None:
            row.created_at = floor.created_at
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("set_collection_floor_failed", collection=floor.collection, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success(_row_to_floor(row))

    async def find_floor_by_order_hash(self, order_hash: str) -> DbResult:
        """Current floors (one per collection) backed by `order_hash`."""
        stmt = select(FloorPriceRow.collection).where(FloorPriceRow.order_hash == order_hash)
        try:
            async with self._session_factory() as session:
                collections = set((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("find_floor_by_order_hash_failed", order_hash=order_hash, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))

        floors = []
        for collection in sorted(collections):
            result = await self.get_collection_floor(collection)
            if result.ok and result.value.order_hash == order_hash:
                floors.append(result.value)
        return _success(floors)

    async def get_offer(self, collection: str, token_id: str = "") -> DbResult:
        try:
            async with self._session_factory() as session:
                row = await session.get(OfferRow, (collection, token_id))
        except SQLAlchemyError as e:
            logger.error("get_offer_failed", collection=collection, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        if row is None:
            return DbResult(ResultKind.MISSING_ROW)
        return _success(_row_to_offer(row))

    async def set_offer(self, offer: Offer) -> DbResult:
        """Replace the highest offer for (collection, token_id)."""
        values = {
            "order_hash": offer.order_hash,
            "price": offer.price,
            "marketplace": offer.marketplace.value,
            "ends_at": offer.ends_at,
            "created_at": offer.created_at or datetime.now(UTC),
        }
        # A concurrent first insert for the same key loses with IntegrityError;
        # the second attempt then finds the row and updates it.
        for attempt in range(2):
            try:
                async with self._session_factory() as session:
                    row = await session.get(OfferRow, (offer.collection, offer.token_id))
                    if row is None:
                        row = OfferRow(collection=offer.collection, token_id=offer.token_id)
                        session.add(row)
                    for key, value in values.items():
                        setattr(row, key, value)
                    await session.commit()
                return _success(_row_to_offer(row))
            except IntegrityError:
                logger.debug("set_offer_conflict", collection=offer.collection, attempt=attempt)
            except SQLAlchemyError as e:
                logger.error("set_offer_failed", collection=offer.collection, error=str(e))
                return DbResult(ResultKind.ERROR, str(e))
        return DbResult(ResultKind.ERROR, "offer upsert conflict")

    async def find_offers_by_order_hash(self, order_hash: str) -> DbResult:
        stmt = select(OfferRow).where(OfferRow.order_hash == order_hash)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error("find_offers_by_order_hash_failed", order_hash=order_hash, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success([_row_to_offer(r) for r in rows])

    # ------------------------------------------------------------------
    # Users / watchers
    # ------------------------------------------------------------------

    async def create_user(
        self,
        subscriber_id: int,
        type: str = "user",
        max_offer_floor_difference: float | None = None,
        allowed_marketplaces: list[str] | None = None,
        allowed_events: list[str] | None = None,
    ) -> DbResult:
        """Create an account. Returns its row id."""
        row = UserRow(
            subscriber_id=subscriber_id,
            type=type,
            max_offer_floor_difference=max_offer_floor_difference,
            allowed_marketplaces=allowed_marketplaces,
            allowed_events=allowed_events,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except IntegrityError:
            return DbResult(ResultKind.ALREADY_EXISTS)
        except SQLAlchemyError as e:
            logger.error("create_user_failed", subscriber_id=subscriber_id, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success(row.id)

    async def create_watcher(
        self,
        user_id: int,
        type: WatcherType,
        address: str,
        nickname: str | None = None,
        channel_id: str | None = None,
        tokens: Iterable[str] = (),
        max_offer_floor_difference: float | None = None,
        allowed_marketplaces: list[str] | None = None,
        allowed_events: list[str] | None = None,
    ) -> DbResult:
        """Create a watcher for an existing account. Returns the Watcher."""
        try:
            async with self._session_factory() as session:
                user = await session.get(UserRow, user_id)
                if user is None:
                    return DbResult(ResultKind.MISSING_ROW)
                row = WatcherRow(
                    user_id=user_id,
                    type=type.value,
                    address=address.lower(),
                    nickname=nickname,
                    channel_id=channel_id,
                    max_offer_floor_difference=max_offer_floor_difference,
                    allowed_marketplaces=allowed_marketplaces,
                    allowed_events=allowed_events,
                )
                session.add(row)
                await session.flush()
                token_set = set(tokens)
                session.add_all(WatcherTokenRow(watcher_id=row.id, token=t) for t in token_set)
                await session.commit()
        except IntegrityError:
            return DbResult(ResultKind.ALREADY_EXISTS)
        except SQLAlchemyError as e:
            logger.error("create_watcher_failed", user_id=user_id, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success(self._to_watcher(row, user, token_set))

    async def get_all_watchers(self, type: WatcherType | None = None) -> DbResult:
        stmt = select(WatcherRow, UserRow).join(UserRow, UserRow.id == WatcherRow.user_id)
        if type is not None:
            stmt = stmt.where(WatcherRow.type == type.value)
        stmt = stmt.order_by(WatcherRow.id)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                tokens = await self._load_tokens(session, {w.id for w, _ in rows})
        except SQLAlchemyError as e:
            logger.error("get_all_watchers_failed", error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success([self._to_watcher(w, u, tokens.get(w.id, set())) for w, u in rows])

    async def set_watcher_tokens(self, watcher_id: int, tokens: Iterable[str]) -> DbResult:
        """Replace a watcher's token set and stamp synced_at."""
        token_set = set(tokens)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(WatcherRow)
                    .where(WatcherRow.id == watcher_id)
                    .values(synced_at=datetime.now(UTC))
                )
                if result.rowcount == 0:
                    return DbResult(ResultKind.MISSING_ROW)
                await session.execute(
                    delete(WatcherTokenRow).where(WatcherTokenRow.watcher_id == watcher_id)
                )
                session.add_all(WatcherTokenRow(watcher_id=watcher_id, token=t) for t in token_set)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("set_watcher_tokens_failed", watcher_id=watcher_id, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        return _success(len(token_set))

    # ------------------------------------------------------------------
    # Shard assignments
    # ------------------------------------------------------------------

    async def get_shard_assignment(self, instance_name: str) -> DbResult:
        try:
            async with self._session_factory() as session:
                row = await session.get(ShardAssignmentRow, instance_name)
        except SQLAlchemyError as e:
            logger.error("get_shard_assignment_failed", instance=instance_name, error=str(e))
            return DbResult(ResultKind.ERROR, str(e))
        if row is None:
            return DbResult(ResultKind.MISSING_ROW)
        return _success(
            ShardAssignment(
                shard_id=row.shard_id,
                total_shards=row.total_shards,
                instance_name=row.instance_name,
            )
        )

    async def set_shard_assignment(self, assignment: ShardAssignment) -> DbResult:
        try:
            async with self._session_factory() as session:
                await session.merge(
                    ShardAssignmentRow(
                        instance_name=assignment.instance_name,
                        shard_id=assignment.shard_id,
                        total_shards=assignment.total_shards,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "set_shard_assignment_failed", instance=assignment.instance_name, error=str(e)
            )
            return DbResult(ResultKind.ERROR, str(e))
        return _success(assignment)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_tokens(session: AsyncSession, watcher_ids: set[int]) -> dict[int, set[str]]:
        if not watcher_ids:
            return {}
        rows = await session.execute(
            select(WatcherTokenRow.watcher_id, WatcherTokenRow.token).where(
                WatcherTokenRow.watcher_id.in_(watcher_ids)
            )
        )
        tokens: dict[int, set[str]] = {}
        for watcher_id, token in rows:
            tokens.setdefault(watcher_id, set()).add(token)
        return tokens

    def _to_watcher(self, row: WatcherRow, user: UserRow, tokens: set[str]) -> Watcher:
        defaults = self._defaults
        marketplaces = _first_set(
            row.allowed_marketplaces, user.allowed_marketplaces, defaults.allowed_marketplaces
        )
        events = _first_set(row.allowed_events, user.allowed_events, defaults.allowed_events)
        settings = WatcherSettings(
            max_offer_floor_difference=_first_set(
                row.max_offer_floor_difference,
                user.max_offer_floor_difference,
                defaults.max_offer_floor_difference,
            ),
            allowed_marketplaces=frozenset(marketplaces),
            allowed_events=frozenset(events),
        )
        return Watcher(
            id=row.id,
            user_id=row.user_id,
            subscriber_id=user.subscriber_id,
            type=WatcherType(row.type),
            address=row.address,
            settings=settings,
            nickname=row.nickname,
            channel_id=row.channel_id,
            tokens=set(tokens),
            synced_at=_utc(row.synced_at),
        )
