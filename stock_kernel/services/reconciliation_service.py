"""
ReconciliationQueue -- unmatched external items awaiting an operator.

Responsibility:
    Records identity-resolution misses together with the inventory
    events that could not be applied, and closes them on an operator
    decision:

        link_existing  -> identifier linked to an existing product,
                          parked events replayed through the ledger
        create_new     -> product created from the external attributes,
                          identifier linked, parked events replayed
        ignore         -> parked events discarded

Architecture position:
    Kernel > Services.  Uses CatalogService for identifier links and
    StockLedgerService for replay; never writes ledger rows itself.

Invariants enforced:
    - One pending item per (source, identifier_type, identifier_value).
      Repeat sightings bump ``occurrence_count``.
    - A parked event is replayed with its original ref, so replaying it
      after it was also applied another way yields DUPLICATE_REF.
    - Matched and ignored items are terminal.

Failure modes:
    - IdentifierConflictError (retryable): a concurrent enqueue created
      the pending item first, or the identifier was linked to another
      product between read and write.
    - UnmatchedItemNotFoundError / UnmatchedItemClosedError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.normalization import normalize_identifier_value
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import (
    SYSTEM_ACTOR_ID,
    AppendResult,
    DeferredEventStatus,
    ExternalIdentifier,
    IdentifierType,
    InventoryEvent,
    MatchMethod,
    MovementReason,
    ResolutionAction,
    UnmatchedStatus,
)
from stock_kernel.exceptions import (
    IdentifierConflictError,
    StockWarning,
    UnmatchedItemClosedError,
    UnmatchedItemNotFoundError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.reconciliation import DeferredStockEvent, UnmatchedItem
from stock_kernel.services.base import BaseService
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.snapshot_service import SnapshotAggregator
from stock_kernel.services.stock_ledger import StockLedgerService
from stock_kernel.utils.hashing import to_json_safe

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class UnmatchedItemView:
    item_id: UUID
    source: str
    identifier_type: str
    identifier_value: str
    external_name: str | None
    location_id: UUID | None
    occurrence_count: int
    pending_events: int
    first_seen_at: datetime
    last_seen_at: datetime


@dataclass(frozen=True)
class ReconciliationOutcome:
    """Result of closing one unmatched item."""

    item_id: UUID
    status: UnmatchedStatus
    product_id: UUID | None
    replayed: tuple[AppendResult, ...] = ()
    discarded: int = 0

    @property
    def warnings(self) -> tuple[StockWarning, ...]:
        return tuple(w for r in self.replayed for w in r.warnings)


class ReconciliationQueue(BaseService):
    """Manual reconciliation queue.  Flushes, never commits."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        super().__init__(session, clock, policy)
        self._catalog = CatalogService(session, self.clock, self.policy)
        self._ledger = StockLedgerService(session, self.clock, self.policy)
        self._snapshots = SnapshotAggregator(session, self.clock, self.policy)

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        identifier: ExternalIdentifier,
        *,
        event: InventoryEvent | None = None,
        location_id: UUID | None = None,
        merchant_id: str | None = None,
        raw_payload: dict[str, Any] | None = None,
    ) -> UnmatchedItem:
        """
        Record a resolution miss, parking ``event`` for later replay.

        Raises:
            IdentifierConflictError: Another transaction created the pending
                item concurrently.  Retrying finds and reuses it.
        """
        identifier_type = IdentifierType(identifier.identifier_type)
        value = normalize_identifier_value(identifier_type, identifier.value)
        now = self.clock.now()
        payload = to_json_safe(raw_payload if raw_payload is not None else (event.raw if event else {}))

        item = self._find_pending(identifier.source, identifier_type, value)
        if item is None:
            item = UnmatchedItem(
                source=identifier.source,
                identifier_type=identifier_type.value,
                identifier_value=value,
                external_name=identifier.name,
                merchant_id=merchant_id,
                location_id=location_id,
                raw_payload=payload,
                status=UnmatchedStatus.PENDING.value,
                occurrence_count=1,
                first_seen_at=now,
                last_seen_at=now,
                created_by_id=SYSTEM_ACTOR_ID,
            )
            savepoint = self.session.begin_nested()
            try:
                self.session.add(item)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                raise IdentifierConflictError(
                    identifier_type.value, value, identifier.source
                ) from None
            logger.info(
                "unmatched_item_enqueued",
                extra={
                    "item_id": str(item.id),
                    "source": identifier.source,
                    "identifier_type": identifier_type.value,
                    "identifier_value": value,
                },
            )
        else:
            item.occurrence_count += 1
            item.last_seen_at = now
            if item.external_name is None and identifier.name:
                item.external_name = identifier.name
            self.session.flush()
            logger.info(
                "unmatched_item_seen_again",
                extra={"item_id": str(item.id), "occurrence_count": item.occurrence_count},
            )

        if event is not None and location_id is not None:
            self._park(item, event, location_id, merchant_id)
        return item

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def link_to_existing(
        self,
        item_id: UUID,
        product_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ReconciliationOutcome:
        item = self._get_pending(item_id)
        return self._match(item, product_id, MatchMethod.MANUAL_LINK, actor_id)

    def create_new(
        self,
        item_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        *,
        name: str | None = None,
        category: str | None = None,
        unit_cost: Decimal | None = None,
        unit_price: Decimal | None = None,
    ) -> ReconciliationOutcome:
        """Create a product from the item's external attributes and link it."""
        item = self._get_pending(item_id)
        product = self._catalog.create_product(
            name or item.external_name or item.identifier_value,
            category=category,
            unit_cost=unit_cost,
            unit_price=unit_price,
            actor_id=actor_id,
        )
        return self._match(item, product.id, MatchMethod.CREATED_NEW, actor_id)

    def ignore(self, item_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> ReconciliationOutcome:
        item = self._get_pending(item_id)
        discarded = 0
        for deferred in self._pending_events(item):
            deferred.status = DeferredEventStatus.DISCARDED.value
            discarded += 1
        self._close(item, UnmatchedStatus.IGNORED, None, None, actor_id)

        logger.info(
            "unmatched_item_ignored",
            extra={"item_id": str(item_id), "discarded_events": discarded},
        )
        return ReconciliationOutcome(
            item_id=item_id,
            status=UnmatchedStatus.IGNORED,
            product_id=None,
            discarded=discarded,
        )

    def resolve_unmatched(
        self,
        item_id: UUID,
        action: ResolutionAction | str,
        *,
        product_id: UUID | None = None,
        product_fields: dict[str, Any] | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ReconciliationOutcome:
        """Administrative entry point dispatching on ``action``."""
        action = ResolutionAction(action)
        if action is ResolutionAction.LINK_EXISTING:
            if product_id is None:
                raise ValueError("link_existing requires product_id")
            return self.link_to_existing(item_id, product_id, actor_id)
        if action is ResolutionAction.CREATE_NEW:
            return self.create_new(item_id, actor_id, **(product_fields or {}))
        return self.ignore(item_id, actor_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_pending(self, limit: int = 100) -> list[UnmatchedItemView]:
        """Pending items, most frequently seen first."""
        pending_events = (
            select(func.count(DeferredStockEvent.id))
            .where(
                DeferredStockEvent.unmatched_item_id == UnmatchedItem.id,
                DeferredStockEvent.status == DeferredEventStatus.PENDING.value,
            )
            .correlate(UnmatchedItem)
            .scalar_subquery()
        )
        rows = self.session.execute(
            select(UnmatchedItem, pending_events)
            .where(UnmatchedItem.status == UnmatchedStatus.PENDING.value)
            .order_by(UnmatchedItem.occurrence_count.desc(), UnmatchedItem.first_seen_at)
            .limit(limit)
        ).all()
        return [
            UnmatchedItemView(
                item_id=item.id,
                source=item.source,
                identifier_type=item.identifier_type,
                identifier_value=item.identifier_value,
                external_name=item.external_name,
                location_id=item.location_id,
                occurrence_count=item.occurrence_count,
                pending_events=count,
                first_seen_at=item.first_seen_at,
                last_seen_at=item.last_seen_at,
            )
            for item, count in rows
        ]

    def pending_count(self) -> int:
        return self.session.execute(
            select(func.count(UnmatchedItem.id)).where(
                UnmatchedItem.status == UnmatchedStatus.PENDING.value
            )
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _find_pending(
        self,
        source: str,
        identifier_type: IdentifierType,
        value: str,
    ) -> UnmatchedItem | None:
        return self.session.execute(
            select(UnmatchedItem).where(
                UnmatchedItem.source == source,
                UnmatchedItem.identifier_type == identifier_type.value,
                UnmatchedItem.identifier_value == value,
                UnmatchedItem.status == UnmatchedStatus.PENDING.value,
            )
        ).scalar_one_or_none()

    def _get_pending(self, item_id: UUID) -> UnmatchedItem:
        item = self.session.execute(
            select(UnmatchedItem)
            .where(UnmatchedItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None:
            raise UnmatchedItemNotFoundError(item_id)
        if item.status != UnmatchedStatus.PENDING.value:
            raise UnmatchedItemClosedError(item_id, item.status)
        return item

    def _park(
        self,
        item: UnmatchedItem,
        event: InventoryEvent,
        location_id: UUID,
        merchant_id: str | None,
    ) -> None:
        already = self.session.execute(
            select(DeferredStockEvent.id).where(
                DeferredStockEvent.unmatched_item_id == item.id,
                DeferredStockEvent.ref_type == event.ref_type,
                DeferredStockEvent.external_ref_id == event.external_ref_id,
            )
        ).first()
        if already is not None:
            logger.debug(
                "deferred_event_already_parked",
                extra={"item_id": str(item.id), "external_ref_id": event.external_ref_id},
            )
            return

        self.session.add(
            DeferredStockEvent(
                unmatched_item_id=item.id,
                external_ref_id=event.external_ref_id,
                ref_type=event.ref_type,
                location_id=location_id,
                merchant_id=merchant_id,
                qty_change=event.quantity_delta,
                reason=MovementReason(event.reason).value,
                occurred_at=event.occurred_at,
                unit_cost=event.unit_cost,
                note=event.note,
                status=DeferredEventStatus.PENDING.value,
                created_by_id=SYSTEM_ACTOR_ID,
            )
        )
        self.session.flush()
        logger.info(
            "deferred_event_parked",
            extra={
                "item_id": str(item.id),
                "external_ref_id": event.external_ref_id,
                "qty_change": event.quantity_delta,
            },
        )

    def _pending_events(self, item: UnmatchedItem) -> list[DeferredStockEvent]:
        return list(
            self.session.execute(
                select(DeferredStockEvent)
                .where(
                    DeferredStockEvent.unmatched_item_id == item.id,
                    DeferredStockEvent.status == DeferredEventStatus.PENDING.value,
                )
                .order_by(DeferredStockEvent.occurred_at, DeferredStockEvent.created_at)
            ).scalars()
        )

    def _match(
        self,
        item: UnmatchedItem,
        product_id: UUID,
        method: MatchMethod,
        actor_id: UUID,
    ) -> ReconciliationOutcome:
        self._catalog.add_identifier(
            product_id,
            item.identifier_type,
            item.identifier_value,
            item.source,
            match_method=method,
            actor_id=actor_id,
        )

        replayed: list[AppendResult] = []
        for deferred in self._pending_events(item):
            result = self._ledger.append_movement(
                product_id,
                deferred.location_id,
                deferred.qty_change,
                deferred.reason,
                ref_type=deferred.ref_type,
                ref_id=deferred.external_ref_id,
                unit_cost=deferred.unit_cost,
                note=deferred.note,
                occurred_at=deferred.occurred_at,
                merchant_id=deferred.merchant_id,
                user_id=actor_id,
                match_method=method,
            )
            deferred.status = DeferredEventStatus.APPLIED.value
            deferred.applied_movement_id = result.movement_id
            replayed.append(result)

        self._close(item, UnmatchedStatus.MATCHED, product_id, method, actor_id)

        outcome = ReconciliationOutcome(
            item_id=item.id,
            status=UnmatchedStatus.MATCHED,
            product_id=product_id,
            replayed=tuple(replayed),
        )
        if self.policy.auto_recompute_late_movements:
            self._snapshots.recompute_for_warnings(outcome.warnings)

        logger.info(
            "unmatched_item_matched",
            extra={
                "item_id": str(item.id),
                "product_id": str(product_id),
                "match_method": method.value,
                "replayed_events": len(replayed),
            },
        )
        return outcome

    def _close(
        self,
        item: UnmatchedItem,
        status: UnmatchedStatus,
        product_id: UUID | None,
        method: MatchMethod | None,
        actor_id: UUID,
    ) -> None:
        item.status = status.value
        item.matched_product_id = product_id
        item.match_method = method.value if method is not None else None
        item.resolved_at = self.clock.now()
        item.resolved_by_id = actor_id
        item.updated_by_id = actor_id
        self.session.flush()
