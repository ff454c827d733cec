"""
InventorySyncIngestor -- applies a batch of normalized inbound events.

Per event:

    location_ref --(CatalogService)--> Location
    identifier ---(ProductIdentityResolver)--> product
        |  miss: ReconciliationQueue.enqueue, event parked, no movement
        v
    StockLedgerService.append_movement (ref = (ref_type, external_ref_id))

Invariants enforced:
    - Unresolvable identifiers never fail the batch; they are queued.
    - Redelivered events are DUPLICATE_REF, never double-counted.
    - IdentifierConflictError is retried up to
      ``policy.max_conflict_retries`` times, then propagated.
    - When a lease is supplied it is checked before any write.

Late events that land in a snapshotted day are recomputed after the
batch when ``policy.auto_recompute_late_movements`` is on.

Failure modes:
    - UnknownLocationRefError, InvalidMovementError: propagate, and the
      caller's transaction rolls back the whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import (
    AppendStatus,
    ExternalIdentifier,
    InventoryEvent,
    Lease,
    MatchMethod,
    ResolutionResult,
)
from stock_kernel.exceptions import (
    IdentifierConflictError,
    StockWarning,
    UnresolvedIdentifierError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.services.base import BaseService
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.identity_resolver import ProductIdentityResolver
from stock_kernel.services.reconciliation_service import ReconciliationQueue
from stock_kernel.services.snapshot_service import SnapshotAggregator
from stock_kernel.services.stock_ledger import StockLedgerService
from stock_kernel.services.sync_cursor_service import SyncCursorManager

logger = get_logger("services.sync_ingestor")

APPLIED = "applied"
DUPLICATE = "duplicate"
UNMATCHED = "unmatched"


@dataclass(frozen=True)
class EventOutcome:
    external_ref_id: str
    status: str
    location_id: UUID
    product_id: UUID | None = None
    movement_id: UUID | None = None
    unmatched_item_id: UUID | None = None
    match_method: MatchMethod | None = None
    warnings: tuple[StockWarning, ...] = ()


@dataclass(frozen=True)
class IngestResult:
    applied: int
    duplicates: int
    unmatched: int
    warnings: tuple[StockWarning, ...]
    outcomes: tuple[EventOutcome, ...]
    recomputed: dict[UUID, date] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def last_ref_id(self) -> str | None:
        return self.outcomes[-1].external_ref_id if self.outcomes else None


class InventorySyncIngestor(BaseService):
    """Runs inbound events through resolution and the ledger.  Flushes only."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        super().__init__(session, clock, policy)
        self._catalog = CatalogService(session, self.clock, self.policy)
        self._resolver = ProductIdentityResolver(session, self.clock, self.policy)
        self._queue = ReconciliationQueue(session, self.clock, self.policy)
        self._ledger = StockLedgerService(session, self.clock, self.policy)
        self._snapshots = SnapshotAggregator(session, self.clock, self.policy)
        self._cursors = SyncCursorManager(session, self.clock, self.policy)

    def ingest(
        self,
        events: Iterable[InventoryEvent],
        merchant_id: str,
        source: str,
        lease: Lease | None = None,
    ) -> IngestResult:
        """
        Apply ``events`` in order.

        Args:
            events: Normalized events from one fetch.
            merchant_id: Owner of the locations the events refer to.
            source: Identifier namespace used when an event's identifier
                does not name one.
            lease: Cursor lease of the calling run, if any.

        Raises:
            LeaseLostError: ``lease`` no longer owns its cursor.
        """
        if lease is not None:
            self._cursors.check_lease(lease)

        outcomes: list[EventOutcome] = []
        with LogContext.bind(merchant_id=merchant_id):
            for event in events:
                with LogContext.bind(ref_id=event.external_ref_id):
                    outcomes.append(self._ingest_one(event, merchant_id, source))

        warnings = tuple(w for o in outcomes for w in o.warnings)
        recomputed: dict[UUID, date] = {}
        if warnings and self.policy.auto_recompute_late_movements:
            recomputed = self._snapshots.recompute_for_warnings(warnings)

        result = IngestResult(
            applied=sum(1 for o in outcomes if o.status == APPLIED),
            duplicates=sum(1 for o in outcomes if o.status == DUPLICATE),
            unmatched=sum(1 for o in outcomes if o.status == UNMATCHED),
            warnings=warnings,
            outcomes=tuple(outcomes),
            recomputed=recomputed,
        )
        logger.info(
            "sync_batch_ingested",
            extra={
                "merchant_id": merchant_id,
                "source": source,
                "applied": result.applied,
                "duplicates": result.duplicates,
                "unmatched": result.unmatched,
                "warnings": len(warnings),
            },
        )
        return result

    def _ingest_one(self, event: InventoryEvent, merchant_id: str, source: str) -> EventOutcome:
        location = self._catalog.find_location_by_ref(merchant_id, event.location_ref)
        identifier = event.product_identifier
        if not identifier.source:
            identifier = replace(identifier, source=source)

        attempts = self.policy.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._apply_or_queue(event, identifier, location.id, merchant_id)
            except IdentifierConflictError as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "identifier_conflict_retry",
                    extra={
                        "attempt": attempt,
                        "identifier_type": exc.identifier_type,
                        "identifier_value": exc.value,
                    },
                )
                self.session.expire_all()
        raise AssertionError("unreachable")

    def _apply_or_queue(
        self,
        event: InventoryEvent,
        identifier: ExternalIdentifier,
        location_id: UUID,
        merchant_id: str,
    ) -> EventOutcome:
        try:
            resolution: ResolutionResult = self._resolver.resolve_strict(identifier, location_id)
        except UnresolvedIdentifierError:
            item = self._queue.enqueue(
                identifier,
                event=event,
                location_id=location_id,
                merchant_id=merchant_id,
            )
            return EventOutcome(
                external_ref_id=event.external_ref_id,
                status=UNMATCHED,
                location_id=location_id,
                unmatched_item_id=item.id,
            )

        result = self._ledger.append_movement(
            resolution.product_id,
            location_id,
            event.quantity_delta,
            event.reason,
            ref_type=event.ref_type,
            ref_id=event.external_ref_id,
            unit_cost=event.unit_cost,
            note=event.note,
            occurred_at=event.occurred_at,
            merchant_id=merchant_id,
            match_method=(
                resolution.match_method
                if resolution.match_method is not MatchMethod.EXACT
                else None
            ),
        )
        return EventOutcome(
            external_ref_id=event.external_ref_id,
            status=DUPLICATE if result.status is AppendStatus.DUPLICATE_REF else APPLIED,
            location_id=location_id,
            product_id=result.product_id,
            movement_id=result.movement_id,
            match_method=resolution.match_method,
            warnings=result.warnings,
        )
