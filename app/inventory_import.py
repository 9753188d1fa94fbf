from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Iterable, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ReferenceCreationFailure, StorageFailure, UploadError, describe_db_error
from app.models import UploadHistory
from app.upload_rows import CanonicalRecord, CollectedRecords, collect_records, read_upload_rows

logger = logging.getLogger(__name__)

BRANCH_PLACEHOLDER_STATE = "Unknown"
BRANCH_PLACEHOLDER_MARKET_SHARE = 15
BRANCH_PLACEHOLDER_PENETRATION = 70
PRODUCT_PLACEHOLDER_PRICE = 35000
PRODUCT_PLACEHOLDER_FACTORY_STOCK = 0

CHANGE_LIST_LIMIT = 100
TOP_CHANGES_LIMIT = 10
SIGNIFICANT_CHANGE_THRESHOLD = 10
AVL_STOCK_JITTER = 20.0
TRANSIT_JITTER = 10.0

INVENTORY_COLUMNS = (
    "product_id",
    "branch_id",
    "op_stock",
    "avl_stock",
    "transit",
    "billing",
    "month_plan",
    "demand_plan",
    "sku_opening_stock",
    "goods_in_transit",
    "final_balance_produce",
    "mtd_invoicing",
    "category",
)
INVENTORY_KEY = ("product_id", "branch_id")


class UploadState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    DETECTING = "detecting"
    WRITING = "writing"
    COMMITTED = "committed"
    ABORTED = "aborted"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _values_clause(columns: Sequence[str], rows: Sequence[dict[str, Any]], suffix: str = "") -> tuple[str, dict[str, Any]]:
    """Build a multi-row VALUES list with one named parameter per cell."""
    tuples: list[str] = []
    params: dict[str, Any] = {}
    for index, row in enumerate(rows):
        names = []
        for column in columns:
            name = f"{column}_{index}"
            params[name] = row[column]
            names.append(f":{name}")
        tuples.append(f"({', '.join(names)}{suffix})")
    return ",\n".join(tuples), params


class ReferenceResolver:
    """Request-scoped lookup of product and branch ids, creating what is missing.

    Missing names are inserted with ``ON CONFLICT DO NOTHING`` and then
    re-read, so a row created by a concurrent upload is found even when our
    own insert affected nothing.
    """

    def __init__(self, db: Session, batch_size: int):
        self.db = db
        self.batch_size = batch_size
        self.product_ids: dict[str, int] = {}
        self.branch_ids: dict[str, int] = {}
        self.missing_products: dict[str, CanonicalRecord] = {}
        self.missing_branches: dict[str, None] = {}
        self.created = {"branches": 0, "products": 0}

    def preload(self) -> None:
        products = self.db.execute(text("SELECT id, material FROM products")).mappings().all()
        branches = self.db.execute(text("SELECT id, name FROM branches")).mappings().all()
        self.product_ids = {str(row["material"]).upper(): int(row["id"]) for row in products}
        self.branch_ids = {str(row["name"]).upper(): int(row["id"]) for row in branches}

    def note(self, record: CanonicalRecord) -> None:
        if record.item_code not in self.product_ids:
            self.missing_products.setdefault(record.item_code, record)
        if record.branch_name not in self.branch_ids:
            self.missing_branches.setdefault(record.branch_name, None)

    def create_missing(self) -> dict[str, int]:
        try:
            if self.missing_branches:
                self._create_branches(list(self.missing_branches))
            if self.missing_products:
                self._create_products(list(self.missing_products))
        except SQLAlchemyError as exc:
            raise ReferenceCreationFailure(f"Could not create reference data: {describe_db_error(exc)}") from exc
        return self.created

    def _create_branches(self, names: list[str]) -> None:
        for batch in _chunks(names, self.batch_size):
            rows = [
                {
                    "name": name,
                    "state": BRANCH_PLACEHOLDER_STATE,
                    "market_share": BRANCH_PLACEHOLDER_MARKET_SHARE,
                    "penetration": BRANCH_PLACEHOLDER_PENETRATION,
                }
                for name in batch
            ]
            values, params = _values_clause(("name", "state", "market_share", "penetration"), rows)
            result = self.db.execute(
                text(
                    f"""
                    INSERT INTO branches (name, state, market_share, penetration)
                    VALUES {values}
                    ON CONFLICT (name) DO NOTHING
                    """
                ),
                params,
            )
            self.created["branches"] += max(result.rowcount or 0, 0)

        self.branch_ids.update(self._requery("SELECT id, name AS lookup_key FROM branches WHERE UPPER(name) IN :keys", names))

    def _create_products(self, codes: list[str]) -> None:
        for batch in _chunks(codes, self.batch_size):
            rows = []
            for code in batch:
                seed = self.missing_products[code]
                rows.append(
                    {
                        "material": code,
                        "tonnage": seed.tonnage,
                        "star": seed.star_rating,
                        "technology": seed.technology,
                        "price": PRODUCT_PLACEHOLDER_PRICE,
                        "factory_stock": PRODUCT_PLACEHOLDER_FACTORY_STOCK,
                    }
                )
            values, params = _values_clause(
                ("material", "tonnage", "star", "technology", "price", "factory_stock"), rows
            )
            result = self.db.execute(
                text(
                    f"""
                    INSERT INTO products (material, tonnage, star, technology, price, factory_stock)
                    VALUES {values}
                    ON CONFLICT (material) DO NOTHING
                    """
                ),
                params,
            )
            self.created["products"] += max(result.rowcount or 0, 0)

        self.product_ids.update(
            self._requery("SELECT id, material AS lookup_key FROM products WHERE UPPER(material) IN :keys", codes)
        )

    def _requery(self, sql: str, keys: list[str]) -> dict[str, int]:
        statement = text(sql).bindparams(bindparam("keys", expanding=True))
        found: dict[str, int] = {}
        for batch in _chunks(keys, self.batch_size):
            for row in self.db.execute(statement, {"keys": list(batch)}).mappings():
                found[str(row["lookup_key"]).upper()] = int(row["id"])
        return found


def load_existing_billing(db: Session, product_ids: Iterable[int], batch_size: int) -> dict[tuple[int, int], int]:
    """Current billing per (product_id, branch_id), read in product-id batches."""
    statement = text(
        "SELECT product_id, branch_id, billing FROM inventory WHERE product_id IN :product_ids"
    ).bindparams(bindparam("product_ids", expanding=True))
    existing: dict[tuple[int, int], int] = {}
    for batch in _chunks(sorted(set(product_ids)), batch_size):
        for row in db.execute(statement, {"product_ids": list(batch)}).mappings():
            existing[(int(row["product_id"]), int(row["branch_id"]))] = int(row["billing"] or 0)
    return existing


def classify_record(billing: int, prior: int | None) -> tuple[str, int]:
    if prior is None:
        return "new", billing
    if billing != prior:
        return "updated", billing - prior
    return "unchanged", 0


def derive_stock_fields(
    billing: float,
    *,
    rng: random.Random | None = None,
    avl_jitter: float = AVL_STOCK_JITTER,
    transit_jitter: float = TRANSIT_JITTER,
) -> dict[str, int]:
    # Linear placeholders for a forecasting model; only the jitter bounds are fixed.
    rng = rng or random.Random()
    billing_rounded = round_half_up(billing)
    avl_stock = round_half_up(billing * 1.5 + rng.random() * avl_jitter)
    transit = round_half_up(billing * 0.3 + rng.random() * transit_jitter)
    return {
        "month_plan": round_half_up(billing * 1.2 + 50),
        "avl_stock": avl_stock,
        "transit": transit,
        "op_stock": max(0, avl_stock + billing_rounded - transit),
    }


def _upsert_inventory_batch(db: Session, batch: Sequence[dict[str, Any]]) -> None:
    values, params = _values_clause(INVENTORY_COLUMNS, batch, suffix=", NOW()")
    assignments = ",\n".join(
        f"{column} = EXCLUDED.{column}" for column in INVENTORY_COLUMNS if column not in INVENTORY_KEY
    )
    db.execute(
        text(
            f"""
            INSERT INTO inventory ({", ".join(INVENTORY_COLUMNS)}, updated_at)
            VALUES {values}
            ON CONFLICT (product_id, branch_id) DO UPDATE SET
            {assignments},
            updated_at = NOW()
            """
        ),
        params,
    )


def upsert_inventory(db: Session, rows: Sequence[dict[str, Any]], batch_size: int) -> int:
    for number, batch in enumerate(_chunks(rows, batch_size), start=1):
        _upsert_inventory_batch(db, batch)
        logger.debug("Upserted inventory batch %s (%s rows)", number, len(batch))
    return len(rows)


@dataclass
class UploadReport:
    filename: str
    user_id: int | None
    valid_rows: int = 0
    invalid_rows: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    date_start: date | None = None
    date_end: date | None = None
    branches: dict[str, None] = field(default_factory=dict)
    changes: list[dict[str, Any]] = field(default_factory=list)
    created: dict[str, int] = field(default_factory=lambda: {"branches": 0, "products": 0})

    def touch_branch(self, branch_name: str) -> None:
        self.branches.setdefault(branch_name, None)

    def add_change(self, status: str, record: CanonicalRecord, prior: int | None, billing: int, change: int) -> None:
        entry: dict[str, Any] = {
            "type": status,
            "product": record.item_code,
            "branch": record.branch_name,
            "date": record.date.isoformat(),
        }
        if status == "updated":
            entry.update({"oldValue": prior, "newValue": billing, "change": change})
            self.updated += 1
        else:
            entry["value"] = billing
            self.new += 1
        self.changes.append(entry)

    @property
    def date_range(self) -> dict[str, str | None]:
        return {
            "start": self.date_start.isoformat() if self.date_start else None,
            "end": self.date_end.isoformat() if self.date_end else None,
        }

    def top_changes(self) -> list[dict[str, Any]]:
        updated = [c for c in self.changes if c["type"] == "updated"]
        return sorted(updated, key=lambda c: abs(c["change"]), reverse=True)[:TOP_CHANGES_LIMIT]

    def significant_changes(self) -> list[dict[str, Any]]:
        return [
            c for c in self.changes if c["type"] == "updated" and abs(c["change"]) > SIGNIFICANT_CHANGE_THRESHOLD
        ]

    def history_summary(self, processing_time_ms: int) -> dict[str, Any]:
        return {
            "changes": self.changes[:CHANGE_LIST_LIMIT],
            "createdEntities": dict(self.created),
            "dateRange": self.date_range,
            "processingTimeMs": processing_time_ms,
            "topChanges": self.top_changes(),
        }

    def to_response(self, processing_time_ms: int) -> dict[str, Any]:
        return {
            "recordsProcessed": self.valid_rows,
            "recordsNew": self.new,
            "recordsUpdated": self.updated,
            "recordsSkipped": self.skipped,
            "dateRange": self.date_range,
            "branchesAffected": list(self.branches),
            "createdEntities": dict(self.created),
            "significantChanges": self.significant_changes(),
            "summary": (
                f"Processed {self.valid_rows} records in {processing_time_ms}ms: "
                f"{self.new} new, {self.updated} updated, {self.skipped} unchanged"
            ),
            "processingTimeMs": processing_time_ms,
        }


def record_upload_history(db: Session, report: UploadReport, processing_time_ms: int) -> UploadHistory:
    history = UploadHistory(
        user_id=report.user_id,
        filename=report.filename,
        records_processed=report.valid_rows,
        records_new=report.new,
        records_updated=report.updated,
        records_skipped=report.skipped,
        date_range_start=report.date_start,
        date_range_end=report.date_end,
        branches_affected=list(report.branches),
        summary=report.history_summary(processing_time_ms),
        processing_time_ms=processing_time_ms,
    )
    db.add(history)
    db.flush()
    return history


@dataclass
class UploadContext:
    db: Session
    report: UploadReport
    resolver: ReferenceResolver
    batch_size: int
    rng: random.Random
    avl_jitter: float = AVL_STOCK_JITTER
    transit_jitter: float = TRANSIT_JITTER
    today: date | None = None
    state: UploadState = UploadState.IDLE
    started: float = field(default_factory=time.perf_counter)

    def advance(self, state: UploadState) -> None:
        logger.debug("Upload %s: %s -> %s", self.report.filename, self.state.value, state.value)
        self.state = state

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


def _normalize(context: UploadContext, rows: list[dict[str, Any]]) -> CollectedRecords:
    context.resolver.preload()
    collected = collect_records(rows, today=context.today)
    context.report.valid_rows = collected.valid_rows
    context.report.invalid_rows = collected.invalid_rows
    context.report.date_start = collected.date_start
    context.report.date_end = collected.date_end
    logger.info(
        "Data validation complete: %s valid, %s invalid rows", collected.valid_rows, collected.invalid_rows
    )
    return collected


def _resolve(context: UploadContext, collected: CollectedRecords) -> None:
    for record in collected.records.values():
        context.resolver.note(record)
    context.report.created = dict(context.resolver.create_missing())


def _latest_per_inventory_row(
    context: UploadContext, collected: CollectedRecords
) -> dict[tuple[int, int], CanonicalRecord]:
    """Keep the latest-dated record for each (product_id, branch_id).

    Inventory has no date column, so only one record per row can be compared
    and written. Equal dates keep the record that came later in the file.
    Unresolved and superseded records are counted as skipped.
    """
    resolver = context.resolver
    latest: dict[tuple[int, int], CanonicalRecord] = {}
    for record in collected.records.values():
        product_id = resolver.product_ids.get(record.item_code)
        branch_id = resolver.branch_ids.get(record.branch_name)
        if product_id is None or branch_id is None:
            context.report.skipped += 1
            continue

        context.report.touch_branch(record.branch_name)
        current = latest.get((product_id, branch_id))
        if current is not None:
            context.report.skipped += 1
            if record.date < current.date:
                continue
        latest[(product_id, branch_id)] = record
    return latest


def _detect(context: UploadContext, collected: CollectedRecords) -> list[dict[str, Any]]:
    report = context.report
    latest = _latest_per_inventory_row(context, collected)
    existing = load_existing_billing(context.db, {pid for pid, _ in latest}, context.batch_size)

    pending: list[dict[str, Any]] = []
    for (product_id, branch_id), record in latest.items():
        billing = round_half_up(record.billing)
        prior = existing.get((product_id, branch_id))
        status, change = classify_record(billing, prior)
        if status == "unchanged":
            report.skipped += 1
            continue

        report.add_change(status, record, prior, billing, change)
        derived = derive_stock_fields(
            record.billing, rng=context.rng, avl_jitter=context.avl_jitter, transit_jitter=context.transit_jitter
        )
        pending.append(
            {
                "product_id": product_id,
                "branch_id": branch_id,
                "billing": billing,
                "demand_plan": round_half_up(record.demand_plan),
                "sku_opening_stock": round_half_up(record.opening_stock),
                "goods_in_transit": round_half_up(record.goods_in_transit),
                "final_balance_produce": round_half_up(record.final_balance_to_produce),
                "mtd_invoicing": round_half_up(record.mtd_invoicing),
                "category": record.category,
                **derived,
            }
        )
    return pending


def _write(context: UploadContext, pending: list[dict[str, Any]]) -> int:
    try:
        upsert_inventory(context.db, pending, context.batch_size)
        processing_time_ms = context.elapsed_ms()
        record_upload_history(context.db, context.report, processing_time_ms)
    except SQLAlchemyError as exc:
        raise StorageFailure(f"Could not write inventory: {describe_db_error(exc)}") from exc
    return processing_time_ms


def import_inventory_upload(
    db: Session,
    content: bytes,
    filename: str,
    user_id: int | None,
    *,
    batch_size: int | None = None,
    max_records: int | None = None,
    today: date | None = None,
    rng: random.Random | None = None,
    avl_jitter: float = AVL_STOCK_JITTER,
    transit_jitter: float = TRANSIT_JITTER,
) -> dict[str, Any]:
    """Reconcile one uploaded spreadsheet against the inventory tables.

    Runs read, normalize, resolve, detect and write inside the session's
    transaction and commits once. ``MalformedInput`` is raised before any
    write; ``ReferenceCreationFailure`` and ``StorageFailure`` roll back
    everything done for this upload, created branches and products included.
    """
    resolved_batch_size = batch_size or settings.upload_batch_size
    context = UploadContext(
        db=db,
        report=UploadReport(filename=filename, user_id=user_id),
        resolver=ReferenceResolver(db, resolved_batch_size),
        batch_size=resolved_batch_size,
        rng=rng or random.Random(),
        avl_jitter=avl_jitter,
        transit_jitter=transit_jitter,
        today=today,
    )
    logger.info("Processing upload %s for user %s", filename, user_id)

    context.advance(UploadState.READING)
    try:
        rows = read_upload_rows(content, filename, max_records=max_records or settings.upload_max_records)
    except UploadError:
        context.advance(UploadState.ABORTED)
        raise

    try:
        context.advance(UploadState.NORMALIZING)
        collected = _normalize(context, rows)
        context.advance(UploadState.RESOLVING)
        _resolve(context, collected)
        context.advance(UploadState.DETECTING)
        pending = _detect(context, collected)
        context.advance(UploadState.WRITING)
        processing_time_ms = _write(context, pending)
        db.commit()
    except UploadError:
        db.rollback()
        context.advance(UploadState.ABORTED)
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        context.advance(UploadState.ABORTED)
        raise StorageFailure(f"Upload failed: {describe_db_error(exc)}") from exc

    context.advance(UploadState.COMMITTED)
    report = context.report
    logger.info(
        "Upload %s completed in %sms: %s new, %s updated, %s skipped",
        filename,
        processing_time_ms,
        report.new,
        report.updated,
        report.skipped,
    )
    return report.to_response(processing_time_ms)
