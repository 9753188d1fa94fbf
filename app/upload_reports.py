from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

UP_TO_DATE_DAYS = 1
STALE_AFTER_DAYS = 3


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def list_upload_history(db: Session, limit: int = 10, offset: int = 0) -> dict[str, Any]:
    rows = db.execute(
        text(
            """
            SELECT uh.id, uh.user_id, uh.filename, uh.upload_date,
                   uh.records_processed, uh.records_new, uh.records_updated, uh.records_skipped,
                   uh.date_range_start, uh.date_range_end, uh.branches_affected, uh.summary,
                   uh.processing_time_ms, u.username AS uploaded_by
            FROM upload_history uh
            LEFT JOIN users u ON uh.user_id = u.id
            ORDER BY uh.upload_date DESC, uh.id DESC
            LIMIT :limit OFFSET :offset
            """
        ),
        {"limit": limit, "offset": offset},
    ).mappings().all()
    total = db.execute(text("SELECT COUNT(*) FROM upload_history")).scalar_one()

    history = []
    for row in rows:
        item = dict(row)
        for key in ("branches_affected", "summary"):
            if isinstance(item[key], str):
                item[key] = json.loads(item[key])
        history.append(item)

    return {
        "history": history,
        "total": int(total),
        "hasMore": offset + len(rows) < int(total),
    }


def branch_freshness(db: Session, today: date | None = None) -> dict[str, Any]:
    """Latest inventory write per branch and how many days old it is."""
    today = today or date.today()
    rows = db.execute(
        text(
            """
            SELECT b.name AS branch_name,
                   MAX(i.updated_at) AS last_updated,
                   COUNT(DISTINCT DATE(i.updated_at)) AS days_of_data,
                   COUNT(i.id) AS total_records
            FROM branches b
            LEFT JOIN inventory i ON b.id = i.branch_id
            GROUP BY b.id, b.name
            """
        )
    ).mappings().all()

    freshness = []
    for row in rows:
        last_updated = _as_datetime(row["last_updated"])
        days_old = (today - last_updated.date()).days if last_updated else None
        freshness.append(
            {
                "branch_name": row["branch_name"],
                "latest_data_date": last_updated,
                "last_updated": last_updated,
                "days_of_data": int(row["days_of_data"] or 0),
                "days_old": days_old,
                "total_records": int(row["total_records"] or 0),
            }
        )
    freshness.sort(key=lambda r: (r["days_old"] is None, r["days_old"] or 0))

    overview = {
        "totalBranches": len(freshness),
        "upToDate": sum(1 for r in freshness if r["days_old"] is not None and r["days_old"] <= UP_TO_DATE_DAYS),
        "needsUpdate": sum(1 for r in freshness if r["days_old"] is not None and r["days_old"] > STALE_AFTER_DAYS),
        "totalRecords": sum(r["total_records"] for r in freshness),
    }
    return {"freshness": freshness, "overview": overview}
