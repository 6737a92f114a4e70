#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, inspect, text

from geoattend.settings import get_settings

EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "employees",
    "authorized_areas",
    "employee_area_assignments",
    "attendance_days",
    "attendance_requests",
    "site_visit_points",
    "movement_trails",
    "trail_anomalies",
    "reimbursement_batches",
    "expense_claims",
    "audit_logs",
)

# name -> (query returning offending rows, tables it needs)
CONSISTENCY_QUERIES: dict[str, tuple[str, tuple[str, ...]]] = {
    "checkout_before_checkin": (
        """
        select id from attendance_days
        where check_out_at is not null and check_out_at < check_in_at
        limit 20
        """,
        ("attendance_days",),
    ),
    "multiple_pending_requests_per_day": (
        """
        select employee_id, day_date, count(*)
        from attendance_requests
        where status = 'PENDING'
        group by employee_id, day_date
        having count(*) > 1
        limit 20
        """,
        ("attendance_requests",),
    ),
    "approved_request_without_day": (
        """
        select r.id
        from attendance_requests r
        left join attendance_days d on d.employee_id = r.employee_id and d.day_date = r.day_date
        where r.status = 'APPROVED' and d.id is null
        limit 20
        """,
        ("attendance_requests", "attendance_days"),
    ),
    "claims_linked_to_failed_batch": (
        """
        select c.id
        from expense_claims c
        join reimbursement_batches b on b.id = c.reimbursement_batch_id
        where b.status = 'FAILED'
        limit 20
        """,
        ("expense_claims", "reimbursement_batches"),
    ),
    "completed_batch_unreimbursed_claims": (
        """
        select c.id
        from expense_claims c
        join reimbursement_batches b on b.id = c.reimbursement_batch_id
        where b.status = 'COMPLETED' and c.status <> 'REIMBURSED'
        limit 20
        """,
        ("expense_claims", "reimbursement_batches"),
    ),
}


def run() -> dict[str, Any]:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(inspect(conn).get_table_names())

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})

        for name, (query, needed_tables) in CONSISTENCY_QUERIES.items():
            if not all(table in tables for table in needed_tables):
                continue
            rows = conn.execute(text(query)).fetchall()
            add(name, "fail" if rows else "ok", {"rows": [list(row) for row in rows]})

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
