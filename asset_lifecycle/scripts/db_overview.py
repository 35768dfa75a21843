#!/usr/bin/env python3
"""Database overview and lifecycle integrity checks for AssetLifecycle."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.field_policy import STATE_FIELDS, LocationType  # noqa: E402


EXPECTED_TABLES = [
    "assets",
    "asset_history",
    "asset_lifecycle_cycles",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "assets": [
        "id",
        "asset_code",
        "equipment_name",
        "location_type",
        *[name for fields in STATE_FIELDS.values() for name in fields],
        "equipment_observations",
        "replaced_by",
        "replacement_reason",
        "was_replaced",
        "is_new_equipment",
        "substitution_date",
        "registered_on",
        "version",
    ],
    "asset_history": [
        "id",
        "asset_id",
        "asset_code",
        "action_type",
        "detail",
        "changed_field",
        "old_value",
        "new_value",
        "actor_id",
        "actor_name",
        "timestamp",
    ],
    "asset_lifecycle_cycles": ["id", "asset_id", "cycle_number", "cycle_kind", "closed_at"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def impure_state_sql() -> str:
    """COUNT of rows carrying a field that belongs to a state other than their own."""
    clauses = []
    for state in LocationType:
        foreign = [name for other, fields in STATE_FIELDS.items() if other != state for name in fields]
        populated = " OR ".join(f"{name} IS NOT NULL" for name in foreign)
        clauses.append(f"(location_type = '{state.value}' AND ({populated}))")
    return "SELECT COUNT(*) FROM assets WHERE " + " OR ".join(clauses)


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, deadline_days: int) -> list[CheckResult]:
    checks: list[CheckResult] = []
    if not _table_exists(engine, "assets"):
        return checks

    known_states = ", ".join(f"'{state.value}'" for state in LocationType)
    checks.append(
        _count_check(
            engine,
            "assets:unknown_location_type",
            f"SELECT COUNT(*) FROM assets WHERE location_type NOT IN ({known_states})",
        )
    )
    checks.append(_count_check(engine, "assets:state_impure_rows", impure_state_sql()))
    checks.append(
        _count_check(
            engine,
            "assets:dangling_replaced_by",
            """
            SELECT COUNT(*)
            FROM assets a
            LEFT JOIN assets b ON b.id = a.replaced_by
            WHERE a.replaced_by IS NOT NULL AND b.id IS NULL
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "assets:self_replacement",
            "SELECT COUNT(*) FROM assets WHERE replaced_by = id",
        )
    )
    checks.append(
        _count_check(
            engine,
            "assets:replaced_without_reason",
            """
            SELECT COUNT(*)
            FROM assets
            WHERE replaced_by IS NOT NULL
              AND (replacement_reason IS NULL OR substitution_date IS NULL)
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "assets:overdue_inspection",
            """
            SELECT COUNT(*)
            FROM assets
            WHERE location_type = :awaiting AND inspection_start_date < :cutoff
            """,
            {
                "awaiting": LocationType.AWAITING_REPORT.value,
                "cutoff": datetime.now() - timedelta(days=deadline_days + 1),
            },
        )
    )

    if _table_exists(engine, "asset_history"):
        checks.append(
            _count_check(
                engine,
                "asset_history:orphan_asset_id",
                """
                SELECT COUNT(*)
                FROM asset_history h
                LEFT JOIN assets a ON a.id = h.asset_id
                WHERE a.id IS NULL
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "assets:without_history",
                """
                SELECT COUNT(*)
                FROM assets a
                WHERE NOT EXISTS (SELECT 1 FROM asset_history h WHERE h.asset_id = a.id)
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")
    if _table_exists(engine, "assets"):
        for location_type, count in _rows(
            engine, "SELECT location_type, COUNT(*) FROM assets GROUP BY location_type ORDER BY location_type"
        ):
            print(f"  assets[{location_type}]: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "assets"):
        rows = _rows(
            engine,
            """
            SELECT id, asset_code, location_type, replaced_by, version
            FROM assets
            ORDER BY updated_at DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("assets (recently updated):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "asset_history"):
        rows = _rows(
            engine,
            """
            SELECT id, asset_code, action_type, changed_field, actor_id, timestamp
            FROM asset_history
            ORDER BY id DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("asset_history (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="AssetLifecycle DB overview")
    parser.add_argument("--db-url", default=os.environ.get("ASSET_LIFECYCLE_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument(
        "--deadline-days",
        type=int,
        default=int(os.environ.get("INSPECTION_DEADLINE_DAYS") or "5"),
    )
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("ASSET_LIFECYCLE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = _run_integrity_checks(engine, args.deadline_days)
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
