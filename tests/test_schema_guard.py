from __future__ import annotations

import unittest
from unittest.mock import patch

from workclock.models import AlertType, AttendanceType
from workclock.services.schema_guard import verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


FULL_COLUMNS = {
    "companies": {"id", "name", "is_active", "settings"},
    "users": {"id", "company_id", "email", "role", "is_active"},
    "attendance_events": {"id", "user_id", "type", "timestamp", "qr_verified"},
    "alerts": {"id", "company_id", "user_id", "type", "idempotency_key"},
    "audit_logs": {"id", "ts_utc", "action", "details"},
    "alembic_version": {"version_num"},
}


def _full_enums() -> list[dict[str, object]]:
    return [
        {"name": "attendance_event_type", "labels": [item.value for item in AttendanceType]},
        {"name": "alert_type", "labels": [item.value for item in AlertType]},
    ]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=FULL_COLUMNS, enums=_full_enums())
        fake_engine = _FakeEngine("0001_initial")

        with patch("workclock.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns = dict(FULL_COLUMNS)
        columns["attendance_events"] = {"id", "user_id", "type"}
        columns["alerts"] = {"id", "company_id", "type"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            enums=[
                {
                    "name": "attendance_event_type",
                    "labels": [item.value for item in AttendanceType if item is not AttendanceType.BUSINESS_TRIP_END],
                },
                {"name": "alert_type", "labels": [item.value for item in AlertType]},
            ],
        )
        fake_engine = _FakeEngine("")

        with patch("workclock.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:attendance_events:timestamp", result.issues)
        self.assertIn("MISSING_COLUMNS:alerts:idempotency_key", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:attendance_event_type:BUSINESS_TRIP_END", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_missing_enum_type_is_only_a_warning(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=FULL_COLUMNS, enums=_full_enums()[:1])

        with patch("workclock.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ENUM_NOT_FOUND:alert_type"])


if __name__ == "__main__":
    unittest.main()
