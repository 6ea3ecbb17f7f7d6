from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "external_id", "refresh_token_hash", "refresh_token_expires_at"},
    "cli_device_authorizations": {
        "id",
        "device_code_hash",
        "user_code",
        "user_id",
        "approved_at",
        "expires_at",
        "attempts",
        "last_poll_at",
        "poll_interval",
        "origin_address",
        "created_at",
    },
    "cli_device_issuances": {"id", "origin_address", "created_at"},
    "cli_tokens": {"id", "token_hash", "user_id", "label", "expires_at", "revoked_at", "last_used_at"},
    "audit_logs": {"id", "actor_type", "action", "details"},
    "alembic_version": {"version_num"},
}

# Lookups by hash and by user code rely on these being unique.
REQUIRED_UNIQUE_COLUMNS: dict[str, set[str]] = {
    "cli_device_authorizations": {"device_code_hash", "user_code"},
    "cli_tokens": {"token_hash"},
    "users": {"external_id"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "audit_actor_type": {"USER", "CLI", "SYSTEM"},
}


def _unique_single_columns(inspector: Any, table_name: str) -> set[str]:
    unique_columns: set[str] = set()
    for constraint in inspector.get_unique_constraints(table_name) or []:
        columns = constraint.get("column_names") or []
        if len(columns) == 1:
            unique_columns.add(str(columns[0]))
    for index in inspector.get_indexes(table_name) or []:
        columns = index.get("column_names") or []
        if index.get("unique") and len(columns) == 1:
            unique_columns.add(str(columns[0]))
    return unique_columns


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    get_enums = getattr(inspector, "get_enums", None)
    if get_enums is None:
        # Dialects without native enums store labels as plain strings.
        warnings.append("ENUM_INSPECTION_UNSUPPORTED")
        return
    try:
        enums = get_enums() or []
    except Exception as exc:  # pragma: no cover
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        labels = enum_item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    readable_tables: set[str] = set()
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        readable_tables.add(table_name)
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, required_unique in REQUIRED_UNIQUE_COLUMNS.items():
        if table_name not in readable_tables:
            continue
        try:
            unique_columns = _unique_single_columns(inspector, table_name)
        except Exception as exc:  # pragma: no cover
            warnings.append(f"UNIQUE_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        missing_unique = sorted(item for item in required_unique if item not in unique_columns)
        if missing_unique:
            issues.append(f"MISSING_UNIQUE:{table_name}:{','.join(missing_unique)}")

    _check_enums(inspector, issues, warnings)

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
