"""
Legacy identity tables and how their rows map onto users.

Each ``LegacyTable`` bundles everything that differs between the four
backfill phases: the table and its columns, the status and result names, the
role given to created users, and the function that extracts a
``UserCandidate`` from a row. ``PhaseMigrator`` is written once against this
description.

Example:
    >>> from usermigration.legacy import get_legacy_table
    >>> get_legacy_table("vendors").name
    'legacy_vendors'
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from usermigration.exceptions import UnknownPhaseError
from usermigration.models import LegacyRecord, UserCandidate, UserRole


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)


def _name_or(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    text_value = str(value).strip()
    return text_value or fallback


def _map_buyer(record: LegacyRecord) -> UserCandidate:
    return UserCandidate(
        name=_name_or(record.get("buyer_name"), "Buyer"),
        email=record.get("email") or "",
        phone=record.get("phone"),
        role=UserRole.BUYER,
        is_verified=_truthy(record.get("is_email_verified")),
        is_active=True,
    )


def _map_vendor(record: LegacyRecord) -> UserCandidate:
    return UserCandidate(
        name=_name_or(record.get("name"), "Vendor"),
        email=record.get("email") or "",
        phone=record.get("phone"),
        role=UserRole.SELLER,
        is_verified=_truthy(record.get("is_verified")),
        is_active=True,
    )


def _map_admin(record: LegacyRecord) -> UserCandidate:
    return UserCandidate(
        name=_name_or(record.get("name"), "Admin"),
        email=record.get("email") or "",
        phone=record.get("phone"),
        role=UserRole.ADMIN,
        is_verified=_truthy(record.get("is_verified")),
        is_active=True,
    )


def _map_employee(record: LegacyRecord) -> UserCandidate:
    first = record.get("first_name") or ""
    last = record.get("last_name") or ""
    # Employees come from HR and are treated as verified.
    return UserCandidate(
        name=_name_or(f"{first} {last}", "Employee"),
        email=record.get("work_email") or "",
        phone=record.get("personal_mobile"),
        role=UserRole.DATA_ENTRY,
        is_verified=True,
        is_active=str(record.get("status") or "").upper() == "ACTIVE",
    )


@dataclass(frozen=True)
class LegacyTable:
    """
    Description of one legacy identity table.

    Attributes:
        key: Short name used to run a single phase (BUYERS, VENDORS, ...).
        name: Table name in the database.
        status_key: Phase name in migration_status (e.g., DATA_BACKFILL_BUYERS).
        result_name: Key in MigrationResult.phase_results (e.g., BUYERS_MIGRATION).
        role: Role given to users created from this table.
        columns: Columns read from each row besides id and user_id.
        constraint_name: Name of the FK constraint added on user_id.
        to_candidate: Extracts the identity from a row.
    """

    key: str
    name: str
    status_key: str
    result_name: str
    role: UserRole
    columns: tuple[str, ...]
    constraint_name: str
    to_candidate: Callable[[LegacyRecord], UserCandidate]


BUYERS = LegacyTable(
    key="BUYERS",
    name="buyers",
    status_key="DATA_BACKFILL_BUYERS",
    result_name="BUYERS_MIGRATION",
    role=UserRole.BUYER,
    columns=("buyer_name", "email", "phone", "is_email_verified"),
    constraint_name="fk_buyers_user",
    to_candidate=_map_buyer,
)

VENDORS = LegacyTable(
    key="VENDORS",
    name="legacy_vendors",
    status_key="DATA_BACKFILL_VENDORS",
    result_name="VENDORS_MIGRATION",
    role=UserRole.SELLER,
    columns=("name", "email", "phone", "is_verified"),
    constraint_name="fk_vendors_user",
    to_candidate=_map_vendor,
)

ADMINS = LegacyTable(
    key="ADMINS",
    name="admins",
    status_key="DATA_BACKFILL_ADMINS",
    result_name="ADMINS_MIGRATION",
    role=UserRole.ADMIN,
    columns=("name", "email", "phone", "is_verified"),
    constraint_name="fk_admins_user",
    to_candidate=_map_admin,
)

EMPLOYEES = LegacyTable(
    key="EMPLOYEES",
    name="employee_profiles",
    status_key="DATA_BACKFILL_EMPLOYEES",
    result_name="EMPLOYEES_MIGRATION",
    role=UserRole.DATA_ENTRY,
    columns=("first_name", "last_name", "work_email", "personal_mobile", "status"),
    constraint_name="fk_employees_user",
    to_candidate=_map_employee,
)

LEGACY_TABLES: tuple[LegacyTable, ...] = (BUYERS, VENDORS, ADMINS, EMPLOYEES)
"""All legacy tables, in the order their phases are started."""

USERS_TABLE = "users"

REQUIRED_TABLES: tuple[str, ...] = (
    USERS_TABLE,
    *(table.name for table in LEGACY_TABLES),
    "migration_audit",
    "migration_status",
)
"""Tables that must exist before the migration can run."""


def get_legacy_table(name: str) -> LegacyTable:
    """
    Look up a legacy table by phase key, table name, status key or result name.

    Matching is case-insensitive.

    Raises:
        UnknownPhaseError: If nothing matches.
    """
    wanted = name.strip().upper()
    for table in LEGACY_TABLES:
        if wanted in (table.key, table.name.upper(), table.status_key, table.result_name):
            return table
    raise UnknownPhaseError(name)


__all__ = [
    "LegacyTable",
    "BUYERS",
    "VENDORS",
    "ADMINS",
    "EMPLOYEES",
    "LEGACY_TABLES",
    "USERS_TABLE",
    "REQUIRED_TABLES",
    "get_legacy_table",
]
