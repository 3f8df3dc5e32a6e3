"""
Unit tests for legacy table descriptions and row mapping.
"""

import pytest
from pydantic import ValidationError

from usermigration.exceptions import UnknownPhaseError
from usermigration.legacy import (
    ADMINS,
    BUYERS,
    EMPLOYEES,
    LEGACY_TABLES,
    REQUIRED_TABLES,
    VENDORS,
    get_legacy_table,
)
from usermigration.models import LegacyRecord, UserRole


def record(table: str, **fields: object) -> LegacyRecord:
    return LegacyRecord(id=1, table=table, fields=fields)


class TestTableDescriptions:
    def test_phase_order(self) -> None:
        assert [table.key for table in LEGACY_TABLES] == [
            "BUYERS",
            "VENDORS",
            "ADMINS",
            "EMPLOYEES",
        ]

    def test_roles(self) -> None:
        assert BUYERS.role == UserRole.BUYER
        assert VENDORS.role == UserRole.SELLER
        assert ADMINS.role == UserRole.ADMIN
        assert EMPLOYEES.role == UserRole.DATA_ENTRY

    def test_status_and_result_names(self) -> None:
        assert VENDORS.name == "legacy_vendors"
        assert VENDORS.status_key == "DATA_BACKFILL_VENDORS"
        assert VENDORS.result_name == "VENDORS_MIGRATION"

    def test_required_tables(self) -> None:
        assert "users" in REQUIRED_TABLES
        assert "employee_profiles" in REQUIRED_TABLES
        assert "migration_audit" in REQUIRED_TABLES
        assert "migration_status" in REQUIRED_TABLES


class TestGetLegacyTable:
    @pytest.mark.parametrize(
        "name",
        ["VENDORS", "vendors", "legacy_vendors", "DATA_BACKFILL_VENDORS", "vendors_migration"],
    )
    def test_lookup_by_any_name(self, name: str) -> None:
        assert get_legacy_table(name) is VENDORS

    def test_unknown_name(self) -> None:
        with pytest.raises(UnknownPhaseError):
            get_legacy_table("suppliers")


class TestBuyerMapping:
    def test_maps_fields(self) -> None:
        candidate = BUYERS.to_candidate(
            record(
                "buyers",
                buyer_name="Ada",
                email="ada@example.com",
                phone="+15550000001",
                is_email_verified=True,
            )
        )
        assert candidate.name == "Ada"
        assert candidate.email == "ada@example.com"
        assert candidate.phone == "+15550000001"
        assert candidate.role == UserRole.BUYER
        assert candidate.is_verified is True
        assert candidate.is_active is True

    def test_missing_name_falls_back(self) -> None:
        candidate = BUYERS.to_candidate(record("buyers", buyer_name="  ", email="a@example.com"))
        assert candidate.name == "Buyer"
        assert candidate.is_verified is False

    def test_string_flags(self) -> None:
        candidate = BUYERS.to_candidate(
            record("buyers", email="a@example.com", is_email_verified="true")
        )
        assert candidate.is_verified is True

    def test_missing_email_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            BUYERS.to_candidate(record("buyers", buyer_name="Ada", email=None))


class TestVendorAndAdminMapping:
    def test_vendor(self) -> None:
        candidate = VENDORS.to_candidate(
            record("legacy_vendors", name=None, email="v@example.com", is_verified=1)
        )
        assert candidate.name == "Vendor"
        assert candidate.role == UserRole.SELLER
        assert candidate.is_verified is True

    def test_admin(self) -> None:
        candidate = ADMINS.to_candidate(
            record("admins", name="Root", email="root@example.com", is_verified=False)
        )
        assert candidate.name == "Root"
        assert candidate.role == UserRole.ADMIN
        assert candidate.is_verified is False


class TestEmployeeMapping:
    def test_active_employee(self) -> None:
        candidate = EMPLOYEES.to_candidate(
            record(
                "employee_profiles",
                first_name="Grace",
                last_name="Hopper",
                work_email="grace@corp.example.com",
                personal_mobile="+18880000001",
                status="ACTIVE",
            )
        )
        assert candidate.name == "Grace Hopper"
        assert candidate.email == "grace@corp.example.com"
        assert candidate.phone == "+18880000001"
        assert candidate.role == UserRole.DATA_ENTRY
        assert candidate.is_verified is True
        assert candidate.is_active is True

    @pytest.mark.parametrize("status", ["TERMINATED", "ON_LEAVE", None])
    def test_inactive_employee(self, status: str | None) -> None:
        candidate = EMPLOYEES.to_candidate(
            record("employee_profiles", work_email="e@corp.example.com", status=status)
        )
        assert candidate.is_active is False
        assert candidate.is_verified is True

    def test_missing_names_fall_back(self) -> None:
        candidate = EMPLOYEES.to_candidate(
            record("employee_profiles", work_email="e@corp.example.com", status="active")
        )
        assert candidate.name == "Employee"
        assert candidate.is_active is True
