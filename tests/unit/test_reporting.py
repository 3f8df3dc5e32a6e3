"""
Unit tests for MigrationReporter and IntegrityReport.
"""

from collections.abc import Callable

import pytest

from usermigration.database import InMemoryMigrationDatabase
from usermigration.legacy import BUYERS, VENDORS
from usermigration.models import MigrationConfig, MigrationStatusValue, User, UserRole
from usermigration.observability import MockTracer
from usermigration.orchestrator import MigrationOrchestrator
from usermigration.reporting import TRACKED_PHASES, IntegrityReport, MigrationReporter


@pytest.fixture
def reporter(database: InMemoryMigrationDatabase) -> MigrationReporter:
    return MigrationReporter(database, enable_tracing=False)


class TestIntegrityReport:
    def test_healthy(self) -> None:
        report = IntegrityReport({"buyers": 0, "admins": 0})
        assert report.healthy is True
        assert report.integrity_score == 100

    def test_orphans(self) -> None:
        report = IntegrityReport({"buyers": 3, "admins": 2})
        assert report.total_orphans == 5
        assert report.healthy is False
        assert report.integrity_score == 95
        assert report.to_dict()["total_orphans"] == 5

    def test_score_never_negative(self) -> None:
        assert IntegrityReport({"buyers": 250}).integrity_score == 0


class TestStatistics:
    @pytest.mark.asyncio
    async def test_empty_database(self, reporter: MigrationReporter) -> None:
        stats = await reporter.get_statistics()

        assert stats["table_counts"] == {
            "users": 0,
            "buyers": 0,
            "legacy_vendors": 0,
            "admins": 0,
            "employee_profiles": 0,
        }
        assert stats["users_by_role"] == {}
        assert stats["completed_phases"] == 0
        assert stats["total_phases"] == len(TRACKED_PHASES) == 8
        assert stats["completion_percentage"] == 0.0

    @pytest.mark.asyncio
    async def test_counts_after_migration(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        orchestrator: MigrationOrchestrator,
        reporter: MigrationReporter,
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 4)
        seed(database, VENDORS, 2)
        await orchestrator.execute_migration(fast_config)

        stats = await reporter.get_statistics()

        assert stats["table_counts"]["users"] == 6
        assert stats["table_counts"]["buyers"] == 4
        assert stats["users_by_role"] == {"BUYER": 4, "SELLER": 2}
        assert stats["completed_phases"] == 8
        assert stats["completion_percentage"] == 100.0

    @pytest.mark.asyncio
    async def test_partial_completion(
        self, database: InMemoryMigrationDatabase, reporter: MigrationReporter
    ) -> None:
        await database.status.upsert("VALIDATION", MigrationStatusValue.COMPLETED)
        await database.status.upsert("BACKUP_CREATION", MigrationStatusValue.COMPLETED)
        await database.status.upsert("DATA_BACKFILL_BUYERS", MigrationStatusValue.FAILED)
        await database.status.upsert("CLEANUP_DUPLICATE_DATA", MigrationStatusValue.COMPLETED)

        stats = await reporter.get_statistics()

        assert stats["completed_phases"] == 2
        assert stats["completion_percentage"] == 25.0


class TestStatus:
    @pytest.mark.asyncio
    async def test_ready(
        self, database: InMemoryMigrationDatabase, reporter: MigrationReporter
    ) -> None:
        await database.status.upsert("VALIDATION", MigrationStatusValue.RUNNING)

        status = await reporter.get_status()

        assert status["readiness"] == "READY"
        assert [phase["phase_name"] for phase in status["phases"]] == ["VALIDATION"]
        assert "completion_percentage" in status["statistics"]

    @pytest.mark.asyncio
    async def test_not_ready(self) -> None:
        reporter = MigrationReporter(InMemoryMigrationDatabase(ready=False), enable_tracing=False)
        assert (await reporter.get_status())["readiness"] == "NOT_READY"

    @pytest.mark.asyncio
    async def test_readiness_error_is_not_ready(
        self, database: InMemoryMigrationDatabase, reporter: MigrationReporter
    ) -> None:
        database.inject_error("validate_readiness", RuntimeError("function missing"))
        assert (await reporter.get_status())["readiness"] == "NOT_READY"


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_filter_and_limit(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        orchestrator: MigrationOrchestrator,
        reporter: MigrationReporter,
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 3)
        seed(database, VENDORS, 2)
        await orchestrator.execute_migration(fast_config)

        vendors = await reporter.get_audit_trail(phase="DATA_BACKFILL_VENDORS")
        limited = await reporter.get_audit_trail(limit=2)

        assert len(vendors) == 2
        assert {entry["table_name"] for entry in vendors} == {"legacy_vendors"}
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_invalid_limit(self, reporter: MigrationReporter) -> None:
        with pytest.raises(ValueError):
            await reporter.get_audit_trail(limit=0)


class TestIntegrity:
    @pytest.mark.asyncio
    async def test_counts_orphans_per_table(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        reporter: MigrationReporter,
    ) -> None:
        seed(database, BUYERS, 3)
        seed(database, VENDORS, 1, user_id=5)

        report = await reporter.verify_integrity()

        assert report.orphans == {
            "buyers": 3,
            "legacy_vendors": 0,
            "admins": 0,
            "employee_profiles": 0,
        }
        assert report.healthy is False


class TestValidationIssues:
    @pytest.mark.asyncio
    async def test_clean_database(self, reporter: MigrationReporter) -> None:
        assert await reporter.get_validation_issues() == []

    @pytest.mark.asyncio
    async def test_missing_tables(
        self, database: InMemoryMigrationDatabase, reporter: MigrationReporter
    ) -> None:
        database.missing = {"admins"}
        assert await reporter.get_validation_issues() == ["Missing table: admins"]

    @pytest.mark.asyncio
    async def test_repeated_emails(
        self,
        database: InMemoryMigrationDatabase,
        reporter: MigrationReporter,
        user_factory: Callable[..., User],
    ) -> None:
        database.add_user(user_factory("shared@example.com", role=UserRole.ADMIN))
        for record_id in (1, 2):
            database.add_record(BUYERS, record_id, email="shared@example.com")

        assert await reporter.get_validation_issues() == [
            "Email shared@example.com appears 3 times across users and buyers"
        ]

    @pytest.mark.asyncio
    async def test_missing_users_table_skips_email_check(
        self,
        database: InMemoryMigrationDatabase,
        reporter: MigrationReporter,
    ) -> None:
        database.missing = {"users"}
        for record_id in (1, 2, 3):
            database.add_record(BUYERS, record_id, email="shared@example.com")

        assert await reporter.get_validation_issues() == ["Missing table: users"]

    @pytest.mark.asyncio
    async def test_traced(self, database: InMemoryMigrationDatabase) -> None:
        tracer = MockTracer()
        reporter = MigrationReporter(database, tracer=tracer)

        await reporter.get_validation_issues()

        assert tracer.span_names == ["usermigration.reporter.get_validation_issues"]
