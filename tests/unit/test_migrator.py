"""
Unit tests for PhaseMigrator.

Tests cover:
- Batching and per-batch transactions
- Linking to existing users and creating new ones
- Per-record failure isolation
- Retry of transient errors
- Phase failure on a lost connection
- Status and audit recording
- Idempotent reruns
"""

from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest

from usermigration.database import InMemoryMigrationDatabase
from usermigration.directory import UserDirectory
from usermigration.exceptions import (
    DatabaseUnavailableError,
    ErrorHandler,
    TransientDatabaseError,
)
from usermigration.legacy import BUYERS, EMPLOYEES, VENDORS, LegacyTable
from usermigration.migrator import PhaseMigrator
from usermigration.models import MigrationConfig, MigrationStatusValue, User, UserRole
from usermigration.observability import MockTracer
from usermigration.recorder import MigrationRecorder


@pytest.fixture
def make_migrator(
    database: InMemoryMigrationDatabase,
    directory: UserDirectory,
    recorder: MigrationRecorder,
) -> Callable[..., PhaseMigrator]:
    def _make(table: LegacyTable = BUYERS, **kwargs: object) -> PhaseMigrator:
        kwargs.setdefault("enable_tracing", False)
        return PhaseMigrator(table, database, directory, recorder, **kwargs)  # type: ignore[arg-type]

    return _make


class TestBatching:
    @pytest.mark.asyncio
    async def test_all_records_linked_across_batches(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        seed(database, BUYERS, 150)
        tracer = MockTracer()
        migrator = make_migrator(tracer=tracer)

        result = await migrator.migrate(MigrationConfig(batch_size=100, retry_delay_ms=0))

        assert result.success is True
        assert result.phase_name == "BUYERS_MIGRATION"
        assert result.total_records == 150
        assert result.processed_records == 150
        assert result.created_users == 150
        assert result.linked_users == 0
        assert result.created_users + result.linked_users == result.processed_records
        assert result.errors == {}
        assert await database.records.count_unlinked(BUYERS) == 0
        assert tracer.span_names.count("usermigration.migrator.batch") == 2

    @pytest.mark.asyncio
    async def test_empty_table(
        self,
        database: InMemoryMigrationDatabase,
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        result = await make_migrator().migrate(fast_config)

        assert result.success is True
        assert result.total_records == 0
        status = await database.status.get("DATA_BACKFILL_BUYERS")
        assert status is not None
        assert status.status == MigrationStatusValue.COMPLETED


class TestLinking:
    @pytest.mark.asyncio
    async def test_links_to_existing_user(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        user_factory: Callable[..., User],
        fast_config: MigrationConfig,
    ) -> None:
        existing = database.add_user(user_factory("vendor1@example.com", role=UserRole.BUYER))
        seed(database, VENDORS, 2)

        result = await make_migrator(VENDORS).migrate(fast_config)

        assert result.created_users == 1
        assert result.linked_users == 1
        assert database.get_record(VENDORS, 1).user_id == existing.id
        assert database.state.users[existing.id] == existing  # type: ignore[index]
        assert database.state.users[2].role == UserRole.SELLER

    @pytest.mark.asyncio
    async def test_two_records_one_email(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 2, email="shared@example.com", phone=None)

        result = await make_migrator().migrate(fast_config)

        assert result.created_users == 1
        assert result.linked_users == 1
        assert database.get_record(BUYERS, 1).user_id == database.get_record(BUYERS, 2).user_id

    @pytest.mark.asyncio
    async def test_audit_entry_per_record(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, EMPLOYEES, 2)

        await make_migrator(EMPLOYEES).migrate(fast_config)

        entries = sorted(database.state.audit, key=lambda entry: entry.record_id)
        assert [entry.record_id for entry in entries] == [1, 2]
        assert entries[0].table_name == "employee_profiles"
        assert entries[0].migration_phase == "DATA_BACKFILL_EMPLOYEES"
        assert entries[0].new_values == {
            "user_id": 1,
            "email": "employee1@corp.example.com",
            "user_created": True,
        }


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_invalid_record_does_not_stop_batch(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 3)
        database.add_record(BUYERS, 2, buyer_name="No Email", email=None)

        result = await make_migrator().migrate(fast_config)

        assert result.success is True
        assert result.processed_records == 3
        assert result.created_users == 2
        assert result.linked_users == 0
        assert list(result.errors) == [2]
        assert "Invalid buyers record 2" in result.errors[2]
        assert database.get_record(BUYERS, 2).user_id is None
        assert database.get_record(BUYERS, 3).user_id is not None

    @pytest.mark.asyncio
    async def test_failed_link_rolls_back_created_user(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        seed(database, BUYERS, 2)
        database.inject_error("link:buyers:1", RuntimeError("constraint violated"))

        result = await make_migrator().migrate(MigrationConfig(retry_attempts=1))

        assert result.errors == {1: "constraint violated"}
        assert result.created_users == 1
        assert [user.email for user in database.state.users.values()] == ["buyer2@example.com"]
        assert [entry.record_id for entry in database.state.audit] == [2]

    @pytest.mark.asyncio
    async def test_failed_audit_keeps_link(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 1)
        database.inject_error("audit:buyers:1", RuntimeError("audit table locked"))

        result = await make_migrator().migrate(fast_config)

        assert result.errors == {}
        assert result.created_users == 1
        assert database.get_record(BUYERS, 1).user_id == 1
        assert database.state.audit == []

    @pytest.mark.asyncio
    async def test_user_without_id_is_a_record_error(
        self,
        database: InMemoryMigrationDatabase,
        directory: UserDirectory,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        user_factory: Callable[..., User],
    ) -> None:
        seed(database, BUYERS, 1)
        unsaved = user_factory("buyer1@example.com")

        with patch.object(directory, "find_or_create_user", AsyncMock(return_value=(unsaved, True))):
            result = await make_migrator().migrate(MigrationConfig(retry_attempts=1))

        assert result.errors == {1: "User resolved for buyers 1 has no id"}
        assert result.created_users == 0
        assert database.get_record(BUYERS, 1).user_id is None
        assert database.state.audit == []


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 1)
        database.inject_error(
            "link:buyers:1",
            TransientDatabaseError("deadlock"),
            TransientDatabaseError("deadlock"),
        )

        result = await make_migrator().migrate(fast_config)

        assert result.errors == {}
        assert result.created_users == 1
        assert result.linked_users == 0
        assert len(database.state.users) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        seed(database, BUYERS, 1)
        database.inject_error("link:buyers:1", *[TransientDatabaseError("deadlock")] * 2)

        result = await make_migrator().migrate(MigrationConfig(retry_attempts=2, retry_delay_ms=0))

        assert result.errors == {1: "deadlock"}
        assert result.linked_users == 0
        assert database.state.users == {}

    @pytest.mark.asyncio
    async def test_uses_configured_delay(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        delays: list[float] = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)

        seed(database, BUYERS, 1)
        database.inject_error("link:buyers:1", TransientDatabaseError("deadlock"))
        migrator = make_migrator(error_handler=ErrorHandler(sleep=sleep))

        await migrator.migrate(MigrationConfig(retry_delay_ms=500))

        assert len(delays) == 1
        assert 0.5 <= delays[0] <= 0.55


class TestPhaseFailure:
    @pytest.mark.asyncio
    async def test_lost_connection_fails_phase(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        seed(database, BUYERS, 4)
        database.inject_error("link:buyers:3", DatabaseUnavailableError("connection reset"))

        result = await make_migrator().migrate(MigrationConfig(batch_size=2, retry_delay_ms=0))

        assert result.success is False
        assert result.error_message == "connection reset"
        assert result.created_users == 2
        assert database.get_record(BUYERS, 3).user_id is None
        assert database.get_record(BUYERS, 4).user_id is None
        status = await database.status.get("DATA_BACKFILL_BUYERS")
        assert status is not None
        assert status.status == MigrationStatusValue.FAILED
        assert status.error_message == "connection reset"

    @pytest.mark.asyncio
    async def test_rerun_after_lost_connection_resumes_at_failed_batch(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
    ) -> None:
        seed(database, BUYERS, 4)
        database.inject_error("link:buyers:3", DatabaseUnavailableError("connection reset"))
        migrator = make_migrator()
        config = MigrationConfig(batch_size=2, retry_delay_ms=0)
        await migrator.migrate(config)
        first_links = {i: database.get_record(BUYERS, i).user_id for i in (1, 2)}

        second = await migrator.migrate(config)

        assert second.success is True
        assert second.total_records == 2
        assert second.processed_records == 2
        assert second.created_users == 2
        assert {i: database.get_record(BUYERS, i).user_id for i in (1, 2)} == first_links
        assert await database.records.count_unlinked(BUYERS) == 0
        assert sorted(entry.record_id for entry in database.state.audit) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_read_failure_fails_phase(
        self,
        database: InMemoryMigrationDatabase,
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        database.inject_error("find_unlinked:buyers", DatabaseUnavailableError("gone"))

        result = await make_migrator().migrate(fast_config)

        assert result.success is False
        assert result.total_records == 0

    @pytest.mark.asyncio
    async def test_commit_failure_discards_batch(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 2)
        database.inject_error("commit", DatabaseUnavailableError("commit failed"))

        result = await make_migrator().migrate(fast_config)

        assert result.success is False
        assert result.linked_users == 0
        assert result.created_users == 0
        assert database.state.users == {}


class TestStatusAndRerun:
    @pytest.mark.asyncio
    async def test_status_completed_with_counts(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, VENDORS, 3)

        await make_migrator(VENDORS).migrate(fast_config)

        status = await database.status.get("DATA_BACKFILL_VENDORS")
        assert status is not None
        assert status.status == MigrationStatusValue.COMPLETED
        assert status.records_processed == 3
        assert status.records_total == 3
        assert status.completed_at is not None

    @pytest.mark.asyncio
    async def test_rerun_is_a_no_op(
        self,
        database: InMemoryMigrationDatabase,
        seed: Callable[..., list],
        make_migrator: Callable[..., PhaseMigrator],
        fast_config: MigrationConfig,
    ) -> None:
        seed(database, BUYERS, 5)
        migrator = make_migrator()
        await migrator.migrate(fast_config)
        users_before = dict(database.state.users)

        second = await migrator.migrate(fast_config)

        assert second.total_records == 0
        assert second.created_users == 0
        assert database.state.users == users_before
        assert len(database.state.audit) == 5
