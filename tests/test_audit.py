"""Tests for the hash-chained audit trail."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from kitagov.consent import ConsentManager
from kitagov.core import audit as audit_module
from kitagov.core.audit import AuditLogger, canonical_json, compute_entry_hash
from kitagov.models import ActivityLog, Child
from kitagov.models.activity_log import GENESIS_HASH


def _disk_error() -> OperationalError:
    return OperationalError("SELECT entry_hash FROM activity_logs", {}, Exception("disk I/O error"))


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})

    def test_compact_and_none_safe(self):
        assert canonical_json(None) == "{}"
        assert canonical_json({"a": 1, "b": "x"}) == '{"a":1,"b":"x"}'


class TestHashChain:
    """Entries link to their predecessor and verify as a whole."""

    @pytest.mark.asyncio
    async def test_first_entry_links_to_genesis(self, audit):
        entry = await audit.record("LOGIN", "User", "u-1", None)

        assert entry.prev_hash == GENESIS_HASH
        assert entry.entry_hash == compute_entry_hash(entry)

    @pytest.mark.asyncio
    async def test_entries_are_chained(self, audit, clock):
        first = await audit.record("A", "System", "1", None, {"n": 1})
        clock.advance(seconds=1)
        second = await audit.record("B", "System", "2", None, {"n": 2})

        assert second.prev_hash == first.entry_hash
        assert second.entry_hash != first.entry_hash

    @pytest.mark.asyncio
    async def test_details_are_stored_canonically(self, audit):
        entry = await audit.record("A", "System", "1", None, {"z": 1, "a": {"y": 2, "b": 3}})
        assert list(entry.details) == ["a", "z"]

    @pytest.mark.asyncio
    async def test_untouched_chain_verifies(self, audit, clock):
        for n in range(4):
            await audit.record("STEP", "System", str(n), None, {"n": n})
            clock.advance(minutes=1)

        result = await audit.verify_chain()

        assert result.valid is True
        assert result.checked == 4
        assert result.first_broken_id is None

    @pytest.mark.asyncio
    async def test_empty_trail_is_valid(self, audit):
        result = await audit.verify_chain()
        assert result.valid is True
        assert result.checked == 0


class TestTamperDetection:
    @pytest.mark.asyncio
    async def test_edited_details_are_detected(self, audit, db_session):
        entries = [await audit.record("STEP", "System", str(n), None, {"n": n}) for n in range(3)]

        await db_session.execute(
            update(ActivityLog)
            .where(ActivityLog.id == entries[1].id)
            .values(details={"n": 99})
            .execution_options(synchronize_session=False)
        )
        db_session.expire_all()

        result = await audit.verify_chain()

        assert result.valid is False
        assert result.first_broken_id == entries[1].id
        assert result.reason == "entry_hash mismatch"

    @pytest.mark.asyncio
    async def test_deleted_entry_is_detected(self, audit, db_session):
        entries = [await audit.record("STEP", "System", str(n), None, {"n": n}) for n in range(3)]

        await db_session.execute(
            delete(ActivityLog)
            .where(ActivityLog.id == entries[1].id)
            .execution_options(synchronize_session=False)
        )
        db_session.expire_all()

        result = await audit.verify_chain()

        assert result.valid is False
        assert result.first_broken_id == entries[2].id
        assert result.reason == "prev_hash mismatch"


class TestWriteFailures:
    """A failed audit write never blocks the business mutation."""

    @pytest.fixture
    def failing_audit(self, db_session, clock, settings, monitor):
        return AuditLogger(db_session, clock=clock, settings=settings, monitor=monitor)

    @pytest.mark.asyncio
    async def test_failed_write_returns_none_and_counts(self, failing_audit, monitor):
        with patch.object(AuditLogger, "_last_hash", AsyncMock(side_effect=_disk_error())):
            entry = await failing_audit.record("LOGIN", "User", "u-1", None)

        assert entry is None
        assert monitor.consecutive_failures == 1
        assert monitor.total_failures == 1

    @pytest.mark.asyncio
    async def test_mutation_survives_audit_failure(
        self, failing_audit, db_session, clock, make_child, institution, admin, principal_for
    ):
        child = await make_child(institution)
        manager = ConsentManager(db_session, clock=clock, audit=failing_audit)

        with patch.object(AuditLogger, "_last_hash", AsyncMock(side_effect=_disk_error())):
            await manager.set_manual_consent(child.id, True, principal_for(admin))

        stored = await db_session.get(Child, child.id)
        assert stored.manual_consent_given is True
        assert await failing_audit.list_entries(action="MANUAL_CONSENT_SET") == []

    @pytest.mark.asyncio
    async def test_alert_at_threshold_and_reset_on_success(
        self, failing_audit, monitor, settings
    ):
        threshold = settings.audit_failure_alert_threshold

        with patch.object(audit_module, "log") as fake_log:
            with patch.object(AuditLogger, "_last_hash", AsyncMock(side_effect=_disk_error())):
                for _ in range(threshold - 1):
                    await failing_audit.record("LOGIN", "User", "u-1", None)
                fake_log.critical.assert_not_called()

                await failing_audit.record("LOGIN", "User", "u-1", None)
                fake_log.critical.assert_called_once()

            entry = await failing_audit.record("LOGIN", "User", "u-1", None)

        assert entry is not None
        assert monitor.consecutive_failures == 0
        assert monitor.total_failures == threshold


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_entries_filters(self, audit):
        await audit.record("NOTE_CREATED", "Note", "n-1", None)
        await audit.record("NOTE_CREATED", "Note", "n-2", None)
        await audit.record("CHILD_CHECKIN", "Child", "c-1", None)

        notes = await audit.list_entries(action="NOTE_CREATED")
        assert [e.entity_id for e in notes] == ["n-2", "n-1"]
        assert len(await audit.list_entries(entity="Child")) == 1
        assert len(await audit.list_entries(entity_id="n-1")) == 1

    @pytest.mark.asyncio
    async def test_list_gdpr_logs_only_returns_gdpr_actions(self, audit, clock):
        await audit.record("GDPR_DELETE_USER", "User", "u-1", None)
        clock.advance(seconds=1)
        await audit.record("GDPRX_LOOKALIKE", "User", "u-1", None)
        await audit.record("LOGIN", "User", "u-1", None)
        clock.advance(seconds=1)
        await audit.record("GDPR_CLEANUP_COMPLETED", "System", "cleanup", None)

        logs = await audit.list_gdpr_logs()

        assert [e.action for e in logs] == ["GDPR_CLEANUP_COMPLETED", "GDPR_DELETE_USER"]
