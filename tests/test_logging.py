"""Tests for structured logging setup and context binding."""

import json
import logging
import uuid

import pytest
import structlog

from kitagov.auth.principal import Principal
from kitagov.core.errors import ForbiddenError
from kitagov.lifecycle import RetentionScheduler
from kitagov.models import UserRole
from kitagov.telemetry import (
    bind_actor_context,
    bind_institution_context,
    clear_context,
    configure_logging,
)


class TestContextBinding:
    def test_actor_context_includes_institution(self):
        principal = Principal(id=uuid.uuid4(), role=UserRole.ADMIN, institution_id=uuid.uuid4())

        bind_actor_context(principal)

        bound = structlog.contextvars.get_contextvars()
        assert bound["actor_id"] == str(principal.id)
        assert bound["actor_role"] == "ADMIN"
        assert bound["institution_id"] == str(principal.institution_id)

    def test_super_admin_has_no_institution(self):
        bind_actor_context(Principal(id=uuid.uuid4(), role=UserRole.SUPER_ADMIN))
        assert "institution_id" not in structlog.contextvars.get_contextvars()

    def test_rebinding_drops_previous_institution(self):
        """A super admin acting after an admin in the same task logs no institution."""
        bind_actor_context(
            Principal(id=uuid.uuid4(), role=UserRole.ADMIN, institution_id=uuid.uuid4())
        )
        super_admin = Principal(id=uuid.uuid4(), role=UserRole.SUPER_ADMIN)

        bind_actor_context(super_admin)

        bound = structlog.contextvars.get_contextvars()
        assert bound["actor_id"] == str(super_admin.id)
        assert bound["actor_role"] == "SUPER_ADMIN"
        assert "institution_id" not in bound

    def test_clear_context(self):
        bind_institution_context(uuid.uuid4())
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_checked_entry_points_bind_the_actor(
        self, db_session, clock, settings, audit, admin, principal_for
    ):
        """The actor is in the log context even when the check fails."""
        scheduler = RetentionScheduler(db_session, clock=clock, settings=settings, audit=audit)

        with pytest.raises(ForbiddenError):
            await scheduler.run_cleanup_as(principal_for(admin))

        assert structlog.contextvars.get_contextvars()["actor_id"] == str(admin.id)


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_structlog(self):
        yield
        structlog.reset_defaults()

    def test_json_logs(self, caplog):
        caplog.set_level(logging.INFO, logger="kitagov.test")
        configure_logging(json_logs=True, log_level="INFO")

        structlog.get_logger("kitagov.test").info("retention.cleanup_completed", total=3)

        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["event"] == "retention.cleanup_completed"
        assert payload["total"] == 3
        assert payload["level"] == "info"
        assert payload["logger"] == "kitagov.test"
        assert payload["timestamp"].endswith("Z")
