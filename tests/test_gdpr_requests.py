"""Tests for the GDPR erasure request workflow."""

import uuid
from datetime import timedelta

import pytest

from kitagov.core.clock import ensure_utc
from kitagov.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kitagov.gdpr import GDPRRequestWorkflow
from kitagov.lifecycle import EntityType, SoftDeleteCascadeEngine
from kitagov.models import GDPRRequestStatus, User, UserRole


@pytest.fixture
def workflow(db_session, clock, settings, audit):
    cascade = SoftDeleteCascadeEngine(db_session, clock=clock, settings=settings, audit=audit)
    return GDPRRequestWorkflow(
        db_session, clock=clock, settings=settings, audit=audit, cascade=cascade
    )


class TestCreate:
    """Filing a new erasure request."""

    @pytest.mark.asyncio
    async def test_creates_pending_request(self, workflow, audit, parent, admin, clock):
        request = await workflow.create(parent.id, "  Familie zieht um ", requested_by=admin.id)

        assert request.status == GDPRRequestStatus.PENDING
        assert request.reason == "Familie zieht um"
        assert request.requested_by == admin.id
        assert request.reviewed_by is None
        assert request.created_at == clock.now()

        entries = await audit.list_entries(action="GDPR_DELETE_REQUEST_CREATED")
        assert len(entries) == 1
        assert entries[0].entity == "GDPRRequest"
        assert entries[0].entity_id == str(request.id)
        assert entries[0].details["message"] == (
            "GDPR Löschanfrage erstellt für Benutzer: eltern@kita.dev"
        )

    @pytest.mark.asyncio
    async def test_reason_is_required(self, workflow, parent):
        with pytest.raises(ValidationError, match="Grund für die Löschung"):
            await workflow.create(parent.id, "   ")

    @pytest.mark.asyncio
    async def test_unknown_user(self, workflow):
        with pytest.raises(NotFoundError, match="Benutzer nicht gefunden"):
            await workflow.create(uuid.uuid4(), "Grund")

    @pytest.mark.asyncio
    async def test_soft_deleted_user_is_not_found(self, workflow, db_session, parent, clock):
        parent.deleted_at = clock.now()
        await db_session.flush()

        with pytest.raises(NotFoundError):
            await workflow.create(parent.id, "Grund")

    @pytest.mark.asyncio
    async def test_super_admin_cannot_be_subject(self, workflow, super_admin):
        with pytest.raises(ForbiddenError):
            await workflow.create(super_admin.id, "Grund")

    @pytest.mark.asyncio
    async def test_second_pending_request_conflicts(self, workflow, parent):
        await workflow.create(parent.id, "Erster Antrag")

        with pytest.raises(ConflictError) as exc_info:
            await workflow.create(parent.id, "Zweiter Antrag")

        assert exc_info.value.code == "CONFLICT"
        page = await workflow.list()
        assert page.total == 1


class TestApprove:
    """Approval soft-deletes the subject in the same unit of work."""

    @pytest.mark.asyncio
    async def test_approve_soft_deletes_user(
        self, workflow, db_session, audit, parent, super_admin, clock
    ):
        request = await workflow.create(parent.id, "Familie zieht um")
        clock.advance(hours=2)

        approved = await workflow.approve(request.id, super_admin.id)

        assert approved.status == GDPRRequestStatus.APPROVED
        assert approved.reviewed_by == super_admin.id
        assert ensure_utc(approved.reviewed_at) == clock.now()

        user = await db_session.get(User, parent.id)
        assert user.deleted_at is not None

        deletes = await audit.list_entries(action="GDPR_DELETE_USER")
        assert len(deletes) == 1
        assert deletes[0].details["gdpr_request_id"] == str(request.id)
        assert deletes[0].details["reason"] == "Familie zieht um"
        assert len(await audit.list_entries(action="GDPR_DELETE_REQUEST_APPROVED")) == 1

    @pytest.mark.asyncio
    async def test_approving_twice_conflicts(self, workflow, parent, super_admin, clock):
        request = await workflow.create(parent.id, "Grund")
        first = await workflow.approve(request.id, super_admin.id)
        clock.advance(days=1)

        with pytest.raises(ConflictError, match="genehmigt"):
            await workflow.approve(request.id, super_admin.id)

        again = await workflow.get(request.id)
        assert again.status == GDPRRequestStatus.APPROVED
        assert ensure_utc(again.reviewed_at) == ensure_utc(first.reviewed_at)

    @pytest.mark.asyncio
    async def test_already_deleted_subject_is_still_approved(
        self, workflow, db_session, audit, clock, settings, parent, super_admin
    ):
        """A subject removed in the meantime does not leave the request stuck."""
        request = await workflow.create(parent.id, "Familie zieht um")
        cascade = SoftDeleteCascadeEngine(db_session, clock=clock, settings=settings, audit=audit)
        await cascade.soft_delete(EntityType.USER, parent.id, super_admin.id)
        deleted_at = clock.now()
        clock.advance(hours=1)

        approved = await workflow.approve(request.id, super_admin.id)

        assert approved.status == GDPRRequestStatus.APPROVED
        assert approved.reviewed_at == clock.now()
        user = await db_session.get(User, parent.id)
        assert ensure_utc(user.deleted_at) == deleted_at
        assert len(await audit.list_entries(action="GDPR_DELETE_USER")) == 1

        entries = await audit.list_entries(action="GDPR_DELETE_REQUEST_APPROVED")
        assert len(entries) == 1
        assert entries[0].details["subject_already_deleted"] is True
        assert entries[0].details["cascaded"] == {}

    @pytest.mark.asyncio
    async def test_failed_soft_delete_leaves_request_pending(
        self, workflow, db_session, parent, super_admin, monkeypatch
    ):
        async def _boom(*args, **kwargs):
            raise RuntimeError("store went away")

        request = await workflow.create(parent.id, "Grund")
        monkeypatch.setattr(SoftDeleteCascadeEngine, "_mark_deleted", _boom)

        with pytest.raises(RuntimeError):
            await workflow.approve(request.id, super_admin.id)

        unchanged = await workflow.get(request.id)
        assert unchanged.status == GDPRRequestStatus.PENDING
        assert unchanged.reviewed_by is None
        assert unchanged.reviewed_at is None
        await db_session.refresh(parent)
        assert parent.deleted_at is None

    @pytest.mark.asyncio
    async def test_unknown_request(self, workflow, super_admin):
        with pytest.raises(NotFoundError, match="GDPR Anfrage nicht gefunden"):
            await workflow.approve(uuid.uuid4(), super_admin.id)


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_appends_reason(self, workflow, db_session, audit, parent, super_admin):
        request = await workflow.create(parent.id, "Familie zieht um")

        rejected = await workflow.reject(request.id, super_admin.id, " Vertrag läuft noch ")

        assert rejected.status == GDPRRequestStatus.REJECTED
        assert rejected.reason == "Familie zieht um | ABGELEHNT: Vertrag läuft noch"
        assert rejected.reviewed_by == super_admin.id
        assert (await db_session.get(User, parent.id)).deleted_at is None
        assert len(await audit.list_entries(action="GDPR_DELETE_REQUEST_REJECTED")) == 1

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, workflow, parent, super_admin):
        request = await workflow.create(parent.id, "Grund")

        with pytest.raises(ValidationError, match="Ablehnung"):
            await workflow.reject(request.id, super_admin.id, "")

        assert (await workflow.get(request.id)).status == GDPRRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_cannot_reject_approved_request(self, workflow, parent, super_admin):
        request = await workflow.create(parent.id, "Grund")
        await workflow.approve(request.id, super_admin.id)

        with pytest.raises(ConflictError, match="abgelehnt"):
            await workflow.reject(request.id, super_admin.id, "Zu spät")

        stored = await workflow.get(request.id)
        assert stored.status == GDPRRequestStatus.APPROVED
        assert stored.reason == "Grund"


class TestRequestScenario:
    """A rejected request frees the subject for a new one."""

    @pytest.mark.asyncio
    async def test_reject_then_refile(self, workflow, parent, admin, super_admin, clock):
        first = await workflow.create(parent.id, "Antrag 1", requested_by=admin.id)

        with pytest.raises(ConflictError):
            await workflow.create(parent.id, "Antrag 2", requested_by=admin.id)

        await workflow.reject(first.id, super_admin.id, "insufficient grounds")
        clock.advance(minutes=5)

        second = await workflow.create(parent.id, "Antrag 2", requested_by=admin.id)

        assert second.id != first.id
        assert second.status == GDPRRequestStatus.PENDING
        page = await workflow.list()
        assert [item.id for item in page.items] == [second.id, first.id]


class TestList:
    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, workflow, make_user, institution, clock):
        ids = []
        for _ in range(5):
            user = await make_user(UserRole.PARENT, institution)
            ids.append((await workflow.create(user.id, "Grund")).id)
            clock.advance(minutes=1)

        page = await workflow.list(page=2, limit=2)

        assert page.total == 5
        assert page.pages == 3
        assert [item.id for item in page.items] == [ids[2], ids[1]]
        assert page.to_dict()["pagination"] == {"total": 5, "page": 2, "limit": 2, "pages": 3}

    @pytest.mark.asyncio
    async def test_status_filter(self, workflow, make_user, institution, super_admin):
        pending_user = await make_user(UserRole.PARENT, institution)
        rejected_user = await make_user(UserRole.PARENT, institution)
        await workflow.create(pending_user.id, "Grund")
        rejected = await workflow.create(rejected_user.id, "Grund")
        await workflow.reject(rejected.id, super_admin.id, "Nein")

        page = await workflow.list(status="REJECTED")

        assert page.total == 1
        assert page.items[0].id == rejected.id

    @pytest.mark.asyncio
    async def test_read_back_timestamps_are_utc(self, workflow, parent, super_admin, clock):
        created_at = clock.now()
        request = await workflow.create(parent.id, "Grund")
        clock.advance(hours=3)
        await workflow.approve(request.id, super_admin.id)

        fetched = await workflow.get(request.id)
        listed = (await workflow.list()).items[0]

        for item in (fetched, listed):
            assert item.created_at == created_at
            assert item.reviewed_at == clock.now()
            assert item.updated_at == clock.now()
            assert item.reviewed_at.utcoffset() == timedelta(0)

    @pytest.mark.asyncio
    async def test_invalid_status(self, workflow):
        with pytest.raises(ValidationError, match="Ungültiger Status"):
            await workflow.list(status="ARCHIVED")

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, workflow, settings):
        page = await workflow.list(limit=10_000)
        assert page.limit == settings.gdpr_max_page_size

    @pytest.mark.asyncio
    async def test_get_unknown(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.get(uuid.uuid4())


class TestPrincipalChecks:
    """Only SUPER_ADMIN manages erasure requests."""

    @pytest.mark.asyncio
    async def test_admin_cannot_file(self, workflow, parent, admin, principal_for):
        with pytest.raises(ForbiddenError):
            await workflow.create_as(principal_for(admin), parent.id, "Grund")

    @pytest.mark.asyncio
    async def test_admin_cannot_review(self, workflow, parent, admin, principal_for):
        request = await workflow.create(parent.id, "Grund")

        with pytest.raises(ForbiddenError):
            await workflow.approve_as(principal_for(admin), request.id)
        with pytest.raises(ForbiddenError):
            await workflow.reject_as(principal_for(admin), request.id, "Nein")

    @pytest.mark.asyncio
    async def test_super_admin_full_cycle(self, workflow, parent, super_admin, principal_for):
        principal = principal_for(super_admin)
        request = await workflow.create_as(principal, parent.id, "Grund")
        assert request.requested_by == super_admin.id

        approved = await workflow.approve_as(principal, request.id)
        assert approved.status == GDPRRequestStatus.APPROVED
