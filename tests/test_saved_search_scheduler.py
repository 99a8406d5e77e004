"""
Tests for the saved-search scheduler pass.

Provider and file traffic is served by httpx.MockTransport; ingestion is
the in-memory fake from conftest.
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from rfp_intake.core.attachments.attachment_fetcher import AttachmentFetcher
from rfp_intake.core.attachments.attachment_import_service import AttachmentImportService
from rfp_intake.core.database.models import IngestionDocument, Opportunity, Organization, SavedSearch
from rfp_intake.core.opportunities.opportunity_importer import OpportunityImporter
from rfp_intake.core.scheduling.saved_search_scheduler import SavedSearchScheduler, SkipReason
from rfp_intake.core.scheduling.saved_search_service import SavedSearchService

NOW = datetime(2024, 3, 1, 12, 0)


def notice(notice_id: str) -> dict:
    return {
        "noticeId": notice_id,
        "title": f"Notice {notice_id}",
        "postedDate": "2024-02-28",
        "resourceLinks": [f"https://sam.gov/api/prod/files/{notice_id}/download"],
    }


def catalog_handler(notices, failing_details=(), dibbs_status=500):
    def handler(request):
        path = request.url.path
        if path == "/opportunities/v2/search":
            notice_id = request.url.params.get("noticeid")
            if notice_id is None:
                return httpx.Response(200, json={"opportunitiesData": notices})
            if notice_id in failing_details:
                return httpx.Response(500)
            return httpx.Response(200, json={"opportunitiesData": [n for n in notices if n["noticeId"] == notice_id]})
        if path.startswith("/api/v1/solicitations"):
            return httpx.Response(dibbs_status)
        return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})

    return handler


@pytest_asyncio.fixture
async def make_scheduler(session_factory, object_store, ingestion_service):
    clients = []

    def _make(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        importer = OpportunityImporter(
            AttachmentImportService(AttachmentFetcher(client), object_store, ingestion_service, bucket="rfp-documents")
        )
        return SavedSearchScheduler(session_factory, client, importer, **kwargs)

    yield _make

    for client in clients:
        await client.aclose()


async def _last_run_at(session, search_id):
    return await session.scalar(select(SavedSearch.last_run_at).where(SavedSearch.id == search_id))


def _by_name(report):
    return {r.name: r for tenant in report.per_tenant_results for r in tenant.results}


def _tenant(report, organization_id):
    return next(t for t in report.per_tenant_results if t.organization_id == organization_id)


class LockedOnAdvance(SavedSearchService):
    def __init__(self, saved_search_id):
        self.saved_search_id = saved_search_id

    async def advance_last_run_at(self, session, saved_search_id, run_at):
        if saved_search_id == self.saved_search_id:
            raise RuntimeError("database is locked")
        await super().advance_last_run_at(session, saved_search_id, run_at)


class FailingListFor(SavedSearchService):
    def __init__(self, organization_id):
        self.organization_id = organization_id

    async def list_enabled(self, session, organization_id):
        if organization_id == self.organization_id:
            raise RuntimeError("saved search table unavailable")
        return await super().list_enabled(session, organization_id)


class TestSchedulerRun:

    @pytest.mark.asyncio
    async def test_end_to_end_imports_results(self, session, tenant, add_connection, add_saved_search, make_scheduler, orchestrator):
        """Test that a due auto-import search imports every result and advances last_run_at."""
        await add_connection(tenant["organization_id"], "sam_gov")
        search_id = await add_saved_search(tenant["organization_id"], name="Cyber")
        scheduler = make_scheduler(catalog_handler([notice("A1"), notice("A2")]))

        report = await scheduler.run(now=NOW)

        result = _by_name(report)["Cyber"]
        assert report.ok is True
        assert report.tenants_processed == 1
        assert report.tenants_with_work == 1
        assert result.found == 2
        assert result.opportunities_imported == 2
        assert result.imported == 2
        assert result.project_id == tenant["project_id"]
        assert len(orchestrator.started) == 2
        assert await _last_run_at(session, search_id) == NOW
        count = await session.scalar(select(func.count()).select_from(Opportunity).where(Opportunity.source_system_id.in_(["A1", "A2"])))
        assert count == 2

    @pytest.mark.asyncio
    async def test_failing_search_does_not_block_siblings(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        """Test that a provider failure is recorded without advancing that search only."""
        await add_connection(tenant["organization_id"], "sam_gov")
        await add_connection(tenant["organization_id"], "dibbs")
        first = await add_saved_search(tenant["organization_id"], name="First", auto_import=False)
        broken = await add_saved_search(tenant["organization_id"], name="Broken", source="DIBBS", auto_import=False)
        third = await add_saved_search(tenant["organization_id"], name="Third", auto_import=False)
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        results = _by_name(report)
        assert results["Broken"].error is not None
        assert results["First"].found == 1
        assert results["Third"].found == 1
        assert await _last_run_at(session, broken) is None
        assert await _last_run_at(session, first) == NOW
        assert await _last_run_at(session, third) == NOW

    @pytest.mark.asyncio
    async def test_dry_run_searches_only(self, session, tenant, add_connection, add_saved_search, make_scheduler, orchestrator):
        await add_connection(tenant["organization_id"], "sam_gov")
        search_id = await add_saved_search(tenant["organization_id"], name="Cyber")
        scheduler = make_scheduler(catalog_handler([notice("A1"), notice("A2")]))

        report = await scheduler.run(now=NOW, dry_run=True)

        result = _by_name(report)["Cyber"]
        assert report.dry_run is True
        assert result.found == 2
        assert result.opportunities_imported == 0
        assert orchestrator.started == []
        assert await _last_run_at(session, search_id) is None

    @pytest.mark.asyncio
    async def test_missing_credentials_skip_without_advancing(self, session, tenant, add_saved_search, make_scheduler):
        search_id = await add_saved_search(tenant["organization_id"], name="Cyber")
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        result = _by_name(report)["Cyber"]
        assert result.skip_reason is SkipReason.NO_CREDENTIALS
        assert result.found == 0
        assert await _last_run_at(session, search_id) is None

    @pytest.mark.asyncio
    async def test_no_project_skips_import_but_advances(self, session, add_connection, add_saved_search, make_scheduler, orchestrator):
        org = Organization(name="No Projects Inc")
        session.add(org)
        await session.commit()
        await add_connection(org.id, "sam_gov")
        search_id = await add_saved_search(org.id, name="Orphan")
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(organization_id=org.id, now=NOW)

        result = _by_name(report)["Orphan"]
        assert result.found == 1
        assert result.skipped_auto_import is True
        assert result.skip_reason is SkipReason.NO_DEFAULT_PROJECT
        assert orchestrator.started == []
        assert await _last_run_at(session, search_id) == NOW

    @pytest.mark.asyncio
    async def test_not_due_search_is_left_alone(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        await add_connection(tenant["organization_id"], "sam_gov")
        ran_at = NOW - timedelta(hours=2)
        search_id = await add_saved_search(tenant["organization_id"], name="Recent", last_run_at=ran_at)
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        assert _by_name(report) == {}
        assert report.tenants_with_work == 0
        assert await _last_run_at(session, search_id) == ran_at

    @pytest.mark.asyncio
    async def test_import_cap_and_per_result_failures(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        await add_connection(tenant["organization_id"], "sam_gov")
        await add_saved_search(tenant["organization_id"], name="Cyber")
        notices = [notice("A1"), notice("BAD"), notice("A3"), notice("A4")]
        scheduler = make_scheduler(catalog_handler(notices, failing_details=("BAD",)), import_cap=3)

        report = await scheduler.run(now=NOW)

        result = _by_name(report)["Cyber"]
        assert result.found == 4
        assert result.failed_imports == 1
        assert result.opportunities_imported == 2
        documents = await session.scalar(select(func.count()).select_from(IngestionDocument))
        assert documents == 2

    @pytest.mark.asyncio
    async def test_report_is_json_serializable(self, tenant, add_connection, add_saved_search, make_scheduler):
        await add_connection(tenant["organization_id"], "sam_gov")
        await add_saved_search(tenant["organization_id"], name="Cyber", auto_import=False)
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        payload = json.loads(json.dumps(report.to_dict()))
        assert payload["ok"] is True
        assert payload["ran_at"] == "2024-03-01T12:00:00"
        assert payload["per_tenant_results"][0]["results"][0]["name"] == "Cyber"


class TestSchedulerIsolation:

    @pytest.mark.asyncio
    async def test_invalid_saved_search_row_is_skipped(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        """Test that a search with malformed criteria does not stop its valid siblings."""
        await add_connection(tenant["organization_id"], "sam_gov")
        good = await add_saved_search(tenant["organization_id"], name="Good", auto_import=False)
        broken = await add_saved_search(tenant["organization_id"], name="Broken", criteria="oops", auto_import=False)
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        results = _by_name(report)
        assert _tenant(report, tenant["organization_id"]).error is None
        assert set(results) == {"Good"}
        assert results["Good"].found == 1
        assert await _last_run_at(session, good) == NOW
        assert await _last_run_at(session, broken) is None

    @pytest.mark.asyncio
    async def test_failure_recording_a_run_does_not_stop_siblings(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        """Test that an error while advancing last_run_at is kept on that search's result."""
        await add_connection(tenant["organization_id"], "sam_gov")
        first = await add_saved_search(tenant["organization_id"], name="First", auto_import=False)
        second = await add_saved_search(tenant["organization_id"], name="Second", auto_import=False)
        scheduler = make_scheduler(catalog_handler([notice("A1")]), searches=LockedOnAdvance(first))

        report = await scheduler.run(now=NOW)

        results = _by_name(report)
        assert _tenant(report, tenant["organization_id"]).error is None
        assert results["First"].found == 1
        assert "database is locked" in results["First"].error
        assert results["First"].last_run_advanced is False
        assert results["Second"].error is None
        assert results["Second"].last_run_advanced is True
        assert await _last_run_at(session, first) is None
        assert await _last_run_at(session, second) == NOW

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_block_other_tenants(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        other = Organization(name="Other Bidder LLC")
        session.add(other)
        await session.commit()
        await add_connection(tenant["organization_id"], "sam_gov")
        await add_connection(other.id, "sam_gov")
        await add_saved_search(tenant["organization_id"], name="Blocked", auto_import=False)
        other_search = await add_saved_search(other.id, name="Other", auto_import=False)
        scheduler = make_scheduler(
            catalog_handler([notice("A1")]), searches=FailingListFor(tenant["organization_id"])
        )

        report = await scheduler.run(now=NOW)

        assert report.tenants_processed == 2
        assert "saved search table unavailable" in _tenant(report, tenant["organization_id"]).error
        other_result = _tenant(report, other.id)
        assert other_result.error is None
        assert other_result.results[0].found == 1
        assert await _last_run_at(session, other_search) == NOW

    @pytest.mark.asyncio
    async def test_missing_credentials_in_one_tenant_do_not_block_others(self, session, tenant, add_connection, add_saved_search, make_scheduler):
        other = Organization(name="Other Bidder LLC")
        session.add(other)
        await session.commit()
        await add_connection(other.id, "sam_gov")
        expired = await add_saved_search(tenant["organization_id"], name="No Key", auto_import=False)
        other_search = await add_saved_search(other.id, name="Other", auto_import=False)
        scheduler = make_scheduler(catalog_handler([notice("A1")]))

        report = await scheduler.run(now=NOW)

        results = _by_name(report)
        assert results["No Key"].skip_reason is SkipReason.NO_CREDENTIALS
        assert results["Other"].found == 1
        assert await _last_run_at(session, expired) is None
        assert await _last_run_at(session, other_search) == NOW
