"""
Saved-search scheduler.

One pass per invocation. Tenants, their saved searches and the results of
each search are processed strictly in sequence: provider API keys are
rate-limited and shared across the batch, so predictable ordering is
preferred over latency. Failures are isolated per search and per imported
result; only failing to resolve the tenant list aborts the pass.

Usage:
    from rfp_intake.core.scheduling.saved_search_scheduler import run_scheduler

    report = await run_scheduler(dry_run=True)
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rfp_intake.config import settings
from rfp_intake.connectors.base import ProviderAdapter, QueryWindow, get_provider
from rfp_intake.connectors.http_utils import format_error
from rfp_intake.core.errors import ConfigurationError, StaleWriteRejected
from rfp_intake.core.opportunities.opportunity_importer import OpportunityImporter
from rfp_intake.core.scheduling.saved_search_service import (
    SavedSearchService,
    SavedSearchSnapshot,
    build_runtime_criteria,
    is_due,
    naive_utc,
    saved_search_service,
)
from rfp_intake.core.shared.connection_service import ConnectionService, connection_service

logger = logging.getLogger("rfp_intake.scheduler")


class SkipReason(str, Enum):
    NO_DEFAULT_PROJECT = "NO_DEFAULT_PROJECT"
    NO_CREDENTIALS = "NO_CREDENTIALS"


@dataclass
class ImportRunResult:
    """Outcome of one saved search in one pass (not persisted)."""
    saved_search_id: UUID
    name: str
    source: str
    frequency: str
    auto_import: bool
    project_id: Optional[UUID] = None
    found: int = 0
    imported: int = 0
    opportunities_imported: int = 0
    failed_imports: int = 0
    skipped_auto_import: bool = False
    skip_reason: Optional[SkipReason] = None
    error: Optional[str] = None
    last_run_advanced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["saved_search_id"] = str(self.saved_search_id)
        data["project_id"] = str(self.project_id) if self.project_id else None
        data["skip_reason"] = self.skip_reason.value if self.skip_reason else None
        return data


@dataclass
class TenantRunResult:
    organization_id: UUID
    results: List[ImportRunResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organization_id": str(self.organization_id),
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }


@dataclass
class SchedulerRunReport:
    ok: bool
    dry_run: bool
    ran_at: datetime
    tenants_processed: int = 0
    tenants_with_work: int = 0
    per_tenant_results: List[TenantRunResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "ran_at": self.ran_at.isoformat(),
            "tenants_processed": self.tenants_processed,
            "tenants_with_work": self.tenants_with_work,
            "per_tenant_results": [t.to_dict() for t in self.per_tenant_results],
        }


ProviderFactory = Callable[[str, httpx.AsyncClient], ProviderAdapter]


class SavedSearchScheduler:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: httpx.AsyncClient,
        importer: OpportunityImporter,
        searches: Optional[SavedSearchService] = None,
        connections: Optional[ConnectionService] = None,
        provider_factory: ProviderFactory = get_provider,
        import_cap: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.importer = importer
        self.searches = searches or saved_search_service
        self.connections = connections or connection_service
        self.provider_factory = provider_factory
        self.import_cap = settings.auto_import_cap if import_cap is None else import_cap

    async def run(
        self,
        organization_id: Optional[UUID] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> SchedulerRunReport:
        """
        Run every due saved search, for all tenants or just one.

        Args:
            organization_id: Restrict the pass to one tenant (forced runs)
            dry_run: Search only; no imports, last_run_at untouched
            now: Run start time (defaults to utcnow)

        Raises:
            Exception: Only when the tenant list itself cannot be resolved
        """
        ran_at = naive_utc(now) if now else datetime.utcnow()

        if organization_id is not None:
            organization_ids = [organization_id]
        else:
            async with self.session_factory() as session:
                organization_ids = await self.searches.list_organization_ids(session)

        report = SchedulerRunReport(ok=True, dry_run=dry_run, ran_at=ran_at)
        logger.info(f"Scheduler pass at {ran_at.isoformat()} for {len(organization_ids)} tenant(s) (dry_run={dry_run})")

        for org_id in organization_ids:
            tenant = await self._run_for_org(org_id, ran_at, dry_run)
            report.per_tenant_results.append(tenant)
            report.tenants_processed += 1
            if tenant.results:
                report.tenants_with_work += 1

        logger.info(
            f"Scheduler pass complete: tenants={report.tenants_processed}, "
            f"with_work={report.tenants_with_work}"
        )
        return report

    async def _run_for_org(self, organization_id: UUID, now: datetime, dry_run: bool) -> TenantRunResult:
        tenant = TenantRunResult(organization_id=organization_id)
        try:
            async with self.session_factory() as session:
                searches = await self.searches.list_enabled(session, organization_id)
                due = [s for s in searches if is_due(s, now)]
                if not due:
                    return tenant

                project_id = await self.searches.get_default_project_id(session, organization_id)
                if project_id is None and any(s.auto_import for s in due):
                    logger.warning(f"Org {organization_id} has no project; auto-import will be skipped")

                for search in due:
                    tenant.results.append(
                        await self._run_search(session, search, project_id, now, dry_run)
                    )
        except Exception as e:
            tenant.error = format_error(e)
            logger.error(f"Scheduler failed for org {organization_id}: {tenant.error}")
        return tenant

    async def _run_search(
        self,
        session: AsyncSession,
        search: SavedSearchSnapshot,
        project_id: Optional[UUID],
        now: datetime,
        dry_run: bool,
    ) -> ImportRunResult:
        result = ImportRunResult(
            saved_search_id=search.id,
            name=search.name,
            source=search.source,
            frequency=search.frequency,
            auto_import=search.auto_import,
            project_id=project_id,
        )

        try:
            provider = self.provider_factory(search.source, self.client)
            api_key = await self.connections.get_api_key(
                session, search.organization_id, provider.CONNECTION_TYPE
            )
            if not api_key:
                raise ConfigurationError(
                    f"No {provider.DISPLAY_NAME} API key for org {search.organization_id}",
                    organization_id=search.organization_id,
                    connection_type=provider.CONNECTION_TYPE,
                )
            criteria = build_runtime_criteria(search, now, provider.format_date)
            found = await provider.search(criteria, api_key)
        except ConfigurationError as e:
            logger.warning(f"{e}; skipping saved search {search.id}")
            result.skip_reason = SkipReason.NO_CREDENTIALS
            result.skipped_auto_import = search.auto_import
            return result
        except Exception as e:
            await session.rollback()
            result.error = format_error(e)
            logger.error(f"Saved search {search.id} ({search.name}) failed: {result.error}")
            return result

        result.found = len(found)
        logger.info(f"Saved search {search.id} ({search.name}): {result.found} result(s)")

        if not dry_run and search.auto_import:
            if project_id is None:
                result.skipped_auto_import = True
                result.skip_reason = SkipReason.NO_DEFAULT_PROJECT
            else:
                window = QueryWindow(posted_from=criteria["postedFrom"], posted_to=criteria["postedTo"])
                await self._import_results(session, search, provider, api_key, project_id, window, found, result)

        if not dry_run:
            try:
                await self.searches.advance_last_run_at(session, search.id, now)
                await session.commit()
                result.last_run_advanced = True
            except StaleWriteRejected as e:
                await session.rollback()
                logger.info(f"{e}; nothing to update")
            except Exception as e:
                await session.rollback()
                result.error = format_error(e)
                logger.error(f"Saved search {search.id}: could not record run: {result.error}")

        return result

    async def _import_results(
        self,
        session: AsyncSession,
        search: SavedSearchSnapshot,
        provider: ProviderAdapter,
        api_key: str,
        project_id: UUID,
        window: QueryWindow,
        found: List[Dict[str, Any]],
        result: ImportRunResult,
    ) -> None:
        source_ids = [sid for sid in (provider.source_system_id(item) for item in found) if sid]
        for source_system_id in source_ids[: self.import_cap]:
            try:
                imported = await self.importer.import_opportunity(
                    session,
                    provider=provider,
                    api_key=api_key,
                    organization_id=search.organization_id,
                    project_id=project_id,
                    source_system_id=source_system_id,
                    window=window,
                )
            except Exception as e:
                await session.rollback()
                result.failed_imports += 1
                logger.error(
                    f"Saved search {search.id}: failed to import {provider.SOURCE} "
                    f"{source_system_id}: {format_error(e)}"
                )
                continue
            result.opportunities_imported += 1
            result.imported += imported.imported_file_count


async def run_scheduler(
    organization_id: Optional[UUID] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> SchedulerRunReport:
    """
    Build the per-invocation dependencies and run one pass.

    One HTTP client is created per invocation and shared by every provider
    call and attachment download of the pass.
    """
    from rfp_intake.core.attachments.attachment_fetcher import AttachmentFetcher
    from rfp_intake.core.attachments.attachment_import_service import AttachmentImportService
    from rfp_intake.core.ingestion.ingestion_service import get_ingestion_service
    from rfp_intake.core.shared.database_service import database_service
    from rfp_intake.core.storage.minio_service import get_minio_service

    async with httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        follow_redirects=True,
        max_redirects=settings.http_max_redirects,
    ) as client:
        importer = OpportunityImporter(
            AttachmentImportService(
                fetcher=AttachmentFetcher(client),
                storage=get_minio_service(),
                ingestion_service=get_ingestion_service(),
            )
        )
        scheduler = SavedSearchScheduler(database_service.session_factory, client, importer)
        return await scheduler.run(organization_id=organization_id, dry_run=dry_run, now=now)
