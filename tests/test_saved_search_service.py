"""
Tests for saved-search due-ness, runtime criteria and last_run_at bookkeeping.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from rfp_intake.core.database.models import SavedSearch
from rfp_intake.core.errors import StaleWriteRejected
from rfp_intake.core.scheduling.saved_search_service import (
    SavedSearchSnapshot,
    build_runtime_criteria,
    cadence,
    is_due,
    saved_search_service,
)

NOW = datetime(2024, 3, 1, 12, 0)


def snapshot(**overrides) -> SavedSearchSnapshot:
    values = dict(
        id=None,
        organization_id=None,
        name="Cyber",
        source="SAM_GOV",
        frequency="DAILY",
        auto_import=True,
        is_enabled=True,
        last_run_at=None,
        criteria={"naics": ["541512"]},
    )
    values.update(overrides)
    return SavedSearchSnapshot(**values)


def mmddyyyy(value: datetime) -> str:
    return value.strftime("%m/%d/%Y")


class TestIsDue:

    def test_never_run_is_due(self):
        assert is_due(snapshot(), NOW)

    def test_disabled_is_never_due(self):
        assert not is_due(snapshot(is_enabled=False), NOW)

    @pytest.mark.parametrize(
        "frequency,elapsed,expected",
        [
            ("HOURLY", timedelta(minutes=59), False),
            ("HOURLY", timedelta(hours=1), True),
            ("DAILY", timedelta(hours=23), False),
            ("DAILY", timedelta(hours=24), True),
            ("WEEKLY", timedelta(days=6), False),
            ("WEEKLY", timedelta(days=7), True),
        ],
    )
    def test_cadence_boundaries(self, frequency, elapsed, expected):
        assert is_due(snapshot(frequency=frequency, last_run_at=NOW - elapsed), NOW) is expected

    def test_unknown_frequency_uses_daily(self):
        assert cadence("FORTNIGHTLY") == timedelta(days=1)
        assert cadence(None) == timedelta(days=1)

    def test_aware_now_is_compared_in_utc(self):
        aware_now = datetime(2024, 3, 1, 7, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert is_due(snapshot(last_run_at=NOW - timedelta(days=1)), aware_now)


class TestBuildRuntimeCriteria:

    def test_window_starts_at_last_run(self):
        criteria = build_runtime_criteria(
            snapshot(last_run_at=datetime(2024, 2, 20, 8, 0)), NOW, mmddyyyy
        )
        assert criteria["postedFrom"] == "02/20/2024"
        assert criteria["postedTo"] == "03/01/2024"
        assert criteria["offset"] == 0
        assert criteria["naics"] == ["541512"]

    def test_saved_posted_from_used_before_first_run(self):
        criteria = build_runtime_criteria(
            snapshot(criteria={"postedFrom": "01/15/2024", "limit": 50}), NOW, mmddyyyy
        )
        assert criteria["postedFrom"] == "01/15/2024"
        assert criteria["limit"] == 50

    def test_lookback_default(self):
        criteria = build_runtime_criteria(
            snapshot(criteria={}), NOW, mmddyyyy, lookback_days=10, default_limit=25
        )
        assert criteria["postedFrom"] == "02/20/2024"
        assert criteria["limit"] == 25

    def test_saved_criteria_are_not_mutated(self):
        search = snapshot(criteria={"keywords": "cloud"})
        build_runtime_criteria(search, NOW, mmddyyyy)
        assert search.criteria == {"keywords": "cloud"}


class TestSavedSearchService:

    @pytest.mark.asyncio
    async def test_list_enabled_returns_snapshots(self, session, tenant, add_saved_search):
        search_id = await add_saved_search(tenant["organization_id"])
        disabled_id = await add_saved_search(tenant["organization_id"], name="Off")
        disabled = await session.get(SavedSearch, disabled_id)
        disabled.is_enabled = False
        await session.commit()

        searches = await saved_search_service.list_enabled(session, tenant["organization_id"])

        assert [s.id for s in searches] == [search_id]
        assert isinstance(searches[0], SavedSearchSnapshot)

    @pytest.mark.asyncio
    async def test_list_enabled_skips_malformed_criteria(self, session, tenant, add_saved_search, caplog):
        good_id = await add_saved_search(tenant["organization_id"], name="Good")
        broken_id = await add_saved_search(tenant["organization_id"], name="Broken", criteria=["naics", "541512"])

        with caplog.at_level("WARNING", logger="rfp_intake.scheduler.searches"):
            searches = await saved_search_service.list_enabled(session, tenant["organization_id"])

        assert [s.id for s in searches] == [good_id]
        assert str(broken_id) in caplog.text

    @pytest.mark.asyncio
    async def test_default_project_is_most_recent(self, session, tenant):
        from rfp_intake.core.database.models import Project

        newer = Project(
            organization_id=tenant["organization_id"],
            name="Newer",
            created_at=datetime.utcnow() + timedelta(minutes=5),
        )
        session.add(newer)
        await session.commit()

        assert await saved_search_service.get_default_project_id(session, tenant["organization_id"]) == newer.id

    @pytest.mark.asyncio
    async def test_advance_only_moves_forward(self, session, tenant, add_saved_search):
        search_id = await add_saved_search(tenant["organization_id"], last_run_at=NOW)

        with pytest.raises(StaleWriteRejected):
            await saved_search_service.advance_last_run_at(session, search_id, NOW - timedelta(hours=1))
        await session.rollback()

        await saved_search_service.advance_last_run_at(session, search_id, NOW + timedelta(hours=1))
        await session.commit()

        stored = await session.scalar(select(SavedSearch.last_run_at).where(SavedSearch.id == search_id))
        assert stored == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_advance_deleted_search_is_rejected(self, session, tenant):
        import uuid

        with pytest.raises(StaleWriteRejected):
            await saved_search_service.advance_last_run_at(session, uuid.uuid4(), NOW)
