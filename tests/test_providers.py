"""
Tests for the SAM.gov and DIBBS catalog adapters.
"""

from datetime import datetime

import httpx
import pytest

from rfp_intake.connectors.base import (
    AttachmentRef,
    QueryWindow,
    dedupe_attachments,
    filter_by_dollar_range,
    get_provider,
    parse_provider_date,
)
from rfp_intake.connectors.dibbs.dibbs_provider import DibbsProvider
from rfp_intake.connectors.sam_gov.sam_provider import SamGovProvider, clamp_limit, is_sam_gov_url
from rfp_intake.core.errors import ProviderError

SAM_BASE = "https://api.sam.gov"
DIBBS_BASE = "https://www.dibbs.net"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestProviderHelpers:

    def test_get_provider_defaults_to_sam(self):
        client = httpx.AsyncClient()
        assert isinstance(get_provider(None, client), SamGovProvider)
        assert isinstance(get_provider("dibbs", client), DibbsProvider)
        with pytest.raises(ProviderError):
            get_provider("FPDS", client)

    def test_parse_provider_date(self):
        assert parse_provider_date("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0)
        assert parse_provider_date("2024-03-01T10:00:00-05:00") == datetime(2024, 3, 1, 15, 0)
        assert parse_provider_date("03/15/2024") == datetime(2024, 3, 15)
        assert parse_provider_date("soon") is None

    def test_dollar_range_keeps_unvalued_results(self):
        items = [
            {"id": 1, "baseAndAllOptionsValue": 50_000.0},
            {"id": 2, "baseAndAllOptionsValue": 5_000_000.0},
            {"id": 3, "baseAndAllOptionsValue": None},
        ]
        kept = filter_by_dollar_range(items, {"min": 100_000, "max": "10,000,000"})
        assert [i["id"] for i in kept] == [2, 3]

    def test_dedupe_attachments_keeps_first_http_url(self):
        refs = dedupe_attachments([
            AttachmentRef(url="https://x/a.pdf", name="first"),
            AttachmentRef(url="ftp://x/b.pdf"),
            AttachmentRef(url="https://x/a.pdf", name="second"),
            AttachmentRef(url=""),
        ])
        assert refs == [AttachmentRef(url="https://x/a.pdf", name="first")]

    def test_clamp_limit(self):
        assert clamp_limit(5000) == 1000
        assert clamp_limit(0) == 1
        assert clamp_limit("abc") == 25

    def test_description_urls_restricted_to_sam(self):
        assert is_sam_gov_url("https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid=1")
        assert not is_sam_gov_url("http://api.sam.gov/x")
        assert not is_sam_gov_url("https://evil-sam.gov.example.com/x")


class TestSamGovProvider:

    @pytest.mark.asyncio
    async def test_search_normalizes_and_filters(self):
        seen = {}

        def handler(request):
            seen["params"] = request.url.params
            return httpx.Response(200, json={"opportunitiesData": [
                {"noticeId": "A1", "title": "Cloud", "baseAndAllOptions": {"value": "2000000"}},
                {"noticeId": "A2", "title": "Small", "award": {"amount": 10}},
            ]})

        async with _client(handler) as client:
            results = await SamGovProvider(client, SAM_BASE).search(
                {"naics": ["541512", "541519"], "postedFrom": "01/01/2024", "postedTo": "01/31/2024",
                 "limit": 10, "dollarRange": {"min": 1000}},
                "key-1",
            )

        assert [r["noticeId"] for r in results] == ["A1"]
        assert results[0]["baseAndAllOptionsValue"] == 2_000_000.0
        assert seen["params"].get_list("ncode") == ["541512", "541519"]
        assert seen["params"]["api_key"] == "key-1"
        assert seen["params"]["limit"] == "10"

    @pytest.mark.asyncio
    async def test_fetch_detail_uses_window_and_resolves_description(self):
        def handler(request):
            if request.url.path == "/opportunities/v2/search":
                assert request.url.params["noticeid"] == "A1"
                assert request.url.params["postedFrom"] == "01/01/2024"
                return httpx.Response(200, json={"opportunitiesData": [{
                    "noticeId": "A1",
                    "title": "Cloud",
                    "description": "https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid=A1",
                }]})
            return httpx.Response(200, json={"description": "Full statement of work"})

        async with _client(handler) as client:
            detail = await SamGovProvider(client, SAM_BASE).fetch_detail(
                "A1", "key-1", QueryWindow("01/01/2024", "01/31/2024")
            )

        assert detail["description"] == "Full statement of work"

    @pytest.mark.asyncio
    async def test_description_fetch_failure_keeps_link(self):
        link = "https://api.sam.gov/prod/opportunities/v1/noticedesc?noticeid=A1"

        def handler(request):
            if request.url.path == "/opportunities/v2/search":
                return httpx.Response(200, json={"opportunitiesData": [{"noticeId": "A1", "description": link}]})
            return httpx.Response(404)

        async with _client(handler) as client:
            detail = await SamGovProvider(client, SAM_BASE).fetch_detail("A1", "key-1")

        assert detail["description"] == link

    @pytest.mark.asyncio
    async def test_fetch_detail_not_found(self):
        def handler(request):
            return httpx.Response(200, json={"opportunitiesData": []})

        async with _client(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await SamGovProvider(client, SAM_BASE).fetch_detail("missing", "key-1")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_http_error_becomes_provider_error(self):
        def handler(request):
            return httpx.Response(401, text="bad key")

        async with _client(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await SamGovProvider(client, SAM_BASE).search({}, "bad")

        assert exc_info.value.status_code == 401

    def test_extract_attachments_and_fields(self):
        provider = SamGovProvider(httpx.AsyncClient(), SAM_BASE)
        detail = {
            "noticeId": "A1",
            "title": "Cloud",
            "postedDate": "2024-01-05",
            "responseDeadLine": "2024-02-01T17:00:00-05:00",
            "naicsCode": "541512",
            "active": "Yes",
            "resourceLinks": ["https://sam.gov/api/prod/files/1/download", "https://sam.gov/api/prod/files/1/download"],
            "attachments": [{"url": "https://sam.gov/files/2", "fileName": "sow.pdf", "mimeType": "application/pdf"}],
        }

        refs = provider.extract_attachments(detail)
        fields = provider.to_opportunity_fields(detail)

        assert [r.url for r in refs] == ["https://sam.gov/api/prod/files/1/download", "https://sam.gov/files/2"]
        assert refs[1].name == "sow.pdf"
        assert fields["ui_link"] == "https://sam.gov/opp/A1/view"
        assert fields["active"] is True
        assert fields["response_deadline"] == datetime(2024, 2, 1, 22, 0)
        assert provider.format_date(datetime(2024, 3, 9)) == "03/09/2024"


class TestDibbsProvider:

    @pytest.mark.asyncio
    async def test_search_builds_repeated_params(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = request.url.params
            return httpx.Response(200, json={"solicitations": [{"solNum": "SPE4A1-24-T-0001", "title": "Bolts"}]})

        async with _client(handler) as client:
            results = await DibbsProvider(client, DIBBS_BASE).search(
                {"keywords": "bolts", "technologyAreas": ["A", "B"], "limit": 900},
                "key-2",
            )

        assert seen["path"] == "/api/v1/solicitations/search"
        assert seen["params"]["q"] == "bolts"
        assert seen["params"].get_list("technologyArea") == ["A", "B"]
        assert seen["params"]["limit"] == "200"
        assert results[0]["solicitationNumber"] == "SPE4A1-24-T-0001"

    @pytest.mark.asyncio
    async def test_fetch_detail_quotes_identifier(self):
        seen = {}

        def handler(request):
            seen["raw_path"] = request.url.raw_path
            return httpx.Response(200, json={"solicitationNumber": "A/B 1", "attachments": []})

        async with _client(handler) as client:
            detail = await DibbsProvider(client, DIBBS_BASE).fetch_detail("A/B 1", "key-2")

        assert detail["solicitationNumber"] == "A/B 1"
        assert seen["raw_path"].startswith(b"/api/v1/solicitations/A%2FB%201")

    @pytest.mark.asyncio
    async def test_empty_detail_is_not_found(self):
        def handler(request):
            return httpx.Response(200, json={})

        async with _client(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await DibbsProvider(client, DIBBS_BASE).fetch_detail("X", "key-2")

        assert exc_info.value.status_code == 404
