"""
SAM.gov opportunities adapter.

Search:  GET {base}/opportunities/v2/search
Detail:  the same endpoint filtered by ``noticeid`` inside the run's
         posted-date window (SAM.gov has no stable detail endpoint for
         the public API key tier).

Dates are ``MM/DD/YYYY``. ``limit`` is clamped to 1..1000.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from rfp_intake.connectors.base import (
    AttachmentRef,
    ProviderAdapter,
    QueryWindow,
    dedupe_attachments,
    filter_by_dollar_range,
    first_list,
    parse_provider_date,
    to_bool_active,
    to_number,
)
from rfp_intake.connectors.http_utils import format_error, get_json, retry_on_transient_error
from rfp_intake.core.errors import ProviderError

logger = logging.getLogger("rfp_intake.connectors.sam_gov")

MAX_LIMIT = 1000
DEFAULT_LIMIT = 25
ALLOWED_DESCRIPTION_HOSTS = ("api.sam.gov", "sam.gov")


def clamp_limit(value: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(limit, maximum))


def clamp_offset(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def is_sam_gov_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(host == d or host.endswith(f".{d}") for d in ALLOWED_DESCRIPTION_HOSTS)


def _slim(o: Dict[str, Any]) -> Dict[str, Any]:
    value = to_number(o.get("baseAndAllOptionsValue"))
    if value is None:
        value = to_number((o.get("baseAndAllOptions") or {}).get("value"))
    if value is None:
        value = to_number((o.get("award") or {}).get("amount"))
    attachments = o.get("resourceLinks") or o.get("attachments") or []
    return {
        "noticeId": o.get("noticeId") or o.get("noticeid"),
        "solicitationNumber": o.get("solicitationNumber") or o.get("solnum"),
        "title": o.get("title"),
        "type": o.get("type"),
        "postedDate": o.get("postedDate"),
        "responseDeadLine": o.get("responseDeadLine") or o.get("reponseDeadLine"),
        "naicsCode": o.get("naicsCode") or o.get("ncode"),
        "classificationCode": o.get("classificationCode") or o.get("ccode"),
        "active": o.get("active"),
        "setAside": o.get("setAside"),
        "setAsideCode": o.get("setAsideCode"),
        "fullParentPathName": o.get("fullParentPathName"),
        "description": o.get("description"),
        "baseAndAllOptionsValue": value,
        "attachmentsCount": len(attachments) if isinstance(attachments, list) else 0,
    }


class SamGovProvider(ProviderAdapter):
    SOURCE = "SAM_GOV"
    CONNECTION_TYPE = "sam_gov"
    DISPLAY_NAME = "SAM.gov"

    def build_search_params(self, criteria: Dict[str, Any], api_key: str) -> List[tuple]:
        """Build query params; list-valued codes become repeated params."""
        params: List[tuple] = [("api_key", api_key)]

        def _add(name: str, value: Any) -> None:
            if value is None or value == "":
                return
            if isinstance(value, (list, tuple)):
                params.extend((name, str(v)) for v in value if v)
            else:
                params.append((name, str(value)))

        _add("postedFrom", criteria.get("postedFrom"))
        _add("postedTo", criteria.get("postedTo"))
        _add("ncode", criteria.get("naics"))
        _add("ccode", criteria.get("psc"))
        _add("title", criteria.get("title") or criteria.get("keywords"))
        _add("organizationCode", criteria.get("organizationCode"))
        _add("organizationName", criteria.get("organizationName"))
        _add("setAsideCode", criteria.get("setAsideCode"))
        _add("ptype", criteria.get("ptype"))
        _add("state", criteria.get("state"))
        _add("zip", criteria.get("zip"))
        _add("limit", clamp_limit(criteria.get("limit")))
        _add("offset", clamp_offset(criteria.get("offset")))
        _add("rdlfrom", criteria.get("rdlfrom"))
        return params

    async def _search_raw(self, params: List[tuple]) -> List[Dict[str, Any]]:
        url = f"{self._base_url}/opportunities/v2/search"
        payload = await get_json(self._client, url, params, self.DISPLAY_NAME)
        return first_list(payload, "opportunitiesData", "data", "results")

    async def search(self, criteria: Dict[str, Any], api_key: str) -> List[Dict[str, Any]]:
        raw = await self._search_raw(self.build_search_params(criteria, api_key))
        results = filter_by_dollar_range([_slim(o) for o in raw], criteria.get("dollarRange"))
        logger.info(f"SAM.gov search returned {len(raw)} records ({len(results)} after filters)")
        return results

    async def fetch_detail(
        self,
        source_system_id: str,
        api_key: str,
        window: Optional[QueryWindow] = None,
    ) -> Dict[str, Any]:
        """
        Fetch one notice via the search endpoint.

        Raises:
            ProviderError: If SAM.gov returns no record for the notice id
        """
        params: List[tuple] = [("api_key", api_key), ("noticeid", source_system_id), ("limit", "1")]
        if window:
            params += [("postedFrom", window.posted_from), ("postedTo", window.posted_to)]

        raw = await self._search_raw(params)
        if not raw:
            raise ProviderError(
                f"SAM.gov returned no data for noticeId={source_system_id}",
                source=self.SOURCE,
                status_code=404,
            )
        detail = dict(raw[0])
        detail["description"] = await self.resolve_description(detail.get("description"), api_key)
        return detail

    async def resolve_description(self, description: Optional[str], api_key: str) -> Optional[str]:
        """
        SAM.gov often returns a link instead of description text; fetch it.

        Falls back to the original value if the fetch fails.
        """
        if not description:
            return None
        if not is_sam_gov_url(description):
            return description

        async def _request() -> httpx.Response:
            response = await self._client.get(description, params={"api_key": api_key})
            response.raise_for_status()
            return response

        try:
            response = await retry_on_transient_error(_request, max_retries=1)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch description from {description}: {format_error(e)}")
            return description

        if "json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError:
                return response.text
            if isinstance(payload, dict):
                text = (
                    payload.get("opportunityDescription")
                    or payload.get("description")
                    or payload.get("content")
                )
                if text:
                    return text
        return response.text

    def extract_attachments(self, detail: Dict[str, Any]) -> List[AttachmentRef]:
        refs: List[AttachmentRef] = []
        nested = detail.get("data") if isinstance(detail.get("data"), dict) else {}

        resource_links = detail.get("resourceLinks") or nested.get("resourceLinks") or []
        for link in resource_links if isinstance(resource_links, list) else []:
            if isinstance(link, str):
                refs.append(AttachmentRef(url=link.strip()))
            elif isinstance(link, dict):
                refs.append(AttachmentRef(
                    url=str(link.get("url") or link.get("href") or link.get("link") or "").strip(),
                    name=link.get("name") or link.get("title"),
                    mime_type=link.get("mimeType"),
                ))

        attachments = detail.get("attachments") or nested.get("attachments") or []
        for item in attachments if isinstance(attachments, list) else []:
            if isinstance(item, dict):
                refs.append(AttachmentRef(
                    url=str(item.get("url") or item.get("downloadUrl") or item.get("link") or "").strip(),
                    name=item.get("fileName") or item.get("name"),
                    mime_type=item.get("mimeType"),
                ))

        return dedupe_attachments(refs)

    def source_system_id(self, result: Dict[str, Any]) -> Optional[str]:
        return result.get("noticeId") or result.get("noticeid")

    def to_opportunity_fields(self, detail: Dict[str, Any]) -> Dict[str, Any]:
        notice_id = self.source_system_id(detail)
        slim = _slim(detail)
        return {
            "title": detail.get("title") or "Untitled",
            "solicitation_number": slim["solicitationNumber"],
            "notice_type": detail.get("type"),
            "posted_date": parse_provider_date(detail.get("postedDate")),
            "response_deadline": parse_provider_date(slim["responseDeadLine"]),
            "naics_code": slim["naicsCode"],
            "psc_code": slim["classificationCode"],
            "set_aside_code": detail.get("setAsideCode") or detail.get("setAside"),
            "agency_name": detail.get("organizationName") or detail.get("fullParentPathName"),
            "description": detail.get("description"),
            "base_and_all_options_value": slim["baseAndAllOptionsValue"],
            "active": to_bool_active(detail.get("active")),
            "ui_link": f"https://sam.gov/opp/{notice_id}/view" if notice_id else None,
        }
