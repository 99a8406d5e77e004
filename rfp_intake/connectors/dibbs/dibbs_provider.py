"""
DIBBS solicitations adapter.

Search:  GET {base}/api/v1/solicitations/search
Detail:  GET {base}/api/v1/solicitations/{solicitationNumber}

``limit`` is clamped to 1..200; list criteria become repeated params.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

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
from rfp_intake.connectors.http_utils import get_json
from rfp_intake.connectors.sam_gov.sam_provider import clamp_limit, clamp_offset
from rfp_intake.core.errors import ProviderError

logger = logging.getLogger("rfp_intake.connectors.dibbs")

MAX_LIMIT = 200

# criteria key -> repeated query param
_REPEATED_PARAMS = (
    ("technologyAreas", "technologyArea"),
    ("dodComponents", "dodComponent"),
    ("contractVehicles", "vehicle"),
    ("innovationTopics", "innovationTopic"),
    ("naics", "naics"),
    ("psc", "psc"),
)


def _slim(o: Dict[str, Any]) -> Dict[str, Any]:
    value = o.get("baseAndAllOptionsValue")
    attachments = o.get("attachments")
    return {
        "solicitationNumber": o.get("solicitationNumber") or o.get("solNum"),
        "title": o.get("title") or o.get("description_title"),
        "type": o.get("type") or o.get("solicitationType"),
        "postedDate": o.get("postedDate") or o.get("posted_date"),
        "closingDate": o.get("closingDate") or o.get("responseDeadLine"),
        "naicsCode": o.get("naicsCode") or o.get("naics"),
        "pscCode": o.get("pscCode") or o.get("classificationCode"),
        "dodComponent": o.get("dodComponent") or o.get("agency"),
        "contractVehicle": o.get("contractVehicle") or o.get("vehicle"),
        "technologyArea": o.get("technologyArea") or o.get("tech_area"),
        "setAside": o.get("setAside"),
        "setAsideCode": o.get("setAsideCode"),
        "description": o.get("description") or o.get("synopsis"),
        "active": o.get("active", o.get("status")),
        "baseAndAllOptionsValue": to_number(value) if isinstance(value, (int, float)) else None,
        "attachmentsCount": len(attachments) if isinstance(attachments, list) else 0,
        "url": o.get("url") or o.get("link"),
    }


class DibbsProvider(ProviderAdapter):
    SOURCE = "DIBBS"
    CONNECTION_TYPE = "dibbs"
    DISPLAY_NAME = "DIBBS"

    def build_search_params(self, criteria: Dict[str, Any], api_key: str) -> List[tuple]:
        params: List[tuple] = [("api_key", api_key)]
        scalar = (
            ("keywords", "q"),
            ("solicitationNumber", "solNum"),
            ("setAsideCode", "setAsideCode"),
            ("postedFrom", "postedFrom"),
            ("postedTo", "postedTo"),
            ("closingFrom", "closingFrom"),
            ("closingTo", "closingTo"),
        )
        for key, name in scalar:
            if criteria.get(key):
                params.append((name, str(criteria[key])))
        for key, name in _REPEATED_PARAMS:
            for value in criteria.get(key) or []:
                params.append((name, str(value)))
        params.append(("limit", str(clamp_limit(criteria.get("limit"), maximum=MAX_LIMIT))))
        params.append(("offset", str(clamp_offset(criteria.get("offset")))))
        return params

    async def search(self, criteria: Dict[str, Any], api_key: str) -> List[Dict[str, Any]]:
        url = f"{self._base_url}/api/v1/solicitations/search"
        payload = await get_json(self._client, url, self.build_search_params(criteria, api_key), self.DISPLAY_NAME)
        raw = first_list(payload, "data", "solicitations", "results")
        results = filter_by_dollar_range([_slim(o) for o in raw], criteria.get("dollarRange"))
        logger.info(f"DIBBS search returned {len(raw)} records ({len(results)} after filters)")
        return results

    async def fetch_detail(
        self,
        source_system_id: str,
        api_key: str,
        window: Optional[QueryWindow] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}/api/v1/solicitations/{quote(source_system_id, safe='')}"
        payload = await get_json(self._client, url, {"api_key": api_key}, self.DISPLAY_NAME)
        if not payload:
            raise ProviderError(
                f"DIBBS returned no data for solicitationNumber={source_system_id}",
                source=self.SOURCE,
                status_code=404,
            )
        return payload

    def extract_attachments(self, detail: Dict[str, Any]) -> List[AttachmentRef]:
        attachments = detail.get("attachments")
        refs = [
            AttachmentRef(
                url=str(a.get("url") or a.get("downloadUrl") or a.get("link") or "").strip(),
                name=str(a["fileName"]) if a.get("fileName") else None,
                mime_type=str(a["mimeType"]) if a.get("mimeType") else None,
            )
            for a in (attachments if isinstance(attachments, list) else [])
            if isinstance(a, dict)
        ]
        return dedupe_attachments(refs)

    def source_system_id(self, result: Dict[str, Any]) -> Optional[str]:
        return result.get("solicitationNumber") or result.get("solNum")

    def to_opportunity_fields(self, detail: Dict[str, Any]) -> Dict[str, Any]:
        slim = _slim(detail)
        return {
            "title": slim["title"] or "Untitled",
            "solicitation_number": slim["solicitationNumber"],
            "notice_type": slim["type"],
            "posted_date": parse_provider_date(slim["postedDate"]),
            "response_deadline": parse_provider_date(slim["closingDate"]),
            "naics_code": slim["naicsCode"],
            "psc_code": slim["pscCode"],
            "set_aside_code": slim["setAsideCode"] or slim["setAside"],
            "agency_name": slim["dodComponent"],
            "description": slim["description"],
            "base_and_all_options_value": slim["baseAndAllOptionsValue"],
            "active": to_bool_active(slim["active"]),
            "ui_link": slim["url"],
        }
