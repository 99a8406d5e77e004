"""
ProviderAdapter ABC: one implementation per solicitation catalog.

A saved search selects its adapter once through ``get_provider(source,
client)``; the scheduler and the manual import path only talk to this
interface.

Subclasses must implement:
    - SOURCE / CONNECTION_TYPE
    - search(): normalized slim results for runtime criteria
    - fetch_detail(): the full record for one native identifier
    - extract_attachments(): remote attachment references in a detail record
    - to_opportunity_fields(): Opportunity column values from a detail record
    - source_system_id(): native identifier of a slim result
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from rfp_intake.core.errors import ProviderError

logger = logging.getLogger("rfp_intake.connectors")

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class AttachmentRef:
    """A remote attachment declared by a provider record."""
    url: str
    name: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class QueryWindow:
    """Provider-formatted posted-date bounds of one run."""
    posted_from: str
    posted_to: str


def to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).replace(",", "").replace("$", "").strip())
    except (TypeError, ValueError):
        return None
    return number if number == number else None


def to_bool_active(value: Any) -> Optional[bool]:
    """Providers report the active flag as a bool, 'Yes'/'No' or 'true'/'false'."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"yes", "true", "active"}


def parse_provider_date(value: Any) -> Optional[datetime]:
    """
    Parse a provider date string into a naive UTC datetime.

    Accepts ISO datetimes (with ``Z`` or an offset), ISO dates and
    ``MM/DD/YYYY``. Returns None when the value cannot be parsed.
    """
    if not value:
        return None
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = datetime.strptime(text, "%m/%d/%Y")
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def filter_by_dollar_range(
    items: List[Dict[str, Any]], dollar_range: Optional[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Drop results outside ``dollarRange``; results without a value are kept."""
    if not dollar_range:
        return items
    low = to_number(dollar_range.get("min"))
    high = to_number(dollar_range.get("max"))

    def _keep(item: Dict[str, Any]) -> bool:
        value = item.get("baseAndAllOptionsValue")
        if value is None:
            return True
        if low is not None and value < low:
            return False
        if high is not None and value > high:
            return False
        return True

    return [item for item in items if _keep(item)]


def dedupe_attachments(refs: Iterable[AttachmentRef]) -> List[AttachmentRef]:
    """Keep http(s) references only, first occurrence of each URL wins."""
    seen = set()
    out = []
    for ref in refs:
        if not ref.url or not _HTTP_URL.match(ref.url) or ref.url in seen:
            continue
        seen.add(ref.url)
        out.append(ref)
    return out


def first_list(payload: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
    for key in keys:
        value = payload.get(key) if isinstance(payload, dict) else None
        if isinstance(value, list):
            return value
    return []


class ProviderAdapter(ABC):
    """Base class for solicitation catalog adapters."""

    SOURCE: str
    CONNECTION_TYPE: str
    DISPLAY_NAME: str
    DATE_FORMAT = "%m/%d/%Y"

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self._client = client
        self._base_url = base_url.rstrip("/")

    def format_date(self, value: datetime) -> str:
        return value.strftime(self.DATE_FORMAT)

    @abstractmethod
    async def search(self, criteria: Dict[str, Any], api_key: str) -> List[Dict[str, Any]]:
        """Run a catalog search and return normalized slim results."""
        ...

    @abstractmethod
    async def fetch_detail(
        self,
        source_system_id: str,
        api_key: str,
        window: Optional[QueryWindow] = None,
    ) -> Dict[str, Any]:
        """Fetch the full record for one native identifier."""
        ...

    @abstractmethod
    def extract_attachments(self, detail: Dict[str, Any]) -> List[AttachmentRef]:
        ...

    @abstractmethod
    def to_opportunity_fields(self, detail: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def source_system_id(self, result: Dict[str, Any]) -> Optional[str]:
        ...


def get_provider(source: Optional[str], client: httpx.AsyncClient) -> ProviderAdapter:
    """
    Select the adapter for a saved search's source.

    Raises:
        ProviderError: For an unknown source
    """
    from rfp_intake.config import settings
    from rfp_intake.connectors.dibbs.dibbs_provider import DibbsProvider
    from rfp_intake.connectors.sam_gov.sam_provider import SamGovProvider

    source = (source or SamGovProvider.SOURCE).upper()
    if source == SamGovProvider.SOURCE:
        return SamGovProvider(client, settings.sam_api_base_url)
    if source == DibbsProvider.SOURCE:
        return DibbsProvider(client, settings.dibbs_api_base_url)
    raise ProviderError(f"Unknown provider source: {source}", source=source)
