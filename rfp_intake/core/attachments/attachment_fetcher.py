"""
Attachment fetcher.

Downloads a remote attachment once and resolves everything the import
needs from that single response: bytes, filename, content type. Pure with
respect to application state; the HTTP client is injected.

Filename preference:      Content-Disposition > declared name > URL path
Content-type preference:  declared mime type > HTTP response > extension
"""

import hashlib
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from rfp_intake.connectors.base import AttachmentRef
from rfp_intake.connectors.http_utils import format_error, retry_on_transient_error

logger = logging.getLogger("rfp_intake.attachments.fetcher")

DEFAULT_FILENAME = "attachment"
OCTET_STREAM = "application/octet-stream"

_UNSAFE_CHARS = re.compile(r"[^\w.\-() ]+", re.ASCII)
_FILENAME_STAR = re.compile(r"filename\*=(?:UTF-8''|utf-8'')([^;\s]+)", re.IGNORECASE)
_FILENAME_QUOTED = re.compile(r'filename="([^"]+)"', re.IGNORECASE)
_FILENAME_BARE = re.compile(r"filename=([^;\s]+)", re.IGNORECASE)

EXTENSION_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".zip": "application/zip",
}

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/plain": ".txt",
    "text/html": ".html",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/tiff": ".tiff",
    "application/zip": ".zip",
    "application/x-zip-compressed": ".zip",
}


class AttachmentFetchError(RuntimeError):
    """Raised when an attachment cannot be downloaded."""


@dataclass(frozen=True)
class FetchedAttachment:
    url: str
    final_url: str
    content: bytes
    filename: str
    content_type: str
    header_filename: Optional[str] = None
    http_content_type: Optional[str] = None


def safe_filename(name: Optional[str]) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", str(name or "")).strip()
    return cleaned or DEFAULT_FILENAME


def guess_ext_from_url(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    ext = posixpath.splitext(posixpath.basename(path))[1]
    return ext if ext and len(ext) <= 10 else ""


def guess_content_type(filename: str) -> str:
    return EXTENSION_CONTENT_TYPES.get(posixpath.splitext(filename.lower())[1], OCTET_STREAM)


def normalize_content_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.split(";", 1)[0].strip().lower() or None


def content_type_to_ext(content_type: Optional[str]) -> Optional[str]:
    return CONTENT_TYPE_EXTENSIONS.get(normalize_content_type(content_type) or "")


def extract_filename_from_header(content_disposition: Optional[str]) -> Optional[str]:
    """
    Filename from a Content-Disposition header.

    RFC 5987 ``filename*`` wins over a quoted ``filename``, which wins over
    an unquoted one.
    """
    if not content_disposition:
        return None
    match = _FILENAME_STAR.search(content_disposition)
    if match:
        try:
            return unquote(match.group(1), errors="strict")
        except UnicodeDecodeError:
            pass
    match = _FILENAME_QUOTED.search(content_disposition)
    if match:
        return match.group(1)
    match = _FILENAME_BARE.search(content_disposition)
    if match:
        return match.group(1)
    return None


def build_attachment_filename(ref: AttachmentRef, header_filename: Optional[str] = None) -> str:
    if header_filename:
        sanitized = safe_filename(header_filename)
        if sanitized != DEFAULT_FILENAME:
            return sanitized

    raw_name = ref.name or posixpath.basename(unquote(urlparse(ref.url).path))
    root, ext = posixpath.splitext(raw_name)
    if not ext:
        ext = guess_ext_from_url(ref.url)
        root = raw_name
    base = safe_filename(root)
    return f"{base}{ext}" if ext else base


def resolve_content_type(
    ref: AttachmentRef, http_content_type: Optional[str], filename: str
) -> str:
    return (
        normalize_content_type(ref.mime_type)
        or normalize_content_type(http_content_type)
        or guess_content_type(filename)
    )


def ensure_extension(filename: str, content_type: str) -> str:
    """Append an extension derived from the content type when the name has none."""
    if posixpath.splitext(filename)[1]:
        return filename
    ext = content_type_to_ext(content_type)
    return f"{filename}{ext}" if ext else filename


def build_storage_key(organization_id, project_id, source_id: str, url: str, filename: str) -> str:
    """Same org, project, source record, URL and filename always map to the same key."""
    url_hash = hashlib.sha1(f"{source_id}:{url}".encode("utf-8")).hexdigest()[:16]
    return (
        f"org/{organization_id}/projects/{project_id}/opportunities/"
        f"{safe_filename(source_id)}/{url_hash}/{filename}"
    )


class AttachmentFetcher:

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        response = await self._client.get(url, follow_redirects=True)
        response.raise_for_status()
        return response

    async def fetch(self, ref: AttachmentRef) -> FetchedAttachment:
        """
        Download an attachment and resolve its filename and content type.

        Raises:
            AttachmentFetchError: On any final HTTP or network failure
        """
        try:
            response = await retry_on_transient_error(self._get, ref.url)
        except httpx.HTTPStatusError as e:
            raise AttachmentFetchError(
                f"Attachment download failed: HTTP {e.response.status_code} for {ref.url}"
            ) from e
        except httpx.HTTPError as e:
            raise AttachmentFetchError(
                f"Attachment download failed for {ref.url}: {format_error(e)}"
            ) from e

        header_filename = extract_filename_from_header(response.headers.get("content-disposition"))
        http_content_type = normalize_content_type(response.headers.get("content-type"))

        filename = build_attachment_filename(ref, header_filename)
        content_type = resolve_content_type(ref, http_content_type, filename)
        filename = ensure_extension(filename, content_type)

        logger.debug(f"Fetched {ref.url} -> {filename} ({content_type}, {len(response.content)} bytes)")
        return FetchedAttachment(
            url=ref.url,
            final_url=str(response.url),
            content=response.content,
            filename=filename,
            content_type=content_type,
            header_filename=header_filename,
            http_content_type=http_content_type,
        )
