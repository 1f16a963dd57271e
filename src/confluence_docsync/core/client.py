import logging
import threading
from datetime import datetime
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Config
from ..errors import RemoteReadFailure, RemoteWriteFailure
from ..sync.models import AttachmentRef, RemotePage
from ..validators import validate_page_title, validate_storage_content

logger = logging.getLogger(__name__)

# Page size for child and attachment listings
PAGE_LIMIT = 200

_EXPAND_MAP = {
    "body": "body.storage",
    "version": "version",
    "ancestors": "ancestors",
}


def _parse_when(value: str | None) -> datetime | None:
    """Parse Confluence's ISO timestamps (``2024-05-01T10:00:00.000Z``)."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None


class ConfluenceClient:
    """Blocking Confluence Cloud REST client.

    Satisfies the ``ContentBackend`` and ``MediaUploader`` protocols.  Each
    thread gets its own ``requests.Session`` so the client can be shared by
    the sync worker pool.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.api_url = self._get_api_url()

    @property
    def session(self) -> requests.Session:
        """Accessor for the current thread's session."""
        return self._get_session()

    def _get_api_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/wiki/rest/api"

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = (self.config.username, self.config.api_token)
        session.verify = not self.config.insecure
        session.headers.update({"Accept": "application/json"})
        # Only reads are retried; a repeated POST could create duplicates.
        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _request(
        self, method: str, path_or_url: str, **kwargs: Any
    ) -> requests.Response:
        """
        Make a REST request, mapping failures onto the error taxonomy.

        GET failures raise ``RemoteReadFailure``; everything else raises
        ``RemoteWriteFailure``.  Both carry the HTTP status when known.
        """
        error_cls = (
            RemoteReadFailure if method == "GET" else RemoteWriteFailure
        )
        url = (
            path_or_url
            if path_or_url.startswith(("http://", "https://"))
            else f"{self.api_url}{path_or_url}"
        )
        session = self._get_session()
        try:
            response = session.request(
                method, url, timeout=(10, 60), **kwargs
            )
        except requests.RequestException as e:
            raise error_cls(f"{method} {url} failed: {e}") from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise error_cls(
                f"{method} {url} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            error_cls = (
                RemoteReadFailure if method == "GET" else RemoteWriteFailure
            )
            raise error_cls(
                f"{method} {path} returned invalid JSON",
                status_code=response.status_code,
            ) from e

    # ------------------------------------------------------------------
    # Payload mapping
    # ------------------------------------------------------------------

    def _to_remote_page(
        self,
        data: dict[str, Any],
        attachments: list[AttachmentRef] | None = None,
    ) -> RemotePage:
        ancestors = data.get("ancestors") or []
        parent_id = str(ancestors[-1]["id"]) if ancestors else None
        body = (data.get("body") or {}).get("storage") or {}
        return RemotePage(
            id=str(data["id"]),
            title=data.get("title", ""),
            version=(data.get("version") or {}).get("number", 1),
            storage_content=body.get("value", ""),
            parent_id=parent_id,
            attachments=attachments or [],
        )

    def _to_attachment(self, data: dict[str, Any]) -> AttachmentRef:
        links = data.get("_links") or {}
        download = links.get("download")
        metadata = data.get("metadata") or {}
        extensions = data.get("extensions") or {}
        return AttachmentRef(
            id=str(data.get("id", "")),
            title=data.get("title", ""),
            version_when=_parse_when(
                (data.get("version") or {}).get("when")
            ),
            download_url=(
                f"{self.config.base_url}/wiki{download}"
                if download
                else None
            ),
            media_type=metadata.get("mediaType")
            or extensions.get("mediaType"),
        )

    # ------------------------------------------------------------------
    # Space and page reads
    # ------------------------------------------------------------------

    def test_connection(self) -> str:
        """
        Validate credentials by reading the configured space.
        Returns the space name if successful.
        """
        data = self._json("GET", f"/space/{self.config.space_key}")
        return str(data.get("name", self.config.space_key))

    def find_page_by_title(
        self, title: str, parent_id: str | None = None
    ) -> RemotePage | None:
        """
        Find a page by exact title in the configured space.

        When *parent_id* is given only direct children of that page match,
        which keeps same-titled pages in different branches apart.
        """
        if parent_id is not None:
            for child in self.get_children(parent_id):
                if child.title == title:
                    return child
            return None

        data = self._json(
            "GET",
            "/content",
            params={
                "spaceKey": self.config.space_key,
                "title": title,
                "type": "page",
                "expand": "version,ancestors",
            },
        )
        results = data.get("results") or []
        if not results:
            return None
        return self._to_remote_page(results[0])

    def get_page(
        self, page_id: str, expand: tuple[str, ...] = ("body", "version")
    ) -> RemotePage:
        """
        Get a page by id.

        Args:
            page_id: Confluence content id.
            expand: Any of ``body``, ``version``, ``ancestors`` and
                ``attachments``.  Ancestors are always fetched so the
                parent id is known.

        Raises:
            RemoteReadFailure: If the page cannot be read (404 included).
        """
        fields = [_EXPAND_MAP[e] for e in expand if e in _EXPAND_MAP]
        if "ancestors" not in fields:
            fields.append("ancestors")
        data = self._json(
            "GET",
            f"/content/{page_id}",
            params={"expand": ",".join(fields)},
        )
        attachments = (
            self.get_attachments(page_id) if "attachments" in expand else []
        )
        return self._to_remote_page(data, attachments)

    def get_children(self, parent_id: str) -> list[RemotePage]:
        """List direct child pages, following pagination."""
        children: list[RemotePage] = []
        start = 0
        while True:
            data = self._json(
                "GET",
                f"/content/{parent_id}/child/page",
                params={
                    "expand": "version",
                    "limit": PAGE_LIMIT,
                    "start": start,
                },
            )
            results = data.get("results") or []
            children.extend(
                self._to_remote_page(r, None) for r in results
            )
            if len(results) < PAGE_LIMIT:
                break
            start += len(results)
        # Children always belong to the queried parent
        return [c.model_copy(update={"parent_id": parent_id}) for c in children]

    def get_attachments(self, page_id: str) -> list[AttachmentRef]:
        """List a page's attachments (up to 200)."""
        data = self._json(
            "GET",
            f"/content/{page_id}/child/attachment",
            params={"expand": "version,metadata", "limit": PAGE_LIMIT},
        )
        return [self._to_attachment(r) for r in data.get("results") or []]

    def download_attachment(self, ref: AttachmentRef) -> bytes:
        """Download attachment bytes from ``ref.download_url``."""
        if not ref.download_url:
            raise RemoteReadFailure(
                f"Attachment '{ref.title}' has no download URL"
            )
        return self._request("GET", ref.download_url).content

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_payload(self, title: str, content: str) -> None:
        is_valid, error_msg = validate_page_title(title)
        if not is_valid:
            raise ValueError(f"Invalid page title: {error_msg}")
        is_valid, error_msg = validate_storage_content(content)
        if not is_valid:
            raise ValueError(f"Invalid content: {error_msg}")

    def create_page(
        self, title: str, content: str, parent_id: str | None = None
    ) -> RemotePage:
        """
        Create a page in the configured space.

        Raises:
            ValueError: If title or content fail validation.
            RemoteWriteFailure: If Confluence rejects the request.
        """
        self._check_payload(title, content)
        payload: dict[str, Any] = {
            "type": "page",
            "title": title,
            "space": {"key": self.config.space_key},
            "body": {
                "storage": {"value": content, "representation": "storage"}
            },
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]
        data = self._json("POST", "/content", json=payload)
        logger.info("Created page '%s' (%s)", title, data.get("id"))
        return self._to_remote_page(data)

    def update_page(
        self,
        page_id: str,
        title: str,
        content: str,
        version: int,
        parent_id: str | None = None,
    ) -> RemotePage:
        """
        Replace a page's title and body.

        Args:
            version: The new version number (current version + 1).
            parent_id: Move the page under this parent when given.

        Raises:
            ValueError: If title or content fail validation.
            RemoteWriteFailure: On conflicts (409) or other rejections.
        """
        self._check_payload(title, content)
        payload: dict[str, Any] = {
            "id": page_id,
            "type": "page",
            "title": title,
            "space": {"key": self.config.space_key},
            "body": {
                "storage": {"value": content, "representation": "storage"}
            },
            "version": {"number": version},
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]
        data = self._json("PUT", f"/content/{page_id}", json=payload)
        logger.info("Updated page '%s' (%s) to v%d", title, page_id, version)
        return self._to_remote_page(data)

    def upload_attachment(
        self,
        page_id: str,
        filename: str,
        data: bytes,
        content_type: str | None = None,
    ) -> AttachmentRef:
        """
        Create or replace an attachment on a page.

        Raises:
            RemoteWriteFailure: If the upload is rejected.
        """
        files = {
            "file": (
                filename,
                data,
                content_type or "application/octet-stream",
            )
        }
        body = self._json(
            "PUT",
            f"/content/{page_id}/child/attachment",
            files=files,
            data={"minorEdit": "true"},
            headers={"X-Atlassian-Token": "no-check"},
        )
        results = body.get("results") if isinstance(body, dict) else None
        entry = results[0] if results else body
        logger.debug("Uploaded attachment %s to page %s", filename, page_id)
        return self._to_attachment(entry)
