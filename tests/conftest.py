"""Shared pytest fixtures for confluence-docsync tests."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from dotenv import load_dotenv

from confluence_docsync.config import Config
from confluence_docsync.errors import (
    RemoteReadFailure,
    RemoteWriteFailure,
    RenderError,
)
from confluence_docsync.sync.models import AttachmentRef, RemotePage

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live Confluence instance",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live Confluence instance"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeBackend:
    """In-memory Confluence replacement.

    Pages live in ``self.pages`` keyed by id.  Every write is logged, and
    failures can be injected per title (writes) or per page id (reads).
    Updates must carry exactly ``current version + 1``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.pages: Dict[str, RemotePage] = {}
        self.attachments: Dict[str, Dict[str, bytes]] = {}
        self.attachment_refs: Dict[str, List[AttachmentRef]] = {}
        self._next_id = 1000
        self.created: list[tuple[str, Optional[str]]] = []
        self.updated: list[tuple[str, int]] = []
        self.uploads: list[tuple[str, str, Optional[str]]] = []
        self.downloads: list[str] = []
        self.fail_create_titles: set[str] = set()
        self.fail_update_titles: set[str] = set()
        self.fail_read_ids: set[str] = set()
        self.fail_uploads = False

    # -- helpers used by tests --------------------------------------------

    def add_page(
        self,
        title: str,
        content: str = "",
        parent_id: Optional[str] = None,
        version: int = 1,
        attachments: Optional[List[AttachmentRef]] = None,
    ) -> RemotePage:
        page_id = self._new_id()
        page = RemotePage(
            id=page_id,
            title=title,
            version=version,
            storage_content=content,
            parent_id=parent_id,
        )
        self.pages[page_id] = page
        if attachments:
            self.attachment_refs[page_id] = list(attachments)
        return page

    def edit_remotely(self, page_id: str, content: str) -> RemotePage:
        page = self.pages[page_id]
        page = page.model_copy(
            update={"storage_content": content, "version": page.version + 1}
        )
        self.pages[page_id] = page
        return page

    def page_by_title(self, title: str) -> Optional[RemotePage]:
        for page in list(self.pages.values()):
            if page.title == title:
                return page
        return None

    def _new_id(self) -> str:
        with self._lock:
            self._next_id += 1
            return str(self._next_id)

    # -- ContentBackend ---------------------------------------------------

    def find_page_by_title(
        self, title: str, parent_id: Optional[str] = None
    ) -> Optional[RemotePage]:
        for page in list(self.pages.values()):
            if page.title != title:
                continue
            if parent_id is None or page.parent_id == parent_id:
                return page
        return None

    def create_page(
        self, title: str, content: str, parent_id: Optional[str] = None
    ) -> RemotePage:
        if title in self.fail_create_titles:
            raise RemoteWriteFailure(f"create of '{title}' rejected", 400)
        self.created.append((title, parent_id))
        return self.add_page(title, content, parent_id)

    def update_page(
        self,
        page_id: str,
        title: str,
        content: str,
        version: int,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        if title in self.fail_update_titles:
            raise RemoteWriteFailure(f"update of '{title}' rejected", 400)
        current = self.pages.get(page_id)
        if current is None:
            raise RemoteWriteFailure(f"page {page_id} not found", 404)
        if parent_id == page_id:
            raise RemoteWriteFailure(
                f"page {page_id} cannot be its own parent", 400
            )
        if version != current.version + 1:
            raise RemoteWriteFailure(
                f"version conflict on {page_id}: "
                f"{version} != {current.version + 1}",
                409,
            )
        page = current.model_copy(
            update={
                "title": title,
                "storage_content": content,
                "version": version,
                "parent_id": parent_id or current.parent_id,
            }
        )
        self.pages[page_id] = page
        self.updated.append((page_id, version))
        return page

    def get_page(
        self, page_id: str, expand: tuple[str, ...] = ("body", "version")
    ) -> RemotePage:
        if page_id in self.fail_read_ids:
            raise RemoteReadFailure(f"page {page_id} unreadable", 500)
        page = self.pages.get(page_id)
        if page is None:
            raise RemoteReadFailure(f"page {page_id} not found", 404)
        if "attachments" in expand:
            page = page.model_copy(
                update={"attachments": self.attachment_refs.get(page_id, [])}
            )
        return page

    def get_children(self, parent_id: str) -> List[RemotePage]:
        return [
            p for p in list(self.pages.values()) if p.parent_id == parent_id
        ]

    def download_attachment(self, ref: AttachmentRef) -> bytes:
        self.downloads.append(ref.title)
        for files in self.attachments.values():
            if ref.title in files:
                return files[ref.title]
        raise RemoteReadFailure(f"attachment {ref.title} not found", 404)

    # -- MediaUploader ----------------------------------------------------

    def upload_attachment(
        self,
        page_id: str,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> AttachmentRef:
        if self.fail_uploads:
            raise RemoteWriteFailure(f"upload of {filename} rejected", 413)
        self.uploads.append((page_id, filename, content_type))
        self.attachments.setdefault(page_id, {})[filename] = data
        return AttachmentRef(
            id=f"att-{len(self.uploads)}",
            title=filename,
            version_when=datetime.now(timezone.utc),
            media_type=content_type,
        )


class FakeRenderer:
    """Diagram renderer returning fixed bytes, or failing on demand."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    def render(self, source: str, fmt: str = "png") -> bytes:
        self.calls.append(source)
        if self.fail:
            raise RenderError("mmdc exited with 1: parse error")
        return b"\x89PNG fake"


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        base_url="https://acme.atlassian.net",
        username="dev@example.com",
        api_token="secret-token",
        space_key="DOCS",
        insecure=False,
    )


@pytest.fixture
def fake_backend():
    """An empty in-memory Confluence."""
    return FakeBackend()


@pytest.fixture
def fake_renderer():
    """A diagram renderer that always succeeds."""
    return FakeRenderer()


@pytest.fixture
def failing_renderer():
    """A diagram renderer that always raises ``RenderError``."""
    return FakeRenderer(fail=True)
