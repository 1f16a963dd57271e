"""Narrow collaborator contracts the sync engine depends on.

``ConfluenceClient`` and ``MermaidCliRenderer`` satisfy these structurally;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from confluence_docsync.sync.models import AttachmentRef, RemotePage


@runtime_checkable
class ContentBackend(Protocol):
    """Page CRUD against the remote wiki."""

    def find_page_by_title(
        self, title: str, parent_id: str | None = None
    ) -> RemotePage | None: ...

    def create_page(
        self, title: str, content: str, parent_id: str | None = None
    ) -> RemotePage: ...

    def update_page(
        self,
        page_id: str,
        title: str,
        content: str,
        version: int,
        parent_id: str | None = None,
    ) -> RemotePage: ...

    def get_page(
        self, page_id: str, expand: tuple[str, ...] = ("body", "version")
    ) -> RemotePage: ...

    def get_children(self, parent_id: str) -> list[RemotePage]: ...

    def download_attachment(self, ref: AttachmentRef) -> bytes: ...


@runtime_checkable
class MediaUploader(Protocol):
    """Attachment upload for rendered diagrams and local images."""

    def upload_attachment(
        self,
        page_id: str,
        filename: str,
        data: bytes,
        content_type: str | None = None,
    ) -> AttachmentRef: ...


@runtime_checkable
class DiagramRenderer(Protocol):
    """Turns diagram source into image bytes, raising ``RenderError``."""

    def render(self, source: str, fmt: str = "png") -> bytes: ...
