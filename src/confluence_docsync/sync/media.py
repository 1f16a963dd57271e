"""Diagram rendering and attachment upload for pushed pages.

Media found by the forward transform is processed after the page exists
(attachments need a page id).  Problems that only degrade the page, a
failed render or a missing image file, become warnings.  Upload failures
raise ``RemoteWriteFailure`` and fail the document.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path

from confluence_docsync.converters.common import ExtractedMedia
from confluence_docsync.core.interfaces import DiagramRenderer, MediaUploader
from confluence_docsync.errors import RenderError
from confluence_docsync.sync.models import Document

logger = logging.getLogger(__name__)

# Site-absolute image paths (``/img/x.png``) are served from these folders.
STATIC_DIRS = ("static", "")


@dataclass
class MediaOutcome:
    """What ``MediaProcessor.process`` did for one page.

    Attributes:
        diagram_attachments: ``placeholder_id -> filename`` of diagrams that
            were rendered and uploaded.
        uploaded: Attachment filenames uploaded, in order.
        warnings: Non-fatal problems.
    """

    diagram_attachments: dict[str, str] = field(default_factory=dict)
    uploaded: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class MediaProcessor:
    """Render diagrams and upload media as page attachments.

    Args:
        uploader: Attachment upload backend.
        renderer: Diagram renderer; ``None`` leaves diagrams as code.
        source_root: Project root; local images must resolve inside it.
    """

    def __init__(
        self,
        uploader: MediaUploader,
        renderer: DiagramRenderer | None,
        source_root: Path,
    ):
        self.uploader = uploader
        self.renderer = renderer
        self.source_root = source_root.resolve()

    def process(
        self,
        page_id: str,
        document: Document,
        media: list[ExtractedMedia],
    ) -> MediaOutcome:
        outcome = MediaOutcome()
        for item in media:
            if item.kind == "diagram":
                self._process_diagram(page_id, item, outcome)
            else:
                self._process_image(page_id, document, item, outcome)

        for warning in outcome.warnings:
            logger.warning("%s: %s", document.path, warning)
        return outcome

    def _process_diagram(
        self, page_id: str, item: ExtractedMedia, outcome: MediaOutcome
    ) -> None:
        if self.renderer is None:
            outcome.warnings.append(
                f"No diagram renderer configured; {item.language} diagram "
                "kept as code"
            )
            return
        try:
            data = self.renderer.render(item.source_token, "png")
        except RenderError as e:
            outcome.warnings.append(
                f"Failed to render {item.language} diagram "
                f"{item.placeholder_id}: {e}"
            )
            return
        self.uploader.upload_attachment(
            page_id, item.filename, data, "image/png"
        )
        outcome.diagram_attachments[item.placeholder_id] = item.filename
        outcome.uploaded.append(item.filename)

    def _process_image(
        self,
        page_id: str,
        document: Document,
        item: ExtractedMedia,
        outcome: MediaOutcome,
    ) -> None:
        path = self.resolve_image(document, item.source_token)
        if path is None:
            outcome.warnings.append(f"Image not found: {item.source_token}")
            return
        content_type, _ = mimetypes.guess_type(path.name)
        self.uploader.upload_attachment(
            page_id, item.filename, path.read_bytes(), content_type
        )
        outcome.uploaded.append(item.filename)

    def resolve_image(self, document: Document, token: str) -> Path | None:
        """Locate a local image referenced from *document*.

        Relative tokens resolve against the document's folder; site-absolute
        ones against ``static/`` then the project root.  Paths escaping the
        project root are rejected.
        """
        if token.startswith("/"):
            rel = token.lstrip("/")
            candidates = [
                self.source_root / static / rel for static in STATIC_DIRS
            ]
        else:
            doc_dir = (self.source_root / document.path).parent
            candidates = [doc_dir / token]

        for candidate in candidates:
            resolved = candidate.resolve()
            if not resolved.is_relative_to(self.source_root):
                logger.debug("Image %s escapes the project root", token)
                continue
            if resolved.is_file():
                return resolved
        return None
