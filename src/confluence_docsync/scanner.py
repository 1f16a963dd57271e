"""Local document discovery.

Walks the documentation folder of a Docusaurus-style project and builds one
``Document`` per Markdown file:

- ``path`` is relative to the project root (``docs/guide/intro.md``).
- ``category`` is the folder path below the docs folder (``guide``).
- ``title`` comes from the frontmatter, else the first ``# `` heading, else
  the file name.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from pathlib import Path

import yaml

from confluence_docsync.file_handler import (
    read_file_with_encoding,
    split_frontmatter,
)
from confluence_docsync.sync.hierarchy import format_category_title
from confluence_docsync.sync.models import Document
from confluence_docsync.sync.state import SyncStateStore

logger = logging.getLogger(__name__)

DOC_PATTERNS = ("*.md", "*.mdx")

# Docusaurus treats underscore-prefixed files and folders as partials.
DEFAULT_EXCLUDE = ("_*", "*/_*")

_H1_RE = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_MEDIA_RE = re.compile(
    r"!\[[^\]]*\]\(|^\s*(`{3,}|~{3,})\s*mermaid\b", re.MULTILINE
)


class DocumentScanner:
    """Scan a project's docs folder for Markdown documents.

    Args:
        project_root: Project root; document paths are relative to it.
        docs_dir: Docs folder name below the root.
        exclude: Glob patterns, matched against the path below
            *docs_dir*, of files to skip.
    """

    def __init__(
        self,
        project_root: Path,
        docs_dir: str = "docs",
        exclude: tuple[str, ...] | list[str] = DEFAULT_EXCLUDE,
    ) -> None:
        self.project_root = Path(project_root)
        self.docs_dir = docs_dir.strip("/")
        self.exclude = tuple(exclude)

    @property
    def docs_root(self) -> Path:
        return self.project_root / self.docs_dir

    def scan(self) -> list[Document]:
        """Return all documents, sorted by path."""
        root = self.docs_root
        if not root.is_dir():
            logger.warning("Docs folder %s not found", root)
            return []

        found: set[Path] = set()
        for pattern in DOC_PATTERNS:
            found.update(p for p in root.rglob(pattern) if p.is_file())

        documents: list[Document] = []
        for path in sorted(found):
            rel = path.relative_to(root).as_posix()
            if self._is_excluded(rel):
                logger.debug("Excluded %s", rel)
                continue
            documents.append(self.load(path))
        logger.info("Found %d document(s) in %s", len(documents), root)
        return documents

    def load(self, path: Path) -> Document:
        """Build a ``Document`` from one file below the docs folder."""
        text, _encoding = read_file_with_encoding(path)
        raw_block, yaml_body, body = split_frontmatter(text)
        frontmatter = self._parse_frontmatter(yaml_body, path)

        rel_path = path.relative_to(self.project_root).as_posix()
        below_docs = path.relative_to(self.docs_root).as_posix()
        category = below_docs.rpartition("/")[0]

        slug = frontmatter.get("slug")
        return Document(
            path=rel_path,
            title=self._title(frontmatter, body, path),
            frontmatter=frontmatter,
            frontmatter_raw=raw_block,
            raw_content=body,
            category=category,
            content_fingerprint=SyncStateStore.content_fingerprint(text),
            has_embedded_media=bool(_MEDIA_RE.search(body)),
            slug=str(slug) if slug else None,
            last_modified=path.stat().st_mtime,
        )

    def _is_excluded(self, rel: str) -> bool:
        return any(fnmatch.fnmatch(rel, pattern) for pattern in self.exclude)

    @staticmethod
    def _parse_frontmatter(yaml_body: str, path: Path) -> dict:
        if not yaml_body.strip():
            return {}
        try:
            data = yaml.safe_load(yaml_body)
        except yaml.YAMLError as exc:
            logger.warning("Invalid frontmatter in %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Frontmatter in %s is not a mapping", path)
            return {}
        return data

    @staticmethod
    def _title(frontmatter: dict, body: str, path: Path) -> str:
        title = frontmatter.get("title")
        if title:
            return str(title).strip()
        match = _H1_RE.search(body)
        if match:
            return match.group(1).strip()
        return format_category_title(path.stem)
