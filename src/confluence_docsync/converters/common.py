"""Common types and utilities for storage-format conversion."""

import re
from dataclasses import dataclass, field
from typing import Literal

# =============================================================================
# Code Block Language Mapping
# =============================================================================
#
# Mapping between Markdown code fence language identifiers and the language
# names accepted by the Confluence ``code`` macro.
#
# Markdown:   ```sh
# Confluence: <ac:parameter ac:name="language">bash</ac:parameter>
#
# Unknown languages pass through unchanged; the macro falls back to plain
# text for names it does not know.
# =============================================================================

_MARKDOWN_TO_MACRO_MAP: dict[str, str] = {
    # Shell scripting
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "console": "bash",
    # JavaScript / TypeScript variants
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    # C family
    "c++": "cpp",
    "c#": "csharp",
    "cs": "csharp",
    # Short names
    "yml": "yaml",
    "py": "python",
    # Text normalization
    "plaintext": "text",
    "plain": "text",
    "txt": "text",
}

# Macro language -> Markdown fence language (canonical form)
_MACRO_TO_MARKDOWN_CANONICAL: dict[str, str] = {
    "bash": "bash",
    "javascript": "javascript",
    "typescript": "typescript",
    "cpp": "cpp",
    "csharp": "csharp",
    "text": "",
    "none": "",
}


def markdown_to_macro_lang(lang: str) -> str:
    """
    Convert a Markdown code fence language to a code macro language.

    Examples:
        >>> markdown_to_macro_lang("sh")
        'bash'
        >>> markdown_to_macro_lang("python")
        'python'
    """
    lang_lower = lang.lower()
    return _MARKDOWN_TO_MACRO_MAP.get(lang_lower, lang_lower)


def macro_to_markdown_lang(lang: str) -> str:
    """
    Convert a code macro language to a Markdown fence language.

    Plain-text macros map to an untagged fence (empty string).
    """
    lang_lower = lang.strip().lower()
    return _MACRO_TO_MARKDOWN_CANONICAL.get(lang_lower, lang_lower)


# =============================================================================
# Admonition Mapping
# =============================================================================
#
# Docusaurus-style admonitions (``:::tip Title``) map onto the Confluence
# panel macros.  Confluence has no caution/danger panel, both land on
# ``warning``.  The reverse direction keeps the macro name.
# =============================================================================

ADMONITION_TO_MACRO: dict[str, str] = {
    "note": "note",
    "info": "info",
    "tip": "tip",
    "warning": "warning",
    "caution": "warning",
    "danger": "warning",
    "important": "info",
}

MACRO_TO_ADMONITION: dict[str, str] = {
    "info": "info",
    "note": "note",
    "tip": "tip",
    "warning": "warning",
}


# =============================================================================
# Storage-format helpers
# =============================================================================

AC_NAMESPACE = "http://atlassian.com/content"
RI_NAMESPACE = "http://atlassian.com/resource/identifier"


def cdata(text: str) -> str:
    """Wrap *text* in a CDATA section, splitting any embedded ``]]>``."""
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


_EXTERNAL_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")


def is_external(token: str) -> bool:
    """True for ``scheme:`` URLs (http, mailto, ...) and ``//host`` links."""
    return bool(_EXTERNAL_RE.match(token)) or token.startswith("//")


_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9.-]")


def safe_filename(name: str) -> str:
    """Replace every character outside ``[a-zA-Z0-9.-]`` with ``_``."""
    return _UNSAFE_FILENAME_RE.sub("_", name)


IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".bmp", ".tiff"}
)


# =============================================================================
# Transform results
# =============================================================================


@dataclass
class ExtractedMedia:
    """Media found during the forward transform that needs uploading.

    Attributes:
        kind: ``diagram`` (fenced diagram source) or ``image`` (local file).
        source_token: Diagram source text, or image path as written.
        placeholder_id: Deterministic id used to slot the uploaded
            attachment back into the page.
        filename: Attachment filename on the page.
        language: Diagram language (``mermaid``), for diagrams only.
        alt: Image alt text.
    """

    kind: Literal["diagram", "image"]
    source_token: str
    placeholder_id: str
    filename: str
    language: str | None = None
    alt: str = ""


@dataclass
class TransformStats:
    """Counters collected during one transform pass."""

    links_rewritten: int = 0
    links_unresolved: int = 0
    links_external: int = 0
    diagrams_found: int = 0
    diagrams_embedded: int = 0
    images_found: int = 0
    blocks_degraded: int = 0
    macros_decoded: int = 0
    attachments_downloaded: int = 0


@dataclass
class TransformResult:
    """Result of a forward or reverse transform.

    Attributes:
        content: Storage-format markup (forward) or Markdown (reverse).
        extracted_media: Media queued for upload, in document order.
        stats: Transform counters.
        warnings: Non-fatal problems; the transform never raises on these.
    """

    content: str
    extracted_media: list[ExtractedMedia] = field(default_factory=list)
    stats: TransformStats = field(default_factory=TransformStats)
    warnings: list[str] = field(default_factory=list)

    @property
    def diagrams(self) -> list[ExtractedMedia]:
        return [m for m in self.extracted_media if m.kind == "diagram"]

    @property
    def images(self) -> list[ExtractedMedia]:
        return [m for m in self.extracted_media if m.kind == "image"]
