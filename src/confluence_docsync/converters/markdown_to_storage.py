"""Markdown to Confluence storage format using mistune AST rendering.

The conversion runs in one pass over the mistune token tree, with two
pieces of work done around it:

* Admonition blocks (``:::tip Title`` ... ``:::``) are not Markdown, so they
  are lifted out before parsing, rendered recursively, and spliced back in
  through placeholder paragraphs.
* Links, diagram fences and images are rewritten while rendering, and every
  piece of media that needs an out-of-band upload is queued on the result.

Rendering is deterministic: the same input and context always produce the
same storage markup.
"""

from __future__ import annotations

import hashlib
import html
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import mistune

from .common import (
    ADMONITION_TO_MACRO,
    ExtractedMedia,
    TransformResult,
    cdata,
    is_external,
    markdown_to_macro_lang,
)

if TYPE_CHECKING:
    from confluence_docsync.sync.references import ReferenceIndex

logger = logging.getLogger(__name__)

_BLOCK_TOKENS = frozenset(
    {
        "paragraph",
        "heading",
        "block_code",
        "block_quote",
        "block_html",
        "list",
        "table",
        "thematic_break",
    }
)

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_ADMONITION_OPEN_RE = re.compile(r"^(:{3,})([A-Za-z]+)(?:[ \t]+(.*?))?[ \t]*$")
_ADMONITION_CLOSE_RE = re.compile(r"^(:{3,})[ \t]*$")
_BR_TAG_RE = re.compile(r"^<br\s*/?>$", re.IGNORECASE)


@dataclass
class TransformContext:
    """Per-document inputs for the forward transform.

    Attributes:
        source_path: Repo-relative POSIX path of the document, used to
            resolve relative links.
        reference_index: Index for internal link resolution; without one
            every internal link is left unchanged.
        diagram_languages: Fence languages treated as diagrams.
        diagram_attachments: ``placeholder_id -> attachment filename`` for
            diagrams that were rendered and uploaded.  ``None`` (first pass)
            keeps diagram fences as code blocks.
    """

    source_path: str = ""
    reference_index: ReferenceIndex | None = None
    diagram_languages: tuple[str, ...] = ("mermaid",)
    diagram_attachments: dict[str, str] | None = None


def diagram_placeholder_id(source: str) -> str:
    """Deterministic placeholder id for a diagram's source text."""
    digest = hashlib.sha256(source.strip().encode("utf-8")).hexdigest()
    return f"diagram-{digest[:12]}"


def _attr(value: str) -> str:
    return html.escape(value, quote=True)


def _esc(value: str) -> str:
    return html.escape(value, quote=False)


def _literal_text(token: dict[str, Any]) -> str:
    """Best-effort source text of a token, for degraded output."""
    if "raw" in token:
        return token["raw"]
    if "text" in token:
        return token["text"]
    if token.get("type") in ("softbreak", "linebreak"):
        return "\n"
    children = token.get("children") or []
    return "".join(_literal_text(child) for child in children)


class StorageRenderer(mistune.BaseRenderer):
    """Renderer that converts Markdown AST to Confluence storage format."""

    NAME = "storage"

    def __init__(
        self,
        context: TransformContext,
        result: TransformResult,
        blocks: dict[str, str] | None = None,
    ):
        super().__init__()
        self.context = context
        self.result = result
        # Pre-rendered admonition macros keyed by placeholder text
        self._blocks = blocks or {}
        self._seen_media: set[str] = {
            m.placeholder_id for m in result.extracted_media
        }

    # ------------------------------------------------------------------
    # Inline
    # ------------------------------------------------------------------

    def text(self, text: str) -> str:
        return _esc(text)

    def emphasis(self, text: str) -> str:
        return f"<em>{text}</em>"

    def strong(self, text: str) -> str:
        return f"<strong>{text}</strong>"

    def strikethrough(self, text: str) -> str:
        return f"<del>{text}</del>"

    def codespan(self, text: str) -> str:
        return f"<code>{_esc(text)}</code>"

    def linebreak(self) -> str:
        return "<br />"

    def softbreak(self) -> str:
        return "\n"

    def inline_html(self, html_text: str) -> str:
        """Inline HTML is not valid storage markup; only ``<br>`` survives."""
        if _BR_TAG_RE.match(html_text.strip()):
            return "<br />"
        return _esc(html_text)

    def link(self, text: str, url: str, title: str | None = None) -> str:
        """Render a link, rewriting internal targets to page URLs.

        External and anchor-only links pass through.  Internal links that
        do not resolve keep their original href and are counted as
        unresolved.
        """
        stats = self.result.stats
        if url.startswith("#") or is_external(url):
            stats.links_external += 1
            return f'<a href="{_attr(url)}">{text}</a>'

        index = self.context.reference_index
        target = (
            index.resolve(url, self.context.source_path) if index else None
        )
        if target is None:
            stats.links_unresolved += 1
            logger.debug(
                "Unresolved link %s in %s", url, self.context.source_path
            )
            return f'<a href="{_attr(url)}">{text}</a>'

        stats.links_rewritten += 1
        return f'<a href="{_attr(target.url)}">{text}</a>'

    def image(self, text: str, url: str, title: str | None = None) -> str:
        """Render an image.

        Remote images become ``ri:url`` references.  Local images become
        attachment references by filename only and are queued for upload.
        """
        alt = html.unescape(text)
        if is_external(url):
            return (
                f'<ac:image ac:alt="{_attr(alt)}">'
                f'<ri:url ri:value="{_attr(url)}" /></ac:image>'
            )

        self.result.stats.images_found += 1
        local = unquote(url.split("#", 1)[0].split("?", 1)[0])
        filename = posixpath.basename(local)
        placeholder = (
            "image-" + hashlib.sha256(local.encode("utf-8")).hexdigest()[:12]
        )
        if placeholder not in self._seen_media:
            self._seen_media.add(placeholder)
            self.result.extracted_media.append(
                ExtractedMedia(
                    kind="image",
                    source_token=local,
                    placeholder_id=placeholder,
                    filename=filename,
                    alt=alt,
                )
            )
        return (
            f'<ac:image ac:alt="{_attr(alt)}">'
            f'<ri:attachment ri:filename="{_attr(filename)}" /></ac:image>'
        )

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def blank_line(self) -> str:
        return ""

    def heading(self, text: str, level: int, **attrs) -> str:
        return f"<h{level}>{text}</h{level}>\n"

    def paragraph(self, text: str) -> str:
        key = text.strip()
        if key in self._blocks:
            return self._blocks[key] + "\n"
        return f"<p>{text}</p>\n"

    def block_text(self, text: str) -> str:
        return text

    def block_quote(self, text: str) -> str:
        return f"<blockquote>{text.strip()}</blockquote>\n"

    def block_html(self, html_text: str) -> str:
        self.result.warnings.append(
            f"{self.context.source_path}: raw HTML block kept as text"
        )
        return f"<p>{_esc(html_text.strip())}</p>\n"

    def block_error(self, text: str) -> str:
        return f"<p>{_esc(text)}</p>\n"

    def thematic_break(self) -> str:
        return "<hr />\n"

    def block_code(self, code: str, info: str | None = None) -> str:
        """Render a fenced block as a code macro or a diagram reference.

        Diagram fences are queued for rendering.  Until the rendered image
        has been uploaded (``diagram_attachments`` maps it) the fence is
        emitted as a plain code macro, which is also the fallback when
        rendering fails.
        """
        code = code.rstrip("\n")
        parts = (info or "").split()
        lang = parts[0] if parts else ""

        if lang and lang.lower() in self.context.diagram_languages:
            lang = lang.lower()
            placeholder = diagram_placeholder_id(code)
            if placeholder not in self._seen_media:
                self._seen_media.add(placeholder)
                self.result.stats.diagrams_found += 1
                self.result.extracted_media.append(
                    ExtractedMedia(
                        kind="diagram",
                        source_token=code,
                        placeholder_id=placeholder,
                        filename=f"{placeholder}.png",
                        language=lang,
                    )
                )
            uploaded = (self.context.diagram_attachments or {}).get(
                placeholder
            )
            if uploaded:
                self.result.stats.diagrams_embedded += 1
                return (
                    f'<ac:image ac:alt="{lang}-diagram">'
                    f'<ri:attachment ri:filename="{_attr(uploaded)}" />'
                    f"</ac:image>\n"
                )
            return self._code_macro(code, lang)

        if lang:
            lang = markdown_to_macro_lang(lang)
        return self._code_macro(code, lang)

    def list(self, text: str, ordered: bool, **attrs) -> str:
        if ordered:
            start = attrs.get("start")
            if start is not None and start != 1:
                return f'<ol start="{int(start)}">{text}</ol>\n'
            return f"<ol>{text}</ol>\n"
        return f"<ul>{text}</ul>\n"

    def list_item(self, text: str) -> str:
        return f"<li>{text.strip()}</li>"

    def table(self, text: str) -> str:
        return f"<table><tbody>{text}</tbody></table>\n"

    def table_head(self, text: str) -> str:
        return f"<tr>{text}</tr>"

    def table_body(self, text: str) -> str:
        return text

    def table_row(self, text: str) -> str:
        return f"<tr>{text}</tr>"

    def table_cell(
        self, text: str, align: str | None = None, head: bool = False
    ) -> str:
        tag = "th" if head else "td"
        return f"<{tag}>{text}</{tag}>"

    # ------------------------------------------------------------------
    # Token dispatch
    # ------------------------------------------------------------------

    def render_token(self, token: dict[str, Any], state) -> str:
        """Dispatch a token, degrading failed blocks to escaped text."""
        token_type: str = token.get("type") or ""
        if token_type not in _BLOCK_TOKENS:
            return self._dispatch(token, state)
        try:
            return self._dispatch(token, state)
        except Exception as exc:
            literal = _literal_text(token).strip()
            self.result.stats.blocks_degraded += 1
            self.result.warnings.append(
                f"{self.context.source_path}: could not convert "
                f"{token_type} block ({exc}); kept as plain text"
            )
            logger.warning(
                "Degraded %s block in %s: %s",
                token_type,
                self.context.source_path,
                exc,
            )
            return f"<p>{_esc(literal)}</p>\n"

    def _dispatch(self, token: dict[str, Any], state) -> str:
        func = self._get_method(token.get("type") or "")
        attrs = token.get("attrs")

        if "raw" in token:
            text = token["raw"]
        elif "children" in token:
            text = self.render_tokens(token["children"], state)
        elif "text" in token:
            text = token["text"]
        else:
            if attrs:
                return func(**attrs)
            return func()

        if attrs:
            return func(text, **attrs)
        return func(text)

    def _code_macro(self, code: str, lang: str) -> str:
        language = (
            f'<ac:parameter ac:name="language">{_esc(lang)}</ac:parameter>'
            if lang
            else ""
        )
        return (
            '<ac:structured-macro ac:name="code">'
            f"{language}"
            f"<ac:plain-text-body>{cdata(code)}</ac:plain-text-body>"
            "</ac:structured-macro>\n"
        )


# =============================================================================
# Admonitions
# =============================================================================


def _admonition_macro(kind: str, title: str | None, body: str) -> str:
    macro = ADMONITION_TO_MACRO[kind]
    title_param = (
        f'<ac:parameter ac:name="title">{_esc(title)}</ac:parameter>'
        if title
        else ""
    )
    return (
        f'<ac:structured-macro ac:name="{macro}">'
        f"{title_param}"
        f"<ac:rich-text-body>{body}</ac:rich-text-body>"
        "</ac:structured-macro>"
    )


def _extract_admonitions(
    markdown_text: str,
    context: TransformContext,
    result: TransformResult,
    nonce: str,
) -> tuple[str, dict[str, str]]:
    """Replace top-level admonition blocks with placeholder paragraphs.

    Returns the rewritten Markdown and the ``placeholder -> macro`` map.
    Fenced code is skipped.  Nested admonitions are rendered by the
    recursive body conversion.  An opener without a matching closer is
    kept as literal text and reported.
    """
    lines = markdown_text.split("\n")
    out: list[str] = []
    blocks: dict[str, str] = {}
    fence: str | None = None
    i = 0

    def placeholder() -> str:
        return f"DOCSYNC{nonce}BLOCK{len(blocks):04d}"

    while i < len(lines):
        line = lines[i]
        fence_match = _FENCE_RE.match(line)
        if fence is not None:
            if fence_match and fence_match.group(1)[0] == fence[0] and len(
                fence_match.group(1)
            ) >= len(fence):
                fence = None
            out.append(line)
            i += 1
            continue
        if fence_match:
            fence = fence_match.group(1)
            out.append(line)
            i += 1
            continue

        opener = _ADMONITION_OPEN_RE.match(line)
        if opener is None or opener.group(2).lower() not in ADMONITION_TO_MACRO:
            out.append(line)
            i += 1
            continue

        end = _find_admonition_end(lines, i)
        if end is None:
            key = placeholder()
            blocks[key] = f"<p>{_esc(line.strip())}</p>"
            result.stats.blocks_degraded += 1
            result.warnings.append(
                f"{context.source_path}: unterminated admonition "
                f"'{line.strip()}' kept as plain text"
            )
            out.extend(["", key, ""])
            i += 1
            continue

        kind = opener.group(2).lower()
        title = (opener.group(3) or "").strip() or None
        body_md = "\n".join(lines[i + 1 : end])
        body = _render(
            body_md, context, result, f"{nonce}N{len(blocks)}"
        ).strip()
        key = placeholder()
        blocks[key] = _admonition_macro(kind, title, body)
        out.extend(["", key, ""])
        i = end + 1

    return "\n".join(out), blocks


def _find_admonition_end(lines: list[str], start: int) -> int | None:
    """Index of the closer matching the opener at *start*, or ``None``."""
    depth = 0
    fence: str | None = None
    for j in range(start, len(lines)):
        line = lines[j]
        fence_match = _FENCE_RE.match(line)
        if fence is not None:
            if fence_match and fence_match.group(1)[0] == fence[0] and len(
                fence_match.group(1)
            ) >= len(fence):
                fence = None
            continue
        if fence_match:
            fence = fence_match.group(1)
            continue
        if _ADMONITION_OPEN_RE.match(line):
            depth += 1
        elif _ADMONITION_CLOSE_RE.match(line):
            depth -= 1
            if depth == 0:
                return j
    return None


# =============================================================================
# Entry points
# =============================================================================


def _render(
    markdown_text: str,
    context: TransformContext,
    result: TransformResult,
    nonce: str,
) -> str:
    text, blocks = _extract_admonitions(
        markdown_text, context, result, nonce
    )
    renderer = StorageRenderer(context, result, blocks)
    markdown = mistune.create_markdown(
        renderer=renderer, plugins=["table", "strikethrough"]
    )
    rendered: str = markdown(text)  # type: ignore[assignment]
    return rendered


def markdown_to_storage(
    markdown_text: str, context: TransformContext | None = None
) -> TransformResult:
    """
    Convert Markdown to Confluence storage format.

    Args:
        markdown_text: Markdown body (frontmatter already removed).
        context: Per-document transform inputs.

    Returns:
        TransformResult with storage markup, queued media, counters, and
        warnings.  Malformed blocks degrade to escaped text; this function
        does not raise for content problems.
    """
    context = context or TransformContext()
    text = markdown_text.replace("\r\n", "\n")
    # Placeholders must not collide with document text.
    nonce = hashlib.sha256(text.encode("utf-8")).hexdigest()[:8].upper()

    result = TransformResult(content="")
    result.content = _render(text, context, result, nonce).strip()

    for warning in result.warnings:
        logger.warning(warning)
    return result
