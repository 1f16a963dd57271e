"""Confluence storage format to Markdown using an lxml tree.

Conversion happens in three steps:

1. **Parse** the storage markup with a recovering XML parser.  The fragment
   is wrapped in a root element declaring the ``ac``/``ri`` namespaces, and
   HTML named entities are rewritten as numeric references first.
2. **Preprocess** the tree: Confluence macros and ``ac:``/``ri:`` elements
   are replaced in place by plain HTML elements (``pre``, ``div``, ``a``,
   ``img``).  Attachment images are materialised under ``images/`` beside
   the target file.
3. **Write** Markdown by walking the resulting HTML tree.

Macro mapping:

==========================================  ================================
Storage format                              Markdown
==========================================  ================================
``code`` / ``noformat`` macro               fenced code block with language
``info`` / ``note`` / ``tip`` /             ``:::type Title`` ... ``:::``
``warning`` macro
``ac:link`` + ``ri:page`` / ``ri:url``      ``[text](relative.md)``
``ac:image`` + ``ri:attachment``            ``![alt](images/file.png)``
``ac:image`` + ``ri:url``                   ``![alt](url)``
rendered diagram image                      placeholder diagram fence
==========================================  ================================
"""

from __future__ import annotations

import html.entities
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timezone
from pathlib import Path
from typing import TYPE_CHECKING

from lxml import etree

from confluence_docsync.errors import RemoteReadFailure
from confluence_docsync.file_handler import write_binary_file

from .common import (
    AC_NAMESPACE,
    MACRO_TO_ADMONITION,
    RI_NAMESPACE,
    TransformResult,
    macro_to_markdown_lang,
    safe_filename,
)

if TYPE_CHECKING:
    from confluence_docsync.sync.models import AttachmentRef
    from confluence_docsync.sync.references import ReferenceIndex

logger = logging.getLogger(__name__)

AC = f"{{{AC_NAMESPACE}}}"
RI = f"{{{RI_NAMESPACE}}}"

_ROOT_TAG = "docsync-root"
_PAGE_TITLE_SCHEME = "docsync-page:"
_XML_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})
_ENTITY_RE = re.compile(r"&([A-Za-z][A-Za-z0-9]*);")
_CDATA_RE = re.compile(r"(<!\[CDATA\[.*?\]\]>)", re.DOTALL)
_DIAGRAM_FILE_RE = re.compile(r"^diagram-[0-9a-f]{12}\.(png|svg)$")
_WS_RE = re.compile(r"\s+")

_BLOCK_TAGS = frozenset(
    {
        "p",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "ul",
        "ol",
        "pre",
        "blockquote",
        "table",
        "hr",
        "div",
    }
)

DIAGRAM_PLACEHOLDER = (
    "%% Diagram was rendered to an image in Confluence.\n"
    "%% Automatic reconstruction of diagram source is not supported."
)


@dataclass
class ReverseContext:
    """Per-page inputs for the reverse transform.

    Attributes:
        target_path: Absolute path of the local file being written; images
            are materialised in an ``images/`` folder beside it.  ``None``
            disables downloads (remote URLs are kept).
        source_path: Repo-relative path of the target, used to build
            relative links to other synced documents.
        attachments: Attachment metadata of the page.
        downloader: Callable fetching attachment bytes.  ``None`` disables
            downloads, e.g. for dry runs.
        reference_index: Index used to map page URLs back to local files.
        images_dir: Folder name for downloaded images.
    """

    target_path: Path | None = None
    source_path: str = ""
    attachments: list[AttachmentRef] = field(default_factory=list)
    downloader: Callable[[AttachmentRef], bytes] | None = None
    reference_index: ReferenceIndex | None = None
    images_dir: str = "images"


# =============================================================================
# Attachment materialisation
# =============================================================================


class AttachmentResolver:
    """Map attachment filenames to local image paths, downloading as needed.

    One resolver serves one page conversion.  A local copy is reused when
    its mtime is not older than the attachment's version timestamp; there
    is no content comparison.  Download failures fall back to the remote
    URL.
    """

    def __init__(self, context: ReverseContext, result: TransformResult):
        self._context = context
        self._result = result
        self._by_name: dict[str, AttachmentRef] = {
            ref.title: ref for ref in context.attachments
        }
        self._cache: dict[str, str] = {}

    def remote_url(self, filename: str) -> str:
        ref = self._by_name.get(filename)
        if ref is not None and ref.download_url:
            return ref.download_url
        return filename

    def resolve(self, filename: str) -> str:
        """Return the Markdown image source for attachment *filename*."""
        if filename not in self._cache:
            self._cache[filename] = self._resolve(filename)
        return self._cache[filename]

    def _resolve(self, filename: str) -> str:
        target = self._context.target_path
        if target is None:
            return self.remote_url(filename)

        local_name = safe_filename(filename)
        relative = f"{self._context.images_dir}/{local_name}"
        local_file = target.parent / self._context.images_dir / local_name
        ref = self._by_name.get(filename)

        if ref is None:
            if local_file.exists():
                return relative
            self._result.warnings.append(
                f"Attachment '{filename}' is not listed on the page"
            )
            return filename

        if local_file.exists() and ref.version_when is not None:
            when = ref.version_when
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            if local_file.stat().st_mtime >= when.timestamp():
                logger.debug("Attachment %s is up to date", local_file)
                return relative

        downloader = self._context.downloader
        if downloader is None:
            return relative if local_file.exists() else self.remote_url(
                filename
            )

        try:
            data = downloader(ref)
            write_binary_file(local_file, data)
        except (RemoteReadFailure, OSError) as exc:
            self._result.warnings.append(
                f"Could not download attachment '{filename}': {exc}; "
                "using remote URL"
            )
            return self.remote_url(filename)

        self._result.stats.attachments_downloaded += 1
        logger.debug("Downloaded attachment %s -> %s", filename, local_file)
        return relative


# =============================================================================
# Parsing
# =============================================================================


def _entity_to_numeric(match: re.Match) -> str:
    name = match.group(1)
    if name in _XML_ENTITIES:
        return match.group(0)
    codepoint = html.entities.name2codepoint.get(name)
    if codepoint is None:
        return match.group(0)
    return f"&#{codepoint};"


def parse_storage(storage: str) -> etree._Element | None:
    """Parse a storage-format fragment into an element tree."""
    # CDATA sections (code bodies) are left untouched.
    parts = _CDATA_RE.split(storage)
    body = "".join(
        part if i % 2 else _ENTITY_RE.sub(_entity_to_numeric, part)
        for i, part in enumerate(parts)
    )
    wrapped = (
        f'<{_ROOT_TAG} xmlns:ac="{AC_NAMESPACE}" xmlns:ri="{RI_NAMESPACE}">'
        f"{body}</{_ROOT_TAG}>"
    )
    parser = etree.XMLParser(recover=True, resolve_entities=False)
    try:
        return etree.fromstring(wrapped.encode("utf-8"), parser)
    except etree.XMLSyntaxError as exc:
        logger.debug("Storage markup unparseable: %s", exc)
        return None


# =============================================================================
# Preprocessing: storage elements -> plain HTML elements
# =============================================================================


def _replace(old: etree._Element, new: etree._Element) -> None:
    new.tail = old.tail
    parent = old.getparent()
    if parent is not None:
        parent.replace(old, new)


def _adopt_children(source: etree._Element, target: etree._Element) -> None:
    target.text = (target.text or "") + (source.text or "")
    for child in list(source):
        target.append(child)


def _param(macro: etree._Element, name: str) -> str | None:
    for param in macro.findall(f"{AC}parameter"):
        if param.get(f"{AC}name") == name:
            return (param.text or "").strip()
    return None


class _Preprocessor:
    """Rewrite storage-format constructs into generic HTML in place."""

    def __init__(
        self,
        context: ReverseContext,
        result: TransformResult,
        resolver: AttachmentResolver,
    ):
        self.context = context
        self.result = result
        self.resolver = resolver

    def run(self, root: etree._Element) -> None:
        # Reverse document order handles nested macros innermost first.
        macros = list(root.iter(f"{AC}structured-macro", f"{AC}macro"))
        for macro in reversed(macros):
            self._macro(macro)
        for link in list(root.iter(f"{AC}link")):
            self._link(link)
        for image in list(root.iter(f"{AC}image")):
            self._image(image)

    def _macro(self, macro: etree._Element) -> None:
        name = (macro.get(f"{AC}name") or "").lower()

        if name in ("code", "noformat"):
            body = macro.find(f"{AC}plain-text-body")
            pre = etree.Element("pre")
            lang = _param(macro, "language") or ""
            pre.set("data-language", macro_to_markdown_lang(lang))
            pre.text = (body.text or "") if body is not None else ""
            self.result.stats.macros_decoded += 1
            _replace(macro, pre)
            return

        if name in MACRO_TO_ADMONITION:
            div = etree.Element("div")
            div.set("class", "admonition")
            div.set("data-type", MACRO_TO_ADMONITION[name])
            title = _param(macro, "title")
            if title:
                div.set("data-title", title)
            body = macro.find(f"{AC}rich-text-body")
            if body is not None:
                _adopt_children(body, div)
            self.result.stats.macros_decoded += 1
            _replace(macro, div)
            return

        self.result.warnings.append(
            f"Unsupported macro '{name or '?'}' dropped; body kept"
        )
        div = etree.Element("div")
        rich = macro.find(f"{AC}rich-text-body")
        plain = macro.find(f"{AC}plain-text-body")
        if rich is not None:
            _adopt_children(rich, div)
        elif plain is not None and (plain.text or "").strip():
            pre = etree.SubElement(div, "pre")
            pre.text = plain.text
        _replace(macro, div)

    def _link(self, link: etree._Element) -> None:
        anchor = link.get(f"{AC}anchor")
        page = link.find(f"{RI}page")
        url = link.find(f"{RI}url")
        attachment = link.find(f"{RI}attachment")

        a = etree.Element("a")
        fallback_text = ""
        if page is not None:
            title = page.get(f"{RI}content-title") or ""
            a.set("href", f"{_PAGE_TITLE_SCHEME}{title}")
            fallback_text = title
        elif url is not None:
            value = url.get(f"{RI}value") or ""
            a.set("href", value)
            fallback_text = value
        elif attachment is not None:
            filename = attachment.get(f"{RI}filename") or ""
            a.set("href", self.resolver.remote_url(filename))
            fallback_text = filename
        elif anchor:
            a.set("href", "")
            fallback_text = anchor
        if anchor:
            a.set("href", f"{a.get('href', '')}#{anchor}")

        plain_body = link.find(f"{AC}plain-text-link-body")
        rich_body = link.find(f"{AC}link-body")
        if rich_body is not None:
            _adopt_children(rich_body, a)
        elif plain_body is not None and plain_body.text:
            a.text = plain_body.text
        else:
            a.text = fallback_text
        _replace(link, a)

    def _image(self, image: etree._Element) -> None:
        alt = image.get(f"{AC}alt") or ""
        attachment = image.find(f"{RI}attachment")
        url = image.find(f"{RI}url")

        if attachment is not None:
            filename = attachment.get(f"{RI}filename") or ""
            if alt.endswith("-diagram") or _DIAGRAM_FILE_RE.match(filename):
                div = etree.Element("div")
                div.set("class", "diagram-placeholder")
                lang = ""
                if alt.endswith("-diagram"):
                    lang = alt[: -len("-diagram")]
                div.set("data-language", lang or "mermaid")
                _replace(image, div)
                return
            img = etree.Element("img")
            img.set("src", self.resolver.resolve(filename))
            img.set("alt", alt or filename)
            _replace(image, img)
            return

        if url is not None:
            img = etree.Element("img")
            img.set("src", url.get(f"{RI}value") or "")
            img.set("alt", alt)
            _replace(image, img)
            return

        self.result.warnings.append("Image without a source dropped")
        span = etree.Element("span")
        _replace(image, span)


# =============================================================================
# HTML tree -> Markdown
# =============================================================================


def _local(tag: object) -> str:
    """Lower-cased local tag name, or ``""`` for comments and PIs."""
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname.lower()


def _fence_for(code: str) -> str:
    longest = max((len(m) for m in re.findall(r"`+", code)), default=0)
    return "`" * max(3, longest + 1)


class HtmlToMarkdown:
    """Walk a preprocessed HTML tree and emit Markdown."""

    def __init__(self, context: ReverseContext, result: TransformResult):
        self.context = context
        self.result = result

    def convert(self, root: etree._Element) -> str:
        return "\n\n".join(self._blocks(root))

    # ------------------------------------------------------------------
    # Block level
    # ------------------------------------------------------------------

    def _blocks(self, parent: etree._Element) -> list[str]:
        """Render the children of *parent* as a list of Markdown blocks."""
        blocks: list[str] = []
        inline: list[str] = [self._text(parent.text)]

        def flush() -> None:
            text = "".join(inline).strip()
            if text:
                blocks.append(text)
            inline.clear()

        for child in parent:
            tag = _local(child.tag)
            if tag in _BLOCK_TAGS:
                flush()
                block = self._block(child, tag)
                if block.strip():
                    blocks.append(block)
            else:
                inline.append(self._inline(child))
            inline.append(self._text(child.tail))
        flush()
        return blocks

    def _block(self, el: etree._Element, tag: str) -> str:
        if tag == "p":
            return self._inline_children(el).strip()
        if tag in ("h1", "h2", "h3", "h4", "h5", "h6"):
            return f"{'#' * int(tag[1])} {self._inline_children(el).strip()}"
        if tag == "hr":
            return "---"
        if tag == "pre":
            return self._code_block(el)
        if tag == "blockquote":
            body = "\n\n".join(self._blocks(el))
            return "\n".join(
                f"> {line}" if line else ">" for line in body.split("\n")
            )
        if tag in ("ul", "ol"):
            return self._list(el, ordered=tag == "ol")
        if tag == "table":
            return self._table(el)
        if tag == "div":
            css = el.get("class", "")
            if css == "admonition":
                return self._admonition(el)
            if css == "diagram-placeholder":
                lang = el.get("data-language") or "mermaid"
                return f"```{lang}\n{DIAGRAM_PLACEHOLDER}\n```"
            return "\n\n".join(self._blocks(el))
        return self._inline_children(el).strip()

    def _code_block(self, el: etree._Element) -> str:
        lang = el.get("data-language")
        if lang is None:
            code_el = el.find("code")
            css = code_el.get("class", "") if code_el is not None else ""
            match = re.search(r"language-(\S+)", css)
            lang = match.group(1) if match else ""
        code = "".join(el.itertext()).strip("\n")
        fence = _fence_for(code)
        return f"{fence}{lang}\n{code}\n{fence}"

    def _admonition(self, el: etree._Element) -> str:
        kind = el.get("data-type") or "info"
        title = el.get("data-title")
        header = f":::{kind} {title}" if title else f":::{kind}"
        body = "\n\n".join(self._blocks(el))
        return f"{header}\n{body}\n:::"

    def _list(self, el: etree._Element, ordered: bool) -> str:
        lines: list[str] = []
        number = int(el.get("start") or 1) if ordered else 0
        for li in el:
            if _local(li.tag) != "li":
                continue
            marker = f"{number}. " if ordered else "- "
            number += 1
            body = "\n".join(self._blocks(li)) or ""
            indent = " " * len(marker)
            item_lines = body.split("\n")
            lines.append(f"{marker}{item_lines[0]}")
            for line in item_lines[1:]:
                lines.append(f"{indent}{line}" if line else "")
        return "\n".join(lines)

    def _table(self, el: etree._Element) -> str:
        rows: list[tuple[list[str], bool]] = []
        for tr in el.iter():
            if _local(tr.tag) != "tr":
                continue
            cells: list[str] = []
            has_header = False
            for cell in tr:
                tag = _local(cell.tag)
                if tag not in ("th", "td"):
                    continue
                has_header = has_header or tag == "th"
                text = " ".join(
                    b.replace("\n", " ") for b in self._blocks(cell)
                )
                cells.append(text.replace("|", "\\|").strip())
            if cells:
                rows.append((cells, has_header))
        if not rows:
            return ""

        width = max(len(cells) for cells, _ in rows)

        def fmt(cells: list[str]) -> str:
            padded = cells + [""] * (width - len(cells))
            return "| " + " | ".join(padded) + " |"

        lines = [fmt(rows[0][0])]
        if rows[0][1]:
            lines.append("| " + " | ".join(["---"] * width) + " |")
        lines.extend(fmt(cells) for cells, _ in rows[1:])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Inline level
    # ------------------------------------------------------------------

    def _text(self, text: str | None) -> str:
        if not text:
            return ""
        return _WS_RE.sub(" ", text)

    def _inline_children(self, el: etree._Element) -> str:
        parts = [self._text(el.text)]
        for child in el:
            parts.append(self._inline(child))
            parts.append(self._text(child.tail))
        return "".join(parts)

    def _inline(self, el: etree._Element) -> str:
        tag = _local(el.tag)
        if not tag:
            return ""
        if tag == "br":
            return "<br />"
        if tag == "img":
            return f"![{el.get('alt', '')}]({el.get('src', '')})"
        if tag in _BLOCK_TAGS:
            # Block markup inside inline context (e.g. a list in a cell)
            return " ".join(self._blocks(el))

        inner = self._inline_children(el)
        if tag in ("strong", "b"):
            return self._wrap(inner, "**")
        if tag in ("em", "i"):
            return self._wrap(inner, "*")
        if tag in ("del", "s", "strike"):
            return self._wrap(inner, "~~")
        if tag == "code":
            code = "".join(el.itertext())
            tick = "``" if "`" in code else "`"
            return f"{tick}{code}{tick}"
        if tag == "a":
            return self._link(el, inner)
        return inner

    @staticmethod
    def _wrap(inner: str, marker: str) -> str:
        stripped = inner.strip()
        if not stripped:
            return inner
        lead = inner[: len(inner) - len(inner.lstrip())]
        trail = inner[len(inner.rstrip()) :]
        return f"{lead}{marker}{stripped}{marker}{trail}"

    def _link(self, el: etree._Element, inner: str) -> str:
        href = el.get("href", "")
        text = inner.strip() or href
        target = self._map_href(href)
        if target is None:
            return text
        return f"[{text}]({target})"

    def _map_href(self, href: str) -> str | None:
        """Turn page links back into relative document links."""
        index = self.context.reference_index
        if href.startswith(_PAGE_TITLE_SCHEME):
            title, _, anchor = href[len(_PAGE_TITLE_SCHEME) :].partition("#")
            path = index.path_for_title(title) if index else None
            if path is None:
                self.result.stats.links_unresolved += 1
                return None
            self.result.stats.links_rewritten += 1
            rel = index.relative_link(path, self.context.source_path)
            return f"{rel}#{anchor}" if anchor else rel

        if index is not None:
            mapped = index.path_for_url(href)
            if mapped is not None:
                path, anchor = mapped
                self.result.stats.links_rewritten += 1
                rel = index.relative_link(path, self.context.source_path)
                return f"{rel}#{anchor}" if anchor else rel
        return href


# =============================================================================
# Entry point
# =============================================================================


def _post_process(markdown_text: str) -> str:
    text = re.sub(r"\n{3,}", "\n\n", markdown_text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return text.strip() + "\n" if text.strip() else ""


def storage_to_markdown(
    storage: str, context: ReverseContext | None = None
) -> TransformResult:
    """
    Convert Confluence storage format to Markdown.

    Args:
        storage: Storage-format markup of a page body.
        context: Per-page inputs (target file, attachments, link index).

    Returns:
        TransformResult whose ``content`` is Markdown.  Problems such as
        unknown macros or failed downloads are reported as warnings.
    """
    context = context or ReverseContext()
    result = TransformResult(content="")

    root = parse_storage(storage) if storage.strip() else None
    if root is None:
        if storage.strip():
            result.warnings.append("Storage markup could not be parsed")
        result.content = ""
        return result

    resolver = AttachmentResolver(context, result)
    _Preprocessor(context, result, resolver).run(root)
    markdown_text = HtmlToMarkdown(context, result).convert(root)
    result.content = _post_process(markdown_text)

    for warning in result.warnings:
        logger.warning(warning)
    return result
