"""File handler module: encoding-aware read/write and frontmatter handling.

Provides the file I/O used by the scanner (reading documents), the pull
path (rewriting documents with their original frontmatter), and attachment
materialisation (writing downloaded images).
"""

import re
from pathlib import Path

from charset_normalizer import from_bytes

# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # ascii is a strict subset of utf-8
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def write_file(
    path: Path, content: str, encoding: str = "utf-8"
) -> int:
    """Write content to a file, creating parent directories as needed.

    Args:
        path: Path to the output file.
        content: String content to write.
        encoding: Encoding to use (default: utf-8).

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)
    path.write_bytes(encoded)
    return len(encoded)


def write_binary_file(path: Path, data: bytes) -> int:
    """Write raw bytes, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return len(data)


# =============================================================================
# Frontmatter
# =============================================================================

# Opening fence on the very first line, closing fence on its own line.
_FRONTMATTER_RE = re.compile(
    r"\A(?P<block>---[ \t]*\r?\n(?:(?P<body>.*?)\r?\n)?---[ \t]*)"
    r"(?:\r?\n|\Z)",
    re.DOTALL,
)


def split_frontmatter(text: str) -> tuple[str, str, str]:
    """Split a document into its frontmatter block and Markdown body.

    Args:
        text: Full document text.

    Returns:
        Tuple of (raw_block, yaml_body, markdown_body).  ``raw_block`` is
        the verbatim block including both ``---`` fences (``""`` when
        absent) so it can be written back unchanged.
    """
    stripped = text.lstrip("\ufeff")
    match = _FRONTMATTER_RE.match(stripped)
    if match is None:
        return ("", "", stripped)
    body = stripped[match.end():]
    return (match.group("block"), match.group("body") or "", body)


def join_frontmatter(raw_block: str, markdown_body: str) -> str:
    """Rebuild a document from a verbatim frontmatter block and a body."""
    body = markdown_body.lstrip("\n")
    if not raw_block:
        return body
    return f"{raw_block}\n\n{body}"
