"""Format conversion between Markdown and Confluence storage format."""

from .common import (
    ExtractedMedia,
    TransformResult,
    TransformStats,
    macro_to_markdown_lang,
    markdown_to_macro_lang,
)
from .markdown_to_storage import (
    StorageRenderer,
    TransformContext,
    markdown_to_storage,
)
from .storage_to_markdown import ReverseContext, storage_to_markdown

__all__ = [
    "ExtractedMedia",
    "ReverseContext",
    "StorageRenderer",
    "TransformContext",
    "TransformResult",
    "TransformStats",
    "macro_to_markdown_lang",
    "markdown_to_macro_lang",
    "markdown_to_storage",
    "storage_to_markdown",
]
