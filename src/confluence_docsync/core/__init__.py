"""Remote collaborators: Confluence REST client and diagram renderer."""

from .async_utils import run_sync
from .client import ConfluenceClient
from .renderer import MermaidCliRenderer

__all__ = ["ConfluenceClient", "MermaidCliRenderer", "run_sync"]
