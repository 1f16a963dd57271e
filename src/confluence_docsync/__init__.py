"""Markdown <-> Confluence storage-format synchronization engine."""

__version__ = "0.4.0"
