"""
Input validation functions for confluence-docsync.

Provides validation for page titles and storage-format content to ensure
they meet Confluence requirements before making REST calls.
"""

# Confluence rejects titles longer than this.
MAX_TITLE_LENGTH = 255


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Page title")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_page_title(title: str) -> tuple[bool, str]:
    """
    Validate a page title.

    Args:
        title: The page title to validate

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot exceed 255 characters
        - Cannot have leading or trailing whitespace
    """
    if not title or not title.strip():
        return (
            False,
            format_validation_error("Page title", "cannot be empty"),
        )

    if len(title) > MAX_TITLE_LENGTH:
        return (
            False,
            format_validation_error(
                "Page title",
                f"cannot exceed {MAX_TITLE_LENGTH} characters",
            ),
        )

    if title != title.strip():
        return (
            False,
            format_validation_error(
                "Page title", "cannot have leading or trailing whitespace"
            ),
        )

    return (True, "")


def validate_storage_content(
    content: str, max_size: int = 5_000_000
) -> tuple[bool, str]:
    """
    Validate storage-format page content.

    Empty bodies are allowed; container pages may be blank.

    Args:
        content: The content to validate
        max_size: Maximum size in bytes (default: 5,000,000)

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.
    """
    content_bytes = len(content.encode("utf-8"))
    if content_bytes > max_size:
        return (
            False,
            format_validation_error(
                "Content", f"exceeds maximum size of {max_size} bytes"
            ),
        )

    return (True, "")
