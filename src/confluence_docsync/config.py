"""Connection configuration for the Confluence backend.

Reads Confluence connection settings from explicit arguments, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    Explicit args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    CONFLUENCE_BASE_URL: Confluence site URL, e.g. https://acme.atlassian.net (required)
    CONFLUENCE_USERNAME: Account e-mail (required)
    CONFLUENCE_API_TOKEN: API token (required)
    CONFLUENCE_SPACE_KEY: Target space key (required)
    CONFLUENCE_ROOT_PAGE_TITLE: Page under which the tree is mirrored (optional)
    CONFLUENCE_INSECURE: Skip SSL verification (optional, default: false)
    DOCSYNC_MAX_WORKERS: Documents processed in parallel (optional, default: 4)
"""

import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_SPACE_KEY_RE = re.compile(r"^~?[A-Za-z0-9]+$")


@dataclass
class Config:
    base_url: str
    username: str
    api_token: str
    space_key: str
    root_page_title: str | None = None
    insecure: bool = False
    debug: bool = False
    max_workers: int = 4


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid, credentials are empty, or the
            space key is malformed.
    """
    config.base_url = config.base_url.strip()

    if not config.base_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid Confluence URL '{config.base_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.base_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid Confluence URL '{config.base_url}': URL must include a hostname"
        )

    # Page URLs and REST paths are built as {base}/wiki/...
    config.base_url = config.base_url.removesuffix("/").removesuffix("/wiki")

    if not config.username.strip():
        raise ValueError(
            "Confluence username cannot be empty. Set CONFLUENCE_USERNAME environment variable."
        )

    if not config.api_token.strip():
        raise ValueError(
            "Confluence API token cannot be empty. Set CONFLUENCE_API_TOKEN environment variable."
        )

    if not _SPACE_KEY_RE.match(config.space_key.strip()):
        raise ValueError(
            f"Invalid space key '{config.space_key}': letters and digits only"
        )
    config.space_key = config.space_key.strip()

    if not (1 <= config.max_workers <= 32):
        raise ValueError(
            f"Invalid max_workers {config.max_workers}: must be between 1 and 32"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def load_config(
    base_url: str | None = None,
    username: str | None = None,
    api_token: str | None = None,
    space_key: str | None = None,
    root_page_title: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        explicit arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        base_url: Override site URL.
        username: Override account name.
        api_token: Override API token.
        space_key: Override space key.
        root_page_title: Override the root page title.
        insecure: Skip SSL verification.
        debug: Enable debug logging.
        yaml_fallbacks: Dict of values from the YAML ``confluence`` section.
            Used as fallback when arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a required setting is missing after checking all
            sources, or a value is invalid.
    """
    fb = yaml_fallbacks or {}

    def required(value: str | None, env: str, key: str, label: str) -> str:
        resolved = value or os.getenv(env) or fb.get(key)
        if not resolved:
            raise ValueError(
                f"Confluence {label} not found. Set {env} environment variable, "
                f"or add '{key}' to config.yml."
            )
        return str(resolved).strip()

    final_url = required(base_url, "CONFLUENCE_BASE_URL", "base_url", "URL")
    final_username = required(
        username, "CONFLUENCE_USERNAME", "username", "username"
    )
    final_token = required(
        api_token, "CONFLUENCE_API_TOKEN", "api_token", "API token"
    )
    final_space = required(
        space_key, "CONFLUENCE_SPACE_KEY", "space_key", "space key"
    )

    final_root = (
        root_page_title
        or os.getenv("CONFLUENCE_ROOT_PAGE_TITLE")
        or fb.get("root_page_title")
        or None
    )

    # --- Boolean fields: arg > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("CONFLUENCE_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("DOCSYNC_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    workers_raw = os.getenv("DOCSYNC_MAX_WORKERS")
    if workers_raw is not None:
        try:
            final_workers = int(workers_raw)
        except ValueError:
            raise ValueError(
                f"Invalid DOCSYNC_MAX_WORKERS '{workers_raw}': must be a number between 1 and 32"
            ) from None
    elif "max_workers" in fb:
        final_workers = int(fb["max_workers"])
    else:
        final_workers = 4

    config = Config(
        base_url=final_url,
        username=final_username,
        api_token=final_token,
        space_key=final_space,
        root_page_title=final_root,
        insecure=final_insecure,
        debug=final_debug,
        max_workers=final_workers,
    )

    validate_config(config)

    return config
