"""Wire configuration, client, and engine together for a sync run."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config, to_client_config
from .core.client import ConfluenceClient
from .core.renderer import MermaidCliRenderer
from .logger import setup_logging
from .scanner import DocumentScanner
from .sync.engine import SyncEngine
from .sync.migration import migrate_legacy_state
from .sync.models import SyncMode, SyncReport
from .sync.state import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass
class SyncSession:
    """Everything a caller needs to scan and sync one project."""

    settings: UnifiedConfig
    client: ConfluenceClient
    scanner: DocumentScanner
    engine: SyncEngine


def create_session(
    project_root: Path,
    overrides: dict[str, Any] | None = None,
    check_connection: bool = True,
) -> SyncSession:
    """
    Build a ready-to-use sync session for *project_root*.

    - Loads ``.env`` from the project root (before YAML, so ``${VAR}``
      interpolation can use its values)
    - Loads YAML config files if present
    - Merges all sources: overrides > env vars > .env > YAML > defaults
    - Migrates a legacy ledger if one exists
    - Optionally validates the connection

    Raises:
        RuntimeError: If configuration is invalid or Confluence is
            unreachable.
    """
    project_root = Path(project_root).resolve()
    load_dotenv(project_root / ".env")

    try:
        config_files = discover_config_files(project_root)
        settings = build_config(load_hierarchical_config(project_root))
        config = to_client_config(settings, overrides)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise RuntimeError(
            f"Configuration error: {e}. Ensure CONFLUENCE_BASE_URL, "
            "CONFLUENCE_USERNAME, CONFLUENCE_API_TOKEN and "
            "CONFLUENCE_SPACE_KEY are set."
        ) from e

    if config_files:
        logger.info("Configuration file: %s", config_files[0])
    logger.info(
        "Confluence: %s (space %s)", config.base_url, config.space_key
    )

    client = ConfluenceClient(config)
    if check_connection:
        try:
            space = client.test_connection()
        except Exception as e:
            logger.error("Failed to connect to Confluence: %s", e)
            raise RuntimeError(f"Confluence connection failed: {e}") from e
        logger.info("Connected to space '%s'", space)

    sync_cfg = settings.sync
    migrate_legacy_state(
        project_root,
        state_dir=sync_cfg.state_dir,
    )
    state_store = SyncStateStore(project_root / sync_cfg.state_dir)

    renderer = MermaidCliRenderer() if sync_cfg.render_diagrams else None
    if renderer is not None and not renderer.is_available():
        logger.warning(
            "Mermaid CLI (mmdc) not found; diagrams stay as code blocks"
        )
        renderer = None

    engine = SyncEngine(
        backend=client,
        project_root=project_root,
        base_url=config.base_url,
        space_key=config.space_key,
        state_store=state_store,
        renderer=renderer,
        root_page_title=config.root_page_title,
        max_workers=config.max_workers,
        diagram_languages=tuple(sync_cfg.diagram_languages),
        docs_roots=(sync_cfg.docs_dir,),
    )
    scanner = DocumentScanner(
        project_root,
        docs_dir=sync_cfg.docs_dir,
        exclude=tuple(sync_cfg.exclude),
    )
    return SyncSession(
        settings=settings, client=client, scanner=scanner, engine=engine
    )


def sync_project(
    project_root: Path,
    mode: SyncMode | str = SyncMode.PUSH,
    dry_run: bool = False,
    overrides: dict[str, Any] | None = None,
    configure_logging: bool = False,
) -> SyncReport:
    """Scan *project_root* and run one push or pull.

    With *configure_logging*, the YAML ``logging`` section sets up the root
    logger first (for command-line and scheduled use).
    """
    session = create_session(project_root, overrides)
    if configure_logging:
        log_cfg = session.settings.logging
        setup_logging(
            debug=log_cfg.level.upper() == "DEBUG",
            log_file=log_cfg.file,
            debug_format=log_cfg.format,
        )
    documents = session.scanner.scan()
    return session.engine.sync_documents(documents, mode, dry_run)
