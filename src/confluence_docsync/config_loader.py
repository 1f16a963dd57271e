"""
Hierarchical YAML configuration loading for confluence-docsync.

Config files are discovered by convention, may pull in other files with
``!include``, and may reference environment variables as ``${VAR}`` or
``${VAR:-default}`` (handy for keeping API tokens out of the file).

Usage:
    from confluence_docsync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config(project_root)
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DOCSYNC_CONFIG"
PROJECT_CONFIG = Path(".docsync") / "config.yml"
GLOBAL_CONFIG = Path(".config") / "docsync" / "config.yml"

# ---------------------------------------------------------------------------
# Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` becomes the variable's value, or ``""`` when unset.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * A ``${`` without a closing ``}`` is left alone.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# YAML !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """Safe YAML loader that understands ``!include``.

    Registered on this subclass only; ``yaml.SafeLoader`` stays as shipped.
    """


def _include_constructor(
    loader: ConfigLoader, node: yaml.ScalarNode
) -> Any:
    including = Path(loader.name).resolve()
    target = (including.parent / loader.construct_scalar(node)).resolve()

    # files currently being loaded, outermost first
    seen: list[Path] = getattr(loader, "_include_stack", [])
    if target in seen:
        chain = " -> ".join(map(str, (*seen, target)))
        raise ValueError(f"Circular include detected: {chain}")
    if not target.is_file():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including})"
        )
    return load_yaml_file(target, _include_stack=[*seen, target])


ConfigLoader.add_constructor("!include", _include_constructor)


def load_yaml_file(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    """Load one YAML file with ``!include`` support (no interpolation)."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery and merge
# ---------------------------------------------------------------------------


def discover_config_files(project_root: Path | None = None) -> list[Path]:
    """Return existing config files, highest precedence first.

    Search order:
        1. ``DOCSYNC_CONFIG`` env var (explicit single path)
        2. ``.docsync/config.yml`` in the project root (default: CWD)
        3. ``~/.config/docsync/config.yml``
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    root = Path(project_root) if project_root else Path.cwd()
    candidates.append(root / PROJECT_CONFIG)
    candidates.append(Path.home() / GLOBAL_CONFIG)

    return [p for p in candidates if p.exists()]


def load_hierarchical_config(
    project_root: Path | None = None,
) -> dict[str, Any]:
    """Load and merge all discovered config files.

    Files are applied from lowest to highest precedence; top-level sections
    of a higher-precedence file replace whole sections of lower ones.
    Environment variables are interpolated after the merge.

    Returns an empty dict when no config file exists.
    """
    paths = discover_config_files(project_root)
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-mapping root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
