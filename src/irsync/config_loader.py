"""
Where irsync finds its settings and how they are layered.

A sync session reads, in rising precedence: built-in defaults, the user's
``~/.config/irsync/config.yml``, the project's ``.irsync/config.yml`` (or
an explicit ``IRSYNC_CONFIG`` file), and finally ``IRSYNC_*`` environment
variables, which may themselves come from a ``.env`` file. Config files
can pull shared fragments in with ``!include`` and reference the
environment with ``${VAR}``.

Usage:
    from irsync.config_loader import load_config

    config = load_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from irsync.config_schema import SyncConfig, build_config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# ${VAR} references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand environment references in one config string.

    ``${IRSYNC_WEB}`` becomes the variable's value (empty when unset) and
    ``${IRSYNC_WEB:-web/src}`` falls back to ``web/src`` when the variable
    is unset or empty. An unterminated ``${`` is kept as written.
    """

    def _expand(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        return os.environ.get(name) or (fallback or "")

    return _ENV_REF.sub(_expand, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# !include fragments
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """Safe YAML loader that also understands ``!include``.

    A project typically keeps ``watch`` roots local and includes a shared
    ``conflict`` or ``retry`` fragment. Each loader carries the chain of
    files being expanded so an include cycle fails instead of recursing.
    """


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Expand ``!include <file>`` relative to the including file."""
    target = Path(loader.construct_scalar(node))
    including = Path(loader.name).resolve()
    if not target.is_absolute():
        target = including.parent / target
    target = target.resolve()

    chain: list[Path] = getattr(loader, "_include_stack", [])
    if target in chain:
        cycle = " -> ".join(str(p) for p in [*chain, target])
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including})"
        )
    return _load_yaml_with_includes(target, _include_stack=[*chain, target])


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    """Parse one config file, expanding its ``!include`` directives."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Config file locations
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing irsync config files, the one that wins first.

    ``IRSYNC_CONFIG`` names a file explicitly (handy for CI or for running
    two sessions against different roots). Otherwise the project file
    under ``.irsync/`` in the working directory precedes the per-user file
    in ``~/.config/irsync/``. Missing candidates are left out.
    """
    candidates: list[Path] = []

    explicit = os.environ.get("IRSYNC_CONFIG")
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / ".irsync"
    candidates += [project / "config.yml", project / "config.yaml"]
    candidates.append(Path.home() / ".config" / "irsync" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# irsync configuration
#
# Roots can also be set via environment variables:
#   IRSYNC_SIDE_A_ROOT, IRSYNC_SIDE_B_ROOT, IRSYNC_MODE, IRSYNC_STRATEGY,
#   IRSYNC_STORE_DIR
#
# watch:
#   side_a_root: web/src/screens
#   side_b_root: mobile/lib/screens
#   mode: universal           # universal | side-A | side-B
#   debounce_ms: 200
#   suppression_ms: 1000
#
# conflict:
#   strategy: prefer-A        # prefer-A | prefer-B | manual | skip
#   window_ms: 1000
#   manual_timeout_seconds: 300
#   conflict_dir: .irsync/conflicts
#
# cache:
#   ttl_seconds: 3600
#   max_entries: 1000
#   max_memory_mb: 100
#
# retry:
#   attempts: 3
#   backoff_ms: 100
#
# engine:
#   store_dir: .irsync/store
#   worker_pool_size: 4
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in use, writing a commented starter if none.

    Args:
        target: Where to create the starter; defaults to the project file
            ``.irsync/config.yml`` in the working directory.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Using existing config %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / ".irsync" / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Merge the discovered files into one raw mapping.

    Sections are replaced whole: a project ``conflict:`` block supersedes
    the user's ``conflict:`` block rather than being merged key by key, so
    a project never inherits half of someone's personal strategy settings.
    ``${VAR}`` references are expanded after merging.

    Returns ``{}`` when no file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No irsync config files found; using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)


# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "IRSYNC_SIDE_A_ROOT": ("watch", "side_a_root"),
    "IRSYNC_SIDE_B_ROOT": ("watch", "side_b_root"),
    "IRSYNC_MODE": ("watch", "mode"),
    "IRSYNC_STRATEGY": ("conflict", "strategy"),
    "IRSYNC_STORE_DIR": ("engine", "store_dir"),
    "IRSYNC_WORKERS": ("engine", "worker_pool_size"),
}


def apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Copy of *raw* with any set ``IRSYNC_*`` variables written in."""
    result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        section_data = result.setdefault(section, {})
        if not isinstance(section_data, dict):
            logger.warning(
                "Config section %r is not a mapping; %s ignored",
                section,
                env_name,
            )
            continue
        section_data[key] = value
    return result


def load_config(dotenv_path: str | None = None) -> SyncConfig:
    """Build the session's ``SyncConfig``.

    ``.env`` is loaded first so its ``IRSYNC_*`` values count as
    environment overrides; those beat every config file.

    Args:
        dotenv_path: Explicit ``.env`` file; python-dotenv's own search is
            used when ``None``.
    """
    load_dotenv(dotenv_path)
    raw = apply_env_overrides(load_hierarchical_config())
    return build_config(raw)
