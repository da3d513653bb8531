"""Tests for irsync.config_loader -- hierarchical config loading."""

import textwrap

import pytest
import yaml

from irsync.config_loader import (
    _interpolate_recursive,
    _load_yaml_with_includes,
    apply_env_overrides,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_config,
    load_hierarchical_config,
)

_OVERRIDE_VARS = (
    "IRSYNC_CONFIG",
    "IRSYNC_SIDE_A_ROOT",
    "IRSYNC_SIDE_B_ROOT",
    "IRSYNC_MODE",
    "IRSYNC_STRATEGY",
    "IRSYNC_STORE_DIR",
    "IRSYNC_WORKERS",
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Empty CWD and HOME with no IRSYNC_* variables set."""
    for name in _OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return tmp_path


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    """Tests for ${VAR} and ${VAR:-default} substitution."""

    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("WEB_ROOT", "/srv/web")
        assert interpolate_env_vars("${WEB_ROOT}") == "/srv/web"

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ}") == ""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ:-app}") == "app"

    def test_default_ignored_when_set(self, monkeypatch):
        monkeypatch.setenv("SYNC_WORKERS", "8")
        assert interpolate_env_vars("${SYNC_WORKERS:-2}") == "8"

    def test_empty_env_var_uses_default(self, monkeypatch):
        monkeypatch.setenv("EMPTY_VAR", "")
        assert interpolate_env_vars("${EMPTY_VAR:-fallback}") == "fallback"

    def test_multiple_vars_in_one_string(self, monkeypatch):
        monkeypatch.setenv("REPO", "/repo")
        monkeypatch.setenv("PKG", "mobile")
        assert interpolate_env_vars("${REPO}/${PKG}/lib") == "/repo/mobile/lib"

    def test_literal_dollar_brace_no_closing(self):
        assert interpolate_env_vars("${NO_CLOSE") == "${NO_CLOSE"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("HOOK", "https://hooks.example.com/sync")
        data = {
            "conflict": {"webhook_url": "${HOOK}", "window_ms": 500},
            "watch": {"ignore_patterns": ["${HOOK}", "build", 3]},
        }
        assert _interpolate_recursive(data) == {
            "conflict": {
                "webhook_url": "https://hooks.example.com/sync",
                "window_ms": 500,
            },
            "watch": {
                "ignore_patterns": ["https://hooks.example.com/sync", "build", 3]
            },
        }


# -------------------------------------------------------------------------
# YAML !include
# -------------------------------------------------------------------------


class TestIncludeDirective:
    """Tests for !include YAML loading via ConfigLoader subclass."""

    def test_include_relative_file(self, tmp_path):
        _write(tmp_path / "watch.yml", "side_a_root: web\n")
        main = _write(tmp_path / "config.yml", "watch: !include watch.yml\n")

        assert _load_yaml_with_includes(main) == {"watch": {"side_a_root": "web"}}

    def test_include_absolute_path(self, tmp_path):
        shared = _write(tmp_path / "shared" / "conflict.yml", "strategy: skip\n")
        main = _write(tmp_path / "config.yml", f"conflict: !include {shared}\n")

        assert _load_yaml_with_includes(main) == {"conflict": {"strategy": "skip"}}

    def test_include_nonexistent_raises(self, tmp_path):
        main = _write(tmp_path / "config.yml", "data: !include missing.yml\n")

        with pytest.raises(FileNotFoundError, match="missing.yml"):
            _load_yaml_with_includes(main)

    def test_circular_include_raises(self, tmp_path):
        a = _write(tmp_path / "a.yml", "x: !include b.yml\n")
        _write(tmp_path / "b.yml", "y: !include a.yml\n")

        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(a)

    def test_nested_includes(self, tmp_path):
        _write(tmp_path / "c.yml", "val: deep\n")
        _write(tmp_path / "b.yml", "inner: !include c.yml\n")
        a = _write(tmp_path / "a.yml", "outer: !include b.yml\n")

        assert _load_yaml_with_includes(a) == {"outer": {"inner": {"val": "deep"}}}

    def test_global_safe_loader_not_polluted(self, tmp_path):
        """!include is not registered on yaml.SafeLoader."""
        cfg = _write(tmp_path / "test.yml", "x: !include other.yml\n")

        with pytest.raises(yaml.constructor.ConstructorError):
            with open(cfg) as fh:
                yaml.safe_load(fh)


# -------------------------------------------------------------------------
# Discovery and merge
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    """Tests for discover_config_files() precedence and filtering."""

    def test_env_var_takes_highest_precedence(self, isolated, monkeypatch):
        custom = _write(isolated / "custom.yml", "engine: {}\n")
        _write(isolated / ".irsync" / "config.yml", "watch: {}\n")
        monkeypatch.setenv("IRSYNC_CONFIG", str(custom))

        result = discover_config_files()
        assert result[0] == custom.resolve()
        assert len(result) == 2

    def test_project_before_global(self, isolated):
        proj = _write(isolated / ".irsync" / "config.yml", "a: 1\n")
        glob = _write(
            isolated / "home" / ".config" / "irsync" / "config.yml", "b: 2\n"
        )

        result = discover_config_files()
        assert result.index(proj) < result.index(glob)

    def test_yaml_extension(self, isolated):
        alt = _write(isolated / ".irsync" / "config.yaml", "a: 1\n")
        assert discover_config_files() == [alt]

    def test_nothing_found(self, isolated):
        assert discover_config_files() == []


class TestLoadHierarchicalConfig:
    """Tests for load_hierarchical_config() merge and interpolation."""

    def test_zero_config_returns_empty_dict(self, isolated):
        assert load_hierarchical_config() == {}

    def test_project_replaces_global_sections(self, isolated):
        _write(
            isolated / "home" / ".config" / "irsync" / "config.yml",
            """\
            watch:
              side_a_root: /global/web
              debounce_ms: 50
            cache:
              ttl_seconds: 10
            """,
        )
        _write(
            isolated / ".irsync" / "config.yml",
            """\
            watch:
              side_a_root: /project/web
            """,
        )

        result = load_hierarchical_config()
        # Top-level sections replace, they do not deep-merge
        assert result["watch"] == {"side_a_root": "/project/web"}
        assert result["cache"] == {"ttl_seconds": 10}

    def test_interpolation_after_merge(self, isolated, monkeypatch):
        monkeypatch.setenv("APP_ROOT", "/srv/app")
        _write(
            isolated / ".irsync" / "config.yml",
            """\
            watch:
              side_b_root: ${APP_ROOT}/lib
            """,
        )
        assert load_hierarchical_config()["watch"]["side_b_root"] == "/srv/app/lib"

    def test_non_dict_root_skipped(self, isolated, caplog):
        _write(isolated / ".irsync" / "config.yml", "- just\n- a list\n")
        assert load_hierarchical_config() == {}
        assert "non-dict root" in caplog.text


# -------------------------------------------------------------------------
# Env overrides and load_config
# -------------------------------------------------------------------------


class TestEnvOverrides:
    def test_overrides_applied(self, isolated, monkeypatch):
        monkeypatch.setenv("IRSYNC_STRATEGY", "manual")
        monkeypatch.setenv("IRSYNC_WORKERS", "3")
        raw = {"conflict": {"strategy": "prefer-A", "window_ms": 10}}

        result = apply_env_overrides(raw)
        assert result["conflict"] == {"strategy": "manual", "window_ms": 10}
        assert result["engine"] == {"worker_pool_size": "3"}
        # Input is not mutated
        assert raw["conflict"]["strategy"] == "prefer-A"

    def test_non_mapping_section_ignored(self, isolated, monkeypatch, caplog):
        monkeypatch.setenv("IRSYNC_STORE_DIR", "/tmp/store")
        result = apply_env_overrides({"engine": "oops"})
        assert result["engine"] == "oops"
        assert "IRSYNC_STORE_DIR ignored" in caplog.text


class TestLoadConfig:
    def test_env_beats_file(self, isolated, monkeypatch):
        _write(
            isolated / ".irsync" / "config.yml",
            """\
            watch:
              side_a_root: web
              side_b_root: app
            conflict:
              strategy: skip
            """,
        )
        monkeypatch.setenv("IRSYNC_SIDE_B_ROOT", "mobile")

        config = load_config(dotenv_path=str(isolated / "missing.env"))
        assert config.watch.side_a_root == "web"
        assert config.watch.side_b_root == "mobile"
        assert config.conflict.strategy == "skip"

    def test_dotenv_feeds_overrides(self, isolated, monkeypatch):
        dotenv = isolated / ".env"
        dotenv.write_text("IRSYNC_STRATEGY=prefer-B\nIRSYNC_WORKERS=5\n")

        config = load_config(dotenv_path=str(dotenv))
        assert config.conflict.strategy == "prefer-B"
        assert config.engine.worker_pool_size == 5

    def test_mode_override(self, isolated, monkeypatch):
        _write(isolated / ".irsync" / "config.yml", "watch:\n  mode: universal\n")
        monkeypatch.setenv("IRSYNC_MODE", "side-B")

        config = load_config(dotenv_path=str(isolated / "missing.env"))
        assert config.watch.mode == "side-B"


# -------------------------------------------------------------------------
# Bootstrapping
# -------------------------------------------------------------------------


class TestEnsureConfig:
    def test_noop_when_exists(self, isolated):
        existing = _write(isolated / ".irsync" / "config.yml", "watch: {}\n")
        assert ensure_config() == existing
        assert existing.read_text() == "watch: {}\n"

    def test_creates_starter_file(self, isolated):
        path = ensure_config()
        assert path == isolated / ".irsync" / "config.yml"
        text = path.read_text()
        assert "# irsync configuration" in text
        # Everything is commented out, so it parses to nothing
        assert yaml.safe_load(text) is None

    def test_uses_explicit_target(self, isolated):
        target = isolated / "nested" / "dir" / "irsync.yml"
        assert ensure_config(target) == target
        assert target.exists()
