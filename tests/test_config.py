"""Tests for confluence_docsync.config: env-var loading and validation.

Hierarchical YAML loading lives in test_config_loader.py and the pydantic
models in test_config_schema.py.
"""

import logging

import pytest

from confluence_docsync.config import Config, load_config, validate_config

_ENV_VARS = (
    "CONFLUENCE_BASE_URL",
    "CONFLUENCE_USERNAME",
    "CONFLUENCE_API_TOKEN",
    "CONFLUENCE_SPACE_KEY",
    "CONFLUENCE_ROOT_PAGE_TITLE",
    "CONFLUENCE_INSECURE",
    "DOCSYNC_DEBUG",
    "DOCSYNC_MAX_WORKERS",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Strip Confluence settings that a local .env may have exported."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _config(**overrides):
    values = dict(
        base_url="https://acme.atlassian.net",
        username="dev@example.com",
        api_token="token",
        space_key="DOCS",
    )
    values.update(overrides)
    return Config(**values)


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    def test_valid_config(self):
        validate_config(_config())

    def test_invalid_url_no_scheme(self):
        with pytest.raises(
            ValueError, match="must start with http:// or https://"
        ):
            validate_config(_config(base_url="acme.atlassian.net"))

    def test_empty_host(self):
        with pytest.raises(ValueError, match="must include a hostname"):
            validate_config(_config(base_url="https://"))

    def test_trailing_wiki_and_slash_stripped(self):
        config = _config(base_url=" https://acme.atlassian.net/wiki/ ")
        validate_config(config)
        assert config.base_url == "https://acme.atlassian.net"

    def test_empty_username(self):
        with pytest.raises(ValueError, match="username cannot be empty"):
            validate_config(_config(username="  "))

    def test_empty_token(self):
        with pytest.raises(ValueError, match="API token cannot be empty"):
            validate_config(_config(api_token=""))

    @pytest.mark.parametrize("key", ["DO CS", "DOCS!", ""])
    def test_bad_space_key(self, key):
        with pytest.raises(ValueError, match="Invalid space key"):
            validate_config(_config(space_key=key))

    def test_personal_space_key_allowed(self):
        config = _config(space_key=" ~jdoe ")
        validate_config(config)
        assert config.space_key == "~jdoe"

    @pytest.mark.parametrize("workers", [0, 33])
    def test_worker_bounds(self, workers):
        with pytest.raises(ValueError, match="max_workers"):
            validate_config(_config(max_workers=workers))

    def test_insecure_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            validate_config(_config(insecure=True))
        assert "SSL verification disabled" in caplog.text


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    def test_from_env(self, clean_env):
        clean_env.setenv("CONFLUENCE_BASE_URL", "https://env.atlassian.net")
        clean_env.setenv("CONFLUENCE_USERNAME", "env@example.com")
        clean_env.setenv("CONFLUENCE_API_TOKEN", "env-token")
        clean_env.setenv("CONFLUENCE_SPACE_KEY", "ENV")
        clean_env.setenv("CONFLUENCE_ROOT_PAGE_TITLE", "Handbook")

        config = load_config()

        assert config.base_url == "https://env.atlassian.net"
        assert config.username == "env@example.com"
        assert config.space_key == "ENV"
        assert config.root_page_title == "Handbook"
        assert config.insecure is False
        assert config.max_workers == 4

    def test_explicit_args_beat_env(self, clean_env):
        clean_env.setenv("CONFLUENCE_BASE_URL", "https://env.atlassian.net")
        clean_env.setenv("CONFLUENCE_USERNAME", "env@example.com")
        clean_env.setenv("CONFLUENCE_API_TOKEN", "env-token")
        clean_env.setenv("CONFLUENCE_SPACE_KEY", "ENV")

        config = load_config(
            base_url="https://arg.atlassian.net", space_key="ARG"
        )

        assert config.base_url == "https://arg.atlassian.net"
        assert config.space_key == "ARG"
        assert config.username == "env@example.com"

    def test_env_beats_yaml(self, clean_env):
        clean_env.setenv("CONFLUENCE_SPACE_KEY", "ENV")
        fallbacks = {
            "base_url": "https://yaml.atlassian.net",
            "username": "yaml@example.com",
            "api_token": "yaml-token",
            "space_key": "YAML",
            "root_page_title": "Docs Home",
            "max_workers": 8,
        }

        config = load_config(yaml_fallbacks=fallbacks)

        assert config.space_key == "ENV"
        assert config.base_url == "https://yaml.atlassian.net"
        assert config.root_page_title == "Docs Home"
        assert config.max_workers == 8

    def test_missing_required(self, clean_env):
        with pytest.raises(ValueError, match="CONFLUENCE_BASE_URL"):
            load_config()

    def test_missing_token_names_env_var(self, clean_env):
        with pytest.raises(ValueError, match="CONFLUENCE_API_TOKEN"):
            load_config(
                base_url="https://acme.atlassian.net",
                username="u",
                space_key="DOCS",
            )

    @pytest.mark.parametrize(
        "raw, expected",
        [("true", True), ("1", True), ("yes", True), ("false", False)],
    )
    def test_insecure_from_env(self, clean_env, raw, expected):
        clean_env.setenv("CONFLUENCE_INSECURE", raw)
        config = load_config(
            base_url="https://acme.atlassian.net",
            username="u",
            api_token="t",
            space_key="DOCS",
        )
        assert config.insecure is expected

    def test_insecure_env_overrides_yaml(self, clean_env):
        clean_env.setenv("CONFLUENCE_INSECURE", "false")
        config = load_config(
            base_url="https://acme.atlassian.net",
            username="u",
            api_token="t",
            space_key="DOCS",
            yaml_fallbacks={"insecure": True},
        )
        assert config.insecure is False

    def test_workers_from_env(self, clean_env):
        clean_env.setenv("DOCSYNC_MAX_WORKERS", "12")
        config = load_config(
            base_url="https://acme.atlassian.net",
            username="u",
            api_token="t",
            space_key="DOCS",
        )
        assert config.max_workers == 12

    def test_workers_not_a_number(self, clean_env):
        clean_env.setenv("DOCSYNC_MAX_WORKERS", "many")
        with pytest.raises(ValueError, match="DOCSYNC_MAX_WORKERS"):
            load_config(
                base_url="https://acme.atlassian.net",
                username="u",
                api_token="t",
                space_key="DOCS",
            )
