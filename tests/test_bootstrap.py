"""Tests for session wiring: config sources, client, scanner and engine."""

from unittest.mock import patch

import pytest

from confluence_docsync.bootstrap import create_session, sync_project
from confluence_docsync.core.client import ConfluenceClient
from confluence_docsync.errors import RemoteReadFailure
from confluence_docsync.sync.state import STATE_FILENAME

_ENV_VARS = (
    "CONFLUENCE_BASE_URL",
    "CONFLUENCE_USERNAME",
    "CONFLUENCE_API_TOKEN",
    "CONFLUENCE_SPACE_KEY",
    "CONFLUENCE_ROOT_PAGE_TITLE",
    "CONFLUENCE_INSECURE",
    "DOCSYNC_DEBUG",
    "DOCSYNC_MAX_WORKERS",
    "DOCSYNC_CONFIG",
)


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A project root with credentials in the environment only."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://acme.atlassian.net")
    monkeypatch.setenv("CONFLUENCE_USERNAME", "dev@example.com")
    monkeypatch.setenv("CONFLUENCE_API_TOKEN", "secret-token")
    monkeypatch.setenv("CONFLUENCE_SPACE_KEY", "DOCS")

    root = tmp_path / "site"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "intro.md").write_text("# Intro\n\nHello.\n")
    return root


def _write_config(root, text):
    path = root / ".docsync" / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class TestCreateSession:
    def test_env_only(self, project):
        session = create_session(project, check_connection=False)

        assert isinstance(session.client, ConfluenceClient)
        assert session.client.config.space_key == "DOCS"
        assert session.engine.base_url == "https://acme.atlassian.net"
        assert session.engine.state_store.path == (
            project.resolve() / ".docsync" / STATE_FILENAME
        )
        assert session.scanner.docs_dir == "docs"

    def test_yaml_sync_settings(self, project):
        _write_config(
            project,
            "sync:\n"
            "  docs_dir: content\n"
            "  max_workers: 2\n"
            "  render_diagrams: false\n"
            "confluence:\n"
            "  root_page_title: Handbook\n",
        )

        session = create_session(project, check_connection=False)

        assert session.scanner.docs_dir == "content"
        assert session.engine.max_workers == 2
        assert session.engine.root_page_title == "Handbook"
        assert session.engine.docs_roots == ("content",)
        assert session.engine.media.renderer is None

    def test_missing_renderer_disables_diagrams(self, project):
        with patch(
            "confluence_docsync.core.renderer.shutil.which",
            return_value=None,
        ):
            session = create_session(project, check_connection=False)
        assert session.engine.media.renderer is None

    def test_available_renderer_used(self, project):
        with patch(
            "confluence_docsync.core.renderer.shutil.which",
            return_value="/usr/bin/mmdc",
        ):
            session = create_session(project, check_connection=False)
        assert session.engine.media.renderer is not None

    def test_overrides_win(self, project):
        session = create_session(
            project, overrides={"space_key": "ENG"}, check_connection=False
        )
        assert session.client.config.space_key == "ENG"

    def test_missing_config_is_runtime_error(self, project, monkeypatch):
        monkeypatch.delenv("CONFLUENCE_API_TOKEN")
        with pytest.raises(RuntimeError, match="Configuration error"):
            create_session(project, check_connection=False)

    def test_connection_failure_is_runtime_error(self, project):
        with patch.object(
            ConfluenceClient,
            "test_connection",
            side_effect=RemoteReadFailure("401 Unauthorized", 401),
        ):
            with pytest.raises(RuntimeError, match="connection failed"):
                create_session(project)

    def test_legacy_ledger_migrated(self, project):
        legacy = project / ".docusaurus" / STATE_FILENAME
        legacy.parent.mkdir()
        legacy.write_text(
            '{"pages": {"docs/intro.md": {"confluenceId": "42", '
            '"version": 3}}, "lastSync": "2024-01-01T00:00:00Z"}'
        )

        session = create_session(project, check_connection=False)

        store = session.engine.state_store
        store.load()
        record = store.get("docs/intro.md")
        assert record is not None
        assert record.remote_page_id == "42"
        assert record.remote_version == 3
        assert legacy.with_name(STATE_FILENAME + ".bak").exists()


def test_sync_project_pushes_scanned_documents(project, fake_backend):
    fake_backend.test_connection = lambda: "Documentation"
    with patch(
        "confluence_docsync.bootstrap.ConfluenceClient",
        return_value=fake_backend,
    ):
        report = sync_project(project, mode="push")

    assert report.stats()["created"] == 1
    assert fake_backend.page_by_title("Intro") is not None
    assert (project / ".docsync" / STATE_FILENAME).exists()
