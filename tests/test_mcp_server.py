"""Tests for the MCP server tool functions."""

import json
import os
from datetime import timedelta

import pytest

from stasis.config import StasisConfig
from stasis.models import Scope, utc_now
from stasis.store import ContextStore


@pytest.fixture
def mcp_project(tmp_path):
    """Set up a project with initialized Stasis and two live contexts."""
    project = tmp_path / "mcp-test"
    stasis_dir = project / ".stasis"
    stasis_dir.mkdir(parents=True)
    StasisConfig().write(stasis_dir)

    store = ContextStore(stasis_dir / "contexts.db")
    store.initialize()
    last = utc_now() - timedelta(days=45)
    store.start_context("planning", Scope.PROJECT, current_task="Q3 roadmap",
                        created_at=last - timedelta(days=1))
    store.append("planning", Scope.PROJECT, "decision", {"ship": "v2"}, 9, timestamp=last)
    store.start_context("chat", Scope.SESSION)
    store.append("chat", Scope.SESSION, "message", {"text": "hello"}, 5)
    store.close()

    old_env = os.environ.get("STASIS_PROJECT_DIR")
    os.environ["STASIS_PROJECT_DIR"] = str(project)
    yield project
    if old_env is None:
        del os.environ["STASIS_PROJECT_DIR"]
    else:
        os.environ["STASIS_PROJECT_DIR"] = old_env


class TestMCPTools:

    def test_archive_context(self, mcp_project):
        from stasis.mcp_server import archive_context
        result = archive_context("planning", scope="project")
        assert "Archived project/planning at Sleeping" in result

    def test_archive_context_json(self, mcp_project):
        from stasis.mcp_server import archive_context
        data = json.loads(archive_context("chat", format="json"))
        assert data["archive_level"] == "Active"
        assert data["kept_active"] is True

    def test_archive_missing_context(self, mcp_project):
        from stasis.mcp_server import archive_context
        assert archive_context("ghost").startswith("Error: Context not found")

    def test_restore_context(self, mcp_project):
        from stasis.mcp_server import archive_context, restore_context
        archive_context("planning", scope="project", keep_active=False)
        result = restore_context("planning", scope="project")
        assert "Context restored after 45 days of inactivity" in result
        assert "Q3 roadmap" in result

    def test_restore_scope_mismatch(self, mcp_project):
        from stasis.mcp_server import archive_context, restore_context
        archive_context("planning", scope="project")
        result = restore_context("planning", scope="session")
        assert result.startswith("Error: Scope mismatch")

    def test_restore_not_found(self, mcp_project):
        from stasis.mcp_server import restore_context
        assert restore_context("ghost").startswith("Error: No archive found")

    def test_context_health_single(self, mcp_project):
        from stasis.mcp_server import context_health
        result = context_health("chat")
        assert "session/chat: EXCELLENT" in result

    def test_context_health_summary(self, mcp_project):
        from stasis.mcp_server import context_health
        data = json.loads(context_health(format="json"))
        assert data["total_contexts"] == 2
        assert data["by_level"]["excellent"] == 1
        assert data["by_level"]["warning"] == 1

    def test_context_health_maintenance(self, mcp_project):
        from stasis.mcp_server import archive_stats, context_health
        result = context_health("planning", scope="project", maintenance=True)
        assert "Actions: archived:Sleeping" in result
        assert "Archives:      1" in archive_stats()

    def test_cleanup_archives(self, mcp_project):
        from stasis.mcp_server import archive_context, cleanup_archives
        archive_context("chat")
        assert "deleted 0" in cleanup_archives()
        data = json.loads(cleanup_archives(retention_days=0, format="json"))
        assert data["processed_count"] == 1

    def test_cleanup_negative_retention(self, mcp_project):
        from stasis.mcp_server import cleanup_archives
        assert cleanup_archives(retention_days=-5).startswith("Error:")

    def test_uninitialized_project(self, tmp_path, monkeypatch):
        from stasis.mcp_server import archive_stats
        monkeypatch.setenv("STASIS_PROJECT_DIR", str(tmp_path))
        with pytest.raises(FileNotFoundError, match="not initialized"):
            archive_stats()
