"""Tests for the calhub CLI, run against in-memory stores."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from calhub import __version__, cli as cli_module
from calhub.cli import _parse_settings, cli
from calhub.models import SourceKind, SyncResult
from calhub.providers import TransientFetchError
from calhub.registry import ProviderRegistry
from calhub.sync import SyncOrchestrator
from tests.doubles import (
    InMemoryCursorStore,
    InMemoryReconciler,
    InMemorySourceRepository,
    ScriptedProvider,
    make_event,
    make_source,
)

pytestmark = pytest.mark.unit


class _FakeApp:
    def __init__(self) -> None:
        self.sources = InMemorySourceRepository()
        self.cursors = InMemoryCursorStore(self.sources)
        self.reconciler = InMemoryReconciler()
        self.scripts: dict[int, list[SyncResult | Exception]] = {}
        self.registry = ProviderRegistry(
            lambda source: ScriptedProvider(source, self.scripts.get(source.id, []))
        )
        self.orchestrator = SyncOrchestrator(
            sources=self.sources,  # type: ignore[arg-type]
            cursors=self.cursors,  # type: ignore[arg-type]
            reconciler=self.reconciler,  # type: ignore[arg-type]
            registry=self.registry,
        )

    def require_orchestrator(self) -> SyncOrchestrator:
        return self.orchestrator


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch) -> _FakeApp:
    fake = _FakeApp()

    def _with_app(config, action, *, migrate: bool = False):
        return asyncio.run(action(fake))

    monkeypatch.setattr(cli_module, "_with_app", _with_app)
    monkeypatch.setattr(cli_module, "setup_observability", lambda config: None)
    return fake


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "calhub.toml"
    path.write_text('[database]\nname = "calhub_test"\n')
    return path


def _invoke(*args: str):
    return CliRunner().invoke(cli, list(args))


class TestParseSettings:
    def test_pairs_override_connection_json(self):
        settings = _parse_settings(
            ("url=https://example.com/b.ics",), '{"url": "https://example.com/a.ics", "x": 1}'
        )

        assert settings == {"url": "https://example.com/b.ics", "x": 1}

    def test_value_may_contain_equals(self):
        assert _parse_settings(("token=a=b",), None) == {"token": "a=b"}

    @pytest.mark.parametrize(
        ("pairs", "connection"),
        [(("novalue",), None), (("=x",), None), ((), "[1, 2]"), ((), "{broken")],
    )
    def test_invalid_input(self, pairs, connection):
        with pytest.raises(click.BadParameter):
            _parse_settings(pairs, connection)


class TestCli:
    def test_version(self):
        result = _invoke("--version")

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_file_exits_with_usage_error(self, tmp_path: Path):
        result = _invoke("status", "--config", str(tmp_path / "missing.toml"))

        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_migrate_without_migration_scripts_fails_before_connecting(
        self, app, config_file, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("CALHUB_ALEMBIC_DIR", str(tmp_path / "no-alembic"))

        result = _invoke("migrate", "--config", str(config_file))

        assert result.exit_code == 1
        assert "No Alembic scripts found" in result.output

    def test_force_requires_source(self, app, config_file):
        result = _invoke("sync", "--force", "--config", str(config_file))

        assert result.exit_code == 1
        assert "--force requires --source" in result.output

    def test_sync_all_reports_failures_and_exits_nonzero(self, app, config_file):
        app.sources.add(make_source(1, name="Broken feed"))
        app.sources.add(make_source(2, name="Team"))
        app.scripts[1] = [TransientFetchError("upstream timed out")]
        app.scripts[2] = [SyncResult(events=[make_event("a")], full_refresh=True)]

        result = _invoke("sync", "--config", str(config_file))

        assert result.exit_code == 1
        assert "1 succeeded, 1 failed" in result.output
        assert "failed: 1 (Broken feed): upstream timed out" in result.output
        assert "Source 2: 1 received, 0 deleted, 1 stored" in result.output

    def test_sync_single_source(self, app, config_file):
        app.sources.add(make_source(5))
        app.scripts[5] = [SyncResult(unchanged=True, validator='"v"')]

        result = _invoke("sync", "--source", "5", "--config", str(config_file))

        assert result.exit_code == 0
        assert "Source 5: not modified (0 events)" in result.output

    def test_sync_unknown_source(self, app, config_file):
        result = _invoke("sync", "--source", "404", "--config", str(config_file))

        assert result.exit_code == 1
        assert "404" in result.output

    def test_status_lists_sources(self, app, config_file):
        app.sources.add(make_source(1, name="Team"))
        app.sources.add(make_source(2, SourceKind.GOOGLE, name="Work", enabled=False))
        app.scripts[1] = [SyncResult(events=[make_event("a")], full_refresh=True)]
        asyncio.run(app.orchestrator.sync_source(1))

        result = _invoke("status", "--config", str(config_file))

        assert result.exit_code == 0
        lines = result.output.splitlines()
        team = next(line for line in lines if "Team" in line)
        work = next(line for line in lines if "Work" in line)
        assert "success" in team
        assert "never*" in work

    def test_sources_list_hides_disabled(self, app, config_file):
        app.sources.add(make_source(1, name="Team"))
        app.sources.add(make_source(2, name="Old", enabled=False))

        result = _invoke("sources", "list", "--enabled-only", "--config", str(config_file))

        assert result.exit_code == 0
        assert "Team" in result.output
        assert "Old" not in result.output

    def test_sources_add_rejects_bad_setting(self, app, config_file):
        result = _invoke(
            "sources", "add", "Feed", "--kind", "remote-http-feed", "--set", "broken",
            "--config", str(config_file),
        )

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output
