# =============================================================================
# tests/unit/test_cli.py
# Unit Tests for the command runner
# =============================================================================

import logging

import pytest


@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    """Config file pointing every store into a temp dir"""
    from kiosk_core.config import ENV_OVERRIDES

    for name in list(ENV_OVERRIDES) + ["KIOSK_CONFIG"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)

    path = tmp_path / "secrets.toml"
    path.write_text(
        "[local_database]\n"
        f'path = "{(tmp_path / "kiosk.db").as_posix()}"\n'
        "[tiles]\n"
        f'cache_dir = "{(tmp_path / "tiles").as_posix()}"\n'
    )

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield str(path)
    root.handlers[:] = handlers
    root.setLevel(level)


def _run(config_path, *args):
    from app import main

    return main(["--config", config_path, "--no-log-file", "--log-level", "WARNING", *args])


class TestCommands:
    """Test command dispatch and exit codes"""

    def test_stats(self, cli_config, capsys):
        """stats works without a remote"""
        assert _run(cli_config, "stats") == 0

        out = capsys.readouterr().out
        assert '"storage_backend": "native-file"' in out
        assert '"row_counts"' in out

    def test_sync_once_without_remote(self, cli_config, capsys):
        """A pass is impossible without Supabase credentials"""
        assert _run(cli_config, "sync", "--once") == 1

    def test_sync_missing_unknown_table(self, cli_config, capsys):
        """Unknown tables fail cleanly"""
        assert _run(cli_config, "sync-missing", "not_a_table") == 1

        assert "SCHEMA_001" in capsys.readouterr().out

    def test_clear(self, cli_config, capsys):
        """clear empties the mirror"""
        assert _run(cli_config, "clear") == 0

    def test_tile_status(self, cli_config, capsys):
        """Status of an empty cache is 0%"""
        assert _run(cli_config, "tiles", "status", "chicago", "--zoom", "10") == 0

        assert '"percent_cached": 0.0' in capsys.readouterr().out

    def test_unknown_region(self, cli_config, capsys):
        """Unknown regions exit with 1"""
        assert _run(cli_config, "tiles", "status", "atlantis") == 1

        assert "Unknown region" in capsys.readouterr().err

    def test_bad_config(self, cli_config, tmp_path, capsys):
        """Invalid configuration exits before running anything"""
        bad = tmp_path / "bad.toml"
        bad.write_text("[sync]\ninterval_minutes = -5\n")

        assert _run(str(bad), "stats") == 1
        assert "Configuration error" in capsys.readouterr().err
