# =============================================================================
# tests/unit/test_config.py
# Unit Tests for configuration loading
# =============================================================================

import pytest


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No config-related environment variables, cwd in a temp dir"""
    from kiosk_core.config import ENV_OVERRIDES

    for name in list(ENV_OVERRIDES) + ["KIOSK_CONFIG"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def write_config(tmp_path):
    """Write a secrets.toml and return its path"""
    def _write(text: str):
        path = tmp_path / "secrets.toml"
        path.write_text(text)
        return path
    return _write


class TestDefaults:
    """Test defaults without any config file"""

    def test_defaults(self, clean_env):
        """Missing file gives the documented defaults"""
        from kiosk_core.config import load_config

        config = load_config()

        assert config.supabase.is_configured is False
        assert config.local_database.path == "data/kiosk_local.db"
        assert config.local_database.chunk_size == 100
        assert config.sync.interval_minutes == 5.0
        assert config.sync.fetch_timeout == 30.0
        assert config.tiles.persistent is True
        assert config.tiles.max_concurrent == 4
        assert config.log_level == "INFO"


class TestTomlLoading:
    """Test secrets.toml parsing"""

    def test_sections(self, clean_env, write_config):
        """Every section is read and typed"""
        from kiosk_core.config import load_config

        path = write_config(
            'log_level = "debug"\n'
            "[supabase]\n"
            'url = "https://demo.supabase.co"\n'
            'key = "anon"\n'
            "[local_database]\n"
            "in_memory = true\n"
            "chunk_size = 25\n"
            "[sync]\n"
            "interval_minutes = 2\n"
            "[tiles]\n"
            "persistent = false\n"
            "memory_tiles = 500\n"
        )

        config = load_config(path)

        assert config.supabase.is_configured is True
        assert config.local_database.in_memory is True
        assert config.local_database.chunk_size == 25
        assert config.sync.interval_minutes == 2.0
        assert isinstance(config.sync.interval_minutes, float)
        assert config.tiles.persistent is False
        assert config.tiles.memory_tiles == 500
        assert config.log_level == "DEBUG"

    def test_unknown_keys_ignored(self, clean_env, write_config):
        """Unknown keys do not break loading"""
        from kiosk_core.config import load_config

        config = load_config(write_config("[sync]\nturbo = true\n"))

        assert not hasattr(config.sync, "turbo")

    def test_malformed_file(self, clean_env, write_config):
        """Broken TOML is a ConfigurationError"""
        from kiosk_core.config import load_config
        from kiosk_core.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            load_config(write_config("[sync\ninterval_minutes = "))


class TestEnvironmentOverrides:
    """Test environment variable precedence"""

    def test_env_beats_file(self, clean_env, write_config):
        """Environment values override the TOML file"""
        from kiosk_core.config import load_config

        path = write_config("[sync]\ninterval_minutes = 2\n")
        clean_env.setenv("KIOSK_SYNC_INTERVAL_MINUTES", "7.5")
        clean_env.setenv("SUPABASE_URL", "https://env.supabase.co")
        clean_env.setenv("SUPABASE_KEY", "env-key")
        clean_env.setenv("KIOSK_DB_ENABLED", "off")

        config = load_config(path)

        assert config.sync.interval_minutes == 7.5
        assert config.supabase.url == "https://env.supabase.co"
        assert config.local_database.enabled is False

    def test_config_path_from_env(self, clean_env, write_config):
        """KIOSK_CONFIG points at the file"""
        from kiosk_core.config import load_config

        clean_env.setenv("KIOSK_CONFIG", str(write_config("[tiles]\nmax_concurrent = 8\n")))

        assert load_config().tiles.max_concurrent == 8


class TestValidation:
    """Test invalid values"""

    @pytest.mark.parametrize("text", [
        "[sync]\ninterval_minutes = 0\n",
        "[sync]\nfetch_timeout = -1\n",
        "[local_database]\nchunk_size = 0\n",
        "[tiles]\nmax_concurrent = 0\n",
        '[local_database]\nenabled = "sometimes"\n',
        '[sync]\nupload_batch_size = "lots"\n',
    ])
    def test_invalid_values_rejected(self, clean_env, write_config, text):
        """Bad values raise ConfigurationError"""
        from kiosk_core.config import load_config
        from kiosk_core.errors import ConfigurationError

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(write_config(text))

        assert exc_info.value.code == "CONFIG_001"
        assert exc_info.value.recoverable is False
