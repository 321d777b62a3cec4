import pytest
from pydantic import ValidationError

from nova_assistant.config import Settings, get_settings


class TestSettings:
    """Environment-driven configuration"""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.history_window == 5
        assert settings.completion_streaming is True
        assert settings.conversations_table == "nova_conversations"
        assert settings.functions_url == "http://localhost:54321/functions/v1"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("NOVA_PORT", "9100")
        monkeypatch.setenv("NOVA_COMPLETION_STREAMING", "false")
        monkeypatch.setenv("NOVA_SUPABASE_URL", "https://project.supabase.co/")

        settings = Settings(_env_file=None)

        assert settings.port == 9100
        assert settings.completion_streaming is False
        assert settings.rest_url == "https://project.supabase.co/rest/v1"

    def test_functions_path_is_normalised(self):
        settings = Settings(_env_file=None, functions_path="functions/v1/")
        assert settings.functions_url.endswith("/functions/v1")

    def test_invalid_url(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, supabase_url="localhost:54321")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_negative_history_window(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, history_window=-1)

    def test_settings_are_built_on_first_use(self, monkeypatch):
        import nova_assistant.config as config

        assert not hasattr(config, "settings")

        get_settings.cache_clear()
        monkeypatch.setenv("NOVA_HISTORY_WINDOW", "8")
        try:
            assert get_settings().history_window == 8
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
