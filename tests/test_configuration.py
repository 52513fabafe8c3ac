"""
Tests for layered configuration loading.
"""

import pytest

from quire.configuration import QuireConfig, load_settings
from quire.errors import ConfigurationError


@pytest.fixture
def app_dir(tmp_path, clean_environment):
    directory = tmp_path / "app"
    directory.mkdir()
    return directory


class TestLayers:
    def test_defaults(self, app_dir):
        settings = load_settings(app_dir)

        assert settings.TRANSLATOR == "echo"
        assert settings.SOURCE_LANGUAGE == "English"
        assert settings.TARGET_LANGUAGE == "French"
        assert settings.REFINEMENT_ENABLED is False
        assert settings.TRANSLATION_FAILURE_POLICY == "abort"

    def test_environment_beats_dotenv_beats_yaml(self, app_dir, monkeypatch):
        (app_dir / "config.yaml").write_text(
            "TARGET_LANGUAGE: German\nSOURCE_LANGUAGE: Dutch\nREFINEMENT_MODEL: yaml-model\n",
            encoding="utf-8",
        )
        (app_dir / ".env").write_text(
            "TARGET_LANGUAGE=Spanish\nSOURCE_LANGUAGE=Italian\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("TARGET_LANGUAGE", "Portuguese")

        settings = load_settings(app_dir)

        assert settings.TARGET_LANGUAGE == "Portuguese"
        assert settings.SOURCE_LANGUAGE == "Italian"
        assert settings.REFINEMENT_MODEL == "yaml-model"

    def test_home_yaml_is_overridden_by_app_yaml(self, app_dir, clean_environment):
        (clean_environment / ".quire.yaml").write_text(
            "TARGET_LANGUAGE: German\nREFINEMENT_URL: http://gpu:11434\n",
            encoding="utf-8",
        )
        (app_dir / "config.yaml").write_text("TARGET_LANGUAGE: Czech\n", encoding="utf-8")

        settings = load_settings(app_dir)

        assert settings.TARGET_LANGUAGE == "Czech"
        assert settings.REFINEMENT_URL == "http://gpu:11434"

    def test_unknown_environment_keys_are_ignored(self, app_dir, monkeypatch):
        monkeypatch.setenv("SOMETHING_ELSE", "value")

        settings = load_settings(app_dir)

        assert not hasattr(settings, "SOMETHING_ELSE")

    def test_overrides_win(self, app_dir, monkeypatch):
        monkeypatch.setenv("TARGET_LANGUAGE", "German")

        settings = load_settings(app_dir, overrides={"TARGET_LANGUAGE": "Greek", "TRANSLATOR": None})

        assert settings.TARGET_LANGUAGE == "Greek"
        assert settings.TRANSLATOR == "echo"


class TestNormalisation:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("LM Studio", "lm_studio"),
            ("lmstudio", "lm_studio"),
            ("Google Gemini", "gemini"),
            ("anthropic", "claude"),
            ("OLLAMA", "ollama"),
        ],
    )
    def test_provider_synonyms(self, app_dir, monkeypatch, raw, expected):
        monkeypatch.setenv("REFINEMENT_PROVIDER", raw)

        assert load_settings(app_dir).REFINEMENT_PROVIDER == expected

    def test_boolean_strings(self, app_dir, monkeypatch):
        monkeypatch.setenv("REFINEMENT_ENABLED", "yes")
        monkeypatch.setenv("QUIRE_PROVIDER_DEBUG", "1")

        settings = load_settings(app_dir)

        assert settings.REFINEMENT_ENABLED is True
        assert settings.QUIRE_PROVIDER_DEBUG is True

    def test_api_key_lookup(self):
        settings = QuireConfig(OPENAI_API_KEY="sk", ANTHROPIC_API_KEY="an", GEMINI_API_KEY="ge")

        assert settings.api_key_for("openai") == "sk"
        assert settings.api_key_for("claude") == "an"
        assert settings.api_key_for("gemini") == "ge"
        assert settings.api_key_for("ollama") is None


class TestValidation:
    def test_command_translator_needs_command(self, app_dir, monkeypatch):
        monkeypatch.setenv("TRANSLATOR", "command")

        with pytest.raises(ConfigurationError, match="TRANSLATOR_COMMAND"):
            load_settings(app_dir)

    def test_invalid_choice_is_reported_by_key(self, app_dir, monkeypatch):
        monkeypatch.setenv("TRANSLATION_FAILURE_POLICY", "retry-forever")

        with pytest.raises(ConfigurationError) as excinfo:
            load_settings(app_dir)

        assert "TRANSLATION_FAILURE_POLICY" in str(excinfo.value)
        assert str(excinfo.value).startswith("Configuration validation errors detected:")

    def test_yaml_root_must_be_a_mapping(self, app_dir):
        (app_dir / "config.yaml").write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="expected a mapping"):
            load_settings(app_dir)

    def test_missing_refinement_key_is_not_a_configuration_error(self, app_dir, monkeypatch):
        monkeypatch.setenv("REFINEMENT_ENABLED", "true")
        monkeypatch.setenv("REFINEMENT_PROVIDER", "claude")

        settings = load_settings(app_dir)

        assert settings.api_key_for(settings.REFINEMENT_PROVIDER) is None
