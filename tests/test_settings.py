import json

import pytest

from chatflow.config import AppSettings, ModelConfig, load_settings, save_settings


ENV_VARS = (
    "DEFAULT_LLM_PROVIDER",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "DEFAULT_OPENAI_MODEL",
    "OLLAMA_BASE_URL",
    "DEFAULT_OLLAMA_MODEL",
    "VLLM_BASE_URL",
    "DEFAULT_VLLM_MODEL",
    "GEMINI_API_KEY",
    "DEFAULT_GEMINI_MODEL",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_MAX_TOKENS",
    "DEFAULT_TOP_P",
    "DATABASE_PATH",
    "IMAGE_DIR",
    "HOST",
    "PORT",
    "TITLE_MODEL",
    "CHATFLOW_ENV_OVERRIDES_CONFIG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "from-config.db"}))
    monkeypatch.setenv("DATABASE_PATH", "from-env.db")
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "from-config.db"


def test_env_override_when_chatflow_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "from-config.db"}))
    monkeypatch.setenv("DATABASE_PATH", "from-env.db")
    monkeypatch.setenv("CHATFLOW_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "from-env.db"


def test_env_seeds_default_model_without_config(tmp_path, monkeypatch):
    monkeypatch.setenv("DEFAULT_LLM_PROVIDER", "ollama")
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama:11434")
    monkeypatch.setenv("DEFAULT_OLLAMA_MODEL", "qwen2.5")
    monkeypatch.setenv("DEFAULT_TEMPERATURE", "0.2")
    monkeypatch.setenv("PORT", "9001")
    settings = load_settings(config_path=tmp_path / "missing.json")
    model = settings.models["default"]
    assert model.provider == "ollama"
    assert model.model_id == "qwen2.5"
    assert model.resolved_base_url() == "http://ollama:11434"
    assert model.temperature == 0.2
    assert settings.default_model == "default"
    assert settings.port == 9001


def test_models_and_agents_from_config_get_their_keys(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "models": {"fast": {"provider": "openai", "model_id": "gpt-4o-mini"}},
                "agents": {"coder": {"model": "fast", "system_prompt": "Write code."}},
            }
        )
    )
    settings = load_settings(config_path=config_path)
    assert settings.models["fast"].key == "fast"
    assert settings.models["fast"].resolved_base_url() == "https://api.openai.com/v1"
    assert settings.agents["coder"].key == "coder"
    assert settings.default_model == "fast"


def test_malformed_config_is_ignored(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path=config_path)
    assert settings.models["default"].provider == "openai"


def test_saved_settings_load_back(tmp_path):
    config_path = tmp_path / "config.json"
    settings = AppSettings(
        models={"m": ModelConfig(key="m", provider="gemini", model_id="gemini-2.0-flash", api_key="k")},
        default_model="m",
        max_text_chars=1000,
    )
    save_settings(settings, config_path=config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded.models["m"].api_key == "k"
    assert loaded.max_text_chars == 1000


def test_safe_dict_masks_api_keys():
    settings = AppSettings(
        models={
            "a": ModelConfig(key="a", api_key="secret"),
            "b": ModelConfig(key="b", provider="ollama", model_id="llama3"),
        }
    )
    data = settings.to_safe_dict()
    assert data["models"]["a"]["api_key"] == "********"
    assert data["models"]["b"]["api_key"] is None
    assert settings.models["a"].api_key == "secret"


def test_resolve_model_falls_back_to_default_then_first():
    models = {"a": ModelConfig(key="a"), "b": ModelConfig(key="b")}
    assert AppSettings(models=models, default_model="b").resolve_model("missing").key == "b"
    assert AppSettings(models=models).resolve_model(None).key == "a"
    assert AppSettings().resolve_model("a") is None
