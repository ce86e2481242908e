import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_MODEL_IDS = {
    "openai": "gpt-3.5-turbo",
    "gemini": "gemini-pro",
    "ollama": "llama3",
    "vllm": "llama3",
    "lmstudio": "local-model",
}
DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "ollama": "http://localhost:11434",
    "vllm": "http://localhost:8000/v1",
    "lmstudio": "http://127.0.0.1:1234/v1",
}


class ModelConfig(BaseModel):
    key: str
    provider: str = "openai"
    model_id: str = "gpt-3.5-turbo"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    label: Optional[str] = None
    supports_multimodal: bool = False
    supports_image_generation: bool = False
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: int = 2048

    model_config = {"protected_namespaces": ()}

    def resolved_base_url(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS.get(self.provider, "")).rstrip("/")


class AgentConfig(BaseModel):
    key: str
    name: str = ""
    model: str
    system_prompt: str = ""
    parameter_enabled: bool = False
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: int = 2048

    model_config = {"protected_namespaces": ()}


class DeepResearchConfig(BaseModel):
    max_sub_questions: int = 4
    analysis_retries: int = 2
    stage_retries: int = 2
    retry_delay_s: float = 1.0
    temperature: float = 0.7
    max_tokens: int = 4096
    language: str = "auto"


class AppSettings(BaseModel):
    models: Dict[str, ModelConfig] = Field(default_factory=dict)
    agents: Dict[str, AgentConfig] = Field(default_factory=dict)
    default_model: Optional[str] = None
    title_model: Optional[str] = None
    deep_research: DeepResearchConfig = Field(default_factory=DeepResearchConfig)

    database_path: str = "chatflow.db"
    image_dir: str = "generated_images"
    image_url_prefix: str = "/api/images"
    host: str = "0.0.0.0"
    port: int = 8000

    max_images_per_turn: int = 3
    max_text_chars: int = 4000
    max_text_chars_with_images: int = 500
    dedup_window_ms: int = 500
    provider_read_timeout_s: Optional[float] = 300.0

    def resolve_model(self, key: Optional[str]) -> Optional[ModelConfig]:
        if key and key in self.models:
            return self.models[key]
        if self.default_model and self.default_model in self.models:
            return self.models[self.default_model]
        if self.models:
            return next(iter(self.models.values()))
        return None

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for model in data.get("models", {}).values():
            if model.get("api_key"):
                model["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "default_provider": os.getenv("DEFAULT_LLM_PROVIDER"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_model": os.getenv("DEFAULT_OPENAI_MODEL"),
        "ollama_base_url": os.getenv("OLLAMA_BASE_URL"),
        "ollama_model": os.getenv("DEFAULT_OLLAMA_MODEL"),
        "vllm_base_url": os.getenv("VLLM_BASE_URL"),
        "vllm_model": os.getenv("DEFAULT_VLLM_MODEL"),
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "gemini_model": os.getenv("DEFAULT_GEMINI_MODEL"),
        "temperature": os.getenv("DEFAULT_TEMPERATURE"),
        "max_tokens": os.getenv("DEFAULT_MAX_TOKENS"),
        "top_p": os.getenv("DEFAULT_TOP_P"),
        "database_path": os.getenv("DATABASE_PATH"),
        "image_dir": os.getenv("IMAGE_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "title_model": os.getenv("TITLE_MODEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_tokens" in cleaned:
        cleaned["max_tokens"] = int(cleaned["max_tokens"])
    if "temperature" in cleaned:
        cleaned["temperature"] = float(cleaned["temperature"])
    if "top_p" in cleaned:
        cleaned["top_p"] = float(cleaned["top_p"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _default_model_from_env(env_data: Dict[str, Any]) -> Dict[str, Any]:
    """Seed a single model entry from provider env vars when config.json defines none."""
    provider = str(env_data.get("default_provider") or "openai").strip().lower()
    entry: Dict[str, Any] = {"key": "default", "provider": provider}
    entry["model_id"] = env_data.get(f"{provider}_model") or DEFAULT_MODEL_IDS.get(provider, "gpt-3.5-turbo")
    base_url = env_data.get(f"{provider}_base_url")
    if base_url:
        entry["base_url"] = base_url
    api_key = env_data.get(f"{provider}_api_key")
    if api_key:
        entry["api_key"] = api_key
    for field in ("temperature", "top_p", "max_tokens"):
        if field in env_data:
            entry[field] = env_data[field]
    return entry


_PROVIDER_ENV_KEYS = (
    "default_provider",
    "openai_api_key",
    "openai_base_url",
    "openai_model",
    "ollama_base_url",
    "ollama_model",
    "vllm_base_url",
    "vllm_model",
    "gemini_api_key",
    "gemini_model",
    "temperature",
    "max_tokens",
    "top_p",
)


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except json.JSONDecodeError:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    env_settings = {k: v for k, v in env_data.items() if k not in _PROVIDER_ENV_KEYS}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_settings}
    else:
        merged = {**env_settings, **file_data}
    models = merged.get("models") or {}
    if not models:
        seeded = _default_model_from_env(env_data)
        models = {seeded["key"]: seeded}
    for key, value in list(models.items()):
        if isinstance(value, dict):
            value.setdefault("key", key)
    merged["models"] = models
    agents = merged.get("agents") or {}
    for key, value in list(agents.items()):
        if isinstance(value, dict):
            value.setdefault("key", key)
    merged["agents"] = agents
    if not merged.get("default_model"):
        merged["default_model"] = next(iter(models.keys()))
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))