from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatflow.chat_service import ChatService
from chatflow.config import AppSettings, DeepResearchConfig, ModelConfig
from chatflow.db import Database
from chatflow.image_store import ImageStore
from chatflow.llm import ProviderRegistry
from chatflow.main import create_app
from tests.fakes import FakeLLMClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        models={
            "test": ModelConfig(
                key="test",
                provider="openai",
                model_id="test-model",
                base_url="http://llm.test/v1",
                api_key="sk-test",
            )
        },
        default_model="test",
        deep_research=DeepResearchConfig(retry_delay_s=0.0),
        database_path=str(tmp_path / "test.db"),
        image_dir=str(tmp_path / "images"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: Optional[FakeLLMClient] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm = fake_llm or FakeLLMClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_factory=lambda _config: llm, config_path=cfg_path)
        return app, cfg_path, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
def service_factory(tmp_path: Path):
    async def _factory(fake_llm: Optional[FakeLLMClient] = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        db = Database(settings.database_path)
        await db.init()
        llm = fake_llm or FakeLLMClient()
        providers = ProviderRegistry(settings.models, factory=lambda _config: llm)
        store = ImageStore(Path(settings.image_dir), settings.image_url_prefix)
        service = ChatService(db, settings, providers, store)
        return service, llm

    return _factory
