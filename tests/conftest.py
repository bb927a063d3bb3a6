from __future__ import annotations

import os
import random
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import Settings  # noqa: E402
from llm.base import BaseLLMClient  # noqa: E402
from relay.protocol import SpeechInstructionBuilder  # noqa: E402
from relay.registry import SessionRegistry  # noqa: E402
from relay.responder import ResponseGenerator  # noqa: E402
from relay.session import CallSessionHandler  # noqa: E402


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.pings = 0
        self.closed = False
        self.close_code: int | None = None
        self.fail_ping = False

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise RuntimeError("send on closed transport")
        self.sent.append(data)

    async def ping(self) -> bool:
        if self.fail_ping:
            raise ConnectionResetError("peer went away")
        self.pings += 1
        return True

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def speak_events(self) -> list[dict]:
        return [event for event in self.sent if event.get("event") == "speak"]


class FakeLLM(BaseLLMClient):
    def __init__(self, reply: str = "Claro! Para qual dia você gostaria?", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[list[dict[str, str]]] = []

    async def chat(self, messages, *, temperature: float = 0.7, max_tokens: int = 100) -> str:
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.reply


def make_settings(**overrides) -> Settings:
    values = {
        "llm_api_key": None,
        "elevenlabs_api_key": None,
        "keepalive_interval_seconds": 25.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def make_handler(transport, fake_llm):
    def _make(*, settings: Settings | None = None, llm: BaseLLMClient | None = fake_llm, registry=None, rng=None):
        settings = settings or make_settings()
        responder = ResponseGenerator(
            llm,
            system_prompt="SYS",
            window_turns=settings.history_window_turns,
            degraded_reply=settings.degraded_reply,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        return CallSessionHandler(
            transport,
            responder=responder,
            builder=SpeechInstructionBuilder.from_settings(settings),
            settings=settings,
            registry=registry if registry is not None else SessionRegistry(),
            rng=rng or random.Random(7),
        )

    return _make


@pytest.fixture(scope="session")
def app():
    # Must be set before importing modules that read settings.
    os.environ["LLM_API_KEY"] = ""
    os.environ["OPENAI_API_KEY"] = ""
    os.environ["ELEVENLABS_API_KEY"] = ""
    os.environ["ENVIRONMENT"] = "local"

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    for module_name in [
        "api.dependencies",
        "api.routes",
        "api.relay_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app, fake_llm):
    import api.dependencies as deps
    from config.settings import get_settings
    from relay.registry import GLOBAL_SESSION_REGISTRY

    settings = get_settings()
    app.dependency_overrides[deps.get_responder] = lambda: ResponseGenerator(
        fake_llm,
        system_prompt="SYS",
        window_turns=settings.history_window_turns,
        degraded_reply=settings.degraded_reply,
    )

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    GLOBAL_SESSION_REGISTRY.clear()
