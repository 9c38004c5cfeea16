import logging

import pytest

from chat_gateway.config.settings import GatewaySettings
from chat_gateway.domain.exceptions import NoProviderError, NotFoundError
from chat_gateway.providers import build_registry
from chat_gateway.providers.anthropic_client import AnthropicClient
from chat_gateway.providers.openai_client import OpenAICompatibleClient
from chat_gateway.providers.registry import ProviderRegistry


class FakeAdapter:
    supports_tools = True
    default_model = "m"

    def __init__(self, name):
        self.name = name


def test_first_registration_becomes_default():
    reg = ProviderRegistry()
    x, y = FakeAdapter("x"), FakeAdapter("y")
    reg.register("x", x)
    reg.register("y", y)
    assert reg.resolve_default() is x
    assert reg.names() == ["x", "y"]
    assert reg.resolve("Y") is y


def test_explicit_default_moves_pointer():
    reg = ProviderRegistry()
    reg.register("x", FakeAdapter("x"))
    y = FakeAdapter("y")
    reg.register("y", y, is_default=True)
    assert reg.default_name == "y"
    assert reg.resolve_default() is y
    reg.set_default("x")
    assert reg.default_name == "x"


def test_duplicate_registration_is_ignored(caplog):
    reg = ProviderRegistry()
    first, second = FakeAdapter("x"), FakeAdapter("x")
    reg.register("x", first)
    reg.register("z", FakeAdapter("z"))
    with caplog.at_level(logging.WARNING, logger="chat_gateway"):
        reg.register("x", second, is_default=True)
    assert reg.resolve("x") is first
    assert reg.default_name == "x"
    assert len(reg) == 2
    assert any("already registered" in r.getMessage() for r in caplog.records)


def test_empty_registry_and_unknown_name():
    reg = ProviderRegistry()
    with pytest.raises(NoProviderError):
        reg.resolve_default()
    with pytest.raises(NotFoundError) as ei:
        reg.resolve("nope")
    assert ei.value.code == "PROVIDER_NOT_FOUND"
    with pytest.raises(NotFoundError):
        reg.set_default("nope")
    assert not reg.has("nope")


def test_build_registry_registers_configured_providers():
    cfg = GatewaySettings(
        anthropic_api_key="sk-ant-0123456789",
        groq_api_key="gsk_0123456789",
        openai_api_key=None,
        default_provider="Groq",
    )
    reg = build_registry(cfg)
    assert reg.names() == ["anthropic", "groq"]
    assert reg.default_name == "groq"
    assert isinstance(reg.resolve("anthropic"), AnthropicClient)
    groq = reg.resolve("groq")
    assert isinstance(groq, OpenAICompatibleClient)
    assert groq.default_model == cfg.groq_default_model


def test_build_registry_without_keys_is_empty():
    cfg = GatewaySettings(anthropic_api_key=None, groq_api_key=None, openai_api_key=None, default_provider=None)
    reg = build_registry(cfg)
    assert reg.names() == []
    with pytest.raises(NoProviderError):
        reg.resolve_default()
