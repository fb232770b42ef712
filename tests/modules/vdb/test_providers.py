from __future__ import annotations

import math

import pytest
from structlog import get_logger

from vecsync.modules.vdb.errors import EmbeddingProviderConfigurationError
from vecsync.modules.vdb.providers import (
    EmbedRequestOptions,
    EmbeddingProviderModel,
    EmbeddingsProvider,
    ProviderInitContext,
    ProviderNotRegisteredError,
    ProviderRegistry,
    ProviderRegistryError,
    create_default_provider_registry,
)
from vecsync.modules.vdb.providers.fake import FakeEmbeddingsProvider


def _fake_factory(context: ProviderInitContext) -> FakeEmbeddingsProvider:
    return FakeEmbeddingsProvider(logger=context.logger, config=context.config)


def test_registry_register_create_and_unregister() -> None:
    registry = ProviderRegistry({" Local ": _fake_factory})

    provider = registry.create(
        "local",
        logger=get_logger("test.providers"),
        config={"dim": 4},
    )

    assert isinstance(provider, EmbeddingsProvider)
    assert provider.describe_model("m").dim == 4
    assert set(registry.snapshot()) == {"local"}

    with pytest.raises(ProviderRegistryError):
        registry.register("LOCAL", _fake_factory)

    registry.unregister("local")
    with pytest.raises(ProviderNotRegisteredError):
        registry.get_factory("local")
    with pytest.raises(ValueError):
        registry.register("  ", _fake_factory)


def test_default_registry_ships_builtins() -> None:
    registry = create_default_provider_registry()

    assert set(registry.snapshot()) == {"fake", "openai"}


def test_fake_provider_is_deterministic_unit_vectors() -> None:
    provider = FakeEmbeddingsProvider(logger=get_logger("test.fake"))
    options = EmbedRequestOptions(max_batch_size=8)

    first = provider.embed_texts(["alpha", "beta"], model="m", options=options)
    second = provider.embed_texts(["alpha"], model="m", options=options)

    assert first[0] == second[0]
    assert first[0] != first[1]
    assert len(first[0]) == 16
    assert math.isclose(sum(value * value for value in first[0]), 1.0)


def test_fake_provider_rejects_bad_dim() -> None:
    with pytest.raises(EmbeddingProviderConfigurationError):
        FakeEmbeddingsProvider(logger=get_logger("test.fake"), config={"dim": 0})


def test_provider_context_freezes_config() -> None:
    context = ProviderInitContext(logger=get_logger("test"), config={"a": 1})

    with pytest.raises(TypeError):
        context.config["a"] = 2  # type: ignore[index]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_batch_size": 0},
        {"max_batch_size": 1, "timeout": 0},
        {"max_batch_size": 1, "max_input_tokens": 0},
    ],
)
def test_embed_request_options_validate(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        EmbedRequestOptions(**kwargs)


def test_model_descriptor_normalizes() -> None:
    model = EmbeddingProviderModel(provider=" OpenAI ", name=" small ", dim=3)

    assert model.key == "openai:small"
    with pytest.raises(ValueError):
        EmbeddingProviderModel(provider="x", name="y", dim=0)
