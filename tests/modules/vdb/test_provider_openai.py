from __future__ import annotations

import random
from types import MethodType, SimpleNamespace
from typing import Iterable, Sequence

import pytest
from structlog import get_logger

pytest.importorskip("openai")

import httpx  # noqa: E402  (import after skip guard)
from openai import BadRequestError, InternalServerError, RateLimitError  # noqa: E402

from vecsync.modules.vdb.errors import (  # noqa: E402
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
)
from vecsync.modules.vdb.providers import (  # noqa: E402
    EmbedRequestOptions,
    ProviderInitContext,
)
from vecsync.modules.vdb.providers.openai import (  # noqa: E402
    OpenAIEmbeddingsProvider,
    RetryPolicy,
    openai_provider_factory,
)

_MODEL = "text-embedding-3-small"


class _FakeEmbeddingsAPI:
    """Stub embeddings API returning scripted responses."""

    def __init__(self, script: Iterable[Sequence[Sequence[float]] | Exception]):
        self._script = list(script)
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def create(self, *, model: str, input: Sequence[str]) -> SimpleNamespace:
        self.calls.append((model, tuple(input)))
        if not self._script:
            raise AssertionError("unexpected OpenAI call")
        next_item = self._script.pop(0)
        if isinstance(next_item, Exception):
            raise next_item
        data = [SimpleNamespace(embedding=list(vector)) for vector in next_item]
        return SimpleNamespace(data=data)


class _FakeOpenAIClient:
    def __init__(self, script: Iterable[Sequence[Sequence[float]] | Exception]):
        self.embeddings = _FakeEmbeddingsAPI(script)


def _vector(value: float, dim: int = 1_536) -> tuple[float, ...]:
    return tuple(value for _ in range(dim))


def _response(status: int) -> httpx.Response:
    request = httpx.Request("POST", "https://example.com/embeddings")
    return httpx.Response(status_code=status, request=request)


def _provider(
    script: Iterable[Sequence[Sequence[float]] | Exception],
    tokens: Iterable[int] = (),
) -> tuple[OpenAIEmbeddingsProvider, _FakeOpenAIClient]:
    client = _FakeOpenAIClient(script)
    delays: list[float] = []
    provider = OpenAIEmbeddingsProvider(
        logger=get_logger("test.openai.provider"),
        client=client,  # type: ignore[arg-type]
        sleep=delays.append,
        now=lambda: 0.0,
    )
    iterator = iter(tokens)

    def _estimate(self: OpenAIEmbeddingsProvider, *, model: str, text: str) -> int:
        return next(iterator, 1)

    provider._estimate_tokens = MethodType(_estimate, provider)
    provider.delays = delays  # type: ignore[attr-defined]
    return provider, client


def test_returns_embeddings_and_respects_batch_size() -> None:
    provider, client = _provider([(_vector(0.0),), (_vector(1.0),)])

    vectors = provider.embed_texts(
        ["alpha", "beta"],
        model=_MODEL,
        options=EmbedRequestOptions(max_batch_size=1),
    )

    assert vectors == (_vector(0.0), _vector(1.0))
    assert client.embeddings.calls == [
        (_MODEL, ("alpha",)),
        (_MODEL, ("beta",)),
    ]
    assert provider.stats["requests"] == 2


def test_splits_batches_by_token_limit() -> None:
    provider, client = _provider(
        [(_vector(0.0),), (_vector(1.0), _vector(2.0))],
        tokens=[5000, 4000, 1000],
    )

    vectors = provider.embed_texts(
        ["alpha", "beta", "gamma"],
        model=_MODEL,
        options=EmbedRequestOptions(max_batch_size=3),
    )

    assert len(vectors) == 3
    assert client.embeddings.calls == [
        (_MODEL, ("alpha",)),
        (_MODEL, ("beta", "gamma")),
    ]


def test_oversized_input_raises_before_any_request() -> None:
    provider, client = _provider([], tokens=[10_000])

    with pytest.raises(EmbeddingProviderInputTooLargeError) as exc_info:
        provider.embed_texts(
            ["oversize"],
            model=_MODEL,
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.token_count == 10_000
    assert client.embeddings.calls == []


def test_retries_transient_errors_then_succeeds() -> None:
    provider, client = _provider(
        [
            RateLimitError(message="slow down", response=_response(429), body=None),
            InternalServerError(message="oops", response=_response(500), body=None),
            (_vector(0.5),),
        ]
    )

    vectors = provider.embed_texts(
        ["alpha"],
        model=_MODEL,
        options=EmbedRequestOptions(max_batch_size=4),
    )

    assert vectors == (_vector(0.5),)
    assert provider.stats["retries"] == 2
    assert len(provider.delays) == 2  # type: ignore[attr-defined]
    assert all(0 < delay <= 9.6 for delay in provider.delays)  # type: ignore[attr-defined]


def test_exhausted_rate_limits_raise_retry_exceeded() -> None:
    script = [
        RateLimitError(message="slow down", response=_response(429), body=None)
        for _ in range(5)
    ]
    provider, _ = _provider(script)

    with pytest.raises(EmbeddingProviderRetryExceededError) as exc_info:
        provider.embed_texts(
            ["alpha"],
            model=_MODEL,
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.attempts == 5
    assert exc_info.value.status_code == 429
    assert provider.stats["retries"] == 4
    assert provider.stats["failures"] == 1


def test_client_errors_are_not_retried() -> None:
    provider, client = _provider(
        [BadRequestError(message="bad input", response=_response(400), body=None)]
    )

    with pytest.raises(EmbeddingProviderRequestError) as exc_info:
        provider.embed_texts(
            ["alpha"],
            model=_MODEL,
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert exc_info.value.status_code == 400
    assert len(client.embeddings.calls) == 1


def test_dimension_mismatch_for_known_model() -> None:
    provider, _ = _provider([(_vector(0.0, dim=3),)])

    with pytest.raises(EmbeddingProviderDimMismatchError) as exc_info:
        provider.embed_texts(
            ["alpha"],
            model=_MODEL,
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert (exc_info.value.expected, exc_info.value.actual) == (1_536, 3)


def test_describe_model_probes_unknown_models_once() -> None:
    provider, client = _provider([(_vector(0.0, dim=7),)])

    assert provider.describe_model(_MODEL).dim == 1_536
    assert provider.describe_model("custom-embedder").dim == 7
    assert provider.describe_model("custom-embedder").dim == 7
    assert len(client.embeddings.calls) == 1


def test_capabilities_honor_configured_token_cap() -> None:
    provider = OpenAIEmbeddingsProvider(
        logger=get_logger("test.openai.provider"),
        config={"max_input_tokens": 512},
        client=_FakeOpenAIClient([]),  # type: ignore[arg-type]
    )

    caps = provider.capabilities(model=_MODEL)

    assert caps.max_batch_size == 128
    assert caps.max_input_tokens == 512


def test_missing_api_key_is_a_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(EmbeddingProviderConfigurationError):
        OpenAIEmbeddingsProvider(logger=get_logger("test.openai.provider"))


def test_factory_builds_client_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    provider = openai_provider_factory(
        ProviderInitContext(
            logger=get_logger("test.openai.provider"),
            config={"api_key": "sk-test", "base_url": "http://localhost:9"},
        )
    )

    assert isinstance(provider, OpenAIEmbeddingsProvider)


def test_single_attempt_surfaces_rate_limit_to_caller() -> None:
    client = _FakeOpenAIClient(
        [RateLimitError(message="slow down", response=_response(429), body=None)]
    )
    provider = OpenAIEmbeddingsProvider(
        logger=get_logger("test.openai.provider"),
        config={"max_attempts": 1},
        client=client,  # type: ignore[arg-type]
        sleep=lambda _: None,
    )
    provider._estimate_tokens = lambda *, model, text: 1  # type: ignore[method-assign]

    with pytest.raises(EmbeddingProviderRateLimitError):
        provider.embed_texts(
            ["alpha"],
            model=_MODEL,
            options=EmbedRequestOptions(max_batch_size=1),
        )

    assert provider.stats == {"requests": 0, "retries": 0, "failures": 1}


def test_retry_policy_backoff_and_options() -> None:
    policy = RetryPolicy(jitter=0.0)

    assert [policy.delay(n, random.Random(0)) for n in (1, 2, 3, 6)] == [
        0.5,
        1.0,
        2.0,
        8.0,
    ]
    assert RetryPolicy.from_options({}).max_attempts == 5
    assert RetryPolicy.from_options({"max_attempts": 2}).max_attempts == 2
    with pytest.raises(ValueError):
        RetryPolicy.from_options({"max_attempts": "three"})
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
