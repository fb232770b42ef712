"""Embeddings provider backed by the OpenAI embeddings endpoint.

Options read from ``[embedding.options]``:

* ``api_key``, ``base_url``, ``organization``: client settings, falling back
  to ``OPENAI_API_KEY``, ``OPENAI_BASE_URL`` and ``OPENAI_ORG_ID``.
* ``timeout``: per-request timeout in seconds (``OPENAI_TIMEOUT_SECONDS``
  wins when set).
* ``max_input_tokens``: lowers the per-request token budget.
* ``max_attempts``: calls made per batch before giving up.
"""

from __future__ import annotations

import os
import random
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from vecsync.core.logging import Logger
from vecsync.modules.vdb.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingVector,
    ProviderInitContext,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "RetryPolicy",
    "openai_provider_factory",
]

_PROVIDER = "openai"
_DEFAULT_TIMEOUT = 30.0
_REQUEST_TOKEN_LIMIT = 8_191
_UNKNOWN_MODEL_BATCH = 128
# tiktoken undercounts slightly against the server's tally.
_TOKEN_PAD = 8
_PROBE_TEXT = "__VECSYNC_DIMENSION_PROBE__"

_API_ERRORS = (
    RateLimitError,
    APITimeoutError,
    APIConnectionError,
    APIStatusError,
    httpx.HTTPError,
)
_TRANSIENT_ERRORS = (
    RateLimitError,
    APITimeoutError,
    APIConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
)

# model -> (dim, max batch size)
_MODEL_TABLE: Mapping[str, tuple[int, int]] = {
    "text-embedding-3-small": (1_536, 128),
    "text-embedding-3-large": (3_072, 64),
    "text-embedding-ada-002": (1_536, 128),
}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Capped exponential backoff with proportional jitter.

    Example:
        >>> policy = RetryPolicy(jitter=0.0)
        >>> [policy.delay(n, random.Random(0)) for n in (1, 2, 6)]
        [0.5, 1.0, 8.0]
    """

    max_attempts: int = 5
    base: float = 0.5
    multiplier: float = 2.0
    cap: float = 8.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_options(cls, options: Mapping[str, object]) -> "RetryPolicy":
        raw = options.get("max_attempts")
        if raw is None:
            return cls()
        if not isinstance(raw, int) or isinstance(raw, bool):
            raise ValueError("OpenAI max_attempts must be an integer.")
        return cls(max_attempts=raw)

    def delay(self, attempt: int, rng: random.Random) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""

        raw = min(self.base * self.multiplier ** (attempt - 1), self.cap)
        return round(raw * (1.0 + rng.uniform(-self.jitter, self.jitter)), 2)


def _model_name(model: str) -> str:
    name = model.strip()
    if not name:
        raise ValueError("model cannot be blank")
    return name


def _timeout_seconds(options: Mapping[str, object]) -> float:
    raw = os.environ.get("OPENAI_TIMEOUT_SECONDS") or options.get("timeout")
    if raw is None:
        return _DEFAULT_TIMEOUT
    try:
        seconds = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError("OpenAI timeout must be a number.") from exc
    if seconds <= 0:
        raise ValueError("OpenAI timeout must be positive.")
    return seconds


def _error_details(exc: Exception) -> tuple[int | None, str | None, bool]:
    """Return ``(status_code, request_id, retryable)`` for an API failure."""

    status = getattr(exc, "status_code", None)
    request_id = getattr(exc, "request_id", None)
    status = status if isinstance(status, int) else None
    retryable = isinstance(exc, _TRANSIENT_ERRORS) or (
        status is not None and status >= 500
    )
    return status, request_id if isinstance(request_id, str) else None, retryable


def _clean(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


class OpenAIEmbeddingsProvider:
    """Embed page content through ``client.embeddings.create``.

    Inputs are grouped by both the model's batch size and a request token
    budget. Rate limits, timeouts, connection drops and 5xx responses are
    retried under a :class:`RetryPolicy`; every other failure surfaces as an
    :class:`EmbeddingProviderError` subclass without retrying.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.logger = logger
        self._options = dict(config or {})
        self._retry = retry or RetryPolicy.from_options(self._options)
        self._sleep = sleep
        self._now = now
        self._rng = random.Random()
        self._token_counts: dict[tuple[str, str], int] = {}
        self._probed_dims: dict[str, int] = {}
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client or self._build_client()

    @property
    def stats(self) -> Mapping[str, int]:
        """Request, retry and failure counters since construction."""

        return dict(self._stats)

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = _model_name(model)
        known = _MODEL_TABLE.get(name)
        if known is not None:
            dim: int | None = known[0]
        elif name in self._probed_dims:
            dim = self._probed_dims[name]
        else:
            dim = self._probe_dimension(name)
        return EmbeddingProviderModel(provider=_PROVIDER, name=name, dim=dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        known = _MODEL_TABLE.get(_model_name(model)) if model else None
        token_budget = _REQUEST_TOKEN_LIMIT
        configured = self._options.get("max_input_tokens")
        if isinstance(configured, int) and configured > 0:
            token_budget = min(token_budget, configured)
        return EmbeddingProviderCaps(
            max_batch_size=known[1] if known else _UNKNOWN_MODEL_BATCH,
            max_input_tokens=token_budget,
            max_request_tokens=token_budget,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()
        name = _model_name(model)
        caps = self.capabilities(model=name)
        size_limit = min(options.max_batch_size, caps.max_batch_size)
        token_budget = caps.max_request_tokens or _REQUEST_TOKEN_LIMIT
        if options.max_input_tokens is not None:
            token_budget = min(token_budget, options.max_input_tokens)
        expected_dim = _MODEL_TABLE[name][0] if name in _MODEL_TABLE else None

        vectors: list[EmbeddingVector] = []
        for batch, tokens in self._batches(
            [_clean(text) for text in texts],
            model=name,
            size_limit=size_limit,
            token_budget=token_budget,
        ):
            for raw in self._request(model=name, batch=batch, tokens=tokens):
                if expected_dim is not None and len(raw) != expected_dim:
                    raise EmbeddingProviderDimMismatchError(
                        "Embedding dimension mismatch in OpenAI response.",
                        provider=_PROVIDER,
                        model=name,
                        expected=expected_dim,
                        actual=len(raw),
                    )
                vectors.append(tuple(float(value) for value in raw))
        return tuple(vectors)

    def _build_client(self) -> OpenAI:
        def option(key: str, env: str) -> str | None:
            value = self._options.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return os.environ.get(env) or None

        api_key = option("api_key", "OPENAI_API_KEY")
        if api_key is None:
            raise EmbeddingProviderConfigurationError(
                "OPENAI_API_KEY (or embedding.options.api_key) must be set "
                "to use the OpenAI provider.",
                provider=_PROVIDER,
                model="*",
            )
        return OpenAI(
            api_key=api_key,
            base_url=option("base_url", "OPENAI_BASE_URL"),
            organization=option("organization", "OPENAI_ORG_ID"),
            timeout=_timeout_seconds(self._options),
        )

    def _batches(
        self,
        texts: Sequence[str],
        *,
        model: str,
        size_limit: int,
        token_budget: int,
    ) -> Iterator[tuple[tuple[str, ...], int]]:
        """Yield ``(texts, token_total)`` groups respecting both limits.

        Every input is counted before the first group is yielded, so an
        oversized text fails the call without any request being sent.
        """

        counted = [(text, self._estimate_tokens(model=model, text=text)) for text in texts]
        for text, tokens in counted:
            if tokens > token_budget:
                raise EmbeddingProviderInputTooLargeError(
                    f"Input text exceeds OpenAI token limit "
                    f"({tokens} > {token_budget}).",
                    provider=_PROVIDER,
                    model=model,
                    token_count=tokens,
                    limit=token_budget,
                )

        group: list[str] = []
        total = 0
        for text, tokens in counted:
            if group and (len(group) == size_limit or total + tokens > token_budget):
                yield tuple(group), total
                group, total = [], 0
            group.append(text)
            total += tokens
        if group:
            yield tuple(group), total

    def _estimate_tokens(self, *, model: str, text: str) -> int:
        key = (model, text)
        if key not in self._token_counts:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            self._token_counts[key] = _TOKEN_PAD + len(
                encoding.encode(text, disallowed_special=())
            )
        return self._token_counts[key]

    def _probe_dimension(self, model: str) -> int | None:
        tokens = self._estimate_tokens(model=model, text=_PROBE_TEXT)
        vectors = self._request(
            model=model,
            batch=(_PROBE_TEXT,),
            tokens=tokens,
            probe=True,
        )
        if not vectors:
            return None
        self._probed_dims[model] = len(vectors[0])
        return self._probed_dims[model]

    def _request(
        self,
        *,
        model: str,
        batch: Sequence[str],
        tokens: int,
        probe: bool = False,
    ) -> list[list[float]]:
        attempt = 0
        while True:
            attempt += 1
            started = self._now()
            try:
                response = self._client.embeddings.create(
                    model=model,
                    input=list(batch),
                )
            except _API_ERRORS as exc:
                status, request_id, retryable = _error_details(exc)
                if not retryable or attempt >= self._retry.max_attempts:
                    self._stats["failures"] += 1
                    raise self._as_provider_error(
                        exc,
                        model=model,
                        attempts=attempt,
                        status=status,
                        request_id=request_id,
                        retryable=retryable,
                    ) from exc
                wait = self._retry.delay(attempt, self._rng)
                self._stats["retries"] += 1
                self.logger.warning(
                    "openai-embed-retry",
                    model=model,
                    attempt=attempt,
                    max_attempts=self._retry.max_attempts,
                    retry_delay=wait,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                    probe=probe,
                )
                self._sleep(wait)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                model=model,
                batch_size=len(batch),
                token_count=tokens,
                latency=round(self._now() - started, 4),
                attempts=attempt,
                probe=probe,
            )
            return [list(item.embedding) for item in response.data]

    def _as_provider_error(
        self,
        exc: Exception,
        *,
        model: str,
        attempts: int,
        status: int | None,
        request_id: str | None,
        retryable: bool,
    ) -> EmbeddingProviderError:
        details = {
            "provider": _PROVIDER,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if retryable and self._retry.max_attempts == 1:
            # Retries disabled: leave the retry decision to the caller.
            error_type = (
                EmbeddingProviderRateLimitError
                if isinstance(exc, RateLimitError)
                else EmbeddingProviderRetryableError
            )
            return error_type(str(exc) or exc.__class__.__name__, **details)
        if retryable:
            return EmbeddingProviderRetryExceededError(
                f"OpenAI embeddings still failing after {attempts} attempts: "
                f"{exc.__class__.__name__}.",
                attempts=attempts,
                **details,
            )
        return EmbeddingProviderRequestError(
            str(exc) or exc.__class__.__name__,
            **details,
        )


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Build the provider from the ``[embedding.options]`` table."""

    return OpenAIEmbeddingsProvider(logger=context.logger, config=context.config)
