"""Embedding generation via the OpenAI embeddings API."""

from __future__ import annotations

from typing import Any, List, Optional

import openai
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from worknote_retrieval.config import EmbeddingSettings, get_settings
from worknote_retrieval.models.embedding import EmbeddingResponse
from worknote_retrieval.utils.errors import (
    ConfigurationError,
    EmbeddingError,
    EmbeddingRateLimitError,
    MalformedResponseError,
)
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("embedding_service")

_TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class EmbeddingService:
    """
    Batched embedding client.

    Inputs are split into batches of at most ``embedding_batch_size`` texts per
    request. Transient upstream failures are retried with exponential backoff;
    a 429 that survives every attempt surfaces as ``EmbeddingRateLimitError``.
    """

    def __init__(
        self,
        settings: Optional[EmbeddingSettings] = None,
        client: Any = None,
        wait_min: float = 1.0,
        wait_max: float = 30.0,
    ) -> None:
        self._settings = settings or get_settings().embedding
        self._model_name = self._settings.embedding_model
        self._client = client
        self._wait_min = wait_min
        self._wait_max = wait_max

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def batch_size(self) -> int:
        return max(1, self._settings.embedding_batch_size)

    def _get_client(self):
        if self._client is not None:
            return self._client

        if not self._settings.is_configured:
            raise ConfigurationError(
                "Embeddings are not configured. Set OPENAI_API_KEY.",
                details={"model": self._model_name},
            )
        self._client = openai.AsyncOpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._settings.embedding_timeout,
            max_retries=0,
        )
        return self._client

    async def _request(self, inputs: List[str]) -> Any:
        client = self._get_client()
        async for attempt in AsyncRetrying(
            reraise=False,
            stop=stop_after_attempt(max(1, self._settings.embedding_max_retries)),
            wait=wait_exponential(multiplier=1, min=self._wait_min, max=self._wait_max),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        ):
            with attempt:
                return await client.embeddings.create(model=self._model_name, input=inputs)
        raise EmbeddingError("Embedding retries exhausted", model=self._model_name)

    def _parse(self, raw: Any, expected: int) -> List[List[float]]:
        payload = raw if isinstance(raw, dict) else raw.model_dump()
        try:
            response = EmbeddingResponse.model_validate(payload)
        except ValidationError as e:
            raise MalformedResponseError(
                "embeddings",
                "Embedding response failed validation",
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e

        vectors = response.vectors()
        if len(vectors) != expected:
            raise MalformedResponseError(
                "embeddings",
                "Embedding response size mismatch",
                details={"expected": expected, "got": len(vectors)},
            )

        dimension = self._settings.embedding_dimension
        if dimension is not None:
            for vector in vectors:
                if len(vector) != dimension:
                    raise MalformedResponseError(
                        "embeddings",
                        "Embedding dimension mismatch",
                        details={"expected_dimension": dimension, "actual_dimension": len(vector)},
                    )
        return vectors

    async def _embed_batch(self, inputs: List[str]) -> List[List[float]]:
        """Embed one batch of texts."""
        try:
            raw = await self._request(inputs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            if isinstance(cause, openai.RateLimitError):
                logger.warning(f"Embedding rate limit persisted after retries: model={self._model_name}")
                raise EmbeddingRateLimitError(model=self._model_name) from cause
            raise EmbeddingError(
                f"Embedding request failed after retries: {cause}", model=self._model_name
            ) from cause
        except openai.OpenAIError as e:
            raise EmbeddingError(f"Embedding request failed: {e}", model=self._model_name) from e

        return self._parse(raw, len(inputs))

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts, preserving input order.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text

        Raises:
            EmbeddingRateLimitError: The backend kept answering 429
            EmbeddingError: Any other upstream failure
            MalformedResponseError: The backend payload failed validation
        """
        if not texts:
            return []

        logger.info(
            f"Generating embeddings: model={self._model_name}, "
            f"texts={len(texts)}, batch_size={self.batch_size}"
        )

        out: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            out.extend(await self._embed_batch(texts[start : start + self.batch_size]))
        return out

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]
