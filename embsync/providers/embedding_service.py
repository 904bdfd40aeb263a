"""
HTTP client for the embeddings API.

Generates int8-quantized embeddings for batches of record texts. The
retrying variant backs off exponentially on transient errors (5xx,
timeouts, connection errors) and honours Retry-After on 429.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

# Retry config for generate_embeddings_with_retry
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 60.0

DEFAULT_TIMEOUT = 30.0

# Service limit on texts per request
MAX_TEXTS_PER_REQUEST = 500

GENERATE_PATH = "/api/v1/embeddings/generate"
GENERATE_QUERY_PATH = "/api/v1/embeddings/generate-query"


class EmbeddingServiceError(Exception):
    """Error communicating with the embeddings API."""


@dataclass
class EmbeddingResult:
    """One embedding returned by the service."""
    item_id: int
    embedding: list[int]
    dimensions: int


@dataclass
class EmbeddingResponse:
    """Embeddings for a batch, plus the model that produced them."""
    embeddings: list[EmbeddingResult] = field(default_factory=list)
    model: str = ""

    @classmethod
    def from_json(cls, data: dict) -> "EmbeddingResponse":
        try:
            embeddings = [
                EmbeddingResult(
                    item_id=int(e["item_id"]),
                    embedding=list(e["embedding"]),
                    dimensions=int(e.get("dimensions", len(e["embedding"]))),
                )
                for e in data.get("embeddings", [])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise EmbeddingServiceError(f"Malformed embeddings response: {e}") from e
        return cls(embeddings=embeddings, model=data.get("model", ""))


class EmbeddingServiceClient:
    """HTTP client for the embeddings API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Embeddings API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        self._client = httpx.Client(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @staticmethod
    def _validate(texts: list[str], ids: list[int]) -> None:
        if len(texts) != len(ids):
            raise ValueError("texts and item_ids must have the same length")
        if not texts:
            raise ValueError("texts must not be empty")
        if len(texts) > MAX_TEXTS_PER_REQUEST:
            raise ValueError(f"Batch size cannot exceed {MAX_TEXTS_PER_REQUEST} items")

    def generate_embeddings(self, texts: list[str], ids: list[int]) -> EmbeddingResponse:
        """POST /api/v1/embeddings/generate -> embeddings for one batch.

        Single attempt. HTTP errors surface as httpx exceptions.
        """
        self._validate(texts, ids)
        resp = self._client.post(GENERATE_PATH, json={"texts": texts, "item_ids": ids})
        resp.raise_for_status()
        return EmbeddingResponse.from_json(resp.json())

    def generate_embeddings_with_retry(
        self, texts: list[str], ids: list[int],
    ) -> EmbeddingResponse:
        """Generate embeddings, retrying transient failures.

        Retries up to MAX_RETRIES times with exponential backoff on 5xx,
        timeouts and connection errors. 429 waits for Retry-After (capped).
        Other 4xx responses are not retried.

        Raises:
            ValueError: On invalid input (not retried)
            EmbeddingServiceError: When retries are exhausted or the
                request is rejected
        """
        self._validate(texts, ids)

        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                return self.generate_embeddings(texts, ids)
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429:
                    retry_after = min(
                        float(e.response.headers.get("Retry-After", "5")), MAX_RETRY_AFTER,
                    )
                    logger.info("Rate limited, retrying after %.1fs", retry_after)
                    last_error = e
                    time.sleep(retry_after)
                    continue
                if status < 500:
                    raise EmbeddingServiceError(
                        f"Embedding request rejected: {status} {e.response.text}"
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Embedding attempt %d failed, retrying in %.1fs: %s",
                    attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise EmbeddingServiceError(
            f"Embedding request failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def generate_query_embedding(self, query: str) -> EmbeddingResult:
        """POST /api/v1/embeddings/generate-query -> embedding for a search query."""
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")
        try:
            resp = self._client.post(GENERATE_QUERY_PATH, json={"query": query})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise EmbeddingServiceError(
                f"Query embedding failed: {e.response.status_code}"
            ) from e
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            raise EmbeddingServiceError(f"Query embedding failed: {e}") from e
        return EmbeddingResult(
            item_id=int(data.get("item_id", 0)),
            embedding=list(data["embedding"]),
            dimensions=int(data.get("dimensions", len(data["embedding"]))),
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()
