"""
Providers for external services used by the index engine.
"""

from .embedding_service import (
    EmbeddingResponse,
    EmbeddingResult,
    EmbeddingServiceClient,
    EmbeddingServiceError,
)

__all__ = [
    "EmbeddingResponse",
    "EmbeddingResult",
    "EmbeddingServiceClient",
    "EmbeddingServiceError",
]
