from recollect.providers.embedding import EmbeddingClient, OllamaEmbeddingClient
from recollect.providers.completion import CompletionClient, OllamaCompletionClient

__all__ = [
    "EmbeddingClient",
    "OllamaEmbeddingClient",
    "CompletionClient",
    "OllamaCompletionClient",
]
