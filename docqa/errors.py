"""Exception taxonomy for the question-answering pipeline."""


class DocQAError(Exception):
    """Base class for all docqa errors."""


class ConfigurationError(DocQAError):
    """Configuration value is malformed."""


class ConfigurationMissing(ConfigurationError):
    """Required identifier or credential is absent.

    Attributes:
        missing: Names of the missing settings.
    """

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class EmbeddingUnavailable(DocQAError):
    """Embedding backend is unreachable, unauthorized or timed out."""


class VectorIndexError(DocQAError):
    """Base class for vector store failures."""


class IndexUnavailable(VectorIndexError):
    """Backing store is unreachable or the connection is not open."""


class IndexNotFound(VectorIndexError):
    """Named collection does not exist in the store."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Vector index '{name}' does not exist")


class SearchRejected(VectorIndexError):
    """Store refused the query vector (e.g. dimension mismatch)."""


class GenerationFailure(DocQAError):
    """Language-model invocation failed."""
