"""Exception hierarchy for mnemos.

Validation errors are raised to the caller immediately. Collaborator and
parse errors are caught at batch boundaries and reported in the batch
result's ``errors`` list instead of aborting the batch.
"""


class MnemosError(Exception):
    """Base exception for all mnemos errors."""


class ValidationError(MnemosError, ValueError):
    """Invalid input supplied by the caller (empty query, bad regex, ...)."""


class DimensionMismatchError(ValidationError):
    """An embedding's dimension does not match the store's dimension.

    This is the signal that stored vectors must be re-embedded.
    """

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension {actual} does not match store dimension {expected}; "
            "run 'mnemos reindex' to re-embed stored content"
        )


class ConfigError(MnemosError):
    """Configuration file or environment is invalid."""


class StorageError(MnemosError):
    """Storage substrate failed in a way the caller can act on."""


class CollaboratorError(MnemosError):
    """An external collaborator (embedding provider, judgment LLM) failed."""


class EmbeddingError(CollaboratorError):
    """The embedding provider could not produce a vector."""


class LLMError(CollaboratorError):
    """The judgment LLM request failed."""


class LLMTimeoutError(LLMError):
    """The judgment LLM did not answer within the configured timeout."""


class ClassificationParseError(MnemosError):
    """The judgment LLM answered, but not with a usable JSON object."""
