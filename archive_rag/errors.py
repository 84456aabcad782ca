"""Typed errors raised by the retrieval-augmented answering pipeline.

Every error carries the pipeline ``stage`` (or component) that failed and the HTTP
status the API boundary should answer with. Provider exceptions from the OpenAI SDK
are classified here so each component applies the same retry policy.
"""
import asyncio

import httpx
import openai


class RAGError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, stage: str, http_status: int = 500):
        self.message = message
        self.stage = stage
        self.http_status = http_status
        super().__init__(message)


class ConfigurationError(RAGError):
    """A required credential or setting is missing."""

    def __init__(self, message: str, setting: str):
        self.setting = setting
        super().__init__(message, "configuration", 500)


class EmptyInputError(RAGError):
    """Blank text was passed where non-blank text is required."""

    def __init__(self, message: str = "Cannot generate embedding for empty text"):
        super().__init__(message, "embedding", 400)


class TransientProviderError(RAGError):
    """A provider call failed in a way that may succeed on retry."""

    def __init__(self, message: str, stage: str):
        super().__init__(message, stage, 503)


class InvalidRequestError(RAGError):
    """A provider or the index rejected the request as malformed. Never retried."""

    def __init__(self, message: str, stage: str = "request"):
        super().__init__(message, stage, 400)


class EmbeddingGenerationError(RAGError):
    """Embedding failed after the retry budget was exhausted."""

    def __init__(self, message: str):
        super().__init__(message, "embedding", 503)


class GenerationError(RAGError):
    """The generative model call failed."""

    def __init__(self, message: str):
        super().__init__(message, "generation", 503)


class IndexNotReadyError(RAGError):
    """The vector index does not exist or has not been provisioned."""

    def __init__(self, index_name: str):
        self.index_name = index_name
        super().__init__(
            f"Vector index '{index_name}' does not exist. Run ingestion with --init first.",
            "retrieval",
            503,
        )


class IndexProvisioningTimeout(RAGError):
    """Index creation did not become ready within the bounded wait."""

    def __init__(self, index_name: str, timeout: float):
        self.index_name = index_name
        self.timeout = timeout
        super().__init__(
            f"Index '{index_name}' did not become ready within {timeout:.0f}s",
            "index_provisioning",
            503,
        )


class SummarizationFailure(RAGError):
    """Summarization call failed; recovered by the truncation fallback."""

    def __init__(self, message: str):
        super().__init__(message, "summarization", 500)


class DocumentTooLargeError(RAGError):
    """A document exceeds the ingestion token ceiling."""

    def __init__(self, document_id: str, tokens: int, max_tokens: int):
        self.document_id = document_id
        self.tokens = tokens
        self.max_tokens = max_tokens
        super().__init__(
            f"Document {document_id} too large ({tokens:,} tokens). Maximum: {max_tokens:,} tokens.",
            "ingestion",
            413,
        )


_NON_RETRYABLE = (
    openai.BadRequestError,
    openai.UnprocessableEntityError,
    openai.NotFoundError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
)


def is_invalid_request(exc: BaseException) -> bool:
    """True for provider errors that will fail again no matter how often they are sent."""
    return isinstance(exc, (InvalidRequestError, EmptyInputError) + _NON_RETRYABLE)


def is_transient(exc: BaseException) -> bool:
    """Classify an exception as worth retrying.

    Rate limits, connection failures, timeouts and 5xx responses are transient.
    Malformed requests and credential problems are not.
    """
    if is_invalid_request(exc):
        return False
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.NetworkError))


# Failures a provider or network call can raise; anything else is a bug and propagates.
PROVIDER_ERRORS = (openai.OpenAIError, RAGError, httpx.HTTPError, asyncio.TimeoutError)


def rejection_for(exc: BaseException, stage: str):
    """Typed error for a non-retryable provider failure, or None if ``exc`` is retryable.

    Credential problems become ConfigurationError naming the key; malformed requests
    become InvalidRequestError.
    """
    if isinstance(exc, RAGError) and is_invalid_request(exc):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ConfigurationError("OpenAI rejected the configured API key", "OPENAI_API_KEY")
    if is_invalid_request(exc):
        return InvalidRequestError(f"Request rejected by provider: {exc}", stage=stage)
    return None
