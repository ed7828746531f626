"""Exception classes for the Qase client and migration pipeline."""

RESPONSE_PREVIEW_CHARS = 200


class QaseClientError(Exception):
    """Base exception for Qase client errors."""

    pass


class QaseConnectionError(QaseClientError):
    """Raised when the client cannot be used or the API cannot be reached."""

    pass


class QaseAPIError(QaseClientError):
    """Raised when the Qase API returns an error or a logical failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code if available
            response_text: Response body text if available
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.response_text:
            response_preview = self.response_text[:RESPONSE_PREVIEW_CHARS]
            if len(self.response_text) > RESPONSE_PREVIEW_CHARS:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class RateLimitError(QaseAPIError):
    """Raised when rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_text: Response body text
            retry_after: Seconds to wait before retrying, if the server said
        """
        super().__init__(message, status_code, response_text)
        self.retry_after = retry_after


class ServerError(QaseAPIError):
    """Raised for 5xx server errors."""

    pass


class ClientError(QaseAPIError):
    """Raised for 4xx client errors other than 429."""

    pass


class AuthenticationError(ClientError):
    """Raised when authentication fails (401)."""

    pass


class NotFoundError(ClientError):
    """Raised when a requested entity is not found (404)."""

    pass


class MalformedResponseError(QaseAPIError):
    """Raised when a response body is not the JSON envelope we expect."""

    pass


class NetworkError(QaseClientError):
    """Raised for transport-level failures (connect, read, timeouts)."""

    pass


class ConfigurationError(ValueError):
    """Raised when a required setting is missing or invalid."""

    pass


class BulkPostError(QaseClientError):
    """Raised when a result chunk could not be posted.

    Chunks after the failing one are never attempted, so ``posted`` is the
    exact number of items that reached the target before the failure.
    """

    def __init__(
        self,
        chunk_index: int,
        total_chunks: int,
        posted: int,
        cause: Exception,
    ) -> None:
        super().__init__(
            f"chunk {chunk_index}/{total_chunks} failed after {posted} posted items: {cause}"
        )
        self.chunk_index = chunk_index
        self.total_chunks = total_chunks
        self.posted = posted
        self.cause = cause


class TruncatedFetchError(QaseClientError):
    """Raised when a listing the pipeline must see in full hit the page ceiling."""

    def __init__(self, label: str, pages: int, items: int) -> None:
        super().__init__(
            f"{label} listing stopped at the page limit ({pages} pages, {items} items)"
        )
        self.label = label
        self.pages = pages
        self.items = items


class MigrationCancelledError(QaseClientError):
    """Raised inside a run-group task once the cancellation token is set."""

    pass


def is_retryable(error: BaseException) -> bool:
    """Return True for failures worth retrying: 429, 5xx and transport errors."""
    return isinstance(error, RateLimitError | ServerError | NetworkError)
