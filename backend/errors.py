"""Error taxonomy shared by the pipeline components.

Each error carries the HTTP status the API layer maps it to. ``ParseError``
is never mapped: the supervisor recovers from it locally.
"""


class RelayError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """Missing or malformed input."""

    status_code = 400


class RequestTooLargeError(ValidationError):
    """A model request exceeds the configured context limit."""


class NotFoundError(RelayError):
    """Unknown session, repository or deployment."""

    status_code = 404


class UpstreamServiceError(RelayError):
    """A model, hosting, repository or design service call failed."""

    status_code = 500

    def __init__(self, message: str, service: str = "upstream") -> None:
        super().__init__(message)
        self.service = service


class ServiceUnavailable(UpstreamServiceError):
    """An upstream service is unavailable or timed out after retries."""


class ParseError(RelayError):
    """Model output did not match the expected structure."""

    def __init__(self, message: str, raw_text: str) -> None:
        super().__init__(message)
        self.raw_text = raw_text
