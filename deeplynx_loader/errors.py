"""
Loader Errors
=============

Exception hierarchy for the DeepLynx loader. Library errors (requests,
SQLAlchemy/DuckDB, PyJWT, filesystem) are translated into one of these at
the module that talks to the library, so callers only ever handle
``LoaderError`` subclasses.
"""

from typing import List, Optional


class LoaderError(Exception):
    """Base exception for all loader errors."""

    pass


class ConfigurationError(LoaderError):
    """Configuration is missing a required value or holds an invalid one."""

    pass


class MissingCredential(LoaderError):
    """A secured call needed an API key or secret that is not configured."""

    pass


class TokenRefreshFailed(LoaderError):
    """The token endpoint could not be reached or answered with an error."""

    pass


class MalformedToken(LoaderError):
    """The bearer token could not be decoded."""

    pass


class MissingExpirationClaim(MalformedToken):
    """The bearer token carries no ``exp`` claim."""

    pass


class RemoteServiceError(LoaderError):
    """DeepLynx answered with an error envelope."""

    def __init__(self, code: int = 500, message: str = "service error"):
        self.code = code
        self.message = message
        super().__init__(f"{code}-{message}")


class ResponseParsingError(LoaderError):
    """A response body did not have the expected shape."""

    pass


class UnknownContentType(LoaderError):
    """No content type could be guessed for a file being pushed."""

    pass


class MissingFields(LoaderError):
    """Required fields were not supplied."""

    def __init__(self, fields: Optional[List[str]] = None):
        self.fields = fields or []
        detail = f": {', '.join(self.fields)}" if self.fields else ""
        super().__init__(f"missing required fields{detail}")


class ConflictingFields(LoaderError):
    """Mutually exclusive fields were supplied together."""

    pass


class StoreError(LoaderError):
    """A local store operation failed."""

    pass


class InvalidCursorEncoding(LoaderError):
    """A blob stored in the cursor column is not valid UTF-8."""

    pass


class InvalidSecondaryIndex(LoaderError):
    """The configured secondary index column is null or not an unsigned integer."""

    pass


class TransportError(LoaderError):
    """Network failure, or an HTTP error status without an error envelope."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class FilesystemError(LoaderError):
    """A staging file could not be created, written or removed."""

    pass
