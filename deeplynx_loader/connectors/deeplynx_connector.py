"""
DeepLynx Source Connector
=========================

Authenticated client for the DeepLynx data-management API.

Handles the bearer token lifecycle (lazy refresh from the API key/secret
pair), data source download requests, streamed file downloads and pushes
of local files or raw payloads into a data source.
"""

import logging
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import jwt
import requests
from requests_toolbelt import MultipartEncoder

from ..errors import (
    ConfigurationError,
    ConflictingFields,
    FilesystemError,
    MalformedToken,
    MissingCredential,
    MissingExpirationClaim,
    MissingFields,
    RemoteServiceError,
    ResponseParsingError,
    TokenRefreshFailed,
    TransportError,
    UnknownContentType,
)

logger = logging.getLogger(__name__)

TOKEN_EXPIRY = "12h"
IMPORT_FIELD_NAME = "data"
CHUNK_SIZE = 64 * 1024


@dataclass
class DownloadQuery:
    """Query options for a data source download request."""

    start_time: Optional[str] = None
    end_time: Optional[str] = None
    secondary_index_name: Optional[str] = None
    secondary_index_start_value: Optional[int] = None

    def to_params(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time or "",
            "endTime": self.end_time or "",
            "secondaryIndexName": self.secondary_index_name or "",
            "secondaryIndexStartValue": self.secondary_index_start_value or 0,
        }


@dataclass
class DownloadHandle:
    """Pointer to a prepared extract file, redeemed with ``download_file``."""

    id: str
    container_id: str
    data_source_id: Optional[str]
    file_name: str
    file_size: float
    md5hash: str

    @classmethod
    def from_dict(cls, raw: Any) -> "DownloadHandle":
        # ids arrive as strings because they are bigints on the server
        try:
            data_source_id = raw.get("data_source_id")
            return cls(
                id=str(raw["id"]),
                container_id=str(raw["container_id"]),
                data_source_id=None if data_source_id is None else str(data_source_id),
                file_name=str(raw["file_name"]),
                file_size=float(raw["file_size"]),
                md5hash=str(raw["md5hash"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ResponseParsingError(f"unable to parse download response from DeepLynx: {e!r}") from e


class DeepLynxConnector:
    """
    DeepLynx API client.

    The client is secured only when both an API key and secret are
    configured. A secured client fetches a bearer token before its first
    call and again whenever the held token has expired; an unsecured client
    never sends one.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize DeepLynx connector.

        Args:
            base_url: DeepLynx server address, e.g. http://localhost:8090
            api_key: API key used to request bearer tokens
            api_secret: API secret used to request bearer tokens
            timeout: Optional transport timeout in seconds for every request
        """
        if not base_url or not base_url.strip():
            raise ConfigurationError("DeepLynx base url is required")

        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.secured = bool(api_key) and bool(api_secret)
        self.timeout = timeout
        self.bearer_token: Optional[str] = None
        self.session = requests.Session()

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _token_expiration(token: str) -> float:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise MalformedToken(f"unable to decode bearer token: {e}") from e

        exp = claims.get("exp")
        if exp is None:
            raise MissingExpirationClaim("bearer token has no expiration claim")
        try:
            return float(exp)
        except (TypeError, ValueError) as e:
            raise MalformedToken(f"bearer token expiration claim is not numeric: {exp!r}") from e

    def token_expired(self) -> bool:
        """
        Check whether the held token has expired.

        Returns:
            False when no token is held, otherwise whether ``exp`` is at or
            before the current time
        """
        if self.bearer_token is None:
            return False
        return self._token_expiration(self.bearer_token) <= time.time()

    def needs_token(self) -> bool:
        """Whether a token must be fetched before the next call."""
        if not self.secured:
            return False
        return self.bearer_token is None or self.token_expired()

    def ensure_fresh_token(self):
        """Fetch a new bearer token if the client is secured and has no valid one."""
        if self.needs_token():
            self._refresh_token()

    def _refresh_token(self):
        if not self.api_key:
            raise MissingCredential("api_key is required to request a token")
        if not self.api_secret:
            raise MissingCredential("api_secret is required to request a token")

        url = f"{self.base_url}/oauth/token"
        try:
            response = self.session.request(
                "GET",
                url,
                headers={
                    "x-api-key": self.api_key,
                    "x-api-secret": self.api_secret,
                    "expiry": TOKEN_EXPIRY,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TokenRefreshFailed(f"unable to fetch token from {url}: {e}") from e

        # the token comes back as a JSON string literal
        token = response.text.strip().strip('"')
        if not token:
            raise MalformedToken("token endpoint returned an empty token")

        self._token_expiration(token)
        self.bearer_token = token
        logger.debug("Fetched new DeepLynx bearer token")

    def _auth_headers(self) -> Dict[str, str]:
        if self.bearer_token is None:
            return {}
        return {"Authorization": f"Bearer {self.bearer_token}"}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, method: str, route: str, headers: Optional[Dict] = None, **kwargs) -> requests.Response:
        headers = dict(headers or {})
        headers.update(self._auth_headers())
        url = f"{self.base_url}{route}"

        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {route} failed: {e}") from e

    @staticmethod
    def _read_envelope(response: requests.Response) -> Any:
        """
        Unwrap a DeepLynx ``{value, error}`` response envelope.

        Returns:
            The envelope's ``value`` (may be None)
        """
        try:
            body = response.json()
        except ValueError as e:
            if not response.ok:
                raise TransportError(
                    f"DeepLynx responded with HTTP {response.status_code}",
                    status_code=response.status_code,
                ) from e
            raise ResponseParsingError("DeepLynx response body is not valid JSON") from e

        if isinstance(body, dict) and body.get("error") is not None:
            error = body["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            try:
                code = int(error.get("code") or 500)
            except (TypeError, ValueError):
                code = 500
            raise RemoteServiceError(code=code, message=error.get("message") or "service error")

        if not response.ok:
            raise TransportError(
                f"DeepLynx responded with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise ResponseParsingError("DeepLynx response body is not an envelope")

        return body.get("value")

    # ------------------------------------------------------------------
    # API operations
    # ------------------------------------------------------------------

    def initiate_download(
        self,
        container_id: int,
        data_source_id: int,
        query: Optional[DownloadQuery] = None,
    ) -> DownloadHandle:
        """
        Ask DeepLynx to prepare an extract of a data source.

        Args:
            container_id: Container the data source lives in
            data_source_id: Data source to extract
            query: Start/end time and secondary index options

        Returns:
            DownloadHandle describing the prepared file
        """
        self.ensure_fresh_token()
        query = query or DownloadQuery()

        route = f"/containers/{container_id}/import/datasources/{data_source_id}/download"
        response = self._send("GET", route, params=query.to_params())

        value = self._read_envelope(response)
        if value is None:
            raise ResponseParsingError("DeepLynx download response carried no value")

        return DownloadHandle.from_dict(value)

    def download_file(self, container_id: int, file_id: Union[int, str], delete_after: bool = True) -> Iterator[bytes]:
        """
        Stream a file's bytes.

        Args:
            container_id: Container owning the file
            file_id: File to download
            delete_after: Ask DeepLynx to delete the file once it has been read

        Returns:
            Iterator over the body's byte chunks; the response is closed
            once the iterator is exhausted or closed
        """
        self.ensure_fresh_token()

        route = f"/containers/{container_id}/files/{file_id}/download"
        response = self._send(
            "GET",
            route,
            params={"deleteAfter": "true" if delete_after else "false"},
            stream=True,
        )
        if not response.ok:
            status_code = response.status_code
            response.close()
            raise TransportError(f"file download failed with HTTP {status_code}", status_code=status_code)

        return self._iter_body(response)

    @staticmethod
    def _iter_body(response: requests.Response) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise TransportError(f"file download interrupted: {e}") from e
        finally:
            response.close()

    def import_data(
        self,
        container_id: int,
        data_source_id: int,
        file_path: Optional[Union[str, Path]] = None,
        data: Optional[Any] = None,
    ) -> Any:
        """
        Push a file or a raw payload into a data source.

        Args:
            container_id: Container the data source lives in
            data_source_id: Target data source
            file_path: Local file streamed as multipart form data
            data: Raw JSON payload (bytes/str sent verbatim, other values serialized)

        Returns:
            The envelope value returned by DeepLynx, if any
        """
        if file_path is None and data is None:
            raise MissingFields(["file_path", "data"])
        if file_path is not None and data is not None:
            raise ConflictingFields("supply either file_path or data, not both")

        self.ensure_fresh_token()
        route = f"/containers/{container_id}/import/datasources/{data_source_id}/imports"
        params = {"fastLoad": "true"}

        if file_path is not None:
            path = Path(file_path)
            content_type, _ = mimetypes.guess_type(path.name)
            if content_type is None:
                raise UnknownContentType(f"unable to guess content type for {path}")

            try:
                handle = open(path, "rb")
            except OSError as e:
                raise FilesystemError(f"unable to open {path}: {e}") from e

            with handle:
                # the encoder reads the file as the request body is sent
                encoder = MultipartEncoder(fields={IMPORT_FIELD_NAME: (path.name, handle, content_type)})
                response = self._send(
                    "POST",
                    route,
                    params=params,
                    data=encoder,
                    headers={"Content-Type": encoder.content_type},
                )
            logger.info(f"Pushed {path.name} to data source {data_source_id}")
        elif isinstance(data, (bytes, bytearray, str)):
            response = self._send(
                "POST",
                route,
                params=params,
                data=data,
                headers={"Content-Type": "application/json"},
            )
        else:
            response = self._send("POST", route, params=params, json=data)

        if response.ok and not response.content:
            return None
        return self._read_envelope(response)
