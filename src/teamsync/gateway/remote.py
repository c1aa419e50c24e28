"""
Remote store gateway.

Async façade over the managed backend's row API (PostgREST conventions) and
its object storage API. The gateway is stateless apart from its HTTP session:
no retries, no caching. Every failure is raised as a typed TeamSyncError.
"""

import asyncio
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Type
from urllib.parse import quote, unquote, urlsplit

import aiohttp

from ..models.collections import Collection, Filter, OrderBy
from ..models.records import Record
from ..utils.config import BackendConfig, StorageConfig, TeamSyncConfig
from ..utils.errors import (
    ErrorContext,
    TeamSyncError,
    TransportError,
    ValidationError,
    NotFoundError,
    QuotaError,
    ConflictError,
    RecordDecodeError,
)
from ..utils.logging import get_logger, log_function_call


logger = get_logger("teamsync.gateway")

_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def filter_params(filter: Optional[Filter]) -> Dict[str, str]:
    """Render an equality filter as PostgREST query parameters."""
    params: Dict[str, str] = {}
    for column, value in (filter or {}).items():
        if not isinstance(column, str) or not _COLUMN_RE.match(column):
            raise ValidationError("filter", column, "column names must be identifiers")
        if isinstance(value, bool):
            value = "true" if value else "false"
        params[column] = f"eq.{value}"
    return params


class RemoteStoreGateway:
    """Typed access to remote rows, procedures and objects."""

    def __init__(
        self,
        backend: BackendConfig,
        storage: Optional[StorageConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.backend = backend
        self.storage = storage or StorageConfig()
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: TeamSyncConfig) -> 'RemoteStoreGateway':
        return cls(config.backend, config.storage)

    async def __aenter__(self) -> 'RemoteStoreGateway':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if this gateway created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.backend.request_timeout)
            )
            self._owns_session = True
        return self._session

    def _headers(self, path: str, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        token = self.backend.access_token or self.backend.api_key
        headers = {
            "apikey": self.backend.api_key,
            "Authorization": f"Bearer {token}",
        }
        if path.startswith("/rest/"):
            headers["Accept-Profile"] = self.backend.schema_name
            headers["Content-Profile"] = self.backend.schema_name
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Mapping[str, str]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Issue one request and return the decoded JSON body (None when empty)."""
        url = f"{self.backend.url}{path}"
        context = ErrorContext(
            component="gateway",
            operation=operation,
            metadata={"method": method, "path": path},
        )
        session = self._get_session()

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=self._headers(path, headers),
            ) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request timed out: {method} {path}", context=context, cause=e) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Request failed: {method} {path} - {e}", context=context, cause=e) from e

        body = _decode_body(text)

        if status >= 400:
            error = _map_error(status, body, text, context, self.storage.max_upload_bytes)
            logger.warning(
                "request_failed",
                operation=operation,
                path=path,
                status=status,
                error_code=error.code,
            )
            raise error

        logger.debug("request_completed", operation=operation, path=path, status=status)

        if text and body is None:
            raise TransportError(f"Undecodable response body from {path}", context=context, status=status)
        return body

    # Rows

    @log_function_call(logger)
    async def fetch_collection(
        self,
        collection: Collection,
        filter: Optional[Filter] = None,
        order: Optional[OrderBy] = None,
    ) -> List[Record]:
        """
        Read every row of a collection matching an equality filter.

        Procedure-backed collections call the procedure with the filter as
        parameters; ordering is then left to the caller.
        """
        if collection.procedure:
            return await self.call_procedure(
                collection.procedure, dict(filter or {}), collection.record_type
            )

        params = {"select": "*", "order": (order or collection.order).to_param()}
        params.update(filter_params(filter))
        rows = await self._request(
            "GET", f"/rest/v1/{collection.table}", "fetch_collection", params=params
        )
        return collection.decode(rows if rows is not None else [])

    async def insert(self, collection: Collection, values: Mapping[str, Any]) -> Record:
        """Insert one row and return the created record."""
        rows = await self._request(
            "POST",
            f"/rest/v1/{collection.table}",
            "insert",
            json_body=dict(values),
            headers={"Prefer": "return=representation"},
        )
        records = collection.decode(rows if rows is not None else [])
        if not records:
            raise RecordDecodeError(collection.name, "<rows>", rows, "insert returned no row")
        logger.info("row_inserted", collection=collection.name, id=records[0].id)
        return records[0]

    async def update(
        self,
        collection: Collection,
        record_id: str,
        changes: Mapping[str, Any],
    ) -> Record:
        """Apply changes to one row by id and return the updated record."""
        if not changes:
            raise ValidationError("changes", changes, "at least one column must change")
        rows = await self._request(
            "PATCH",
            f"/rest/v1/{collection.table}",
            "update",
            params={"id": f"eq.{record_id}"},
            json_body=dict(changes),
            headers={"Prefer": "return=representation"},
        )
        records = collection.decode(rows if rows is not None else [])
        if not records:
            raise NotFoundError(f"No {collection.name} row with id {record_id}")
        return records[0]

    async def remove(self, collection: Collection, record_id: str) -> None:
        """Delete one row by id. Raises NotFoundError when nothing was deleted."""
        rows = await self._request(
            "DELETE",
            f"/rest/v1/{collection.table}",
            "remove",
            params={"id": f"eq.{record_id}"},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise NotFoundError(f"No {collection.name} row with id {record_id}")
        logger.info("row_removed", collection=collection.name, id=record_id)

    async def call_procedure(
        self,
        name: str,
        params: Mapping[str, Any],
        record_type: Type[Any],
    ) -> List[Record]:
        """Call a row-returning procedure."""
        rows = await self._request(
            "POST", f"/rest/v1/rpc/{name}", "call_procedure", json_body=dict(params)
        )
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise RecordDecodeError(name, "<rows>", rows, "expected a list")
        return [record_type.from_row(row) for row in rows]

    # Objects

    async def upload_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Store a binary object and return its public URL.

        Payloads above the configured limit are rejected before any request.
        """
        limit = self.storage.max_upload_bytes
        if len(data) > limit:
            raise QuotaError(len(data), limit)
        if not path:
            raise ValidationError("path", path, "object path must not be empty")

        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(path)}",
            "upload_object",
            data=bytes(data),
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "false",
            },
        )
        logger.info("object_uploaded", bucket=bucket, path=path, size=len(data))
        return self.public_url(bucket, path)

    async def remove_object(self, bucket: str, path: str) -> None:
        """Delete a stored object. Raises NotFoundError if it does not exist."""
        await self._request(
            "DELETE", f"/storage/v1/object/{bucket}/{quote(path)}", "remove_object"
        )
        logger.info("object_removed", bucket=bucket, path=path)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.backend.url}/storage/v1/object/public/{bucket}/{quote(path)}"

    def object_path_from_url(self, bucket: str, url: str) -> Optional[str]:
        """Recover the object path from a public URL, or None if it is not one of ours."""
        prefix = f"{self.backend.url}/storage/v1/object/public/{bucket}/"
        parts = urlsplit(url)
        bare = f"{parts.scheme}://{parts.netloc}{parts.path}"
        if not bare.startswith(prefix):
            return None
        path = unquote(bare[len(prefix):])
        return path or None


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _map_error(
    status: int,
    body: Any,
    text: str,
    context: ErrorContext,
    upload_limit: int,
) -> TeamSyncError:
    """Map an HTTP failure onto the error taxonomy."""
    message = text[:200] if text else f"HTTP {status}"
    if isinstance(body, dict):
        # Storage reports its own status in the body, often behind a 400
        embedded = str(body.get("statusCode", ""))
        if embedded.isdigit():
            status = int(embedded)
        message = str(body.get("message") or body.get("error") or message)

    context.metadata["status"] = status

    if status == 404:
        return NotFoundError(message, context=context, status=status)
    if status == 409:
        return ConflictError(message, context=context, status=status)
    if status == 413:
        return QuotaError(None, upload_limit, context=context, status=status)
    if status in (400, 422):
        return ValidationError("request", None, message, context=context, status=status)
    return TransportError(f"HTTP {status}: {message}", context=context, status=status)


__all__ = [
    'RemoteStoreGateway',
    'filter_params',
]
