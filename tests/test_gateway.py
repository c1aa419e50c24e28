"""
Tests for the remote store gateway against an in-process HTTP backend.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp import test_utils

from teamsync.gateway.remote import RemoteStoreGateway, filter_params
from teamsync.models.collections import NOTIFICATIONS, TASK_ATTACHMENTS, TEAM_MEMBERS
from teamsync.models.records import NotificationRecord, TeamMemberRecord
from teamsync.utils.config import BackendConfig, StorageConfig
from teamsync.utils.errors import (
    ConflictError,
    NotFoundError,
    QuotaError,
    RecordDecodeError,
    TransportError,
    ValidationError,
)
from tests.utils import notification_row


pytestmark = pytest.mark.integration


class FakeBackend:
    """Minimal PostgREST and storage API."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.requests: List[Dict[str, Any]] = []
        self.forced: Optional[Tuple[int, Any]] = None

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._record])
        app.router.add_post("/rest/v1/rpc/{name}", self.rpc)
        app.router.add_get("/rest/v1/{table}", self.select)
        app.router.add_post("/rest/v1/{table}", self.insert)
        app.router.add_patch("/rest/v1/{table}", self.update)
        app.router.add_delete("/rest/v1/{table}", self.delete)
        app.router.add_post("/storage/v1/object/{bucket}/{path:.+}", self.upload)
        app.router.add_delete("/storage/v1/object/{bucket}/{path:.+}", self.remove_object)
        return app

    @web.middleware
    async def _record(self, request, handler):
        body = await request.read()
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": request.headers.copy(),
            "body": body,
        })
        if self.forced is not None:
            status, payload = self.forced
            self.forced = None
            return web.json_response(payload, status=status)
        return await handler(request)

    def _matching(self, request) -> List[Dict[str, Any]]:
        rows = self.tables.get(request.match_info["table"], [])
        result = []
        for row in rows:
            ok = True
            for column, expr in request.query.items():
                if column in ("select", "order"):
                    continue
                if not expr.startswith("eq.") or str(row.get(column)) != expr[3:]:
                    ok = False
            if ok:
                result.append(row)
        return result

    async def select(self, request):
        return web.json_response(self._matching(request))

    async def insert(self, request):
        row = await request.json()
        table = self.tables.setdefault(request.match_info["table"], [])
        row.setdefault("id", f"row-{len(table) + 1}")
        row.setdefault("created_at", "2024-03-01T09:00:00Z")
        table.append(row)
        return web.json_response([row], status=201)

    async def update(self, request):
        changes = await request.json()
        rows = self._matching(request)
        for row in rows:
            row.update(changes)
        return web.json_response(rows)

    async def delete(self, request):
        rows = self._matching(request)
        table = self.tables.get(request.match_info["table"], [])
        for row in rows:
            table.remove(row)
        return web.json_response(rows)

    async def rpc(self, request):
        return web.json_response(self.tables.get(f"rpc:{request.match_info['name']}", []))

    async def upload(self, request):
        key = (request.match_info["bucket"], request.match_info["path"])
        self.objects[key] = await request.read()
        return web.json_response({"Key": "/".join(key)})

    async def remove_object(self, request):
        key = (request.match_info["bucket"], request.match_info["path"])
        if key not in self.objects:
            return web.json_response(
                {"statusCode": "404", "error": "not_found", "message": "Object not found"},
                status=400,
            )
        del self.objects[key]
        return web.json_response({"message": "Successfully deleted"})


@pytest.fixture
async def backend():
    fake = FakeBackend()
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
async def remote(backend):
    gateway = RemoteStoreGateway(
        BackendConfig(url=backend.url, api_key="anon", access_token="token", schema_name="app"),
        StorageConfig(max_upload_bytes=1024),
    )
    yield gateway
    await gateway.close()


class TestRows:
    """Test row reads and writes."""

    @pytest.mark.asyncio
    async def test_fetch_builds_query_and_headers(self, backend, remote):
        backend.tables["notifications"] = [notification_row("n1"), notification_row("n2", read=True)]

        records = await remote.fetch_collection(NOTIFICATIONS)

        assert [r.id for r in records] == ["n1", "n2"]
        assert all(isinstance(r, NotificationRecord) for r in records)
        request = backend.requests[-1]
        assert request["query"] == {"select": "*", "order": "created_at.desc"}
        assert request["headers"]["apikey"] == "anon"
        assert request["headers"]["Authorization"] == "Bearer token"
        assert request["headers"]["Accept-Profile"] == "app"

    @pytest.mark.asyncio
    async def test_fetch_with_filter(self, backend, remote):
        backend.tables["task_attachments"] = [
            {"id": "a1", "task_id": "t1", "name": "x.pdf", "file_url": "u", "file_type": "pdf"},
            {"id": "a2", "task_id": "t2", "name": "y.pdf", "file_url": "u", "file_type": "pdf"},
        ]

        records = await remote.fetch_collection(TASK_ATTACHMENTS, {"task_id": "t1"})

        assert [r.id for r in records] == ["a1"]
        assert backend.requests[-1]["query"]["task_id"] == "eq.t1"

    @pytest.mark.asyncio
    async def test_procedure_backed_collection(self, backend, remote):
        backend.tables["rpc:get_workspace_members"] = [
            {"user_id": "u1", "role": "owner", "email": "u1@example.com", "joined_at": None},
        ]

        records = await remote.fetch_collection(TEAM_MEMBERS, {"workspace_id": "ws-1"})

        assert isinstance(records[0], TeamMemberRecord)
        request = backend.requests[-1]
        assert request["method"] == "POST"
        assert request["path"] == "/rest/v1/rpc/get_workspace_members"
        assert json.loads(request["body"]) == {"workspace_id": "ws-1"}

    @pytest.mark.asyncio
    async def test_malformed_rows(self, backend, remote):
        backend.tables["notifications"] = [{"id": "n1"}]

        with pytest.raises(RecordDecodeError):
            await remote.fetch_collection(NOTIFICATIONS)

    @pytest.mark.asyncio
    async def test_insert_returns_record(self, backend, remote):
        record = await remote.insert(NOTIFICATIONS, {"title": "Hi", "content": "", "read": False})

        assert record.title == "Hi"
        assert backend.requests[-1]["headers"]["Prefer"] == "return=representation"
        assert len(backend.tables["notifications"]) == 1

    @pytest.mark.asyncio
    async def test_update(self, backend, remote):
        backend.tables["notifications"] = [notification_row("n1")]

        record = await remote.update(NOTIFICATIONS, "n1", {"read": True})

        assert record.read is True
        assert backend.requests[-1]["query"] == {"id": "eq.n1"}

    @pytest.mark.asyncio
    async def test_update_missing_row(self, remote):
        with pytest.raises(NotFoundError):
            await remote.update(NOTIFICATIONS, "ghost", {"read": True})

    @pytest.mark.asyncio
    async def test_update_without_changes_is_local(self, backend, remote):
        with pytest.raises(ValidationError):
            await remote.update(NOTIFICATIONS, "n1", {})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_remove(self, backend, remote):
        backend.tables["notifications"] = [notification_row("n1")]

        await remote.remove(NOTIFICATIONS, "n1")

        assert backend.tables["notifications"] == []
        with pytest.raises(NotFoundError):
            await remote.remove(NOTIFICATIONS, "n1")


class TestObjects:
    """Test object storage."""

    @pytest.mark.asyncio
    async def test_upload_returns_public_url(self, backend, remote):
        url = await remote.upload_object("task-attachments", "t1/abc.pdf", b"%PDF", "application/pdf")

        assert url == f"{backend.url}/storage/v1/object/public/task-attachments/t1/abc.pdf"
        assert backend.objects[("task-attachments", "t1/abc.pdf")] == b"%PDF"
        assert backend.requests[-1]["headers"]["Content-Type"] == "application/pdf"
        assert remote.object_path_from_url("task-attachments", url) == "t1/abc.pdf"

    @pytest.mark.asyncio
    async def test_oversized_upload_never_sent(self, backend, remote):
        with pytest.raises(QuotaError) as exc_info:
            await remote.upload_object("task-attachments", "t1/big.bin", b"x" * 1025)

        assert exc_info.value.size == 1025
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_remove_missing_object(self, remote):
        with pytest.raises(NotFoundError):
            await remote.remove_object("task-attachments", "t1/none.pdf")

    def test_object_path_from_foreign_url(self, remote):
        assert remote.object_path_from_url("task-attachments", "https://elsewhere.test/x.pdf") is None
        assert remote.object_path_from_url(
            "other-bucket", remote.public_url("task-attachments", "t1/a.pdf")
        ) is None


class TestErrorMapping:
    """Test HTTP status mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [
        (500, TransportError),
        (503, TransportError),
        (401, TransportError),
        (403, TransportError),
        (400, ValidationError),
        (422, ValidationError),
        (404, NotFoundError),
        (409, ConflictError),
        (413, QuotaError),
    ])
    async def test_status_mapping(self, backend, remote, status, error_type):
        backend.forced = (status, {"message": "forced failure"})

        with pytest.raises(error_type) as exc_info:
            await remote.fetch_collection(NOTIFICATIONS)

        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        gateway = RemoteStoreGateway(BackendConfig(url="http://127.0.0.1:1", request_timeout=2))
        try:
            with pytest.raises(TransportError):
                await gateway.fetch_collection(NOTIFICATIONS)
        finally:
            await gateway.close()


class TestFilterParams:
    """Test filter rendering."""

    def test_equality_and_booleans(self):
        assert filter_params({"task_id": "t1", "read": False}) == {
            "task_id": "eq.t1",
            "read": "eq.false",
        }

    def test_rejects_non_identifier_columns(self):
        with pytest.raises(ValidationError):
            filter_params({"id;drop": "x"})
