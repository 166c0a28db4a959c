"""Tests for the status socket protocol, server and client."""

import asyncio
import json
import shutil
import stat
import tempfile
from pathlib import Path

import pytest

from ctxguard.ipc import (
    ArchivesResponse,
    Command,
    CommandType,
    EngineUnavailableError,
    IPCServer,
    ResponseStatus,
    SimpleResponse,
    StatusResponse,
    TangentResponse,
    UsageResponse,
    send_command,
)
from ctxguard.ipc.server import MAX_REQUEST_BYTES


@pytest.fixture
def socket_path():
    directory = Path(tempfile.mkdtemp(prefix="ctxg", dir="/tmp"))
    yield directory / "s.sock"
    shutil.rmtree(directory, ignore_errors=True)


class TestProtocol:
    def test_command_round_trip(self):
        command = Command(type=CommandType.CLEANUP, context_id="ctx_1", mode="emergency")
        data = json.loads(command.to_json())

        assert data == {"type": "cleanup", "context_id": "ctx_1", "mode": "emergency"}
        assert Command.from_json(command.to_json()) == command

    def test_context_command_requires_id(self):
        with pytest.raises(ValueError, match="context_id"):
            Command.from_json('{"type": "usage"}')

    def test_unknown_command_type(self):
        with pytest.raises(ValueError):
            Command.from_json('{"type": "explode"}')

    def test_engine_commands_need_no_id(self):
        assert Command.from_json('{"type": "status"}').type == CommandType.STATUS

    def test_event_command_round_trip(self):
        command = Command(
            type=CommandType.EVENT,
            context_id="ctx_1",
            event_type="tool_result",
            payload={"stdout": "ok", "lines": [1, 2]},
            importance=3,
        )
        data = json.loads(command.to_json())

        assert data == {
            "type": "event",
            "context_id": "ctx_1",
            "event_type": "tool_result",
            "payload": {"stdout": "ok", "lines": [1, 2]},
            "importance": 3,
        }
        assert Command.from_json(command.to_json()) == command

    def test_create_command_keeps_force(self):
        command = Command(
            type=CommandType.CREATE,
            context_id="ctx_1",
            scope="project",
            overrides={"tokens": {"capacity": 1000}},
            force=True,
        )
        assert Command.from_json(command.to_json()) == command
        assert "force" not in json.loads(
            Command(type=CommandType.CREATE, context_id="ctx_1").to_json()
        )

    @pytest.mark.parametrize(
        "data,match",
        [
            ('{"type": "event", "context_id": "a"}', "event_type"),
            ('{"type": "tangent_push", "context_id": "a"}', "new_task"),
            ('{"type": "thresholds", "context_id": "a"}', "boundary"),
            ('{"type": "create"}', "context_id"),
            ('{"type": "event", "context_id": "a", "event_type": "x", "payload": [1]}', "payload"),
            ('["status"]', "object"),
        ],
    )
    def test_missing_or_malformed_arguments(self, data, match):
        with pytest.raises(ValueError, match=match):
            Command.from_json(data)

    def test_unknown_fields_ignored(self):
        command = Command.from_json('{"type": "tangent_pop", "context_id": "a", "extra": 1}')
        assert command == Command(type=CommandType.TANGENT_POP, context_id="a")

    def test_tangent_response_round_trip(self):
        response = TangentResponse(
            status=ResponseStatus.OK,
            context_id="ctx_1",
            frame={"task": "fix tests", "stack_depth": 1},
            current_task="fix tests",
            depth=1,
        )
        assert TangentResponse.from_json(response.to_json()) == response

    def test_response_round_trip(self):
        response = UsageResponse(
            status=ResponseStatus.OK,
            context_id="ctx_1",
            usage={"tokens": 10, "level": "safe"},
            trend={"trend": "stable"},
        )
        assert UsageResponse.from_json(response.to_json()) == response

    def test_status_response_json(self):
        response = StatusResponse(
            status=ResponseStatus.OK,
            uptime_seconds=12.5,
            context_count=2,
            highest_level="warning",
            levels={"a": "warning", "b": "safe"},
        )
        data = json.loads(response.to_json())
        assert data["status"] == "ok"
        assert data["levels"]["a"] == "warning"

    def test_archives_response_defaults(self):
        response = ArchivesResponse(status=ResponseStatus.OK, context_id="ctx_1")
        assert json.loads(response.to_json())["archives"] == []


class TestServer:
    @pytest.mark.asyncio
    async def test_round_trip(self, socket_path):
        received = []

        async def handler(command):
            received.append(command)
            return SimpleResponse(status=ResponseStatus.OK, message=f"got {command.type.value}")

        server = IPCServer(socket_path, handler)
        await server.start()
        try:
            assert server.is_serving
            assert stat.S_IMODE(socket_path.stat().st_mode) == 0o600

            response = await send_command(socket_path, Command(type=CommandType.STATUS))
        finally:
            await server.stop()

        assert response == {"status": "ok", "message": "got status", "error": None}
        assert received == [Command(type=CommandType.STATUS)]
        assert not socket_path.exists()
        assert not server.is_serving

    @pytest.mark.asyncio
    async def test_invalid_command_answered_with_error(self, socket_path):
        server = IPCServer(socket_path)
        await server.start()
        try:
            reader, writer = await asyncio.open_unix_connection(str(socket_path))
            writer.write(b'{"type": "usage"}\n')
            await writer.drain()
            line = await reader.readline()
            writer.close()
            await writer.wait_closed()
        finally:
            await server.stop()

        data = json.loads(line)
        assert data["status"] == "error"
        assert data["message"] == "Invalid command"

    @pytest.mark.asyncio
    async def test_no_handler(self, socket_path):
        server = IPCServer(socket_path)
        await server.start()
        try:
            response = await send_command(socket_path, Command(type=CommandType.STATUS))
        finally:
            await server.stop()

        assert response["status"] == "error"
        assert response["message"] == "No handler configured"

    @pytest.mark.asyncio
    async def test_handler_failure_reported(self, socket_path):
        async def handler(command):
            raise RuntimeError("boom")

        server = IPCServer(socket_path)
        server.set_handler(handler)
        await server.start()
        try:
            response = await send_command(socket_path, Command(type=CommandType.STATUS))
        finally:
            await server.stop()

        assert response["status"] == "error"
        assert response["error"] == "boom"

    @pytest.mark.asyncio
    async def test_oversized_request_rejected(self, socket_path):
        server = IPCServer(socket_path)
        await server.start()
        try:
            reader, writer = await asyncio.open_unix_connection(str(socket_path))
            writer.write(b"x" * (MAX_REQUEST_BYTES + 10) + b"\n")
            await writer.drain()
            line = await reader.readline()
            writer.close()
            await writer.wait_closed()
        finally:
            await server.stop()

        assert json.loads(line)["message"] == "Request too large"

    @pytest.mark.asyncio
    async def test_requests_counted(self, socket_path):
        async def handler(command):
            return SimpleResponse(status=ResponseStatus.OK, message="ok")

        server = IPCServer(socket_path, handler)
        await server.start()
        try:
            for _ in range(3):
                await send_command(socket_path, Command(type=CommandType.STATUS))
        finally:
            await server.stop()

        assert server.requests_served == 3

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, socket_path):
        socket_path.write_text("stale")
        server = IPCServer(socket_path)
        await server.start()
        try:
            assert stat.S_ISSOCK(socket_path.stat().st_mode)
        finally:
            await server.stop()


class TestClient:
    @pytest.mark.asyncio
    async def test_missing_socket(self, socket_path):
        with pytest.raises(EngineUnavailableError, match="not running"):
            await send_command(socket_path, Command(type=CommandType.STATUS))

    @pytest.mark.asyncio
    async def test_no_response_in_time(self, socket_path):
        async def silent(reader, writer):
            await asyncio.sleep(1)
            writer.close()

        server = await asyncio.start_unix_server(silent, path=str(socket_path))
        try:
            with pytest.raises(EngineUnavailableError, match="in time"):
                await send_command(
                    socket_path, Command(type=CommandType.STATUS), timeout=0.05
                )
        finally:
            server.close()
            await server.wait_closed()
