"""Unix domain socket server for engine status and control."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from .protocol import Command, Response, ResponseStatus, SimpleResponse

logger = logging.getLogger(__name__)

# Type alias for command handler
CommandHandler = Callable[[Command], Awaitable[Response]]

READ_TIMEOUT = 5.0
MAX_REQUEST_BYTES = 64 * 1024


def _error(message: str, error: str) -> SimpleResponse:
    return SimpleResponse(status=ResponseStatus.ERROR, message=message, error=error)


class IPCServer:
    """Answers one JSON command line per connection with one JSON response line.

    Every request gets a response, including malformed or oversized ones and
    those whose handler raised. The socket file is owner-only and removed on
    stop.
    """

    def __init__(
        self,
        socket_path: Union[str, Path],
        command_handler: Optional[CommandHandler] = None,
    ) -> None:
        self._socket_path = Path(socket_path)
        self._command_handler = command_handler
        self._server: Optional[asyncio.Server] = None
        self._requests_served = 0

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    @property
    def requests_served(self) -> int:
        return self._requests_served

    def set_handler(self, handler: CommandHandler) -> None:
        self._command_handler = handler

    async def _dispatch(self, line: bytes) -> Response:
        """Turn one request line into a response. Never raises."""
        try:
            command = Command.from_json(line.decode().strip())
        except (ValueError, KeyError, TypeError) as e:
            return _error("Invalid command", str(e))

        if self._command_handler is None:
            return _error("No handler configured", "Internal error")

        logger.debug(f"Dispatching {command.type.value} (context={command.context_id})")
        try:
            return await self._command_handler(command)
        except Exception as e:
            logger.error(f"Command {command.type.value} failed: {e}", exc_info=True)
            return _error("Command failed", str(e))

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            except ValueError:
                # StreamReader limit exceeded
                response: Optional[Response] = _error(
                    "Request too large", f"Limit is {MAX_REQUEST_BYTES} bytes"
                )
            else:
                response = await self._dispatch(line) if line else None

            if response is not None:
                writer.write(response.to_json().encode() + b"\n")
                await writer.drain()
                self._requests_served += 1

        except asyncio.TimeoutError:
            logger.warning("Status client sent nothing, closing")
        except (ConnectionError, OSError) as e:
            logger.debug(f"Status client went away: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def start(self) -> None:
        if self._socket_path.exists():
            logger.debug(f"Removing stale socket {self._socket_path}")
            self._socket_path.unlink()
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self._socket_path),
            limit=MAX_REQUEST_BYTES,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info(f"Status socket listening on {self._socket_path}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self._socket_path.exists():
            self._socket_path.unlink()
        logger.info(f"Status socket closed after {self._requests_served} requests")
