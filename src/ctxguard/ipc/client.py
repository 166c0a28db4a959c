"""Client side of the status socket, for displays and scripts."""

import asyncio
import json
from pathlib import Path
from typing import Any, Union

from .protocol import Command

RESPONSE_TIMEOUT = 5.0


class EngineUnavailableError(ConnectionError):
    """Raised when the engine socket cannot be reached or does not answer."""


async def send_command(
    socket_path: Union[str, Path],
    command: Command,
    timeout: float = RESPONSE_TIMEOUT,
) -> dict[str, Any]:
    """Send a command to the engine and return the decoded response.

    Raises:
        EngineUnavailableError: Socket missing, connection refused, or no
            response within timeout.
    """
    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
    except FileNotFoundError as e:
        raise EngineUnavailableError("Engine is not running (socket not found)") from e
    except ConnectionRefusedError as e:
        raise EngineUnavailableError("Engine refused connection") from e

    try:
        writer.write(command.to_json().encode() + b"\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.readline(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise EngineUnavailableError("Engine did not respond in time") from e
    finally:
        writer.close()
        await writer.wait_closed()

    if not data:
        raise EngineUnavailableError("Engine closed the connection without responding")
    return json.loads(data.decode().strip())
