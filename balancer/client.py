import asyncio
import logging

from balancer.handler import ENCODING

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


async def send_request(
    host: str, port: int, message: str, timeout: float | None = DEFAULT_TIMEOUT
) -> str:
    """Send one line to a backend and return its one-line reply.

    Returns an empty string if the server closed without answering. Connection
    errors and timeouts propagate to the caller.
    """

    async def _exchange() -> str:
        reader, writer = await asyncio.open_connection(host, port)
        try:
            writer.write(f"{message}\n".encode(ENCODING))
            await writer.drain()
            line = await reader.readline()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        return line.decode(ENCODING).rstrip("\r\n")

    response = await asyncio.wait_for(_exchange(), timeout=timeout)
    logger.debug(f"Client received from {host}:{port}: {response}")
    return response
