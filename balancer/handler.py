import asyncio
import logging
import socket
import time

from balancer.metrics import MetricsCollector

logger = logging.getLogger(__name__)

# seconds a peer has to deliver its request line
DEFAULT_READ_TIMEOUT = 5.0
ENCODING = "utf-8"


def format_reply(port: int) -> str:
    return f"Response from Server on port {port}"


class LineHandler:
    """Serves one connection: read one line, answer with one line, close.

    Every failure is local to the connection. Nothing raised while reading
    or writing escapes to the accept loop.
    """

    def __init__(
        self,
        port: int,
        verbose: bool = False,
        read_timeout: float | None = DEFAULT_READ_TIMEOUT,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.port = port
        self.verbose = verbose
        self.read_timeout = read_timeout
        self.metrics = metrics

    async def __call__(self, sock: socket.socket, addr) -> None:
        start_time = time.time()
        peer = _format_peer(addr)
        try:
            reader, writer = await asyncio.open_connection(sock=sock)
        except OSError as e:
            logger.warning(f"Could not open stream for {peer}: {e}")
            sock.close()
            await self._record("error", start_time)
            return

        status = "ok"
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
            if not line:
                status = "empty"
                logger.debug(f"{peer} closed without sending a request")
                return

            message = line.decode(ENCODING, errors="replace").rstrip("\r\n")
            log = logger.info if self.verbose else logger.debug
            log(f"Received from client {peer} on port {self.port}: {message}")

            writer.write(f"{format_reply(self.port)}\n".encode(ENCODING))
            await writer.drain()
        except asyncio.TimeoutError:
            status = "timeout"
            logger.warning(
                f"Timed out after {self.read_timeout}s waiting for a request from {peer}"
            )
        except ValueError as e:
            # StreamReader.readline raises ValueError when the line exceeds its limit
            status = "error"
            logger.warning(f"Rejected oversized request from {peer}: {e}")
        except OSError as e:
            status = "error"
            logger.warning(f"Error handling client {peer}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            await self._record(status, start_time)

    async def _record(self, status: str, start_time: float):
        if not self.metrics:
            return
        labels = {"port": str(self.port), "status": status}
        await self.metrics.increment_counter("handler.requests", labels)
        await self.metrics.record_histogram(
            "handler.latency.ms", (time.time() - start_time) * 1000, {"port": str(self.port)}
        )


def _format_peer(addr) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr)
