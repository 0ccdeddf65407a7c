import asyncio
import enum
import errno
import logging
import socket
from collections.abc import Awaitable, Callable

from balancer.errors import BindError, ListenerStateError
from balancer.handler import DEFAULT_READ_TIMEOUT, LineHandler
from balancer.metrics import MetricsCollector

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 128

# seconds to wait before accepting again after a resource error
ACCEPT_RETRY_DELAY = 0.1

# accept errors that clear up on their own once load drops
TRANSIENT_ACCEPT_ERRORS = frozenset(
    {
        errno.EMFILE,
        errno.ENFILE,
        errno.ENOBUFS,
        errno.ENOMEM,
        errno.ECONNABORTED,
        errno.EAGAIN,
    }
)

ConnectionHandler = Callable[[socket.socket, tuple], Awaitable[None]]


class ListenerState(enum.Enum):
    STOPPED = "stopped"
    LISTENING = "listening"
    STOPPING = "stopping"


class ConnectionListener:
    """Accept loop for a single backend port.

    The loop runs as a task parked in ``loop.sock_accept``. ``stop()`` cancels
    that task, so shutdown never depends on a client connecting. Every
    accepted connection gets its own handler task; there is no cap on how
    many run at once, and stopping does not cancel the ones in flight.

    A listener is single use: once stopped, build a new one.
    """

    def __init__(
        self,
        port: int,
        host: str = "127.0.0.1",
        verbose: bool = False,
        read_timeout: float | None = DEFAULT_READ_TIMEOUT,
        backlog: int = DEFAULT_BACKLOG,
        metrics: MetricsCollector | None = None,
        handler: ConnectionHandler | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.verbose = verbose
        self.read_timeout = read_timeout
        self.backlog = backlog
        self.metrics = metrics
        self._handler = handler
        self._state = ListenerState.STOPPED
        self._started = False
        self._socket: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._handler_tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state is ListenerState.LISTENING

    @property
    def active_connections(self) -> int:
        return len(self._handler_tasks)

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(self.backlog)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind {self.host}:{self.port}: {e}")
            raise BindError(e.errno, f"cannot bind {self.host}:{self.port}: {e.strerror or e}") from e
        return sock

    async def start(self):
        if self._started:
            raise ListenerStateError(
                f"listener on port {self.port} is {self._state.value}; create a new one"
            )
        logger.info(f"Starting server on port {self.port}...")
        self._socket = self._create_socket()
        self._started = True
        # port 0 asks the OS for a free port
        self.port = self._socket.getsockname()[1]
        if self._handler is None:
            self._handler = LineHandler(
                self.port,
                verbose=self.verbose,
                read_timeout=self.read_timeout,
                metrics=self.metrics,
            )
        self._state = ListenerState.LISTENING
        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info(f"Server successfully started and listening on port {self.port}")

    async def _accept_loop(self):
        loop = asyncio.get_running_loop()
        while self._state is ListenerState.LISTENING:
            try:
                client_sock, client_addr = await loop.sock_accept(self._socket)
            except OSError as e:
                if self._state is not ListenerState.LISTENING:
                    break
                if e.errno in TRANSIENT_ACCEPT_ERRORS:
                    logger.warning(
                        f"Accept error on port {self.port}: {e}; "
                        f"retrying in {ACCEPT_RETRY_DELAY}s"
                    )
                    await asyncio.sleep(ACCEPT_RETRY_DELAY)
                    continue
                logger.error(f"Accept error on port {self.port}: {e}; listener stopped")
                self._close_socket()
                self._state = ListenerState.STOPPED
                break

            logger.debug(f"Accepted connection on port {self.port} from {client_addr}")
            task = asyncio.create_task(self._serve(client_sock, client_addr))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)
            if self.metrics:
                await self.metrics.increment_counter(
                    "listener.connections", {"port": str(self.port)}
                )

    async def _serve(self, client_sock: socket.socket, client_addr):
        labels = {"port": str(self.port)}
        if self.metrics:
            await self.metrics.inc_gauge("listener.active_connections", 1, labels)
        try:
            await self._handler(client_sock, client_addr)
        finally:
            if self.metrics:
                await self.metrics.inc_gauge("listener.active_connections", -1, labels)

    def _close_socket(self):
        if self._socket:
            self._socket.close()
            self._socket = None

    def _handler_done(self, task: asyncio.Task):
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Handler on port {self.port} failed: {exc!r}")

    async def stop(self):
        if self._state is not ListenerState.LISTENING:
            return
        self._state = ListenerState.STOPPING
        logger.info(f"Stopping server on port {self.port}...")

        if self._accept_task:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        self._close_socket()
        self._state = ListenerState.STOPPED
        logger.info(f"Server on port {self.port} stopped.")

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight handlers. Returns False if some are still running."""
        pending = list(self._handler_tasks)
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    async def __aenter__(self) -> "ConnectionListener":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
