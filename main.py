from backend_pool import BackendPool
from balancer import (
    BindError,
    ConnectionListener,
    DEFAULT_READ_TIMEOUT,
    DuplicateBackendError,
    MetricsCollector,
    UnknownBackendError,
)
from aiohttp import web
import argparse
import asyncio
import logging
import signal


def setup_logging(log_level: str, log_file: str | None):
    level = getattr(logging, log_level.upper())
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )
    return logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Health-aware round-robin balancer with line-protocol backends"
    )
    parser.add_argument(
        "--port", type=int, default=8080, help="Port for the control API"
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument(
        "--backend-ports",
        type=int,
        nargs="*",
        default=[5001, 5002, 5003],
        help="Ports of the backend servers to start and register",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every request line the backends receive",
    )
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=DEFAULT_READ_TIMEOUT,
        help="Seconds a client has to send its request line",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=9090, help="Port for metrics server"
    )
    parser.add_argument(
        "--enable-metrics",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Collect metrics and serve them on --metrics-port",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--log-file", default=None, help="Optional file path for logging"
    )
    args, _ = parser.parse_known_args()

    log = setup_logging(args.log_level, args.log_file)
    try:
        asyncio.run(run_app(args, log))
    except BindError as e:
        log.error(f"Startup failed: {e}")
        raise SystemExit(1)


async def _read_backend(request: web.Request) -> tuple[dict, str, int]:
    try:
        data = await request.json()
        return data, str(data["host"]), int(data["port"])
    except (ValueError, KeyError, TypeError) as e:
        raise web.HTTPBadRequest(
            text=f"expected JSON body with host and port: {e}"
        ) from e


def build_control_app(backend_pool: BackendPool) -> web.Application:
    """Control API; external health checkers report through /_control/health."""

    async def register_backend(request):
        _, host, port = await _read_backend(request)
        try:
            backend = await backend_pool.register(host, port)
        except DuplicateBackendError as e:
            return web.json_response({"error": str(e)}, status=409)
        return web.json_response({"status": "registered", "backend": backend.address})

    async def set_health(request):
        data, host, port = await _read_backend(request)
        healthy = data.get("healthy")
        if not isinstance(healthy, bool):
            raise web.HTTPBadRequest(text="healthy must be true or false")
        try:
            await backend_pool.set_healthy(host, port, healthy)
        except UnknownBackendError as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response({"status": "updated"})

    async def next_backend(request):
        backend = await backend_pool.next_healthy()
        if backend is None:
            return web.json_response({"error": "No healthy backends"}, status=503)
        return web.json_response({"host": backend.host, "port": backend.port})

    async def list_backends(request):
        return web.json_response(await backend_pool.show())

    async def get_stats(request):
        periods_param = request.query.get("periods", "5m,30m,1h,6h,24h,all")
        periods = [p.strip() for p in periods_param.split(",")]
        return web.json_response(await backend_pool.get_stats(periods))

    app = web.Application()
    app.router.add_post("/_control/register", register_backend)
    app.router.add_post("/_control/health", set_health)
    app.router.add_get("/_control/next", next_backend)
    app.router.add_get("/_control/list", list_backends)
    app.router.add_get("/_control/stats", get_stats)
    return app


def build_metrics_app(metrics: MetricsCollector) -> web.Application:
    async def metrics_handler(request):
        accept = request.headers.get("Accept", "")
        if "application/json" in accept or request.path.endswith("/json"):
            return web.json_response(await metrics.get_metrics())
        return web.Response(
            text=await metrics.export_prometheus(), content_type="text/plain"
        )

    metrics_app = web.Application()
    metrics_app.router.add_get("/metrics", metrics_handler)
    metrics_app.router.add_get("/metrics/json", metrics_handler)
    return metrics_app


async def run_app(args, logger):
    metrics = MetricsCollector() if args.enable_metrics else None
    backend_pool = BackendPool(metrics=metrics)
    shutdown_event = asyncio.Event()
    listeners: list[ConnectionListener] = []
    runner = None
    metrics_runner = None

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            pass

    try:
        for port in args.backend_ports:
            listener = ConnectionListener(
                port,
                host=args.host,
                verbose=args.verbose,
                read_timeout=args.read_timeout,
                metrics=metrics,
            )
            await listener.start()
            listeners.append(listener)
            await backend_pool.register(args.host, listener.port)

        runner = web.AppRunner(build_control_app(backend_pool))
        await runner.setup()
        site = web.TCPSite(runner, args.host, args.port)
        await site.start()
        logger.info(f"Control API running on http://{args.host}:{args.port}/_control")

        if metrics:
            metrics_runner = web.AppRunner(build_metrics_app(metrics))
            await metrics_runner.setup()
            metrics_site = web.TCPSite(metrics_runner, args.host, args.metrics_port)
            await metrics_site.start()
            logger.info(
                f"Metrics server running on http://{args.host}:{args.metrics_port}/metrics"
            )

        await shutdown_event.wait()
        logger.info("Shutting down...")

    finally:
        for listener in listeners:
            await listener.stop()
        for listener in listeners:
            await listener.drain(timeout=args.read_timeout)
        if runner:
            await runner.cleanup()
        if metrics_runner:
            await metrics_runner.cleanup()


if __name__ == "__main__":
    main()
