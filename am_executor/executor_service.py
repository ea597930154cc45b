#!/usr/bin/env python3
"""
=====================================================================
am-executor Service
=====================================================================
Receives Alertmanager webhook notifications and runs a command for each
one, passing the notification as AMX_* environment variables.

Key Features:
- POST / : decode notification, encode environment, run command
- GET /metrics : Prometheus metrics (duration, in-flight, errors)
- GET /_health : liveness text
- Basic or bearer authentication on every route (config file)
- Plain HTTP or TLS listener
- Correlation IDs in logs and responses
- Graceful shutdown on SIGTERM/SIGINT, config reload on SIGHUP

Usage:
    am-executor [options] command [args..]
=====================================================================
"""

import os
import sys
import uuid
import logging
import argparse
import platform
from typing import List, Optional, Tuple

from flask import Flask, Response, g, request
from prometheus_client import REGISTRY
from prometheus_flask_exporter import PrometheusMetrics
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from am_executor import __version__
from am_executor.alert_models import PayloadDecodeError, decode_payload
from am_executor.auth_utils import authenticate, create_token
from am_executor.config_loader import Config, ConfigError, ConfigHolder, resolve_path
from am_executor.env_encoder import encode
from am_executor.executor_metrics import ExecutorMetrics
from am_executor.lifecycle import LifecycleCoordinator, RequestTracker
from am_executor.logging_utils import setup_json_logging
from am_executor.process_runner import ExecutionError, ProcessRunner

SERVICE_NAME = "am-executor"

HEALTH_TEXT = "All systems are functioning within normal specifications.\n"

logger = logging.getLogger(__name__)

# =====================================================================
# FLASK APPLICATION FACTORY
# =====================================================================


def _error_response(err: Exception, stage: str, metrics: ExecutorMetrics) -> Response:
    logger.error(f"{stage}: {err}")
    metrics.count_error(stage)
    return Response(f"{err}\n", status=500, mimetype="text/plain")


def create_app(config_holder: ConfigHolder, runner: ProcessRunner,
               metrics: Optional[ExecutorMetrics] = None) -> Flask:
    """Creates and configures the Flask application."""

    app = Flask(__name__)
    metrics = metrics if metrics is not None else runner.metrics

    app.config["CONFIG_HOLDER"] = config_holder
    app.config["RUNNER"] = runner
    app.config["METRICS"] = metrics

    # Serves /metrics from the same registry the runner reports into
    PrometheusMetrics(app, registry=metrics.registry)

    # ================================================================
    # REQUEST HANDLERS
    # ================================================================

    @app.before_request
    def pre_request_handling():
        """Correlation ID and authentication for every route."""
        g.correlation_id = request.headers.get('X-Correlation-ID') or str(uuid.uuid4())
        # One snapshot per request; a reload mid-request is not observed
        g.config = config_holder.get()
        return authenticate(g.config, request)

    @app.after_request
    def add_correlation_header(response):
        correlation_id = g.get("correlation_id")
        if correlation_id:
            response.headers['X-Correlation-ID'] = correlation_id
        return response

    @app.route('/', methods=['POST'])
    def handle_webhook():
        """
        Webhook endpoint.

        Reads the notification, encodes it and runs the command. The
        response is sent only after the command has exited.
        """
        logger.debug("Webhook triggered")

        # --------------------------------------------------------
        # STEP 1: Read body
        # --------------------------------------------------------
        try:
            data = request.get_data(cache=False)
        except (OSError, HTTPException) as e:
            return _error_response(e, "read", metrics)
        logger.debug(f"Body: {data.decode('utf-8', errors='replace')}")

        # --------------------------------------------------------
        # STEP 2: Decode (abort on failure, nothing is run)
        # --------------------------------------------------------
        try:
            payload = decode_payload(data)
        except PayloadDecodeError as e:
            return _error_response(e, "unmarshal", metrics)
        logger.debug(f"Got: {payload!r}")

        # --------------------------------------------------------
        # STEP 3: Encode and run
        # --------------------------------------------------------
        env = encode(payload)
        try:
            runner.run(env)
        except ExecutionError as e:
            return _error_response(e, "start", metrics)

        logger.info(
            f"Processed notification receiver={payload.receiver} "
            f"status={payload.status} alerts={len(payload.alerts)}"
        )
        return Response(status=200)

    @app.route('/_health', methods=['GET'])
    def health_check():
        return Response(HEALTH_TEXT, status=200, mimetype="text/plain")

    return app

# =====================================================================
# SERVER
# =====================================================================


def parse_listen_address(address: str) -> Tuple[str, int]:
    """
    Split ``host:port``. An empty host (``:8080``) listens on all
    interfaces; IPv6 hosts are written ``[::1]:8080``.

    Raises:
        ValueError: malformed address or port out of range
    """
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"listen address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in listen address {address!r}") from None
    if port < 0 or port > 65535:
        raise ValueError(f"port must be between 0-65535, got: {port}")
    return host or "0.0.0.0", port


def build_server(app, listen_address: str, config: Config):
    """Threaded werkzeug server, TLS when enabled in the configuration."""
    host, port = parse_listen_address(listen_address)
    ssl_context = None
    if config.tls.enabled:
        ssl_context = (config.tls.crt, config.tls.key)
    return make_server(host, port, app, threaded=True, ssl_context=ssl_context)

# =====================================================================
# COMMAND LINE
# =====================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        usage="%(prog)s [options] script [args..]",
        description="Run a command for every Alertmanager notification.",
    )
    parser.add_argument('-l', dest='listen_address',
                        default=os.environ.get('AM_EXECUTOR_LISTEN_ADDRESS', ':8080'),
                        help='HTTP Port to listen on (default: %(default)s)')
    parser.add_argument('-v', dest='verbose', action='store_true',
                        help='Enable verbose/debug logging')
    parser.add_argument('--version', dest='show_version', action='store_true',
                        help='Show version information.')
    parser.add_argument('--create-token', dest='create_token', action='store_true',
                        help='Create bearer token for authentication.')
    parser.add_argument('--config.file', dest='config_file', metavar='file',
                        default=os.environ.get('AM_EXECUTOR_CONFIG_FILE', 'config.yaml'),
                        help='Configuration file in YAML format (default: %(default)s)')
    parser.add_argument('--timeout-offset', dest='timeout_offset', type=float, default=0.5,
                        metavar='seconds',
                        help='Accepted for command-line compatibility; has no effect.')
    parser.add_argument('--shutdown.terminate-children', dest='terminate_children',
                        action='store_true',
                        help='Send SIGTERM to commands still running when graceful shutdown times out.')
    parser.add_argument('command', nargs=argparse.REMAINDER,
                        help='Command and arguments to run per notification')
    return parser


def version_info() -> str:
    return (
        f"{SERVICE_NAME}, version {__version__}\n"
        f"  python version:   {platform.python_version()}\n"
        f"  platform:         {platform.system().lower()}/{platform.machine()}"
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Service entry point."""
    args = build_parser().parse_args(argv)

    if args.show_version:
        print(version_info())
        return 0

    setup_json_logging(
        service_name=SERVICE_NAME,
        version=__version__,
        level="DEBUG" if args.verbose else "INFO",
    )

    # --- 1. Load Config ---
    config_path = resolve_path(args.config_file)
    try:
        config_holder = ConfigHolder(config_path)
    except ConfigError as e:
        logger.error(f"FATAL: Configuration error: {e}")
        return 1

    if args.create_token:
        try:
            token = create_token(config_holder.get())
        except ConfigError as e:
            logger.error(f"Bearer token could not be created: {e}")
            return 1
        print(f"Bearer token: {token}")
        return 0

    # --- 2. Runner, App, Server ---
    metrics = ExecutorMetrics(registry=REGISTRY)
    try:
        runner = ProcessRunner.from_argv(args.command, metrics=metrics)
    except ValueError as e:
        logger.error(f"FATAL: {e}")
        return 1

    app = create_app(config_holder, runner, metrics)
    tracker = RequestTracker(app.wsgi_app)
    app.wsgi_app = tracker

    try:
        server = build_server(app, args.listen_address, config_holder.get())
    except (OSError, ValueError) as e:
        logger.error(f"FATAL: Could not start listener on {args.listen_address}: {e}")
        return 1

    # --- 3. Lifecycle ---
    coordinator = LifecycleCoordinator(
        server,
        tracker,
        config_holder,
        on_timeout=runner.terminate_all if args.terminate_children else None,
    )
    coordinator.install_signal_handlers()
    coordinator.start()

    scheme = "https" if config_holder.get().tls.enabled else "http"
    logger.info("=" * 70)
    logger.info(f"Starting {version_info().splitlines()[0]}")
    logger.info(f"Listening on {scheme}://{args.listen_address} and running {runner.argv}")
    if config_holder.get().auth_enabled:
        logger.info("Authentication is required on all routes")
    logger.info("=" * 70)

    # --- 4. Serve until the termination watcher stops the loop ---
    try:
        server.serve_forever()
    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        return 1

    exit_code = coordinator.wait()
    logger.info(f"Shutdown {SERVICE_NAME} (exit code {exit_code})")
    return exit_code if exit_code is not None else 1


if __name__ == '__main__':
    sys.exit(main())
