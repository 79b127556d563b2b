"""CLI entry point for starting the shared memory host."""

import argparse

import uvicorn

from sharedmem.common.config import load_config
from sharedmem.common.logging import setup_logging
from sharedmem.web import create_app


def main():
    parser = argparse.ArgumentParser(
        description="Start the Shared Memory Network host"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to YAML config file"
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host to bind the API server to (overrides config)"
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port for the API server (overrides config)"
    )
    parser.add_argument(
        "--database-url", type=str, default=None,
        help="SQLAlchemy database URL (overrides config)"
    )
    parser.add_argument(
        "--trust-local-network", action="store_true",
        help="Auto-approve devices found by broadcast discovery"
    )
    parser.add_argument(
        "--no-discovery", action="store_true",
        help="Disable UDP broadcast discovery"
    )
    parser.add_argument(
        "--no-runtime", action="store_true",
        help="Do not start or supervise the model runtime service"
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )

    args = parser.parse_args()
    setup_logging(level=args.log_level, component="host")

    config = load_config(args.config)
    if args.host:
        config.host.host = args.host
    if args.port:
        config.host.port = args.port
    if args.database_url:
        config.host.database_url = args.database_url
    if args.trust_local_network:
        config.registry.trust_local_network = True
    if args.no_discovery:
        config.discovery.enabled = False
    if args.no_runtime:
        config.runtime.auto_start = False

    app = create_app(config=config)
    uvicorn.run(
        app,
        host=config.host.host,
        port=config.host.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
