"""CLI entry point for starting a device agent."""

import argparse

import uvicorn

from sharedmem.common.config import load_config
from sharedmem.common.logging import setup_logging
from sharedmem.node.agent import DeviceAgent, create_agent_app


def main():
    parser = argparse.ArgumentParser(
        description="Start a Shared Memory Network device agent"
    )
    parser.add_argument(
        "--host-url", type=str, default=None,
        help="Host API base URL to register with, e.g. http://192.168.1.10:8080"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to YAML config file"
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port for the agent control API (default: registry.agent_port)"
    )
    parser.add_argument(
        "--rpc-port", type=int, default=None,
        help="Port for llama-rpc-server (default: llama_cpp.rpc_port)"
    )
    parser.add_argument(
        "--name", type=str, default=None,
        help="Display name (default: hostname)"
    )
    parser.add_argument(
        "--no-rpc", action="store_true",
        help="Do not start llama-rpc-server until the host asks for it"
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )

    args = parser.parse_args()
    config = load_config(args.config)
    if args.port:
        config.registry.agent_port = args.port
    if args.rpc_port:
        config.llama_cpp.rpc_port = args.rpc_port

    setup_logging(level=args.log_level, component=f"agent:{config.registry.agent_port}")

    agent = DeviceAgent(config, host_url=args.host_url, name=args.name)
    agent.start(start_rpc=not args.no_rpc)
    try:
        uvicorn.run(
            create_agent_app(agent),
            host="0.0.0.0",
            port=config.registry.agent_port,
            log_level=args.log_level.lower(),
        )
    finally:
        agent.stop()


if __name__ == "__main__":
    main()
