"""CLI for device, role and inference management via the host API."""

import argparse
import json
import sys
import urllib.parse

from sharedmem.common.logging import get_logger, setup_logging
from sharedmem.coordinator.agent_client import AgentUnavailable, request_json

log = get_logger(__name__)


def _error_detail(body: str) -> str:
    """Render the API error envelope as ``[kind] message``."""
    try:
        error = json.loads(body).get("error") or {}
    except (json.JSONDecodeError, AttributeError):
        return body
    if not isinstance(error, dict) or not error:
        return body
    return f"[{error.get('kind')}] {error.get('message')}"


def _request_json(
    method: str,
    host_url: str,
    path: str,
    payload: dict | None = None,
) -> dict:
    try:
        return request_json(method, host_url, path, payload, timeout=30)
    except AgentUnavailable as e:
        if e.body is None:
            raise RuntimeError(f"Could not reach host: {e}") from e
        raise RuntimeError(f"{e.status}: {_error_detail(e.body)}") from e


def _quote(value: str) -> str:
    return urllib.parse.quote(value, safe="")


def _print(result: dict) -> None:
    print(json.dumps(result, indent=2))


def _devices(args: argparse.Namespace) -> None:
    path = "/api/devices"
    if args.status:
        path += "?status=" + _quote(args.status)
    _print(_request_json("GET", args.host_url, path))


def _add(args: argparse.Namespace) -> None:
    payload = {"address": args.address, "name": args.name, "rpc_port": args.rpc_port}
    payload = {k: v for k, v in payload.items() if v is not None}
    _print(_request_json("POST", args.host_url, "/api/devices", payload))


def _approve(args: argparse.Namespace) -> None:
    path = f"/api/devices/{_quote(args.device_id)}/approve"
    _print(_request_json("POST", args.host_url, path, {"role_id": args.role_id}))


def _deny(args: argparse.Namespace) -> None:
    _print(_request_json("POST", args.host_url, f"/api/devices/{_quote(args.device_id)}/deny"))


def _remove(args: argparse.Namespace) -> None:
    _print(_request_json("DELETE", args.host_url, f"/api/devices/{_quote(args.device_id)}"))


def _allocate(args: argparse.Namespace) -> None:
    path = f"/api/devices/{_quote(args.device_id)}/memory"
    _print(_request_json("PATCH", args.host_url, path, {"memory_mb": args.memory_mb}))


def _roles(args: argparse.Namespace) -> None:
    _print(_request_json("GET", args.host_url, "/api/permissions/roles"))


def _create_role(args: argparse.Namespace) -> None:
    payload = {
        "name": args.name,
        "max_memory_mb": args.max_memory_mb,
        "can_pull_models": args.can_pull_models,
        "trust_level": args.trust_level,
    }
    _print(_request_json("POST", args.host_url, "/api/permissions/roles", payload))


def _delete_role(args: argparse.Namespace) -> None:
    path = f"/api/permissions/roles/{_quote(args.role_id)}"
    _print(_request_json("DELETE", args.host_url, path))


def _check(args: argparse.Namespace) -> None:
    payload = {"model_path": args.model, "device_ids": args.device or []}
    _print(_request_json("POST", args.host_url, "/api/cluster/model-check", payload))


def _start(args: argparse.Namespace) -> None:
    payload = {
        "model_path": args.model,
        "device_ids": args.device or [],
        "gpu_layers": args.gpu_layers,
        "ctx_size": args.ctx_size,
    }
    _print(_request_json("POST", args.host_url, "/api/cluster/inference/start", payload))


def _stop(args: argparse.Namespace) -> None:
    _print(_request_json("POST", args.host_url, "/api/cluster/inference/stop"))


def _status(args: argparse.Namespace) -> None:
    _print(_request_json("GET", args.host_url, "/api/cluster/status"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage devices, roles and inference on a shared memory host"
    )
    parser.add_argument(
        "--host-url",
        type=str,
        default="http://127.0.0.1:8080",
        help="Host API base URL (default: http://127.0.0.1:8080)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List devices")
    list_parser.add_argument("--status", type=str, default=None)
    list_parser.set_defaults(func=_devices)

    add_parser = subparsers.add_parser("add", help="Add a device manually")
    add_parser.add_argument("address", type=str)
    add_parser.add_argument("--name", type=str, default=None)
    add_parser.add_argument("--rpc-port", type=int, default=None)
    add_parser.set_defaults(func=_add)

    approve_parser = subparsers.add_parser("approve", help="Approve a pending device")
    approve_parser.add_argument("device_id", type=str)
    approve_parser.add_argument("--role-id", type=str, default="role-guest")
    approve_parser.set_defaults(func=_approve)

    deny_parser = subparsers.add_parser("deny", help="Deny a pending device")
    deny_parser.add_argument("device_id", type=str)
    deny_parser.set_defaults(func=_deny)

    remove_parser = subparsers.add_parser("remove", help="Remove a device")
    remove_parser.add_argument("device_id", type=str)
    remove_parser.set_defaults(func=_remove)

    allocate_parser = subparsers.add_parser("allocate", help="Set a device's memory allocation")
    allocate_parser.add_argument("device_id", type=str)
    allocate_parser.add_argument("memory_mb", type=int)
    allocate_parser.set_defaults(func=_allocate)

    roles_parser = subparsers.add_parser("roles", help="List roles")
    roles_parser.set_defaults(func=_roles)

    create_role_parser = subparsers.add_parser("create-role", help="Create a custom role")
    create_role_parser.add_argument("name", type=str)
    create_role_parser.add_argument("max_memory_mb", type=int)
    create_role_parser.add_argument("--can-pull-models", action="store_true")
    create_role_parser.add_argument("--trust-level", type=int, default=1)
    create_role_parser.set_defaults(func=_create_role)

    delete_role_parser = subparsers.add_parser("delete-role", help="Delete a custom role")
    delete_role_parser.add_argument("role_id", type=str)
    delete_role_parser.set_defaults(func=_delete_role)

    check_parser = subparsers.add_parser("check", help="Analyze whether a model fits")
    check_parser.add_argument("model", type=str)
    check_parser.add_argument("--device", action="append", help="Device id (repeatable)")
    check_parser.set_defaults(func=_check)

    start_parser = subparsers.add_parser("start", help="Start distributed inference")
    start_parser.add_argument("model", type=str)
    start_parser.add_argument("--device", action="append", help="Device id (repeatable)")
    start_parser.add_argument("--gpu-layers", type=int, default=None)
    start_parser.add_argument("--ctx-size", type=int, default=None)
    start_parser.set_defaults(func=_start)

    stop_parser = subparsers.add_parser("stop", help="Stop the inference session")
    stop_parser.set_defaults(func=_stop)

    status_parser = subparsers.add_parser("status", help="Show cluster status")
    status_parser.set_defaults(func=_status)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    setup_logging(level=args.log_level, component="devices-cli")
    try:
        args.func(args)
    except RuntimeError as e:
        log.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
