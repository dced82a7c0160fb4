"""
Flowgate Command Line Interface

Provides command-line access to a running Flowgate server.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from flowgate.capabilities.registry import CapabilityRegistry
from flowgate.core.config import FlowgateConfig, get_config

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_UNKNOWN_WORKFLOW = 3
EXIT_UNKNOWN_RUN = 4
EXIT_CONFLICT = 5

EXIT_BY_KIND = {
    "validation_error": EXIT_VALIDATION,
    "unknown_workflow": EXIT_UNKNOWN_WORKFLOW,
    "unknown_run": EXIT_UNKNOWN_RUN,
    "definition_conflict": EXIT_CONFLICT,
    "approval_not_pending": EXIT_CONFLICT,
}


class CommandError(Exception):
    """A request the server answered with an error."""

    def __init__(self, exit_code: int, message: str):
        self.exit_code = exit_code
        self.message = message
        super().__init__(message)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowgate",
        description="Flowgate - workflow orchestration engine CLI",
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument("--url", help="Server URL (defaults to server.api_url)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Server command
    serve_parser = subparsers.add_parser("serve", help="Start the Flowgate server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port")
    serve_parser.add_argument(
        "--capabilities",
        help="module:attribute holding a CapabilityRegistry or a factory returning one",
    )

    # Definition commands
    register_parser = subparsers.add_parser("register", help="Register workflow definitions")
    register_parser.add_argument("file", type=Path, help="Definition or export JSON file")

    subparsers.add_parser("list", help="List registered workflows")

    # Run commands
    start_parser = subparsers.add_parser("start", help="Start a run")
    start_parser.add_argument("use_case", help="Workflow use case id")
    start_parser.add_argument("--version", dest="workflow_version", help="Definition version")
    start_parser.add_argument("--context", type=json.loads, default={}, help="Initial context JSON")
    start_parser.add_argument("--dedupe-key", help="Reuse a live run holding this key")

    status_parser = subparsers.add_parser("status", help="Get run status")
    status_parser.add_argument("run_id", help="Run id")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a run")
    cancel_parser.add_argument("run_id", help="Run id")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a pending approval")
    resolve_parser.add_argument("run_id", help="Run id")
    resolve_parser.add_argument("step_id", help="Step waiting for approval")
    resolve_parser.add_argument("decision", choices=["approve", "reject"])
    resolve_parser.add_argument("--actor", required=True, help="Approver identifier")
    resolve_parser.add_argument("--message", default="", help="Decision note")

    subparsers.add_parser("approvals", help="List pending approvals")

    return parser


def main(
    argv: Optional[List[str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    config = FlowgateConfig.from_file(args.config) if args.config else get_config()

    if args.command == "serve":
        from flowgate.main import run_server
        capabilities = load_capabilities(args.capabilities) if args.capabilities else None
        run_server(config, capabilities, host=args.host, port=args.port)
        return EXIT_OK

    base_url = args.url or config.server.api_url

    try:
        result = asyncio.run(
            dispatch(args, base_url, config.server.request_timeout, transport)
        )
    except CommandError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return e.exit_code
    except httpx.HTTPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(json.dumps(result, indent=2))
    return EXIT_OK


async def dispatch(
    args: argparse.Namespace,
    base_url: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """Run one client command against the server."""
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport) as client:
        if args.command == "register":
            return await cmd_register(client, args.file)

        if args.command == "list":
            return await _request(client, "GET", "/workflows")

        if args.command == "start":
            return await _request(
                client,
                "POST",
                f"/workflows/{args.use_case}/runs",
                json={
                    "version": args.workflow_version,
                    "context": args.context,
                    "dedupe_key": args.dedupe_key,
                    "initiated_by": "cli",
                },
            )

        if args.command == "status":
            return await _request(client, "GET", f"/runs/{args.run_id}")

        if args.command == "cancel":
            return await _request(client, "POST", f"/runs/{args.run_id}/cancel")

        if args.command == "resolve":
            return await _request(
                client,
                "POST",
                f"/runs/{args.run_id}/approvals/{args.step_id}",
                json={
                    "decision": args.decision,
                    "actor": args.actor,
                    "message": args.message,
                },
            )

        if args.command == "approvals":
            return await _request(client, "GET", "/approvals")

    raise CommandError(EXIT_FAILURE, f"Unknown command: {args.command}")


async def cmd_register(client: httpx.AsyncClient, path: Path) -> List[Dict[str, Any]]:
    """Register a definition file, or every definition of an export file."""
    with open(path) as f:
        data = json.load(f)

    definitions = data["definitions"] if "definitions" in data else [data]

    results = []
    for definition in definitions:
        results.append(await _request(client, "POST", "/workflows", json=definition))
    return results


async def _request(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    json: Optional[Dict[str, Any]] = None,
) -> Any:
    response = await client.request(method, path, json=json)

    if response.is_success:
        return response.json()

    exit_code, message = _describe_error(response)
    raise CommandError(exit_code, message)


def _describe_error(response: httpx.Response) -> Tuple[int, str]:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}

    kind = error.get("kind")
    message = error.get("message") or f"{response.status_code} {response.text}"

    violations = error.get("violations") or []
    if len(violations) > 1:
        message = "\n".join([f"{kind}:"] + [f"  - {v}" for v in violations])

    return EXIT_BY_KIND.get(kind, EXIT_FAILURE), message


def load_capabilities(target: str) -> CapabilityRegistry:
    """Resolve ``module:attribute`` to a capability registry."""
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    value = getattr(module, attribute or "capabilities")

    if callable(value) and not isinstance(value, CapabilityRegistry):
        value = value()

    if not isinstance(value, CapabilityRegistry):
        raise TypeError(f"{target} is not a CapabilityRegistry")
    return value


if __name__ == "__main__":
    sys.exit(main())
