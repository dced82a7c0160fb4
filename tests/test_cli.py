"""
Tests for the command line client.
"""

import json

import httpx
import pytest

from flowgate.capabilities.registry import CapabilityRegistry
from flowgate.cli import (
    EXIT_CONFLICT,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_UNKNOWN_RUN,
    EXIT_UNKNOWN_WORKFLOW,
    EXIT_VALIDATION,
    build_parser,
    load_capabilities,
    main,
)

from conftest import make_definition, make_step


# Used by load_capabilities tests
capabilities = CapabilityRegistry()


def make_capabilities() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.declare("ops_agent", "ops", "detect")
    return registry


class FakeServer:
    """Routes requests to canned responses and records them."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def route(self, method, path, status=200, body=None):
        self.routes[(method, path)] = (status, body if body is not None else {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        status, payload = self.routes.get(
            (request.method, request.url.path),
            (404, {"error": {"kind": "unknown_run", "message": "Run not found"}}),
        )
        return httpx.Response(status, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def server():
    return FakeServer()


def _run(server, *argv):
    return main(["--url", "http://flowgate.test", *argv], transport=server.transport)


class TestParser:
    """Tests for argument parsing."""

    def test_start_arguments(self):
        args = build_parser().parse_args([
            "start", "uc_ops", "--version", "1.2.0",
            "--context", '{"site": "plant-7"}', "--dedupe-key", "k1",
        ])

        assert args.use_case == "uc_ops"
        assert args.workflow_version == "1.2.0"
        assert args.context == {"site": "plant-7"}
        assert args.dedupe_key == "k1"

    def test_resolve_requires_actor(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["resolve", "r1", "execute", "approve"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_OK
        assert "flowgate" in capsys.readouterr().out


class TestCommands:
    """Tests for commands against a fake server."""

    def test_start(self, server, capsys):
        server.route("POST", "/workflows/uc_ops/runs", body={"run_id": "run-1"})

        code = _run(server, "start", "uc_ops", "--context", '{"site": "plant-7"}')

        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {"run_id": "run-1"}
        method, path, body = server.requests[0]
        assert body["context"] == {"site": "plant-7"}
        assert body["initiated_by"] == "cli"
        assert body["version"] is None

    def test_status(self, server, capsys):
        server.route("GET", "/runs/run-1", body={"run_id": "run-1", "status": "running"})

        assert _run(server, "status", "run-1") == EXIT_OK
        assert json.loads(capsys.readouterr().out)["status"] == "running"

    def test_resolve(self, server):
        server.route("POST", "/runs/run-1/approvals/execute", body={"status": "pending"})

        code = _run(server, "resolve", "run-1", "execute", "reject", "--actor", "op", "--message", "no")

        assert code == EXIT_OK
        assert server.requests[0][2] == {"decision": "reject", "actor": "op", "message": "no"}

    def test_cancel_and_lists(self, server):
        server.route("POST", "/runs/run-1/cancel", body={"status": "cancelled"})
        server.route("GET", "/workflows", body={"workflows": [], "count": 0})
        server.route("GET", "/approvals", body={"approvals": [], "count": 0})

        assert _run(server, "cancel", "run-1") == EXIT_OK
        assert _run(server, "list") == EXIT_OK
        assert _run(server, "approvals") == EXIT_OK
        assert [r[1] for r in server.requests] == ["/runs/run-1/cancel", "/workflows", "/approvals"]

    def test_register_export_file(self, server, tmp_path):
        server.route("POST", "/workflows", body={"created": True})
        path = tmp_path / "export.json"
        path.write_text(json.dumps({
            "definitions": [
                make_definition([make_step("detect")]),
                make_definition([make_step("detect")], use_case_id="uc_scan"),
            ],
        }))

        assert _run(server, "register", str(path)) == EXIT_OK
        assert [r[2]["use_case_id"] for r in server.requests] == ["uc_ops", "uc_scan"]

    def test_register_missing_file(self, server, tmp_path, capsys):
        assert _run(server, "register", str(tmp_path / "absent.json")) == EXIT_FAILURE
        assert "Error" in capsys.readouterr().err


class TestExitCodes:
    """Tests for error kinds mapped to exit codes."""

    def test_validation_lists_violations(self, server, tmp_path, capsys):
        server.route("POST", "/workflows", status=422, body={"error": {
            "kind": "validation_error",
            "message": "Invalid definition",
            "violations": ["version: 'x' is not semantic", "steps[1]: duplicate id 'detect'"],
        }})
        path = tmp_path / "definition.json"
        path.write_text(json.dumps(make_definition([make_step("detect")])))

        assert _run(server, "register", str(path)) == EXIT_VALIDATION

        err = capsys.readouterr().err
        assert "not semantic" in err
        assert "duplicate id" in err

    def test_unknown_workflow(self, server):
        server.route("POST", "/workflows/missing/runs", status=404, body={"error": {
            "kind": "unknown_workflow", "message": "Workflow not found: missing",
        }})

        assert _run(server, "start", "missing") == EXIT_UNKNOWN_WORKFLOW

    def test_unknown_run(self, server):
        assert _run(server, "status", "nope") == EXIT_UNKNOWN_RUN

    def test_conflict(self, server):
        server.route("POST", "/runs/run-1/approvals/execute", status=409, body={"error": {
            "kind": "approval_not_pending", "message": "No pending approval",
        }})

        assert _run(server, "resolve", "run-1", "execute", "approve", "--actor", "op") == EXIT_CONFLICT

    def test_server_error_without_body(self, server, capsys):
        def handler(request):
            return httpx.Response(500, text="boom")

        code = main(["--url", "http://flowgate.test", "list"], transport=httpx.MockTransport(handler))

        assert code == EXIT_FAILURE
        assert "500" in capsys.readouterr().err

    def test_connection_error(self, capsys):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        code = main(["--url", "http://flowgate.test", "list"], transport=httpx.MockTransport(handler))

        assert code == EXIT_FAILURE


class TestLoadCapabilities:
    """Tests for resolving capability registries."""

    def test_attribute(self):
        assert load_capabilities("test_cli:capabilities") is capabilities

    def test_factory(self):
        registry = load_capabilities("test_cli:make_capabilities")
        assert ("ops_agent", "ops", "detect") in registry

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            load_capabilities("test_cli:FakeServer")
