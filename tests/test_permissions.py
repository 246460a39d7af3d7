import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from tern.permissions import (
    Action,
    AuditLog,
    PermissionGate,
    PermissionRequest,
    PermissionRule,
    PermissionsConfig,
)
from tern.permissions.rules import glob_to_regex


def make_gate(rules: list[dict] | None = None, defaults: dict | None = None, **kwargs) -> PermissionGate:
    config = PermissionsConfig(
        rules=[PermissionRule.model_validate(r) for r in rules or []],
        defaults=defaults or {},
    )
    return PermissionGate(config=config, **kwargs)


class TestDecide:
    def test_first_matching_rule_wins(self):
        gate = make_gate(
            [
                {"match": {"tool": "exec", "command": "^git "}, "action": "allow"},
                {"match": {"tool": "exec"}, "action": "deny"},
            ]
        )
        allowed = gate.decide(PermissionRequest(tool_kind="exec", command="git status"))
        denied = gate.decide(PermissionRequest(tool_kind="exec", command="make"))
        assert (allowed.action, allowed.source, allowed.rule_index) == (Action.ALLOW, "rule[0]", 0)
        assert (denied.action, denied.source) == (Action.DENY, "rule[1]")

    def test_builtin_defaults(self):
        gate = make_gate()
        assert gate.decide(PermissionRequest(tool_kind="fs", path="a.txt")).action is Action.ALLOW
        assert gate.decide(PermissionRequest(tool_kind="exec", command="ls")).action is Action.CONFIRM
        assert gate.decide(PermissionRequest(tool_kind="mcp", server_id="gh")).action is Action.CONFIRM
        assert gate.decide(PermissionRequest(tool_kind="fs_patch", path="a.txt")).action is Action.CONFIRM

    def test_configured_default_overrides_builtin(self):
        decision = make_gate(defaults={"exec": "allow"}).decide(PermissionRequest(tool_kind="exec", command="ls"))
        assert decision.action is Action.ALLOW
        assert decision.source == "default:exec"

    def test_unknown_kind_falls_back_to_confirm(self):
        decision = make_gate().decide(PermissionRequest(tool_kind="browser"))
        assert (decision.action, decision.source) == (Action.CONFIRM, "fallback")

    def test_blocked_command_cannot_be_allowed(self):
        gate = make_gate([{"match": {"tool": "exec"}, "action": "allow"}])
        decision = gate.decide(PermissionRequest(tool_kind="exec", command="sudo rm -rf / --no-preserve-root"))
        assert (decision.action, decision.source) == (Action.DENY, "builtin:blocked")

    def test_path_glob(self):
        gate = make_gate([{"match": {"tool": "fs_patch", "path": "src/**/*.py"}, "action": "allow"}])
        assert gate.decide(PermissionRequest(tool_kind="fs_patch", path="src/pkg/mod.py")).action is Action.ALLOW
        assert gate.decide(PermissionRequest(tool_kind="fs_patch", path="src/mod.py")).action is Action.ALLOW
        assert gate.decide(PermissionRequest(tool_kind="fs_patch", path="tests/mod.py")).action is Action.CONFIRM

    def test_rule_field_missing_from_request_does_not_match(self):
        gate = make_gate([{"match": {"path": "**"}, "action": "deny"}])
        assert gate.decide(PermissionRequest(tool_kind="exec", command="ls")).action is Action.CONFIRM

    def test_path_scoped_allow_does_not_widen_to_pathless_requests(self):
        gate = make_gate(
            [
                {"match": {"path": "docs/**"}, "action": "allow"},
                {"match": {"command": "^make"}, "action": "allow"},
            ]
        )
        assert gate.decide(PermissionRequest(tool_kind="fs_patch", path="docs/a.md")).source == "rule[0]"
        assert gate.decide(PermissionRequest(tool_kind="mcp", server_id="gh")).action is Action.CONFIRM
        exec_decision = gate.decide(PermissionRequest(tool_kind="exec", command="ls build"))
        assert (exec_decision.action, exec_decision.source) == (Action.CONFIRM, "builtin-default:exec")

    def test_server_match(self):
        gate = make_gate([{"match": {"tool": "mcp", "server": "docs"}, "action": "allow"}])
        assert gate.decide(PermissionRequest(tool_kind="mcp", server_id="docs")).action is Action.ALLOW
        assert gate.decide(PermissionRequest(tool_kind="mcp", server_id="other")).action is Action.CONFIRM


class TestEvaluate:
    def test_pure_and_one_audit_entry_per_call(self):
        gate = make_gate([{"match": {"tool": "exec", "command": "^ls"}, "action": "allow"}])
        request = PermissionRequest(tool_kind="exec", command="ls -la", request_id="r1")
        decisions = [gate.evaluate(request) for _ in range(5)]
        assert all(d == decisions[0] for d in decisions)
        assert len(gate.audit) == 5
        entry = gate.audit.entries[0]
        assert (entry.decision, entry.source, entry.request_id) == ("allow", "rule[0]", "r1")
        assert entry.request == "exec: ls -la"

    def test_long_requests_are_truncated_in_audit(self):
        gate = make_gate()
        gate.evaluate(PermissionRequest(tool_kind="exec", command="echo " + "x" * 500))
        summary = gate.audit.entries[0].request
        assert len(summary) == 200
        assert summary.endswith("...")

    def test_decide_does_not_audit(self):
        gate = make_gate()
        gate.decide(PermissionRequest(tool_kind="fs", path="x"))
        assert len(gate.audit) == 0

    def test_audit_log_file_is_jsonl(self, tmp_path: Path):
        path = tmp_path / "logs" / "audit.jsonl"
        gate = make_gate(audit=AuditLog(path))
        gate.evaluate(PermissionRequest(tool_kind="fs", path="a.txt"))
        gate.evaluate(PermissionRequest(tool_kind="exec", command="rm -rf /"))
        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["decision"] for line in lines] == ["allow", "deny"]
        assert lines[1]["source"] == "builtin:blocked"


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_allow_needs_no_confirmation(self):
        auth = await make_gate().authorize(PermissionRequest(tool_kind="fs", path="a.txt"))
        assert auth.allowed
        assert auth.confirmed is None

    @pytest.mark.asyncio
    async def test_confirm_without_callback_is_denied(self):
        auth = await make_gate().authorize(PermissionRequest(tool_kind="exec", command="make"))
        assert not auth.allowed
        assert auth.decision.action is Action.CONFIRM

    @pytest.mark.asyncio
    async def test_sync_confirm_callback(self):
        asked: list[str] = []

        def confirm(summary: str) -> bool:
            asked.append(summary)
            return True

        gate = make_gate(confirm=confirm)
        auth = await gate.authorize(PermissionRequest(tool_kind="exec", command="make test"))
        assert auth.allowed and auth.confirmed
        assert asked == ["Allow exec: make test?"]
        assert len(gate.audit) == 1

    @pytest.mark.asyncio
    async def test_async_confirm_callback_declines(self):
        async def confirm(summary: str) -> bool:
            return False

        auth = await make_gate(confirm=confirm).authorize(PermissionRequest(tool_kind="mcp", server_id="gh"))
        assert not auth.allowed
        assert auth.confirmed is False

    @pytest.mark.asyncio
    async def test_deny_never_asks(self):
        def confirm(summary: str) -> bool:
            raise AssertionError("should not be asked")

        gate = make_gate([{"match": {"tool": "exec"}, "action": "deny"}], confirm=confirm)
        auth = await gate.authorize(PermissionRequest(tool_kind="exec", command="ls"))
        assert not auth.allowed


class TestRuleValidation:
    def test_invalid_command_regex(self):
        with pytest.raises(ValidationError):
            PermissionRule.model_validate({"match": {"command": "("}, "action": "allow"})

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            PermissionRule.model_validate({"match": {}, "action": "maybe"})

    def test_unknown_match_field(self):
        with pytest.raises(ValidationError):
            PermissionRule.model_validate({"match": {"tool_kind": "fs"}, "action": "allow"})


class TestGlob:
    @pytest.mark.parametrize(
        ("glob", "path", "expected"),
        [
            ("*.py", "a.py", True),
            ("*.py", "pkg/a.py", False),
            ("**/*.py", "pkg/sub/a.py", True),
            ("**/*.py", "a.py", True),
            ("docs/**", "docs/a/b.md", True),
            ("src/?.ts", "src/a.ts", True),
            ("src/?.ts", "src/ab.ts", False),
            (".env*", ".env.local", True),
        ],
    )
    def test_glob(self, glob: str, path: str, expected: bool):
        assert bool(glob_to_regex(glob).match(path)) is expected
