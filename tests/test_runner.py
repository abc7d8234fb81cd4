"""Tests for ProvisioningRunner against a scripted stand-in for the terraform binary."""

import json
import os
import threading

import pytest

from machina.core.exceptions import OperationTimeout, ToolUnavailable
from machina.modules.deployments.runner import (
    ProvisioningRunner,
    classify_line,
    detect_tool,
    parse_outputs,
    parse_plan_summary,
)
from machina.modules.deployments.workspace import WorkspaceManager

FAKE_TERRAFORM = r"""#!/bin/sh
if [ -n "$EVENTS_FILE" ]; then echo "start $1" >> "$EVENTS_FILE"; fi
case "$1" in
  version)
    echo "Terraform v1.7.5"
    ;;
  init)
    echo "Initializing the backend..."
    echo "Terraform has been successfully initialized!"
    ;;
  plan)
    echo "Warning: Argument is deprecated"
    echo "Plan: 1 to add, 0 to change, 0 to destroy."
    echo "token=$TF_VAR_do_token" > seen_env
    touch tfplan
    ;;
  show)
    echo '{"resource_changes": [{"address": "digitalocean_droplet.main", "type": "digitalocean_droplet", "name": "main", "change": {"actions": ["create"]}}, {"address": "digitalocean_firewall.main", "type": "digitalocean_firewall", "name": "main", "change": {"actions": ["delete", "create"]}}]}'
    ;;
  apply)
    if [ -n "$SLOW" ]; then exec sleep 5; fi
    if [ -n "$EVENTS_FILE" ]; then sleep 0.2; fi
    echo "$@" > apply_args
    echo "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
    ;;
  output)
    echo '{"public_ip": {"sensitive": false, "type": "string", "value": "203.0.113.10"}, "droplet_id": {"sensitive": false, "type": "string", "value": "4242"}}'
    ;;
  destroy)
    echo "Error: deleting droplet: 500 Internal Server Error"
    exit 1
    ;;
  refresh)
    echo "digitalocean_droplet.main: Refreshing state..."
    ;;
esac
if [ -n "$EVENTS_FILE" ]; then echo "end $1" >> "$EVENTS_FILE"; fi
"""


@pytest.fixture
def terraform_bin(tmp_path):
    path = tmp_path / "bin" / "terraform"
    path.parent.mkdir()
    path.write_text(FAKE_TERRAFORM)
    os.chmod(path, 0o755)
    return str(path)


@pytest.fixture
def workspace(tmp_path):
    manager = WorkspaceManager(str(tmp_path / "workspaces"))
    manager.ensure("resource-res_1")
    return manager


def _runner(workspace, terraform_bin, lines=None, **kwargs):
    sink = (lambda level, message, source: lines.append((level, message, source))) if lines is not None else None
    return ProvisioningRunner(workspace, "resource-res_1", sink=sink, binary=terraform_bin, **kwargs)


class TestClassification:
    def test_levels(self):
        assert classify_line("Error: Invalid provider configuration") == "error"
        assert classify_line("Warning: Argument is deprecated") == "warn"
        assert classify_line("Apply complete!") == "info"


class TestOutputs:
    def test_flattens_values(self):
        raw = json.dumps({
            "public_ip": {"sensitive": False, "type": "string", "value": "203.0.113.10"},
            "tags": {"sensitive": False, "value": ["a", "b"]},
        })
        assert parse_outputs(raw) == {"public_ip": "203.0.113.10", "tags": ["a", "b"]}

    def test_round_trip(self):
        outputs = {"public_ip": "203.0.113.10", "droplet_id": 4242, "nested": {"k": "v"}}
        serialized = json.dumps({k: {"value": v, "sensitive": False} for k, v in outputs.items()})
        assert parse_outputs(serialized) == outputs

    @pytest.mark.parametrize("text", ["", "not json", "[1, 2]", "null", "{\"unterminated\": "])
    def test_malformed_yields_empty(self, text):
        assert parse_outputs(text) == {}


class TestPlanSummary:
    def test_counts_actions(self):
        text = json.dumps({"resource_changes": [
            {"address": "a.one", "type": "a", "name": "one", "change": {"actions": ["create"]}},
            {"address": "a.two", "type": "a", "name": "two", "change": {"actions": ["update"]}},
            {"address": "a.three", "type": "a", "name": "three", "change": {"actions": ["no-op"]}},
            {"address": "a.four", "type": "a", "name": "four", "change": {"actions": ["delete", "create"]}},
        ]})
        summary = parse_plan_summary(text)
        assert summary.resources_to_add == 2
        assert summary.resources_to_change == 1
        assert summary.resources_to_destroy == 1
        assert [c.action for c in summary.resource_changes] == ["create", "update", "replace"]

    def test_malformed_plan(self):
        assert parse_plan_summary("garbage") is None


class TestToolDetection:
    def test_detects_executable(self, terraform_bin):
        assert detect_tool(terraform_bin) is True

    def test_missing_binary(self):
        assert detect_tool("definitely-not-terraform-xyz") is False

    def test_unavailable_runner_raises(self, workspace, terraform_bin):
        runner = _runner(workspace, terraform_bin, available=False)
        with pytest.raises(ToolUnavailable):
            runner.init()

    def test_binary_missing_at_spawn(self, workspace, tmp_path):
        runner = _runner(workspace, str(tmp_path / "nope" / "terraform"))
        with pytest.raises(ToolUnavailable):
            runner.init()


class TestSubcommands:
    def test_init_streams_classified_lines(self, workspace, terraform_bin):
        lines = []
        assert _runner(workspace, terraform_bin, lines).init() is True
        terraform_lines = [(lvl, msg) for lvl, msg, src in lines if src == "terraform"]
        assert terraform_lines == [
            ("info", "Initializing the backend..."),
            ("info", "Terraform has been successfully initialized!"),
        ]

    def test_plan_writes_variables_and_summarizes(self, workspace, terraform_bin):
        lines = []
        runner = _runner(workspace, terraform_bin, lines, env={"TF_VAR_do_token": "dop_v1_secret"})
        result = runner.plan({"name": "web-1", "region": "fra1"})

        assert result.success is True
        assert result.plan_artifact == "tfplan"
        assert result.summary.resources_to_add == 2
        assert result.summary.resources_to_destroy == 1

        ws = workspace.path("resource-res_1")
        tfvars = json.loads((ws / "terraform.tfvars.json").read_text())
        assert tfvars == {"name": "web-1", "region": "fra1"}
        assert (ws / "seen_env").read_text().strip() == "token=dop_v1_secret"
        assert ("warn", "Warning: Argument is deprecated", "terraform") in lines

    def test_apply_uses_plan_artifact_and_reads_outputs(self, workspace, terraform_bin):
        runner = _runner(workspace, terraform_bin)
        runner.plan({"name": "web-1"})
        result = runner.apply("tfplan")

        assert result.success is True
        assert result.outputs == {"public_ip": "203.0.113.10", "droplet_id": "4242"}
        args = (workspace.path("resource-res_1") / "apply_args").read_text().split()
        assert args[-1] == "tfplan"
        assert "-auto-approve" in args

    def test_apply_without_artifact_uses_variables_file(self, workspace, terraform_bin):
        runner = _runner(workspace, terraform_bin)
        workspace.write_variables("resource-res_1", {"name": "web-1"})
        assert runner.apply().success is True
        args = (workspace.path("resource-res_1") / "apply_args").read_text().split()
        assert "-var-file=terraform.tfvars.json" in args

    def test_outputs_are_not_streamed(self, workspace, terraform_bin):
        lines = []
        _runner(workspace, terraform_bin, lines).outputs()
        assert not any("203.0.113.10" in message for _, message, _ in lines)

    def test_destroy_failure_reports_error_lines(self, workspace, terraform_bin):
        result = _runner(workspace, terraform_bin).destroy()
        assert result.success is False
        assert "500 Internal Server Error" in result.error

    def test_refresh(self, workspace, terraform_bin):
        assert _runner(workspace, terraform_bin).refresh() is True

    def test_timeout_kills_process(self, workspace, terraform_bin):
        lines = []
        runner = _runner(workspace, terraform_bin, lines, env={"SLOW": "1"}, timeouts={"apply": 0.5})
        with pytest.raises(OperationTimeout):
            runner.apply()
        assert any("timed out" in message for _, message, _ in lines)


class TestSerialization:
    def test_overlapping_runs_on_one_workspace_never_interleave(self, workspace, terraform_bin, tmp_path):
        events = tmp_path / "events.log"
        env = {"EVENTS_FILE": str(events)}
        runners = [_runner(workspace, terraform_bin, env=env) for _ in range(3)]

        threads = [threading.Thread(target=r.apply) for r in runners]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        markers = [line.split()[0] for line in events.read_text().splitlines()]
        # apply and output per runner
        assert len(markers) == 12
        assert markers == ["start", "end"] * 6
