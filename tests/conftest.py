"""Shared pytest fixtures for the orchestration engine tests."""

import copy
import threading
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from machina.config import Settings
from machina.modules.credentials.vault import CredentialVault
from machina.modules.deployments.coordinator import OrchestrationCoordinator
from machina.modules.deployments.runner import ApplyResult, PlanResult
from machina.modules.deployments.schemas import PlanSummary
from machina.modules.deployments.workspace import WorkspaceManager
from machina.modules.resources.schemas import ResourceStatus


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """The subset of the postgrest query builder the services use."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.single = False
        self.order_by = None
        self.window = None
        self.max_rows = None
        self.on_conflict = None

    def select(self, *columns, count=None):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def maybe_single(self):
        self.single = True
        return self

    def execute(self):
        with self.db.lock:
            self.db.executed.append((self.table, self.op))
            rows = self.db.tables.setdefault(self.table, [])
            if self.op == "insert":
                new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
                rows.extend(copy.deepcopy(new_rows))
                return FakeResponse(copy.deepcopy(new_rows))
            if self.op == "upsert":
                key = self.on_conflict or "id"
                for i, row in enumerate(rows):
                    if row.get(key) == self.payload.get(key):
                        rows[i] = copy.deepcopy(self.payload)
                        break
                else:
                    rows.append(copy.deepcopy(self.payload))
                return FakeResponse([copy.deepcopy(self.payload)])

            matched = [row for row in rows if all(f(row) for f in self.filters)]
            if self.op == "update":
                for row in matched:
                    row.update(copy.deepcopy(self.payload))
                return FakeResponse(copy.deepcopy(matched))
            if self.op == "delete":
                self.db.tables[self.table] = [row for row in rows if row not in matched]
                return FakeResponse(copy.deepcopy(matched))

            if self.order_by:
                column, desc = self.order_by
                matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
            total = len(matched)
            if self.window:
                matched = matched[self.window[0]:self.window[1] + 1]
            if self.max_rows is not None:
                matched = matched[:self.max_rows]
            if self.single:
                # supabase-py returns None instead of a response when nothing matched
                return FakeResponse(copy.deepcopy(matched[0])) if matched else None
            return FakeResponse(copy.deepcopy(matched), count=total)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.executed = []
        self.lock = threading.RLock()

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        with self.lock:
            return copy.deepcopy(self.tables.get(name, []))


class RunnerScript:
    """Controls what every FakeRunner built by a coordinator does."""

    def __init__(self):
        self.calls = []
        self.init_ok = True
        self.plan_ok = True
        self.apply_ok = True
        self.destroy_ok = True
        self.refresh_ok = True
        self.outputs = {"public_ip": "203.0.113.10", "private_ip": "10.0.0.5", "droplet_id": 12345}
        self.env = None
        self.variables = None
        self.on_plan = None
        self.echo = None

    def factory(self, workspaces, workspace_id, sink=None, env=None, **kwargs):
        return FakeRunner(self, workspaces, workspace_id, sink, env)


class FakeRunner:
    def __init__(self, script, workspaces, workspace_id, sink, env):
        self.script = script
        self.workspaces = workspaces
        self.workspace_id = workspace_id
        self.sink = sink
        script.env = env

    def _line(self, level, message):
        if self.sink:
            self.sink(level, message, "terraform")

    def init(self):
        self.script.calls.append("init")
        self._line("info", "Terraform has been successfully initialized!")
        if self.script.echo:
            self._line("info", self.script.echo)
        return self.script.init_ok

    def plan(self, variables):
        self.script.calls.append("plan")
        self.script.variables = variables
        self.workspaces.write_variables(self.workspace_id, variables)
        if self.script.on_plan:
            self.script.on_plan()
        if not self.script.plan_ok:
            self._line("error", "Error: Invalid provider configuration")
            return PlanResult(success=False, error="Error: Invalid provider configuration")
        self._line("info", "Plan: 2 to add, 0 to change, 0 to destroy.")
        return PlanResult(success=True, plan_artifact="tfplan", summary=PlanSummary(resources_to_add=2))

    def apply(self, plan_artifact=None):
        self.script.calls.append(("apply", plan_artifact))
        if not self.script.apply_ok:
            self._line("error", "Error: creating droplet failed")
            return ApplyResult(success=False, error="Error: creating droplet failed")
        self._line("info", "Apply complete! Resources: 2 added, 0 changed, 0 destroyed.")
        return ApplyResult(success=True, outputs=dict(self.script.outputs))

    def destroy(self):
        self.script.calls.append("destroy")
        if not self.script.destroy_ok:
            self._line("error", "Error: deleting droplet failed")
            return ApplyResult(success=False, error="Error: deleting droplet failed")
        self._line("info", "Destroy complete! Resources: 2 destroyed.")
        return ApplyResult(success=True)

    def refresh(self):
        self.script.calls.append("refresh")
        return self.script.refresh_ok

    def outputs(self):
        self.script.calls.append("outputs")
        return dict(self.script.outputs)


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        supabase_url="http://localhost:54321",
        supabase_key="anon",
        data_dir=str(tmp_path / "data"),
        workspaces_dir=str(tmp_path / "workspaces"),
        encryption_key="unit-test-key",
        log_flush_interval_sec=0,
        reboot_poll_interval_sec=0,
        reboot_max_attempts=3,
        stream_poll_interval_sec=0.01,
        stream_max_polls=20,
        max_concurrent_deployments=4,
        require_plan_approval=False,
        public_server_url="https://machina.example.com",
    )


@pytest.fixture
def vault(fake_db):
    return CredentialVault(fake_db, key=Fernet.generate_key())


@pytest.fixture
def workspaces(test_settings):
    return WorkspaceManager(test_settings.workspaces_dir)


@pytest.fixture
def runner_script():
    return RunnerScript()


@pytest.fixture
def provider_client():
    from unittest.mock import MagicMock

    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = False
    client.status.return_value = ResourceStatus.RUNNING
    client.list_resources.return_value = []
    return client


@pytest.fixture
def coordinator(fake_db, vault, workspaces, test_settings, runner_script, provider_client):
    coord = OrchestrationCoordinator(
        fake_db,
        vault=vault,
        workspaces=workspaces,
        settings=test_settings,
        tool_available=True,
        runner_factory=runner_script.factory,
        provider_client_factory=lambda provider, credentials, settings: provider_client,
        sleep=lambda seconds: None,
    )
    coord.start()
    yield coord
    coord.stop(wait=True)


@pytest.fixture
def make_resource(fake_db, workspaces):
    """Insert a resource row directly, optionally with a workspace on disk."""

    def _make(resource_id="res_test0001", status=ResourceStatus.RUNNING, provider="digitalocean",
              with_workspace=True, provider_resource_id="12345", account="acct-1"):
        workspace = f"resource-{resource_id}"
        row = {
            "id": resource_id,
            "name": "web-1",
            "provider": provider,
            "provider_account_id": account,
            "region": "fra1",
            "size": "s-1vcpu-1gb",
            "image": "ubuntu-24-04-x64",
            "tags": {"env": "test"},
            "ssh_keys": [],
            "desired_status": "running",
            "actual_status": status.value,
            "state_sync_status": "in_sync",
            "public_ip": "203.0.113.10",
            "private_ip": None,
            "provider_resource_id": provider_resource_id,
            "workspace": workspace,
            "firewall_profile_id": None,
            "bootstrap_profile_id": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        fake_db.table("resources").insert(row).execute()
        if with_workspace:
            path = workspaces.ensure(workspace)
            (path / "terraform.tfstate").write_text("{}")
        return row

    return _make
