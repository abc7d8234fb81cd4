import json
import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from machina.config import settings
from machina.core.exceptions import OperationTimeout, ToolUnavailable, WorkspaceIOError
from machina.modules.deployments.schemas import PlanSummary, ResourceChange
from machina.modules.deployments.workspace import TFVARS_FILE, WorkspaceManager

logger = logging.getLogger(__name__)

PLAN_FILE = "tfplan"

# (level, message, source)
LineSink = Callable[[str, str, str], None]

_ERROR_LINE = re.compile(r"\bError\b")
_WARNING_LINE = re.compile(r"\bWarning\b")


def classify_line(line: str) -> str:
    if _ERROR_LINE.search(line):
        return "error"
    if _WARNING_LINE.search(line):
        return "warn"
    return "info"


def parse_outputs(text: str) -> Dict[str, Any]:
    """
    Flatten ``terraform output -json`` into name -> value.
    Anything that is not a JSON object of outputs yields ``{}``.
    """
    try:
        raw = json.loads(text)
    except (TypeError, ValueError):
        return {}
    if not isinstance(raw, dict):
        return {}
    flat = {}
    for key, entry in raw.items():
        if isinstance(entry, dict) and "value" in entry:
            flat[key] = entry["value"]
        else:
            flat[key] = entry
    return flat


def parse_plan_summary(text: str) -> Optional[PlanSummary]:
    """Count planned actions from ``terraform show -json <plan>``."""
    try:
        plan = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(plan, dict):
        return None

    summary = PlanSummary()
    for change in plan.get("resource_changes") or []:
        actions = (change.get("change") or {}).get("actions") or []
        if "create" in actions and "delete" in actions:
            action = "replace"
            summary.resources_to_add += 1
            summary.resources_to_destroy += 1
        elif actions == ["create"]:
            action = "create"
            summary.resources_to_add += 1
        elif actions == ["update"]:
            action = "update"
            summary.resources_to_change += 1
        elif actions == ["delete"]:
            action = "delete"
            summary.resources_to_destroy += 1
        else:
            continue  # no-op / read
        summary.resource_changes.append(ResourceChange(
            address=change.get("address", ""),
            action=action,
            resource_type=change.get("type", ""),
            resource_name=change.get("name", ""),
        ))
    return summary


def detect_tool(binary: str = "terraform") -> bool:
    """True when the provisioning tool can be executed."""
    if shutil.which(binary) is None:
        logger.warning(f"Provisioning tool '{binary}' not found on PATH")
        return False
    try:
        result = subprocess.run(
            [binary, "version"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Provisioning tool '{binary}' could not be executed: {e}")
        return False
    if result.returncode != 0:
        logger.warning(f"'{binary} version' exited with code {result.returncode}")
        return False
    logger.info(f"Provisioning tool available: {result.stdout.splitlines()[0] if result.stdout else binary}")
    return True


@dataclass
class CommandResult:
    returncode: int
    lines: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass
class PlanResult:
    success: bool
    plan_artifact: Optional[str] = None
    summary: Optional[PlanSummary] = None
    error: Optional[str] = None


@dataclass
class ApplyResult:
    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class ProvisioningRunner:
    """
    Drives the terraform binary inside one workspace.

    Every subcommand runs under the workspace lock, so two runners on the same
    workspace never have a child process alive at the same time.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        workspace_id: str,
        sink: Optional[LineSink] = None,
        env: Optional[Dict[str, str]] = None,
        binary: Optional[str] = None,
        timeouts: Optional[Dict[str, float]] = None,
        available: bool = True,
    ):
        self.workspaces = workspaces
        self.workspace_id = workspace_id
        self.sink = sink
        self.extra_env = env or {}
        self.binary = binary or settings.terraform_binary
        self.available = available
        self.timeouts = {
            "init": settings.terraform_init_timeout_sec,
            "plan": settings.terraform_plan_timeout_sec,
            "apply": settings.terraform_apply_timeout_sec,
            "output": settings.terraform_output_timeout_sec,
        }
        self.timeouts.update(timeouts or {})

    def _emit(self, level: str, message: str, source: str = "terraform"):
        if self.sink:
            self.sink(level, message, source)

    def _get_env(self) -> Dict[str, str]:
        """Subprocess environment; provider secrets travel only as TF_VAR_* variables."""
        env = os.environ.copy()
        env.update(self.extra_env)
        env["TF_IN_AUTOMATION"] = "1"
        return env

    def _run(self, args: List[str], timeout: float, stream: bool = True) -> CommandResult:
        if not self.available:
            raise ToolUnavailable(f"Provisioning tool '{self.binary}' is not available")
        cwd = self.workspaces.path(self.workspace_id)
        if not cwd.is_dir():
            raise WorkspaceIOError(f"Workspace {self.workspace_id} does not exist")

        with self.workspaces.lock(self.workspace_id):
            try:
                proc = subprocess.Popen(
                    [self.binary] + args,
                    cwd=str(cwd),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    env=self._get_env(),
                    bufsize=1,
                )
            except FileNotFoundError:
                raise ToolUnavailable(f"Provisioning tool '{self.binary}' not found")
            except OSError as e:
                raise ToolUnavailable(f"Failed to start '{self.binary}': {e}")

            timed_out = threading.Event()

            def kill():
                timed_out.set()
                proc.kill()

            timer = threading.Timer(timeout, kill)
            timer.daemon = True
            timer.start()
            lines: List[str] = []
            try:
                for line in iter(proc.stdout.readline, ''):
                    line = line.rstrip()
                    if not line.strip():
                        continue
                    lines.append(line)
                    if stream:
                        self._emit(classify_line(line), line)
                proc.wait()
            finally:
                timer.cancel()
                proc.stdout.close()

        if timed_out.is_set():
            message = f"terraform {args[0]} timed out after {timeout}s"
            self._emit("error", message, "system")
            raise OperationTimeout(message, logs=lines)
        return CommandResult(proc.returncode, lines)

    def _failure(self, command: str, result: CommandResult) -> str:
        errors = [line for line in result.lines if classify_line(line) == "error"]
        if errors:
            return "\n".join(errors)
        return f"terraform {command} exited with code {result.returncode}"

    def _var_file_args(self) -> List[str]:
        if (self.workspaces.path(self.workspace_id) / TFVARS_FILE).exists():
            return [f"-var-file={TFVARS_FILE}"]
        return []

    def init(self) -> bool:
        self._emit("info", "Initializing Terraform...", "system")
        result = self._run(["init", "-no-color", "-input=false"], self.timeouts["init"])
        if not result.success:
            logger.error(f"terraform init failed in {self.workspace_id}: {self._failure('init', result)}")
        return result.success

    def plan(self, variables: Dict[str, Any]) -> PlanResult:
        self.workspaces.write_variables(self.workspace_id, variables)
        self._emit("info", "Planning changes...", "system")
        result = self._run(
            ["plan", "-no-color", "-input=false", f"-var-file={TFVARS_FILE}", f"-out={PLAN_FILE}"],
            self.timeouts["plan"],
        )
        if not result.success:
            return PlanResult(success=False, error=self._failure("plan", result))
        return PlanResult(success=True, plan_artifact=PLAN_FILE, summary=self.show_plan(PLAN_FILE))

    def show_plan(self, plan_artifact: str) -> Optional[PlanSummary]:
        result = self._run(["show", "-no-color", "-json", plan_artifact], self.timeouts["output"], stream=False)
        if not result.success:
            logger.warning(f"Could not summarize plan in {self.workspace_id}")
            return None
        return parse_plan_summary("\n".join(result.lines))

    def apply(self, plan_artifact: Optional[str] = None) -> ApplyResult:
        args = ["apply", "-no-color", "-input=false", "-auto-approve"]
        if plan_artifact and (self.workspaces.path(self.workspace_id) / plan_artifact).exists():
            args.append(plan_artifact)
        else:
            if plan_artifact:
                self._emit("warn", f"Plan artifact {plan_artifact} missing, applying from variables", "system")
            args.extend(self._var_file_args())
        self._emit("info", "Applying changes...", "system")
        result = self._run(args, self.timeouts["apply"])
        if not result.success:
            return ApplyResult(success=False, error=self._failure("apply", result))
        logger.info(f"Terraform apply completed successfully in {self.workspace_id}")
        return ApplyResult(success=True, outputs=self.outputs())

    def destroy(self) -> ApplyResult:
        self._emit("info", "Destroying resources...", "system")
        result = self._run(
            ["destroy", "-no-color", "-input=false", "-auto-approve"] + self._var_file_args(),
            self.timeouts["apply"],
        )
        if not result.success:
            return ApplyResult(success=False, error=self._failure("destroy", result))
        logger.info(f"Terraform destroy completed successfully in {self.workspace_id}")
        return ApplyResult(success=True)

    def refresh(self) -> bool:
        self._emit("info", "Refreshing state...", "system")
        result = self._run(
            ["refresh", "-no-color", "-input=false"] + self._var_file_args(),
            self.timeouts["apply"],
        )
        return result.success

    def outputs(self) -> Dict[str, Any]:
        # Not streamed: outputs may hold sensitive values
        result = self._run(["output", "-no-color", "-json"], self.timeouts["output"], stream=False)
        if not result.success:
            logger.warning(f"Failed to read Terraform outputs in {self.workspace_id}")
            return {}
        return parse_outputs("\n".join(result.lines))
