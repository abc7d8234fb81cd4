import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException
from supabase import Client

from machina.config import Settings, settings as default_settings
from machina.core.exceptions import (
    ApplyFailed,
    Cancelled,
    CredentialsNotFound,
    Interrupted,
    InvalidTransition,
    OperationTimeout,
    OrchestrationError,
    PlanFailed,
    WorkspaceIOError,
)
from machina.modules.credentials.vault import CredentialVault
from machina.modules.deployments.log_registry import LogBroadcastRegistry
from machina.modules.deployments.log_stream import DeploymentLogStream
from machina.modules.deployments.runner import ProvisioningRunner, detect_tool
from machina.modules.deployments.schemas import (
    DeploymentResponse,
    DeploymentState,
    DeploymentType,
    LogRecord,
)
from machina.modules.deployments.service import DeploymentService
from machina.modules.deployments.state_machine import CANCELLABLE_STATES, DeploymentStateMachine
from machina.modules.deployments.supervisor import TaskSupervisor
from machina.modules.deployments.variables import PROVIDER_MODULES, build_variables
from machina.modules.deployments.workspace import WorkspaceManager, workspace_id_for
from machina.modules.resources.provider_api import get_provider_client
from machina.modules.resources.schemas import (
    ResourceCreate,
    ResourceResponse,
    ResourceStatus,
    StateSyncStatus,
    SyncReport,
    SyncResult,
)
from machina.modules.resources.service import ResourceService, new_resource_id

logger = logging.getLogger(__name__)

# Statuses owned by an in-flight workflow; provider sync leaves them alone
TRANSITIONAL_STATUSES = frozenset({
    ResourceStatus.PENDING,
    ResourceStatus.PROVISIONING,
    ResourceStatus.REBOOTING,
    ResourceStatus.TERMINATING,
})


def _address_update(outputs: Dict[str, Any]) -> Dict[str, Any]:
    update = {}
    for key in ("public_ip", "private_ip"):
        if isinstance(outputs.get(key), str):
            update[key] = outputs[key]
    return update


class OrchestrationCoordinator:
    """
    Entry point for every lifecycle operation.

    ``request_*`` methods run on the caller's thread: they validate, persist the
    Deployment and return at once. The workflow itself runs on the supervisor,
    holds the resource's workspace lock for its whole run and reports progress
    through the log registry and the state machine.
    """

    def __init__(
        self,
        supabase: Client,
        vault: Optional[CredentialVault] = None,
        workspaces: Optional[WorkspaceManager] = None,
        registry: Optional[LogBroadcastRegistry] = None,
        supervisor: Optional[TaskSupervisor] = None,
        settings: Optional[Settings] = None,
        tool_available: Optional[bool] = None,
        runner_factory: Callable[..., ProvisioningRunner] = ProvisioningRunner,
        provider_client_factory: Callable = get_provider_client,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or default_settings
        self.deployments = DeploymentService(supabase)
        self.resources = ResourceService(supabase)
        self.state = DeploymentStateMachine(
            self.deployments, self.resources, self.settings.error_message_max_length
        )
        self.vault = vault or CredentialVault(supabase)
        self.workspaces = workspaces or WorkspaceManager(self.settings.workspaces_dir, self.settings.modules_dir)
        self.registry = registry or LogBroadcastRegistry(self.settings.retired_log_buffers)
        self.supervisor = supervisor or TaskSupervisor(self.settings.max_concurrent_deployments)
        self.tool_available = tool_available
        self.runner_factory = runner_factory
        self.provider_client_factory = provider_client_factory
        self.sleep = sleep

    # Lifecycle

    def start(self) -> None:
        if self.tool_available is None:
            self.tool_available = detect_tool(self.settings.terraform_binary)
        if not self.tool_available:
            logger.warning("Provisioning tool unavailable; running in degraded mode")
        self.registry.start()
        self.supervisor.start()
        self.reconcile()

    def stop(self, wait: bool = False) -> None:
        self.supervisor.shutdown(wait_for_tasks=wait)
        self.registry.stop()

    def reconcile(self) -> List[str]:
        """
        Fail deployments a previous process left non-terminal.
        Plans awaiting approval run nothing and stay approvable across restarts.
        """
        interrupted = []
        for deployment in self.deployments.list_active_deployments():
            if deployment.state == DeploymentState.AWAITING_APPROVAL:
                continue
            if self.supervisor.status(deployment.id) != "idle":
                continue
            try:
                if self.state.fail(deployment.id, Interrupted(
                    f"Deployment was interrupted while {deployment.state.value}; the service restarted"
                )):
                    interrupted.append(deployment.id)
            except OrchestrationError as e:
                logger.warning(f"Could not reconcile deployment {deployment.id}: {e.message}")
        if interrupted:
            logger.warning(f"Marked {len(interrupted)} interrupted deployment(s) as failed: {interrupted}")
        return interrupted

    def health(self) -> Dict[str, Any]:
        return {
            "tool_available": bool(self.tool_available),
            "registry_running": self.registry.running,
            "active_deployments": self.supervisor.active(),
        }

    # Request side

    def request_create(self, request: ResourceCreate, initiator: str = "system") -> Tuple[ResourceResponse, DeploymentResponse]:
        self.workspaces.module_path(PROVIDER_MODULES.get(request.provider, request.provider))
        if not self.vault.has(request.provider_account_id):
            raise CredentialsNotFound(f"No credentials stored for provider account {request.provider_account_id}")

        resource_id = new_resource_id()
        workspace = workspace_id_for(resource_id)
        resource = self.resources.create_resource(request, resource_id, workspace)
        deployment = self.deployments.create_deployment(
            resource.id, DeploymentType.CREATE, DeploymentState.QUEUED, workspace, initiator
        )
        requires_approval = (
            request.require_approval
            if request.require_approval is not None
            else self.settings.require_plan_approval
        )
        self._submit(deployment.id, self._run_create, resource.id, requires_approval)
        return resource, deployment

    def request_reboot(self, resource_id: str, initiator: str = "system") -> DeploymentResponse:
        resource = self.resources.get_resource_by_id(resource_id)
        if resource.actual_status != ResourceStatus.RUNNING:
            raise InvalidTransition(
                f"Resource {resource_id} must be running to reboot (is {resource.actual_status.value})"
            )
        if not resource.provider_resource_id:
            raise InvalidTransition(f"Resource {resource_id} has no provider id yet")
        if not self.vault.has(resource.provider_account_id):
            raise CredentialsNotFound(f"No credentials stored for provider account {resource.provider_account_id}")

        deployment = self.deployments.create_deployment(
            resource.id, DeploymentType.REBOOT, DeploymentState.APPLYING, resource.workspace, initiator
        )
        self.resources.update_resource(resource.id, {"actual_status": ResourceStatus.REBOOTING})
        self._submit(deployment.id, self._run_reboot, resource.id)
        return deployment

    def request_destroy(self, resource_id: str, initiator: str = "system") -> DeploymentResponse:
        resource = self.resources.get_resource_by_id(resource_id)
        if resource.actual_status in (ResourceStatus.TERMINATED, ResourceStatus.TERMINATING):
            raise InvalidTransition(f"Resource {resource_id} is already {resource.actual_status.value}")

        deployment = self.deployments.create_deployment(
            resource.id, DeploymentType.DESTROY, DeploymentState.APPLYING, resource.workspace, initiator
        )
        self.resources.update_resource(resource.id, {
            "actual_status": ResourceStatus.TERMINATING,
            "desired_status": ResourceStatus.TERMINATED,
        })
        self._submit(deployment.id, self._run_destroy, resource.id)
        return deployment

    def request_refresh(self, resource_id: str, initiator: str = "system") -> DeploymentResponse:
        resource = self.resources.get_resource_by_id(resource_id)
        if resource.actual_status == ResourceStatus.TERMINATED:
            raise InvalidTransition(f"Resource {resource_id} is terminated")

        deployment = self.deployments.create_deployment(
            resource.id, DeploymentType.REFRESH, DeploymentState.APPLYING, resource.workspace, initiator
        )
        self._submit(deployment.id, self._run_refresh, resource.id)
        return deployment

    def cancel(self, deployment_id: str) -> DeploymentResponse:
        """Soft cancel: flips state; the workflow stops before its next step."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        if deployment.type != DeploymentType.CREATE:
            # reboot/destroy/refresh only end in succeeded or failed
            raise InvalidTransition(
                f"Deployment {deployment_id} is a {deployment.type.value} and cannot be cancelled"
            )
        if deployment.state not in CANCELLABLE_STATES:
            raise InvalidTransition(
                f"Deployment {deployment_id} cannot be cancelled while {deployment.state.value}"
            )
        updated = self.state.cancel(deployment_id)
        if updated is None:
            raise InvalidTransition(f"Deployment {deployment_id} already finished")
        return updated

    def approve(self, deployment_id: str) -> DeploymentResponse:
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        if deployment.type != DeploymentType.CREATE:
            raise InvalidTransition(f"Deployment {deployment_id} is a {deployment.type.value}, not a create")
        updated = self.state.approve(deployment_id)
        if updated is None:
            raise InvalidTransition(f"Deployment {deployment_id} is no longer awaiting approval")
        self._submit(deployment_id, self._run_apply_after_approval, deployment.resource_id, deployment.plan_artifact)
        return updated

    def get_logs(self, deployment_id: str) -> Tuple[DeploymentResponse, List[LogRecord]]:
        """Persisted history merged with records not yet flushed."""
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        records = {r.sequence: r for r in deployment.logs}
        for record in self.registry.history(deployment_id):
            records.setdefault(record.sequence, record)
        return deployment, [records[seq] for seq in sorted(records)]

    def sync_resources(self) -> SyncReport:
        """Reconcile stored resource status against each provider's inventory."""
        groups: Dict[Tuple[str, str], List[ResourceResponse]] = defaultdict(list)
        for resource in self.resources.list_resources(include_terminated=False):
            groups[(resource.provider, resource.provider_account_id)].append(resource)
        busy = {d.resource_id for d in self.deployments.list_active_deployments()}

        checked = 0
        results: List[SyncResult] = []
        for (provider, account_id), resources in groups.items():
            credentials = self.vault.get(account_id)
            if credentials is None:
                logger.warning(f"Skipping sync for {provider} account {account_id}: no credentials")
                continue
            try:
                with self.provider_client_factory(provider, credentials, self.settings) as client:
                    inventory = {i.provider_resource_id: i for i in client.list_resources()}
            except OrchestrationError as e:
                logger.warning(f"Skipping sync for {provider} account {account_id}: {e.message}")
                continue

            for resource in resources:
                if not resource.provider_resource_id:
                    # Stuck before the provider ever reported an id, with no workflow left to finish it
                    if (resource.actual_status in (ResourceStatus.PENDING, ResourceStatus.PROVISIONING)
                            and resource.id not in busy):
                        checked += 1
                        update = {
                            "actual_status": ResourceStatus.ERROR,
                            "state_sync_status": StateSyncStatus.UNKNOWN,
                        }
                        action = "marked_error_no_resource_id"
                    else:
                        continue
                elif resource.actual_status in TRANSITIONAL_STATUSES:
                    continue
                else:
                    checked += 1
                    instance = inventory.get(resource.provider_resource_id)
                    if instance is None:
                        update = {
                            "actual_status": ResourceStatus.TERMINATED,
                            "state_sync_status": StateSyncStatus.DRIFTED,
                        }
                        action = "marked_terminated"
                    else:
                        new_status = instance.status or resource.actual_status
                        public_ip = instance.public_ip or resource.public_ip
                        private_ip = instance.private_ip or resource.private_ip
                        if (new_status == resource.actual_status and public_ip == resource.public_ip
                                and private_ip == resource.private_ip):
                            continue
                        update = {
                            "actual_status": new_status,
                            "public_ip": public_ip,
                            "private_ip": private_ip,
                            "state_sync_status": StateSyncStatus.IN_SYNC,
                        }
                        action = "status_updated" if new_status != resource.actual_status else "ip_updated"
                self.resources.update_resource(resource.id, update)
                results.append(SyncResult(
                    resource_id=resource.id,
                    name=resource.name,
                    previous_status=resource.actual_status,
                    new_status=update["actual_status"],
                    action=action,
                ))
        logger.info(f"Provider sync checked {checked} resource(s), updated {len(results)}")
        return SyncReport(synced=checked, results=results)

    # Workflow plumbing

    def _submit(self, deployment_id: str, workflow: Callable, *args) -> None:
        self.supervisor.submit(deployment_id, self._execute, deployment_id, workflow, *args)

    def _log_stream(self, deployment_id: str) -> DeploymentLogStream:
        deployment = self.deployments.get_deployment_by_id(deployment_id)
        last = deployment.logs[-1].sequence if deployment.logs else 0
        history = self.registry.history(deployment_id)
        if history:
            last = max(last, history[-1].sequence)
        return DeploymentLogStream(
            deployment_id,
            self.registry,
            self.deployments,
            flush_interval=self.settings.log_flush_interval_sec,
            start_sequence=last,
        )

    def _execute(self, deployment_id: str, workflow: Callable, *args) -> None:
        """Workflow boundary: nothing raised by a workflow escapes the supervisor."""
        try:
            log = self._log_stream(deployment_id)
        except Exception as e:
            logger.exception(f"Could not open log stream for deployment {deployment_id}")
            self._record_failure(deployment_id, e)
            return
        try:
            workflow(deployment_id, log, *args)
        except Cancelled as e:
            log.warn(e.message)
            logger.info(f"Deployment {deployment_id} stopped after cancellation")
        except OrchestrationError as e:
            log.error(e.message)
            logger.error(f"Deployment {deployment_id} failed ({e.code}): {e.message}")
            self._record_failure(deployment_id, e)
        except Exception as e:
            logger.exception(f"Unexpected error in deployment {deployment_id}")
            log.error(f"Unexpected error: {e}")
            self._record_failure(deployment_id, e)
        finally:
            log.flush()
            try:
                if self.deployments.get_deployment_by_id(deployment_id).is_terminal:
                    self.registry.retire(deployment_id)
            except HTTPException as e:
                logger.error(f"Could not re-read deployment {deployment_id}: {e.detail}")

    def _record_failure(self, deployment_id: str, error: Exception) -> None:
        try:
            self.state.fail(deployment_id, error)
        except Exception as e:
            logger.error(f"Could not mark deployment {deployment_id} failed: {str(e)}")

    def _checkpoint(self, deployment_id: str) -> None:
        if self.state.is_cancelled(deployment_id):
            raise Cancelled(f"Deployment {deployment_id} was cancelled; stopping before the next step")

    def _moved(self, deployment_id: str, result: Optional[DeploymentResponse]) -> DeploymentResponse:
        if result is None:
            raise Cancelled(f"Deployment {deployment_id} is no longer active; stopping")
        return result

    def _credentials(self, resource: ResourceResponse) -> Dict[str, Any]:
        credentials = self.vault.get(resource.provider_account_id)
        if credentials is None:
            raise CredentialsNotFound(
                f"No credentials stored for provider account {resource.provider_account_id}"
            )
        return credentials

    def _variables(self, resource: ResourceResponse, log: DeploymentLogStream, announce: bool = False):
        firewall = None
        if resource.firewall_profile_id:
            firewall = self.resources.get_firewall_profile(resource.firewall_profile_id)
        bootstrap = None
        if resource.bootstrap_profile_id:
            bootstrap = self.resources.get_bootstrap_profile(resource.bootstrap_profile_id)

        variables = build_variables(
            resource, self._credentials(resource), firewall, bootstrap, self.settings.public_server_url
        )
        log.add_secrets(variables.secret_values())
        if announce:
            if firewall:
                log.info(
                    f'Firewall profile "{firewall.name}" will be applied with '
                    f'{len(variables.firewall_inbound_rules)} inbound rules'
                )
            else:
                log.info("No firewall profile selected, applying default SSH-only rules")
            if bootstrap and variables.user_data:
                log.info("Bootstrap profile cloud-init will be applied to the resource")
        return variables

    def _runner(self, workspace_id: str, log: DeploymentLogStream, env: Optional[Dict[str, str]] = None) -> ProvisioningRunner:
        return self.runner_factory(
            self.workspaces,
            workspace_id,
            sink=log,
            env=env,
            binary=self.settings.terraform_binary,
            available=self.tool_available is not False,
        )

    def _warn_undeclared(self, module: str, tfvars: Dict[str, Any], log: DeploymentLogStream) -> None:
        declared = self.workspaces.declared_variables(module)
        if not declared:
            return
        undeclared = sorted(set(tfvars) - declared)
        if undeclared:
            log.warn(f"Module {module} does not declare: {', '.join(undeclared)}")

    # Workflows

    def _run_create(self, deployment_id: str, log: DeploymentLogStream, resource_id: str, requires_approval: bool):
        resource = self.resources.get_resource_by_id(resource_id)
        workspace_id = resource.workspace
        with self.workspaces.lock(workspace_id):
            self._checkpoint(deployment_id)
            self._moved(deployment_id, self.state.start(deployment_id))
            log.info(f"Provisioning {resource.name} on {resource.provider} ({resource.region}, {resource.size})")

            variables = self._variables(resource, log, announce=True)
            module = PROVIDER_MODULES[resource.provider]
            self.workspaces.install_module(workspace_id, module)
            tfvars = variables.tfvars()
            self._warn_undeclared(module, tfvars, log)
            runner = self._runner(workspace_id, log, variables.secret_env())

            self._checkpoint(deployment_id)
            if not runner.init():
                raise PlanFailed("Terraform init failed")

            self._checkpoint(deployment_id)
            plan = runner.plan(tfvars)
            if not plan.success:
                raise PlanFailed(plan.error or "Terraform plan failed")
            if plan.summary:
                log.info(
                    f"Plan: {plan.summary.resources_to_add} to add, "
                    f"{plan.summary.resources_to_change} to change, "
                    f"{plan.summary.resources_to_destroy} to destroy"
                )

            self._moved(deployment_id, self.state.plan_succeeded(
                deployment_id, plan.summary, plan.plan_artifact, requires_approval
            ))
            if requires_approval:
                log.info("Plan is awaiting approval")
                return
            self._apply_create(deployment_id, log, runner, variables, plan.plan_artifact)

    def _run_apply_after_approval(self, deployment_id: str, log: DeploymentLogStream, resource_id: str,
                                  plan_artifact: Optional[str]):
        resource = self.resources.get_resource_by_id(resource_id)
        with self.workspaces.lock(resource.workspace):
            log.info("Plan approved")
            variables = self._variables(resource, log)
            runner = self._runner(resource.workspace, log, variables.secret_env())
            self._apply_create(deployment_id, log, runner, variables, plan_artifact)

    def _apply_create(self, deployment_id: str, log: DeploymentLogStream, runner: ProvisioningRunner,
                      variables, plan_artifact: Optional[str]):
        self._checkpoint(deployment_id)
        result = runner.apply(plan_artifact)
        if not result.success:
            raise ApplyFailed(result.error or "Terraform apply failed")

        outputs = result.outputs
        resource_update = {"actual_status": ResourceStatus.RUNNING}
        resource_update.update(_address_update(outputs))
        if outputs.get(variables.resource_id_output) is not None:
            resource_update["provider_resource_id"] = str(outputs[variables.resource_id_output])

        log.info(f"Resource created successfully! IP: {outputs.get('public_ip')}")
        if self.state.succeed(deployment_id, outputs, resource_update) is None:
            log.warn("Deployment was cancelled while applying; resource state is unknown")

    def _run_reboot(self, deployment_id: str, log: DeploymentLogStream, resource_id: str):
        resource = self.resources.get_resource_by_id(resource_id)
        with self.workspaces.lock(resource.workspace):
            credentials = self._credentials(resource)
            with self.provider_client_factory(resource.provider, credentials, self.settings) as client:
                log.info(f"Rebooting {resource.name}...", "provider")
                client.reboot(resource.provider_resource_id)

                attempts = self.settings.reboot_max_attempts
                for attempt in range(1, attempts + 1):
                    self.sleep(self.settings.reboot_poll_interval_sec)
                    self._checkpoint(deployment_id)
                    status = client.status(resource.provider_resource_id)
                    if status == ResourceStatus.RUNNING:
                        log.info(f"{resource.name} is running again", "provider")
                        self.state.succeed(deployment_id, resource_update={"actual_status": ResourceStatus.RUNNING})
                        return
                    logger.debug(
                        f"Waiting for {resource.name} ({attempt}/{attempts}): {status.value if status else 'unknown'}"
                    )
            raise OperationTimeout("Reboot timed out")

    def _run_destroy(self, deployment_id: str, log: DeploymentLogStream, resource_id: str):
        resource = self.resources.get_resource_by_id(resource_id)
        workspace_id = resource.workspace
        terminated = {
            "actual_status": ResourceStatus.TERMINATED,
            "public_ip": None,
            "private_ip": None,
        }
        with self.workspaces.lock(workspace_id):
            self._checkpoint(deployment_id)
            if not self.workspaces.exists(workspace_id):
                log.warn(f"No workspace found for {resource.name}; nothing to destroy")
                self.state.succeed(deployment_id, resource_update=terminated)
                return

            variables = self._variables(resource, log)
            runner = self._runner(workspace_id, log, variables.secret_env())
            if not runner.init():
                raise ApplyFailed("Terraform init failed")

            self._checkpoint(deployment_id)
            result = runner.destroy()
            if not result.success:
                raise ApplyFailed(result.error or "Terraform destroy failed")

            log.info(f"{resource.name} destroyed")
            self.state.succeed(deployment_id, resource_update=terminated)
            self.workspaces.cleanup(workspace_id)

    def _run_refresh(self, deployment_id: str, log: DeploymentLogStream, resource_id: str):
        resource = self.resources.get_resource_by_id(resource_id)
        workspace_id = resource.workspace
        with self.workspaces.lock(workspace_id):
            self._checkpoint(deployment_id)
            if not self.workspaces.exists(workspace_id):
                raise WorkspaceIOError(f"Workspace {workspace_id} does not exist")

            variables = self._variables(resource, log)
            runner = self._runner(workspace_id, log, variables.secret_env())
            if not runner.init():
                raise ApplyFailed("Terraform init failed")

            self._checkpoint(deployment_id)
            if not runner.refresh():
                raise ApplyFailed("Terraform refresh failed")

            outputs = runner.outputs()
            resource_update = _address_update(outputs)
            log.info(f"State refreshed for {resource.name}")
            self.state.succeed(deployment_id, outputs, resource_update)
