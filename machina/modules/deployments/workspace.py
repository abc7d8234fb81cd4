import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Set

import hcl2

from machina.core.exceptions import ModuleNotFound, WorkspaceIOError

logger = logging.getLogger(__name__)

BUNDLED_MODULES_DIR = Path(__file__).resolve().parents[2] / "terraform" / "modules"
MODULE_FILE_SUFFIXES = (".tf", ".tftpl")
TFVARS_FILE = "terraform.tfvars.json"


def workspace_id_for(resource_id: str) -> str:
    return f"resource-{resource_id}"


class WorkspaceManager:
    """
    One directory per resource under ``root``, reused across the resource's lineage.

    ``lock(workspace_id)`` returns the same re-entrant lock for every caller so the
    workflow and the runner subcommands it issues share one serialization point.
    """

    def __init__(self, root: str, modules_dir: Optional[str] = None):
        self.root = Path(root)
        self.modules_dir = Path(modules_dir) if modules_dir else BUNDLED_MODULES_DIR
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def path(self, workspace_id: str) -> Path:
        if not workspace_id or "/" in workspace_id or "\\" in workspace_id or ".." in workspace_id:
            raise WorkspaceIOError(f"Invalid workspace id: {workspace_id!r}")
        return self.root / workspace_id

    def lock(self, workspace_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(workspace_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[workspace_id] = lock
            return lock

    def exists(self, workspace_id: str) -> bool:
        return self.path(workspace_id).is_dir()

    def ensure(self, workspace_id: str) -> Path:
        path = self.path(workspace_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceIOError(f"Failed to create workspace {workspace_id}: {e}")
        return path

    def module_path(self, module_name: str) -> Path:
        path = self.modules_dir / module_name
        if not module_name or "/" in module_name or not path.is_dir():
            raise ModuleNotFound(f"Provisioning module '{module_name}' not found")
        return path

    def install_module(self, workspace_id: str, module_name: str) -> Path:
        """Copy the module's configuration files into the workspace (overwrites)."""
        source = self.module_path(module_name)
        target = self.ensure(workspace_id)
        try:
            for entry in source.iterdir():
                if entry.is_file() and entry.suffix in MODULE_FILE_SUFFIXES:
                    shutil.copy2(entry, target / entry.name)
        except OSError as e:
            raise WorkspaceIOError(f"Failed to install module {module_name} into {workspace_id}: {e}")
        logger.info(f"Installed module {module_name} into workspace {workspace_id}")
        return target

    def declared_variables(self, module_name: str) -> Set[str]:
        """Names of the ``variable`` blocks declared by a module."""
        names: Set[str] = set()
        for tf_file in sorted(self.module_path(module_name).glob("*.tf")):
            try:
                with open(tf_file, "r") as f:
                    parsed = hcl2.load(f)
            except Exception as e:
                logger.warning(f"Failed to parse HCL2 in {tf_file.name}: {str(e)}")
                continue
            blocks = parsed.get("variable", [])
            if isinstance(blocks, dict):
                blocks = [blocks]
            for block in blocks:
                if isinstance(block, dict):
                    names.update(name.strip('"') for name in block.keys())
        return names

    def write_variables(self, workspace_id: str, variables: Dict[str, Any]) -> Path:
        tfvars = self.ensure(workspace_id) / TFVARS_FILE
        try:
            fd = os.open(str(tfvars), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(variables, f, indent=2)
        except OSError as e:
            raise WorkspaceIOError(f"Failed to write variables for {workspace_id}: {e}")
        logger.info(f"Created {TFVARS_FILE} in workspace {workspace_id}")
        return tfvars

    def cleanup(self, workspace_id: str) -> None:
        path = self.path(workspace_id)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise WorkspaceIOError(f"Failed to remove workspace {workspace_id}: {e}")
        logger.info(f"Cleaned up workspace {workspace_id}")
