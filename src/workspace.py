"""Per-run workspace management.

Each run gets a directory under the workspace root holding a verbatim copy
of the provider's template bundle plus the external tool's working state
(.terraform/, terraform.tfstate, tfvars, session.json).

Workspace identity is deterministic: sha256 over the bundle path, provider
and region. A deploy therefore purges whatever a crashed earlier run left at
the same path, and an undeploy in a later process can find the state of a
run whose controlling process died.
"""

import hashlib
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from catalog import ProviderDescriptor
from config import Settings
from errors import WorkspacePreparationError

logger = logging.getLogger(__name__)

STATE_FILE = 'terraform.tfstate'


@dataclass(frozen=True)
class Workspace:
    """An exclusively-owned run directory."""
    path: Path
    key: str
    provider: str
    region: str

    @property
    def state_file(self) -> Path:
        return self.path / STATE_FILE

    def has_state(self) -> bool:
        """Check if the external tool left a state file behind."""
        return self.state_file.exists()


class WorkspaceManager:
    """Creates, locates and disposes run workspaces.

    Args:
        settings: Settings providing workspace_root and templates_dir
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    @property
    def root(self) -> Path:
        return self.settings.workspace_root

    def template_dir(self, descriptor: ProviderDescriptor) -> Path:
        return descriptor.template_dir(self.settings.templates_dir)

    def workspace_key(self, descriptor: ProviderDescriptor, region: str) -> str:
        """Compute the deterministic workspace identifier."""
        hasher = hashlib.sha256()
        hasher.update(str(self.template_dir(descriptor).resolve()).encode())
        hasher.update(b'\0')
        hasher.update(descriptor.name.encode())
        hasher.update(b'\0')
        hasher.update(region.encode())
        return hasher.hexdigest()

    def _workspace(self, descriptor: ProviderDescriptor, region: str) -> Workspace:
        key = self.workspace_key(descriptor, region)
        return Workspace(path=self.root / key, key=key, provider=descriptor.name, region=region)

    def locate(self, descriptor: ProviderDescriptor, region: str) -> Optional[Workspace]:
        """Find an existing workspace without modifying it."""
        workspace = self._workspace(descriptor, region)
        if workspace.path.is_dir():
            return workspace
        return None

    def prepare(self, descriptor: ProviderDescriptor, region: str, restoring: bool = False) -> Workspace:
        """Create a fresh workspace populated with the template bundle.

        Any directory already at the deterministic path is treated as stale
        and removed first. A preserved state backup blocks preparation unless
        restoring is set (undeploy), so a new run can never overwrite it.

        Raises:
            WorkspacePreparationError: On any copy or IO failure, or when a
                backup exists and restoring is False
        """
        workspace = self._workspace(descriptor, region)
        source = self.template_dir(descriptor)

        if not source.is_dir():
            raise WorkspacePreparationError(workspace.path, f"template bundle not found: {source}")

        backup = self.backup_path(workspace)
        if backup.exists() and not restoring:
            raise WorkspacePreparationError(
                workspace.path,
                f"state preserved from a failed destroy exists at {backup}; "
                f"run 'fuoco undeploy -c {descriptor.name} -r {region}' first",
            )

        try:
            if workspace.path.exists():
                if workspace.has_state():
                    logger.warning(
                        f"Removing stale workspace with leftover state: {workspace.path} "
                        f"(resources from an interrupted run may still exist)"
                    )
                else:
                    logger.info(f"Removing stale workspace: {workspace.path}")
                shutil.rmtree(workspace.path)

            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, workspace.path)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(workspace.path, ignore_errors=True)
            raise WorkspacePreparationError(workspace.path, str(e)) from e

        logger.debug(f"Prepared workspace {workspace.path} from {source}")
        return workspace

    def backup_path(self, workspace: Workspace) -> Path:
        return self.root / f'{workspace.key}.tfstate'

    def preserve_state(self, workspace: Workspace) -> Optional[Path]:
        """Copy the state file next to the workspace before disposal.

        Used when destroy failed so a later undeploy can retry against it.
        """
        if not workspace.has_state():
            return None
        backup = self.backup_path(workspace)
        try:
            shutil.copy2(workspace.state_file, backup)
        except OSError as e:
            logger.error(f"Could not preserve state file {workspace.state_file}: {e}")
            return None
        return backup

    def restore_state(self, workspace: Workspace) -> bool:
        """Copy a preserved state file into a freshly prepared workspace.

        The backup stays in place until discard_backup() after a successful
        destroy.
        """
        backup = self.backup_path(workspace)
        if not backup.is_file():
            return False
        shutil.copy2(backup, workspace.state_file)
        logger.info(f"Restored preserved state into {workspace.path}")
        return True

    def discard_backup(self, workspace: Workspace) -> None:
        """Remove a preserved state file once destroy succeeded."""
        try:
            self.backup_path(workspace).unlink()
        except FileNotFoundError:
            pass

    def dispose(self, workspace: Workspace) -> None:
        """Remove the workspace directory. No-op if already gone."""
        try:
            shutil.rmtree(workspace.path)
            logger.debug(f"Disposed workspace {workspace.path}")
        except FileNotFoundError:
            pass
