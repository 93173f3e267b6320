#!/usr/bin/env python3
"""
Take a Studio snapshot of an installer inside a disposable Windows VM.

A run loads the image name to import as from the workspace, skips the build when
that image already exists and overwriting is not allowed, then provisions a VM
with Vagrant, imports the captured image and always destroys the VM again.
"""

import logging
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Union

from .commands import VAGRANT_DESTROY, VAGRANT_UP, ImportCommand
from .config import DEFAULT_VAGRANT_BOX
from .environment import INSTALL_DIRECTORY, INSTALLER_EXE_FILE, VagrantEnvironment
from .errors import (ConfigurationError, ImageImportError, ProvisioningError,
                     SnapshotError, TeardownError)
from .image import Image, load_import_target
from .scheduled_tasks import ScheduledTaskRunner, task_name_for
from .strategies import InstallScriptSettings, StartupFileSettings
from .utils import delete_directory_tree, quiet_delete_children, run_subprocess

logger = logging.getLogger(__name__)

IMPORT_IMAGE_TYPE = "svm"
_INVALID_CHARACTERS = re.compile(r"\W+")
_DESTROY_FAILED = ("`vagrant destroy` failed. "
                   "The virtual machine may have to be removed from VirtualBox manually")


class BuildResult(IntEnum):
    """Build results ordered from best to worst."""
    SUCCESS = 0
    UNSTABLE = 1
    FAILURE = 2
    NOT_BUILT = 3
    ABORTED = 4

    def is_worse_than(self, other: "BuildResult") -> bool:
        return self > other


@dataclass
class BuildContext:
    """What the host build system tells us about the current build."""
    project_name: str
    workspace: Path
    env: Dict[str, str] = field(default_factory=dict)
    result: Optional[BuildResult] = None
    debug: bool = False


@dataclass(frozen=True)
class Success:
    image: Optional[Image] = None


@dataclass(frozen=True)
class Aborted:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: SnapshotError

    @property
    def stage(self) -> str:
        return self.error.stage


RunOutcome = Union[Success, Aborted, Failed]


@dataclass(frozen=True)
class TeardownSucceeded:
    pass


@dataclass(frozen=True)
class TeardownFailed:
    error: Exception


TeardownResult = Union[TeardownSucceeded, TeardownFailed]


class TaskRunner(Protocol):
    def run(self, task_name: str, command_line: str) -> None:
        ...


class ImageRegistry(Protocol):
    def is_available_remotely(self, image: Image) -> bool:
        ...


class TurboClient:
    """Image registry checks through the turbo command line client."""

    def __init__(self, turbo_path: str = "turbo", env: Optional[Dict[str, str]] = None,
                 debug: bool = False) -> None:
        self.turbo_path = turbo_path
        self.env = env
        self.debug = debug

    def is_available_remotely(self, image: Image) -> bool:
        cmd = [self.turbo_path, "pull", image.print_identifier()]
        try:
            result = run_subprocess(cmd, task_name="turbo_pull", debug=self.debug,
                                    env=self.env, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"⚠️ Could not check whether {image} is available remotely: {e}")
            return False
        return result.returncode == 0


def destroy_vm(runner: TaskRunner, context: BuildContext) -> TeardownResult:
    """Run `vagrant destroy` and report the outcome instead of raising."""
    try:
        runner.run(task_name_for(context.project_name, "vagrant destroy"), VAGRANT_DESTROY)
    except Exception as e:
        return TeardownFailed(e)
    return TeardownSucceeded()


def import_image(environment: VagrantEnvironment, context: BuildContext, overwrite: bool,
                 import_target: Optional[Image], turbo_path: str = "turbo") -> None:
    if not environment.image_path.is_file():
        raise ImageImportError(f"The VM did not produce an image at {environment.image_path}")

    builder = ImportCommand.builder(turbo_path) \
        .type(IMPORT_IMAGE_TYPE) \
        .path(str(environment.image_path)) \
        .overwrite(overwrite)
    if import_target is not None:
        builder.name(import_target.print_identifier())
    command = builder.build()

    logger.info(f"🔧 Importing {environment.image_path}")
    try:
        command.run(cwd=environment.working_dir, env=context.env or None, debug=context.debug)
    except subprocess.CalledProcessError as e:
        raise ImageImportError(f"`{command.command_line()}` failed with exit code {e.returncode}: "
                               f"{(e.stderr or e.output or '').strip()}") from e
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ImageImportError(f"`{command.command_line()}` could not be run: {e}") from e


def take_snapshot(environment: VagrantEnvironment, context: BuildContext, runner: TaskRunner,
                  overwrite: bool, import_target: Optional[Image], turbo_path: str = "turbo") -> None:
    """
    Provision the VM, import the captured image and destroy the VM.

    The VM is destroyed exactly once whatever happens. A provisioning failure is
    always the error raised, even if destroying the VM fails as well. After a
    successful provisioning a failed destroy is raised as TeardownError, carrying
    the import error it supersedes if there was one.
    """
    try:
        runner.run(task_name_for(context.project_name, "vagrant up"), VAGRANT_UP)
    except Exception as e:
        teardown = destroy_vm(runner, context)
        teardown_error = None
        if isinstance(teardown, TeardownFailed):
            teardown_error = TeardownError(f"{_DESTROY_FAILED}: {teardown.error}")
            logger.error(f"❌ {teardown_error}")
        raise ProvisioningError(f"`vagrant up` failed: {e}", teardown_error=teardown_error) from e
    except BaseException:
        _destroy_after_interrupt(runner, context)
        raise

    try:
        try:
            import_image(environment, context, overwrite, import_target, turbo_path)
        except ImageImportError:
            raise
        except Exception as e:
            raise ImageImportError(f"Importing {environment.image_path} failed: {e}") from e
    except ImageImportError as import_error:
        teardown = destroy_vm(runner, context)
        if isinstance(teardown, TeardownFailed):
            logger.error(f"❌ {import_error}")
            raise TeardownError(f"{_DESTROY_FAILED}: {teardown.error}",
                                masked=import_error) from teardown.error
        raise
    except BaseException:
        _destroy_after_interrupt(runner, context)
        raise

    teardown = destroy_vm(runner, context)
    if isinstance(teardown, TeardownFailed):
        raise TeardownError(f"{_DESTROY_FAILED}: {teardown.error}") from teardown.error


def _destroy_after_interrupt(runner: TaskRunner, context: BuildContext) -> None:
    logger.warning("⚠️ Interrupted, destroying the VM before exiting")
    teardown = destroy_vm(runner, context)
    if isinstance(teardown, TeardownFailed):
        logger.error(f"❌ {_DESTROY_FAILED}: {teardown.error}")


def _fix_empty_and_trim(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class SnapshotBuilder:
    """Build step that turns the installer in a workspace into an imported image."""

    def __init__(self, studio_path: Optional[str], studio_license_path: Optional[str],
                 vagrant_box: Optional[str], overwrite: bool,
                 install_script_settings: InstallScriptSettings,
                 startup_file_settings: StartupFileSettings,
                 turbo_path: str = "turbo", timeout: Optional[float] = None) -> None:
        self.studio_path = _fix_empty_and_trim(studio_path)
        self.studio_license_path = _fix_empty_and_trim(studio_license_path)
        self.vagrant_box = _fix_empty_and_trim(vagrant_box) or DEFAULT_VAGRANT_BOX
        self.overwrite = overwrite
        self.install_script_settings = install_script_settings
        self.startup_file_settings = startup_file_settings
        self.turbo_path = turbo_path
        self.timeout = timeout

    def prebuild(self) -> None:
        """Validate the settings before anything is created."""
        if self.studio_path is None:
            raise ConfigurationError("Parameter 'studioPath' must not be null or empty")
        self.install_script_settings.validate()
        self.startup_file_settings.validate()

    def should_abort(self, context: BuildContext, registry: ImageRegistry,
                     import_target: Optional[Image]) -> bool:
        if self.overwrite:
            return False
        if context.result is not None and context.result.is_worse_than(BuildResult.ABORTED):
            return False
        return import_target is not None and registry.is_available_remotely(import_target)

    def create_environment(self, workspace: Path, working_dir: Path) -> VagrantEnvironment:
        builder = VagrantEnvironment.builder(working_dir) \
            .box(self.vagrant_box) \
            .studio_path(self.studio_path) \
            .installer_path(str(workspace / INSTALL_DIRECTORY / INSTALLER_EXE_FILE))
        if self.studio_license_path is not None:
            builder.studio_license_path(self.studio_license_path)

        self.install_script_settings.configure(builder)
        self.startup_file_settings.configure(builder)
        return builder.build()

    def perform(self, context: BuildContext, registry: ImageRegistry,
                runner_factory: Optional[Callable[[Path], TaskRunner]] = None,
                temp_root: Optional[Union[str, Path]] = None) -> RunOutcome:
        """Run one snapshot build. The workspace is emptied afterwards in every case."""
        workspace = Path(context.workspace).resolve()
        if runner_factory is None:
            def runner_factory(working_dir: Path) -> TaskRunner:
                return ScheduledTaskRunner(working_dir, env=context.env or None,
                                           timeout=self.timeout, debug=context.debug)

        try:
            try:
                self.prebuild()
                import_target = load_import_target(workspace)

                if self.should_abort(context, registry, import_target):
                    reason = f"Image {import_target} is already available and overwrite is not allowed"
                    logger.warning(f"⚠️ {reason}")
                    return Aborted(reason)

                # Vagrant runs as a scheduled task that cannot write to the build workspace
                project = _INVALID_CHARACTERS.sub("", context.project_name)
                working_dir = _create_working_dir(project, temp_root)
                try:
                    environment = self.create_environment(workspace, working_dir)
                    environment.prepare()
                    take_snapshot(environment, context, runner_factory(working_dir),
                                  self.overwrite, import_target, self.turbo_path)
                finally:
                    delete_directory_tree(working_dir)
            except SnapshotError as e:
                logger.error(f"❌ Snapshot failed during {e.stage}: {e}")
                return Failed(e)

            logger.info("✅ Snapshot imported successfully")
            return Success(import_target)
        finally:
            _clean_workspace(workspace)


def _clean_workspace(workspace: Path) -> None:
    try:
        quiet_delete_children(workspace)
    except OSError as e:
        logger.warning(f"⚠️ Failed to clean workspace {workspace}: {e}")


def _create_working_dir(project: str, temp_root: Optional[Union[str, Path]]) -> Path:
    try:
        return Path(tempfile.mkdtemp(prefix=f"spoon-{project}-build-", dir=temp_root))
    except OSError as e:
        raise ConfigurationError(f"Could not create a working directory for the VM: {e}") from e
