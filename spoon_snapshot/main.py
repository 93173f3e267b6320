"""
Main entry point for spoon-snapshot command-line interface.

This module contains the CLI command definitions. The snapshot workflow itself
lives in snapshot.py.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import typer

from .config import GlobalSettings, load_settings, save_settings
from .errors import SnapshotError
from .snapshot import Aborted, BuildContext, Failed, SnapshotBuilder, TurboClient
from .strategies import (DEFAULT_SILENT_INSTALL_ARGS, install_script_settings_from_dict,
                         startup_file_settings_from_dict)
from .utils import setup_logging

logger = logging.getLogger("spoon_snapshot")

EXIT_FAILED = 1
EXIT_ABORTED = 2

# Global state for options
_global_state = {
    "state_dir": None,
    "debug": False,
    "timeout": None,
}

app = typer.Typer(
    name="spoon-snapshot",
    help="Capture an installer as a Turbo image inside a disposable Vagrant VM",
    epilog="""
Examples:
  spoon-snapshot configure --studio-path C:\\Studio\\XStudio.exe
  spoon-snapshot snapshot --project my-app --workspace C:\\jenkins\\workspace\\my-app
  spoon-snapshot snapshot --project my-app --install-strategy FIXED --install-script install.bat
    """
)


@app.callback()
def main_callback(
    state_dir: Optional[str] = typer.Option(None, help="Override default settings directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Keep command logs and enable verbose logging"),
    timeout: Optional[int] = typer.Option(None, "--timeout", "-t", help="Timeout in seconds for each scheduled task")
) -> None:
    """Handle global options."""
    _global_state["state_dir"] = state_dir
    _global_state["debug"] = debug
    _global_state["timeout"] = timeout

    setup_logging(verbose=verbose or debug, logger_name="spoon_snapshot")
    if debug:
        logger.debug("Debug mode enabled - command logs will be kept")


@app.command()
def configure(
    studio_path: Optional[str] = typer.Option(None, help="Path to the Turbo Studio executable"),
    studio_license_path: Optional[str] = typer.Option(None, help="Path to the Turbo Studio license file"),
    vagrant_box: Optional[str] = typer.Option(None, help="Default Vagrant base box")
) -> None:
    """Save global defaults used by every snapshot."""
    try:
        current = load_settings(_global_state["state_dir"])
        settings = GlobalSettings(
            studio_path=studio_path or current.studio_path,
            studio_license_path=studio_license_path or current.studio_license_path,
            vagrant_box=vagrant_box or current.vagrant_box,
        )
        save_settings(settings, _global_state["state_dir"])
    except SnapshotError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(EXIT_FAILED)


@app.command()
def snapshot(
    project: str = typer.Option(..., help="Project name, used to name scheduled tasks"),
    workspace: Path = typer.Option(Path("."), help="Build workspace containing installer/install.exe"),
    vagrant_box: Optional[str] = typer.Option(None, help="Vagrant base box (default: global setting)"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Overwrite an existing image"),
    install_strategy: str = typer.Option("TEMPLATE", help="Install script strategy: TEMPLATE or FIXED"),
    install_script: Optional[str] = typer.Option(None, help="Install script for the FIXED strategy"),
    silent_install_args: str = typer.Option(DEFAULT_SILENT_INSTALL_ARGS, help="Installer arguments for the TEMPLATE strategy"),
    ignore_exit_code: bool = typer.Option(False, "--ignore-exit-code", help="Ignore the installer exit code"),
    startup_strategy: str = typer.Option("STUDIO", help="Startup file strategy: STUDIO or FIXED"),
    startup_file: Optional[str] = typer.Option(None, help="Virtual startup file path for the FIXED strategy")
) -> None:
    """Take a snapshot of the installer in the workspace and import it."""
    try:
        settings = load_settings(_global_state["state_dir"])
        builder = SnapshotBuilder(
            studio_path=settings.studio_path,
            studio_license_path=settings.studio_license_path,
            vagrant_box=vagrant_box or settings.effective_vagrant_box(),
            overwrite=overwrite,
            install_script_settings=install_script_settings_from_dict({
                "value": install_strategy,
                "installScriptPath": install_script,
                "silentInstallArgs": silent_install_args,
                "ignoreExitCode": ignore_exit_code,
            }),
            startup_file_settings=startup_file_settings_from_dict({
                "value": startup_strategy,
                "startupFilePath": startup_file,
            }),
            timeout=_global_state["timeout"],
        )
    except SnapshotError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(EXIT_FAILED)

    context = BuildContext(
        project_name=project,
        workspace=workspace,
        env=dict(os.environ),
        debug=_global_state["debug"],
    )
    registry = TurboClient(env=context.env, debug=context.debug)

    try:
        outcome = builder.perform(context, registry)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)

    if isinstance(outcome, Failed):
        raise typer.Exit(EXIT_FAILED)
    if isinstance(outcome, Aborted):
        raise typer.Exit(EXIT_ABORTED)


def main() -> None:
    """Main entry point for spoon-snapshot command."""
    app()


if __name__ == "__main__":
    main()
