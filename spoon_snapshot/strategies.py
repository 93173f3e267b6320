"""
Install script and startup file settings.

Each setting is one of a fixed set of variants. A variant knows how to validate
itself and how to configure an EnvironmentBuilder, so callers never branch on
the strategy. Strategy names are only interpreted when settings are parsed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .environment import EnvironmentBuilder
from .errors import ConfigurationError

DEFAULT_SILENT_INSTALL_ARGS = "/S"


class InstallScriptStrategy(str, Enum):
    FIXED = "FIXED"
    TEMPLATE = "TEMPLATE"


class StartupFileStrategy(str, Enum):
    FIXED = "FIXED"
    STUDIO = "STUDIO"


def _require_path(value: Optional[str], field: str) -> None:
    if not value or not value.strip():
        raise ConfigurationError(f"Parameter '{field}' must not be null or empty")


@dataclass(frozen=True)
class FixedInstallScript:
    """Use an install script provided by the user."""

    install_script_path: Optional[str]
    strategy = InstallScriptStrategy.FIXED

    def validate(self) -> None:
        _require_path(self.install_script_path, "installScriptPath")

    def configure(self, builder: EnvironmentBuilder) -> None:
        builder.install_script_path(self.install_script_path.strip())


@dataclass(frozen=True)
class TemplateInstallScript:
    """Generate an install script that runs the installer with silent arguments."""

    silent_install_args: str = DEFAULT_SILENT_INSTALL_ARGS
    ignore_exit_code: bool = False
    strategy = InstallScriptStrategy.TEMPLATE

    def validate(self) -> None:
        pass

    def configure(self, builder: EnvironmentBuilder) -> None:
        builder.generate_install_script(self.silent_install_args, self.ignore_exit_code)


@dataclass(frozen=True)
class FixedStartupFile:
    """Use the given virtual path as the image startup file."""

    startup_file_path: Optional[str]
    strategy = StartupFileStrategy.FIXED

    def validate(self) -> None:
        _require_path(self.startup_file_path, "startupFilePath")

    def configure(self, builder: EnvironmentBuilder) -> None:
        builder.startup_file_path(self.startup_file_path.strip())


@dataclass(frozen=True)
class StudioStartupFile:
    """Let the studio pick the startup file from the captured application."""

    strategy = StartupFileStrategy.STUDIO

    def validate(self) -> None:
        pass

    def configure(self, builder: EnvironmentBuilder) -> None:
        pass


InstallScriptSettings = Union[FixedInstallScript, TemplateInstallScript]
StartupFileSettings = Union[FixedStartupFile, StudioStartupFile]


def _strategy_name(data: Dict[str, Any], kind: str) -> str:
    name = data.get("value") or data.get("strategy")
    if not name:
        raise ConfigurationError(f"Missing {kind} strategy")
    return str(name).strip().upper()


def install_script_settings_from_dict(data: Dict[str, Any]) -> InstallScriptSettings:
    """Build install script settings from a JSON-like mapping."""
    name = _strategy_name(data, "install script")
    try:
        strategy = InstallScriptStrategy(name)
    except ValueError:
        raise ConfigurationError(f"Unknown install script strategy: {name}") from None

    if strategy is InstallScriptStrategy.FIXED:
        return FixedInstallScript(data.get("installScriptPath"))
    return TemplateInstallScript(
        silent_install_args=data.get("silentInstallArgs") or DEFAULT_SILENT_INSTALL_ARGS,
        ignore_exit_code=bool(data.get("ignoreExitCode", False)),
    )


def startup_file_settings_from_dict(data: Dict[str, Any]) -> StartupFileSettings:
    """Build startup file settings from a JSON-like mapping."""
    name = _strategy_name(data, "startup file")
    try:
        strategy = StartupFileStrategy(name)
    except ValueError:
        raise ConfigurationError(f"Unknown startup file strategy: {name}") from None

    if strategy is StartupFileStrategy.FIXED:
        return FixedStartupFile(data.get("startupFilePath"))
    return StudioStartupFile()
