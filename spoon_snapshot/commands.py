"""
External command descriptions.

Each command is an immutable argument list produced by a builder. Builders
check their required fields in build() and raise ConfigurationError when one is
missing, so an incomplete command never reaches the process launcher.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .errors import ConfigurationError
from .utils import run_subprocess

logger = logging.getLogger(__name__)

VAGRANT_UP = "vagrant up"
VAGRANT_DESTROY = "vagrant destroy --force"


def _require(value: Optional[str], field: str) -> str:
    if not value:
        raise ConfigurationError(f"Parameter '{field}' must be present")
    return value


@dataclass(frozen=True)
class Command:
    """An immutable external program invocation."""

    args: Tuple[str, ...]

    def run(self, cwd: Optional[Union[str, Path]] = None, env: Optional[Dict[str, str]] = None,
            debug: bool = False, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """Run the command, raising CalledProcessError on a non-zero exit."""
        return run_subprocess(
            list(self.args),
            state_dir=Path(cwd) if cwd else None,
            debug=debug,
            cwd=cwd,
            env=env,
            timeout=timeout,
            check=True,
        )

    def command_line(self) -> str:
        """Render the arguments as a Windows command line."""
        return subprocess.list2cmdline(list(self.args))


class ImportCommand(Command):
    """`turbo import` of a captured image."""

    @staticmethod
    def builder(turbo_path: str = "turbo") -> "ImportCommandBuilder":
        return ImportCommandBuilder(turbo_path)


class ImportCommandBuilder:
    def __init__(self, turbo_path: str) -> None:
        self._turbo_path = turbo_path
        self._type: Optional[str] = None
        self._path: Optional[str] = None
        self._name: Optional[str] = None
        self._overwrite = False

    def type(self, image_type: str) -> "ImportCommandBuilder":
        self._type = image_type
        return self

    def path(self, path: str) -> "ImportCommandBuilder":
        self._path = path
        return self

    def name(self, name: str) -> "ImportCommandBuilder":
        self._name = name
        return self

    def overwrite(self, overwrite: bool) -> "ImportCommandBuilder":
        self._overwrite = overwrite
        return self

    def build(self) -> ImportCommand:
        args = [self._turbo_path, "import", _require(self._type, "type"), _require(self._path, "path")]
        if self._name:
            args.append(f"--name={self._name}")
        if self._overwrite:
            args.append("--overwrite")
        return ImportCommand(tuple(args))


class BuildCommand(Command):
    """Studio build of an .xappl configuration into an .svm image."""

    @staticmethod
    def builder(studio_path: str) -> "BuildCommandBuilder":
        return BuildCommandBuilder(studio_path)


class BuildCommandBuilder:
    def __init__(self, studio_path: str) -> None:
        self._studio_path = studio_path
        self._license_path: Optional[str] = None
        self._xappl_path: Optional[str] = None
        self._image_path: Optional[str] = None
        self._startup_file_path: Optional[str] = None

    def license_path(self, path: str) -> "BuildCommandBuilder":
        self._license_path = path
        return self

    def xappl_path(self, path: str) -> "BuildCommandBuilder":
        self._xappl_path = path
        return self

    def image_path(self, path: str) -> "BuildCommandBuilder":
        self._image_path = path
        return self

    def startup_file_path(self, path: str) -> "BuildCommandBuilder":
        self._startup_file_path = path
        return self

    def build(self) -> BuildCommand:
        args = [
            _require(self._studio_path, "studioPath"),
            _require(self._xappl_path, "xapplPath"),
            "/o",
            _require(self._image_path, "imagePath"),
        ]
        if self._startup_file_path:
            args.extend(["/startupfile", self._startup_file_path])
        if self._license_path:
            args.extend(["/l", self._license_path])
        return BuildCommand(tuple(args))


class SnapshotCommand(Command):
    """Studio before/after filesystem and registry capture."""

    @classmethod
    def before(cls, studio_path: str, snapshot_dir: str) -> "SnapshotCommand":
        return cls((_require(studio_path, "studioPath"), "/before", "/beforepath",
                    _require(snapshot_dir, "snapshotDir")))

    @classmethod
    def after(cls, studio_path: str, snapshot_dir: str, xappl_path: str) -> "SnapshotCommand":
        return cls((_require(studio_path, "studioPath"), "/after", "/beforepath",
                    _require(snapshot_dir, "snapshotDir"), "/o", _require(xappl_path, "xapplPath")))
