"""
Vagrant working directory for one snapshot run.

The working directory is shared with the guest as C:\\vagrant. prepare() stages
the installer, the studio tool and the provisioning scripts there, and the guest
writes the captured image back to output/image.svm.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import List, Optional, Union

from .commands import BuildCommand, SnapshotCommand
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

INSTALL_DIRECTORY = "installer"
INSTALLER_EXE_FILE = "install.exe"
TOOLS_DIRECTORY = "tools"
OUTPUT_DIRECTORY = "output"
IMAGE_FILE = "image.svm"
XAPPL_FILE = "snapshot.xappl"
GENERATED_INSTALL_SCRIPT = "install.bat"
CAPTURE_SCRIPT = "capture.bat"
VAGRANTFILE = "Vagrantfile"

GUEST_ROOT = PureWindowsPath("C:/vagrant")
GUEST_SNAPSHOT_DIR = PureWindowsPath("C:/snapshot")


@dataclass(frozen=True)
class GeneratedInstallScript:
    silent_install_args: str
    ignore_exit_code: bool


@dataclass(frozen=True)
class VagrantEnvironment:
    """Everything needed to provision and capture one VM."""

    working_dir: Path
    box: str
    installer_path: Path
    studio_path: Path
    studio_license_path: Optional[Path] = None
    install_script_path: Optional[Path] = None
    generated_install_script: Optional[GeneratedInstallScript] = None
    startup_file_path: Optional[str] = None

    @staticmethod
    def builder(working_dir: Union[str, Path]) -> "EnvironmentBuilder":
        return EnvironmentBuilder(working_dir)

    @property
    def image_path(self) -> Path:
        """Host path of the image the guest produces."""
        return self.working_dir / OUTPUT_DIRECTORY / IMAGE_FILE

    def prepare(self) -> None:
        """
        Stage all files `vagrant up` needs into the working directory.

        Raises ConfigurationError when a source file is missing or the working
        directory cannot be written.
        """
        logger.info(f"🔧 Preparing Vagrant environment in {self.working_dir}")
        try:
            self._prepare()
        except OSError as e:
            raise ConfigurationError(f"Could not prepare {self.working_dir}: {e}") from e

    def _prepare(self) -> None:
        self.working_dir.mkdir(parents=True, exist_ok=True)
        (self.working_dir / OUTPUT_DIRECTORY).mkdir(exist_ok=True)

        self._stage(self.installer_path, Path(INSTALL_DIRECTORY) / INSTALLER_EXE_FILE)
        self._stage(self.studio_path, Path(TOOLS_DIRECTORY) / self.studio_path.name)
        if self.studio_license_path is not None:
            self._stage(self.studio_license_path, Path(TOOLS_DIRECTORY) / self.studio_license_path.name)

        install_script = self._write_install_script()
        self._write_text(CAPTURE_SCRIPT, "\r\n".join(self._capture_script_lines(install_script)) + "\r\n")
        self._write_text(VAGRANTFILE, self._vagrantfile())

    def _stage(self, source: Path, relative_target: Path) -> None:
        if not source.is_file():
            raise ConfigurationError(f"File does not exist: {source}")
        target = self.working_dir / relative_target
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        logger.debug(f"Staged {source} as {target}")

    def _write_text(self, relative_path: str, content: str) -> None:
        (self.working_dir / relative_path).write_text(content, encoding="utf-8")

    def _write_install_script(self) -> Optional[PureWindowsPath]:
        if self.install_script_path is not None:
            target = f"install{self.install_script_path.suffix}"
            self._stage(self.install_script_path, Path(target))
            return GUEST_ROOT / target

        if self.generated_install_script is not None:
            installer = GUEST_ROOT / INSTALL_DIRECTORY / INSTALLER_EXE_FILE
            settings = self.generated_install_script
            lines = ["@echo off", f'"{installer}" {settings.silent_install_args}'.rstrip()]
            if settings.ignore_exit_code:
                lines.append("exit /b 0")
            else:
                lines.append("exit /b %ERRORLEVEL%")
            self._write_text(GENERATED_INSTALL_SCRIPT, "\r\n".join(lines) + "\r\n")
            return GUEST_ROOT / GENERATED_INSTALL_SCRIPT

        return None

    def _guest_tool(self, path: Optional[Path]) -> Optional[str]:
        if path is None:
            return None
        return str(GUEST_ROOT / TOOLS_DIRECTORY / path.name)

    def _capture_script_lines(self, install_script: Optional[PureWindowsPath]) -> List[str]:
        studio = self._guest_tool(self.studio_path)
        xappl = str(GUEST_SNAPSHOT_DIR / XAPPL_FILE)
        snapshot_dir = str(GUEST_SNAPSHOT_DIR)

        build = BuildCommand.builder(studio).xappl_path(xappl) \
            .image_path(str(GUEST_ROOT / OUTPUT_DIRECTORY / IMAGE_FILE))
        if self.startup_file_path:
            build.startup_file_path(self.startup_file_path)
        license_path = self._guest_tool(self.studio_license_path)
        if license_path:
            build.license_path(license_path)

        if install_script is None:
            install = f'"{GUEST_ROOT / INSTALL_DIRECTORY / INSTALLER_EXE_FILE}"'
        elif install_script.suffix.lower() == ".ps1":
            install = f'powershell -NoProfile -ExecutionPolicy Bypass -File "{install_script}"'
        else:
            install = f'call "{install_script}"'

        check = "if errorlevel 1 exit /b %ERRORLEVEL%"
        return [
            "@echo off",
            f'mkdir "{snapshot_dir}"',
            SnapshotCommand.before(studio, snapshot_dir).command_line(),
            check,
            install,
            check,
            SnapshotCommand.after(studio, snapshot_dir, xappl).command_line(),
            check,
            build.build().command_line(),
            "exit /b %ERRORLEVEL%",
        ]

    def _vagrantfile(self) -> str:
        capture = GUEST_ROOT / CAPTURE_SCRIPT
        return f'''# Generated by spoon-snapshot
Vagrant.configure("2") do |config|
  config.vm.box = "{self.box}"
  config.vm.guest = :windows
  config.vm.communicator = "winrm"
  config.vm.boot_timeout = 1800
  config.vm.provider "virtualbox" do |vb|
    vb.gui = false
  end
  config.vm.provision "shell", inline: 'cmd /c {capture}'
end
'''


class EnvironmentBuilder:
    """Collects the fields of a VagrantEnvironment and checks them in build()."""

    def __init__(self, working_dir: Union[str, Path]) -> None:
        self._working_dir = Path(working_dir)
        self._box: Optional[str] = None
        self._installer_path: Optional[str] = None
        self._studio_path: Optional[str] = None
        self._studio_license_path: Optional[str] = None
        self._install_script_path: Optional[str] = None
        self._generated_install_script: Optional[GeneratedInstallScript] = None
        self._startup_file_path: Optional[str] = None

    def box(self, box: str) -> "EnvironmentBuilder":
        self._box = box
        return self

    def installer_path(self, path: str) -> "EnvironmentBuilder":
        self._installer_path = path
        return self

    def studio_path(self, path: str) -> "EnvironmentBuilder":
        self._studio_path = path
        return self

    def studio_license_path(self, path: str) -> "EnvironmentBuilder":
        self._studio_license_path = path
        return self

    def install_script_path(self, path: str) -> "EnvironmentBuilder":
        self._install_script_path = path
        self._generated_install_script = None
        return self

    def generate_install_script(self, silent_install_args: Optional[str],
                                ignore_exit_code: bool) -> "EnvironmentBuilder":
        self._generated_install_script = GeneratedInstallScript(silent_install_args or "", ignore_exit_code)
        self._install_script_path = None
        return self

    def startup_file_path(self, path: str) -> "EnvironmentBuilder":
        self._startup_file_path = path
        return self

    def build(self) -> VagrantEnvironment:
        for field, value in (("box", self._box), ("installerPath", self._installer_path),
                             ("studioPath", self._studio_path)):
            if not value:
                raise ConfigurationError(f"Parameter '{field}' must be present")

        return VagrantEnvironment(
            working_dir=self._working_dir,
            box=self._box,
            installer_path=Path(self._installer_path),
            studio_path=Path(self._studio_path),
            studio_license_path=Path(self._studio_license_path) if self._studio_license_path else None,
            install_script_path=Path(self._install_script_path) if self._install_script_path else None,
            generated_install_script=self._generated_install_script,
            startup_file_path=self._startup_file_path,
        )
