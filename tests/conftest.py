"""
Test configuration and shared fixtures for spoon-snapshot tests.
"""

import subprocess
from pathlib import Path
from typing import List, Optional, Set, Tuple

import pytest

from spoon_snapshot.environment import INSTALL_DIRECTORY, INSTALLER_EXE_FILE, OUTPUT_DIRECTORY, IMAGE_FILE
from spoon_snapshot.errors import ScheduledTaskError
from spoon_snapshot.image import Image
from spoon_snapshot.snapshot import BuildContext


class RecordingRunner:
    """Scheduled task runner double that records what it was asked to run."""

    def __init__(self, working_dir: Optional[Path] = None, fail_on: Optional[Set[str]] = None,
                 produce_image: bool = True) -> None:
        self.working_dir = working_dir
        self.fail_on = fail_on or set()
        self.produce_image = produce_image
        self.calls: List[Tuple[str, str]] = []

    def run(self, task_name: str, command_line: str) -> None:
        self.calls.append((task_name, command_line))
        if command_line in self.fail_on:
            raise ScheduledTaskError(task_name, "failed", exit_code=1, output="boom\n")
        if command_line == "vagrant up" and self.produce_image and self.working_dir is not None:
            image = self.working_dir / OUTPUT_DIRECTORY / IMAGE_FILE
            image.parent.mkdir(parents=True, exist_ok=True)
            image.write_bytes(b"svm")

    @property
    def commands(self) -> List[str]:
        return [command for _, command in self.calls]


class FakeRegistry:
    """Image registry double."""

    def __init__(self, available: Optional[Set[str]] = None) -> None:
        self.available = available or set()
        self.checked: List[Image] = []

    def is_available_remotely(self, image: Image) -> bool:
        self.checked.append(image)
        return image.print_identifier() in self.available


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Build workspace with an installer in the expected place."""
    workspace_dir = tmp_path / "workspace"
    installer = workspace_dir / INSTALL_DIRECTORY / INSTALLER_EXE_FILE
    installer.parent.mkdir(parents=True)
    installer.write_bytes(b"MZ installer")
    return workspace_dir


@pytest.fixture
def studio_path(tmp_path: Path) -> Path:
    studio = tmp_path / "studio" / "XStudio.exe"
    studio.parent.mkdir(parents=True)
    studio.write_bytes(b"MZ studio")
    return studio


@pytest.fixture
def temp_root(tmp_path: Path) -> Path:
    root = tmp_path / "temp"
    root.mkdir()
    return root


@pytest.fixture
def build_context(workspace: Path) -> BuildContext:
    return BuildContext(project_name="My Project", workspace=workspace)


@pytest.fixture
def completed_process():
    """Factory for CompletedProcess results."""
    def _make(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)

    return _make


def pytest_configure(config):
    """Configure pytest with custom markers."""
    for marker in ("unit", "integration"):
        config.addinivalue_line("markers", f"{marker}: {marker} tests")
