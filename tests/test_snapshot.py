"""
Tests for the snapshot workflow.

These cover the abort decision, the provision/import/destroy ordering and which
error wins when more than one step fails.
"""

import subprocess
from unittest.mock import patch

import pytest

from spoon_snapshot.errors import (ConfigurationError, ImageImportError, ProvisioningError,
                                   TeardownError)
from spoon_snapshot.image import Image
from spoon_snapshot.snapshot import (Aborted, BuildContext, BuildResult, Failed, SnapshotBuilder,
                                     Success, TeardownFailed, TeardownSucceeded, destroy_vm,
                                     take_snapshot)
from spoon_snapshot.strategies import (FixedInstallScript, StudioStartupFile,
                                       TemplateInstallScript)

from conftest import FakeRegistry, RecordingRunner

UP = "vagrant up"
DESTROY = "vagrant destroy --force"


def _snapshot_builder(studio_path, overwrite=False, install_script_settings=None):
    return SnapshotBuilder(
        studio_path=str(studio_path),
        studio_license_path=None,
        vagrant_box="win-box",
        overwrite=overwrite,
        install_script_settings=install_script_settings or TemplateInstallScript(),
        startup_file_settings=StudioStartupFile(),
    )


class RunnerFactory:
    """Creates one RecordingRunner per run and remembers it."""

    def __init__(self, fail_on=None, produce_image=True):
        self.fail_on = fail_on
        self.produce_image = produce_image
        self.runner = None
        self.working_dir = None

    def __call__(self, working_dir):
        self.working_dir = working_dir
        self.runner = RecordingRunner(working_dir, fail_on=self.fail_on, produce_image=self.produce_image)
        return self.runner


@pytest.fixture
def mock_import(completed_process):
    """Mock the turbo import process."""
    with patch("spoon_snapshot.commands.run_subprocess", return_value=completed_process()) as mock_run:
        yield mock_run


@pytest.fixture
def environment(tmp_path, workspace, studio_path):
    builder = _snapshot_builder(studio_path)
    working_dir = tmp_path / "vagrant"
    working_dir.mkdir()
    return builder.create_environment(workspace, working_dir)


@pytest.mark.unit
class TestDestroyVM:
    """Test destroy_vm result reporting."""

    def test_success(self, build_context):
        runner = RecordingRunner()

        assert destroy_vm(runner, build_context) == TeardownSucceeded()
        assert runner.calls == [("My Project - vagrant destroy", DESTROY)]

    def test_failure_is_returned(self, build_context):
        runner = RecordingRunner(fail_on={DESTROY})

        result = destroy_vm(runner, build_context)

        assert isinstance(result, TeardownFailed)
        assert result.error.task_name == "My Project - vagrant destroy"


@pytest.mark.unit
class TestTakeSnapshot:
    """Test the provision, import and destroy sequence."""

    def test_success_runs_up_import_destroy(self, environment, build_context, mock_import):
        runner = RecordingRunner(environment.working_dir)

        take_snapshot(environment, build_context, runner, overwrite=True, import_target=Image("myimage", "1.0"))

        assert runner.commands == [UP, DESTROY]
        import_cmd = mock_import.call_args[0][0]
        assert import_cmd[:4] == ["turbo", "import", "svm", str(environment.image_path)]
        assert "--name=myimage:1.0" in import_cmd
        assert "--overwrite" in import_cmd

    def test_provisioning_failure_destroys_once(self, environment, build_context, mock_import):
        runner = RecordingRunner(environment.working_dir, fail_on={UP})

        with pytest.raises(ProvisioningError) as exc_info:
            take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert runner.commands == [UP, DESTROY]
        assert exc_info.value.teardown_error is None
        mock_import.assert_not_called()

    def test_provisioning_error_wins_over_teardown_error(self, environment, build_context, mock_import):
        runner = RecordingRunner(environment.working_dir, fail_on={UP, DESTROY})

        with pytest.raises(ProvisioningError) as exc_info:
            take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        error = exc_info.value
        assert error.stage == "provisioning"
        assert isinstance(error.teardown_error, TeardownError)
        assert "exit code 1" in str(error)
        assert runner.commands.count(DESTROY) == 1

    def test_import_failure_destroys_once(self, environment, build_context):
        runner = RecordingRunner(environment.working_dir)
        failure = subprocess.CalledProcessError(5, ["turbo"], output="", stderr="import failed")

        with patch("spoon_snapshot.commands.run_subprocess", side_effect=failure):
            with pytest.raises(ImageImportError, match="exit code 5"):
                take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert runner.commands == [UP, DESTROY]

    def test_unexpected_import_failure_destroys_once(self, environment, build_context):
        runner = RecordingRunner(environment.working_dir)
        failure = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        with patch("spoon_snapshot.commands.run_subprocess", side_effect=failure):
            with pytest.raises(ImageImportError, match="invalid start byte") as exc_info:
                take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert exc_info.value.__cause__ is failure
        assert runner.commands == [UP, DESTROY]

    def test_interrupted_import_still_destroys(self, environment, build_context):
        runner = RecordingRunner(environment.working_dir)

        with patch("spoon_snapshot.commands.run_subprocess", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert runner.commands == [UP, DESTROY]

    def test_teardown_error_supersedes_import_error(self, environment, build_context):
        runner = RecordingRunner(environment.working_dir, fail_on={DESTROY})
        failure = subprocess.CalledProcessError(5, ["turbo"], output="", stderr="import failed")

        with patch("spoon_snapshot.commands.run_subprocess", side_effect=failure):
            with pytest.raises(TeardownError) as exc_info:
                take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        error = exc_info.value
        assert error.stage == "teardown"
        assert isinstance(error.masked, ImageImportError)
        assert "import failed" in str(error)
        assert runner.commands.count(DESTROY) == 1

    def test_teardown_failure_after_success_is_fatal(self, environment, build_context, mock_import):
        runner = RecordingRunner(environment.working_dir, fail_on={DESTROY})

        with pytest.raises(TeardownError) as exc_info:
            take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert exc_info.value.masked is None
        mock_import.assert_called_once()

    def test_missing_image_is_import_error(self, environment, build_context, mock_import):
        runner = RecordingRunner(environment.working_dir, produce_image=False)

        with pytest.raises(ImageImportError, match="did not produce an image"):
            take_snapshot(environment, build_context, runner, overwrite=False, import_target=None)

        assert runner.commands == [UP, DESTROY]
        mock_import.assert_not_called()


@pytest.mark.unit
class TestShouldAbort:
    """Test the abort decision."""

    def test_abort_when_image_exists(self, studio_path, build_context):
        builder = _snapshot_builder(studio_path)

        assert builder.should_abort(build_context, FakeRegistry({"myimage:1.0"}), Image("myimage", "1.0"))

    def test_no_abort_with_overwrite(self, studio_path, build_context):
        builder = _snapshot_builder(studio_path, overwrite=True)
        registry = FakeRegistry({"myimage:1.0"})

        assert not builder.should_abort(build_context, registry, Image("myimage", "1.0"))
        assert registry.checked == []

    def test_no_abort_without_target(self, studio_path, build_context):
        builder = _snapshot_builder(studio_path)

        assert not builder.should_abort(build_context, FakeRegistry(), None)

    def test_no_abort_when_image_missing(self, studio_path, build_context):
        builder = _snapshot_builder(studio_path)

        assert not builder.should_abort(build_context, FakeRegistry(), Image("myimage", "1.0"))

    @pytest.mark.parametrize("result", list(BuildResult))
    def test_prior_result_never_worse_than_aborted(self, studio_path, workspace, result):
        builder = _snapshot_builder(studio_path)
        context = BuildContext(project_name="p", workspace=workspace, result=result)

        assert builder.should_abort(context, FakeRegistry({"myimage"}), Image("myimage"))


@pytest.mark.integration
class TestPerform:
    """Test complete snapshot runs."""

    def test_existing_image_aborts_without_tasks(self, studio_path, workspace, build_context, temp_root):
        (workspace / "image.txt").write_text("myimage:1.0\n")
        factory = RunnerFactory()

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry({"myimage:1.0"}), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Aborted)
        assert factory.runner is None
        assert list(temp_root.iterdir()) == []
        assert list(workspace.iterdir()) == []

    def test_successful_run_without_marker(self, studio_path, workspace, build_context, temp_root, mock_import):
        factory = RunnerFactory()

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert outcome == Success(None)
        assert factory.runner.calls == [("My Project - vagrant up", UP),
                                        ("My Project - vagrant destroy", DESTROY)]
        import_cmd = mock_import.call_args[0][0]
        assert not any(arg.startswith("--name") for arg in import_cmd)
        assert "--overwrite" not in import_cmd
        assert factory.working_dir.parent == temp_root
        assert not factory.working_dir.exists()
        assert list(workspace.iterdir()) == []

    def test_provisioning_failure_reports_stage(self, studio_path, workspace, build_context, temp_root, mock_import):
        (workspace / "image.txt").write_text("myimage:2.0\n")
        factory = RunnerFactory(fail_on={UP})

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert outcome.stage == "provisioning"
        assert factory.runner.commands == [UP, DESTROY]
        assert list(workspace.iterdir()) == []
        assert list(temp_root.iterdir()) == []

    def test_invalid_settings_fail_before_provisioning(self, studio_path, workspace, build_context, temp_root):
        factory = RunnerFactory()
        builder = _snapshot_builder(studio_path, install_script_settings=FixedInstallScript(""))

        outcome = builder.perform(build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, ConfigurationError)
        assert factory.runner is None

    def test_invalid_marker_fails_as_configuration(self, studio_path, workspace, build_context, temp_root):
        (workspace / "image.txt").write_text("not an image\n")
        factory = RunnerFactory()

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert outcome.stage == "configuration"
        assert factory.runner is None

    def test_missing_studio_path(self, workspace, build_context, temp_root):
        builder = SnapshotBuilder(None, None, None, False, TemplateInstallScript(), StudioStartupFile())

        outcome = builder.perform(build_context, FakeRegistry(), runner_factory=RunnerFactory(),
                                  temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert "studioPath" in str(outcome.error)

    def test_unexpected_import_failure_is_failed_outcome(self, studio_path, workspace, build_context, temp_root):
        factory = RunnerFactory()

        with patch("spoon_snapshot.commands.run_subprocess", side_effect=ValueError("bad output")):
            outcome = _snapshot_builder(studio_path).perform(
                build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert outcome.stage == "import"
        assert factory.runner.commands == [UP, DESTROY]
        assert list(temp_root.iterdir()) == []

    def test_undecodable_marker_fails_as_configuration(self, studio_path, workspace, build_context, temp_root):
        (workspace / "image.txt").write_bytes(b"\xffmyimage:1.0\n")
        factory = RunnerFactory()

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry(), runner_factory=factory, temp_root=temp_root)

        assert isinstance(outcome, Failed)
        assert outcome.stage == "configuration"
        assert factory.runner is None
        assert list(workspace.iterdir()) == []

    def test_unusable_temp_root_fails_as_configuration(self, studio_path, workspace, build_context, tmp_path):
        not_a_directory = tmp_path / "not-a-directory"
        not_a_directory.write_text("")
        factory = RunnerFactory()

        outcome = _snapshot_builder(studio_path).perform(
            build_context, FakeRegistry(), runner_factory=factory, temp_root=not_a_directory)

        assert isinstance(outcome, Failed)
        assert outcome.stage == "configuration"
        assert factory.runner is None
