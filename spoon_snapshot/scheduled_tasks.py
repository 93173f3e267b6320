"""
Run commands through the Windows Task Scheduler.

Vagrant and VirtualBox have to run in an interactive session with elevated
rights, which the build agent's service account does not have. Instead of
spawning the command directly it is registered as a one-off scheduled task,
started, polled until it finishes and then removed again.
"""

import csv
import io
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ScheduledTaskError
from .utils import get_last_lines, run_subprocess

logger = logging.getLogger(__name__)

# Task Scheduler result codes that mean "not finished yet"
SCHED_S_TASK_RUNNING = 0x41301
SCHED_S_TASK_HAS_NOT_RUN = 0x41303

_PENDING_STATUSES = ("Running", "Queued")
_INVALID_TASK_NAME_CHARACTERS = re.compile(r'[\\/:*?"<>|]+')
_FILE_NAME_CHARACTERS = re.compile(r"\W+")


def task_name_for(project_name: str, step: str) -> str:
    """Unique scheduled task name for one step of one project."""
    name = f"{project_name} - {step}"
    return _INVALID_TASK_NAME_CHARACTERS.sub("", name).strip()


class ScheduledTaskRunner:
    """Runs a command line as an ad-hoc scheduled task and waits for it."""

    def __init__(self, working_dir: Union[str, Path], env: Optional[Dict[str, str]] = None,
                 poll_interval: float = 5.0, timeout: Optional[float] = None,
                 debug: bool = False, schtasks_path: str = "schtasks") -> None:
        self.working_dir = Path(working_dir)
        self.env = env
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.debug = debug
        self.schtasks_path = schtasks_path

    def run(self, task_name: str, command_line: str) -> None:
        """
        Run command_line in the working directory as scheduled task task_name.

        Blocks until the task has finished. Raises ScheduledTaskError when the
        command exits with a non-zero code, does not finish within the timeout,
        or any step of registering, starting, polling or removing the task fails.
        """
        file_stem = _FILE_NAME_CHARACTERS.sub("_", task_name).strip("_").lower()
        script_path = self.working_dir / f"{file_stem}.cmd"
        log_path = self.working_dir / f"{file_stem}.log"
        self._write_wrapper_script(script_path, log_path, command_line)

        logger.info(f"🚀 Running scheduled task '{task_name}': {command_line}")
        try:
            self._schtasks(task_name, "/Create", "/TN", task_name, "/TR", f'"{script_path}"',
                           "/SC", "ONCE", "/ST", "00:00", "/RL", "HIGHEST", "/F")
            self._schtasks(task_name, "/Run", "/TN", task_name)
            exit_code = self._wait_for_completion(task_name, log_path)
        except ScheduledTaskError:
            self._delete_task(task_name)
            raise

        cleanup_error = self._delete_task(task_name)

        if exit_code != 0:
            raise ScheduledTaskError(task_name, "failed", exit_code=exit_code,
                                     output=self._output_tail(log_path))
        if cleanup_error is not None:
            raise cleanup_error

        logger.info(f"✅ Scheduled task '{task_name}' completed")

    def _write_wrapper_script(self, script_path: Path, log_path: Path, command_line: str) -> None:
        # The task starts in %windir%\system32 with no console attached
        lines = [
            "@echo off",
            f'cd /d "{self.working_dir}"',
            f'{command_line} > "{log_path}" 2>&1',
            "exit /b %ERRORLEVEL%",
        ]
        self.working_dir.mkdir(parents=True, exist_ok=True)
        script_path.write_text("\r\n".join(lines) + "\r\n", encoding="utf-8")

    def _schtasks(self, task_name: str, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.schtasks_path, *args]
        try:
            return run_subprocess(
                cmd,
                state_dir=self.working_dir,
                task_name="schtasks",
                debug=self.debug,
                env=self.env,
                timeout=60,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise ScheduledTaskError(task_name, f"could not be managed: schtasks {args[0]} failed",
                                     exit_code=e.returncode, output=e.stderr or "") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ScheduledTaskError(task_name, f"could not be managed: schtasks {args[0]}: {e}") from e

    def _query_status(self, task_name: str) -> Dict[str, str]:
        result = self._schtasks(task_name, "/Query", "/TN", task_name, "/FO", "CSV", "/V")
        rows: List[Dict[str, str]] = list(csv.DictReader(io.StringIO(result.stdout)))
        if not rows:
            raise ScheduledTaskError(task_name, "is not registered")
        return rows[0]

    def _wait_for_completion(self, task_name: str, log_path: Path) -> int:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while True:
            row = self._query_status(task_name)
            status = (row.get("Status") or "").strip()
            last_result = self._parse_last_result(task_name, row.get("Last Result"))
            logger.debug(f"🔍 Task '{task_name}' status={status} last_result={last_result}")

            pending = last_result in (SCHED_S_TASK_RUNNING, SCHED_S_TASK_HAS_NOT_RUN)
            if status not in _PENDING_STATUSES and not pending:
                return last_result

            if deadline is not None and time.monotonic() >= deadline:
                raise ScheduledTaskError(task_name, f"did not finish within {self.timeout} seconds",
                                         output=self._output_tail(log_path))

            time.sleep(self.poll_interval)

    @staticmethod
    def _parse_last_result(task_name: str, value: Optional[str]) -> int:
        try:
            return int((value or "").strip())
        except ValueError as e:
            raise ScheduledTaskError(task_name, f"reported an unreadable result: {value!r}") from e

    def _delete_task(self, task_name: str) -> Optional[ScheduledTaskError]:
        try:
            self._schtasks(task_name, "/Delete", "/TN", task_name, "/F")
        except ScheduledTaskError as e:
            logger.warning(f"⚠️ Failed to remove scheduled task '{task_name}': {e}")
            return e
        return None

    @staticmethod
    def _output_tail(log_path: Path) -> str:
        if not log_path.exists():
            return ""
        return "".join(get_last_lines(log_path, 20))
