#!/usr/bin/env python3
"""
Common utilities for spoon-snapshot.

This module contains shared logging, process launching and workspace cleanup
helpers used across the spoon-snapshot codebase.
"""

import atexit
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Union


# Color codes for terminal output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    WHITE = '\033[37m'

    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'


class ColorFormatter(logging.Formatter):
    """Custom formatter with color support."""

    COLORS = {
        logging.DEBUG: Colors.DIM + Colors.WHITE,
        logging.INFO: Colors.BRIGHT_BLUE,
        logging.WARNING: Colors.BRIGHT_YELLOW,
        logging.ERROR: Colors.BRIGHT_RED,
        logging.CRITICAL: Colors.BOLD + Colors.BRIGHT_RED,
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, Colors.RESET)
        formatted = super().format(record)

        if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
            level_color = color + record.levelname + Colors.RESET
            formatted = formatted.replace(record.levelname, level_color)

            message = str(record.msg)
            if "✅" in message:
                formatted = Colors.BRIGHT_GREEN + formatted + Colors.RESET
            elif "❌" in message:
                formatted = Colors.BRIGHT_RED + formatted + Colors.RESET
            elif "🔧" in message:
                formatted = Colors.BRIGHT_CYAN + formatted + Colors.RESET
            elif "🚀" in message:
                formatted = Colors.BRIGHT_MAGENTA + formatted + Colors.RESET

        return formatted


def setup_logging(verbose: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """
    Set up colored logging configuration.

    Args:
        verbose: Enable debug logging if True
        logger_name: Name of the logger to configure (default: root logger)

    Returns:
        Configured logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()

    formatter = ColorFormatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = False

    return logger


# Global list to track temp files for cleanup
_temp_files: List[tempfile._TemporaryFileWrapper] = []


def _cleanup_tempfiles():
    """Clean up any remaining tempfiles on exit."""
    for temp_file in _temp_files:
        try:
            if hasattr(temp_file, 'name') and os.path.exists(temp_file.name):
                os.unlink(temp_file.name)
        except OSError:
            pass
    _temp_files.clear()


def get_last_lines(file_path: Union[str, Path], num_lines: int = 20) -> List[str]:
    """
    Get the last N lines from a file.

    Args:
        file_path: Path to the file to read
        num_lines: Number of lines to retrieve from the end

    Returns:
        List of last N lines from the file, empty if it cannot be read
    """
    logger = logging.getLogger(__name__)

    try:
        with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.readlines()
            return lines[-num_lines:] if len(lines) > num_lines else lines
    except OSError as e:
        logger.warning(f"Failed to read log file {file_path}: {e}")
        return []


def _log_tail(label: str, file_path: str) -> None:
    logger = logging.getLogger(__name__)
    lines = get_last_lines(file_path, 20)
    if lines:
        logger.error(f"Last 20 lines of {label}:")
        for line in lines:
            logger.error(f"{label}: {line.rstrip()}")


def run_subprocess(cmd: List[str], state_dir: Optional[Path] = None,
                   task_name: Optional[str] = None, debug: bool = False,
                   **kwargs) -> subprocess.CompletedProcess:
    """
    Run subprocess with stdout/stderr captured to tempfiles.

    Args:
        cmd: Command to run as list of strings
        state_dir: Directory whose tmp/logs subdirectory receives the output logs
        task_name: Label used as the log file prefix
        debug: Whether to keep logs after a successful run
        **kwargs: Additional keyword arguments for subprocess.Popen, plus
            ``check`` (default True) and ``timeout``

    Returns:
        CompletedProcess with stdout/stderr captured

    On error, logs the last 20 lines of stdout/stderr.
    """
    logger = logging.getLogger(__name__)

    if state_dir:
        log_dir = Path(state_dir) / "tmp" / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
    else:
        log_dir = Path(tempfile.gettempdir())
    log_prefix = f"{task_name}_" if task_name else "spoon_snapshot_"

    stdout_temp = tempfile.NamedTemporaryFile(mode='w+', prefix=f'{log_prefix}stdout_',
                                              suffix='.log', delete=False, dir=log_dir)
    stderr_temp = tempfile.NamedTemporaryFile(mode='w+', prefix=f'{log_prefix}stderr_',
                                              suffix='.log', delete=False, dir=log_dir)
    _temp_files.extend([stdout_temp, stderr_temp])

    kwargs_copy = kwargs.copy()
    kwargs_copy.pop('capture_output', None)
    check = kwargs_copy.pop('check', True)
    timeout = kwargs_copy.pop('timeout', None)
    kwargs_copy.setdefault('stdout', stdout_temp)
    kwargs_copy.setdefault('stderr', stderr_temp)
    kwargs_copy.setdefault('text', True)

    logger.debug(f"Running command: {' '.join(cmd)}")
    if debug:
        logger.debug(f"stdout log: {stdout_temp.name}")
        logger.debug(f"stderr log: {stderr_temp.name}")

    keep_logs = debug
    try:
        process = subprocess.Popen(cmd, **kwargs_copy)
        try:
            returncode = process.wait(timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Process timed out: {' '.join(cmd)}")
            process.kill()
            process.wait()
            raise

        stdout_temp.flush()
        stderr_temp.flush()
        stdout_temp.seek(0)
        stdout = stdout_temp.read()
        stderr_temp.seek(0)
        stderr = stderr_temp.read()

        if returncode != 0:
            logger.error(f"Command failed with exit code {returncode}: {' '.join(cmd)}")
            keep_logs = True
            if debug:
                logger.error(f"stdout log path: {stdout_temp.name}")
                logger.error(f"stderr log path: {stderr_temp.name}")
            _log_tail("stdout", stdout_temp.name)
            _log_tail("stderr", stderr_temp.name)

        result = subprocess.CompletedProcess(
            args=cmd,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr
        )

        if check and returncode != 0:
            raise subprocess.CalledProcessError(
                returncode, cmd, output=stdout, stderr=stderr
            )

        return result
    finally:
        stdout_temp.close()
        stderr_temp.close()
        # Kept logs must survive the exit hook too
        for temp_file in (stdout_temp, stderr_temp):
            _temp_files.remove(temp_file)
            if not keep_logs:
                try:
                    os.unlink(temp_file.name)
                except OSError:
                    pass


def delete_directory_tree(path: Union[str, Path]) -> None:
    """Remove a directory and everything below it, logging instead of raising."""
    logger = logging.getLogger(__name__)

    if not Path(path).exists():
        return

    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning(f"⚠️ Failed to delete {path}: {e}")


def quiet_delete_children(path: Union[str, Path]) -> None:
    """Remove every child of a directory, keeping the directory itself."""
    logger = logging.getLogger(__name__)

    directory = Path(path)
    if not directory.is_dir():
        return

    for child in directory.iterdir():
        try:
            if child.is_dir() and not child.is_symlink():
                delete_directory_tree(child)
            else:
                child.unlink()
        except OSError as e:
            logger.warning(f"⚠️ Failed to delete {child}: {e}")


# Register cleanup function to run at exit
atexit.register(_cleanup_tempfiles)
