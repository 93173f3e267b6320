"""Global defaults shared by every snapshot run."""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_VAGRANT_BOX = "opentable/win-2012r2-standard-amd64-nocm"
SETTINGS_FILE = "settings.json"


@dataclass
class GlobalSettings:
    studio_path: Optional[str] = None
    studio_license_path: Optional[str] = None
    vagrant_box: Optional[str] = None

    def effective_vagrant_box(self) -> str:
        return self.vagrant_box or DEFAULT_VAGRANT_BOX


def default_state_dir() -> Path:
    return Path.home() / ".config" / "spoon-snapshot"


def load_settings(state_dir: Optional[Union[str, Path]] = None) -> GlobalSettings:
    """Load saved defaults, returning empty settings when none were saved."""
    settings_file = Path(state_dir or default_state_dir()).expanduser() / SETTINGS_FILE
    if not settings_file.exists():
        logger.debug(f"No settings file at {settings_file}, using defaults")
        return GlobalSettings()

    try:
        with settings_file.open() as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read settings file {settings_file}: {e}") from e

    return GlobalSettings(
        studio_path=data.get("studio_path"),
        studio_license_path=data.get("studio_license_path"),
        vagrant_box=data.get("vagrant_box"),
    )


def save_settings(settings: GlobalSettings, state_dir: Optional[Union[str, Path]] = None) -> Path:
    settings_dir = Path(state_dir or default_state_dir()).expanduser()
    settings_dir.mkdir(parents=True, exist_ok=True)
    settings_file = settings_dir / SETTINGS_FILE

    with settings_file.open('w') as f:
        json.dump(asdict(settings), f, indent=2)

    logger.info(f"✅ Settings saved to {settings_file}")
    return settings_file
