"""Image identifiers and the image.txt marker file."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

IMAGE_NAME_FILE = "image.txt"

_IDENTIFIER_PATTERN = re.compile(
    r"^(?:(?P<organization>[\w.-]+)/)?(?P<name>[\w.-]+)(?::(?P<tag>[\w.-]+))?$"
)


@dataclass(frozen=True)
class Image:
    """A Turbo image identifier of the form ``[organization/]name[:tag]``."""

    name: str
    tag: Optional[str] = None
    organization: Optional[str] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> "Image":
        """Parse an image identifier, raising ConfigurationError if it is malformed."""
        value = (text or "").strip()
        match = _IDENTIFIER_PATTERN.match(value)
        if not match:
            raise ConfigurationError(f"Invalid image identifier: '{value}'")
        return cls(
            name=match.group("name"),
            tag=match.group("tag"),
            organization=match.group("organization"),
        )

    def print_identifier(self) -> str:
        identifier = self.name
        if self.organization:
            identifier = f"{self.organization}/{identifier}"
        if self.tag:
            identifier = f"{identifier}:{self.tag}"
        return identifier

    def __str__(self) -> str:
        return self.print_identifier()


def load_import_target(workspace: Union[str, Path]) -> Optional[Image]:
    """
    Read the image to import as from the workspace marker file.

    Returns None when the marker file does not exist. Only the first line is
    considered.
    """
    marker = Path(workspace) / IMAGE_NAME_FILE
    if not marker.exists():
        logger.debug(f"No {IMAGE_NAME_FILE} in workspace, image will be imported without a name")
        return None

    # Notepad writes a byte order mark
    try:
        with marker.open('r', encoding='utf-8-sig') as f:
            first_line = f.readline()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Could not read {IMAGE_NAME_FILE}: {e}") from e

    image = Image.parse(first_line)
    logger.info(f"Image will be imported as {image.print_identifier()}")
    return image
