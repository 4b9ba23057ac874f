"""
provisioning/bootstrap.py -- Tagged first-stage bootstrap scripts.

A factory image only needs one line:

    curl -fsS "https://fleet.example.com/bootstrap?tag=<tag>" | bash

The tag names a registration script stored as <tag>.sh under
BOOTSTRAP_SCRIPTS_DIR. These scripts carry no credentials (they only register
the device and poll for approval), so serving them needs no auth.

Because the response is piped straight into bash, failures are answered with
a small script that prints the reason and exits 1 instead of a JSON body.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.errors import ConfigError, NotFoundError, ValidationError
from core.identity import is_safe_identifier
from provisioning.script import shell_quote

logger = logging.getLogger("fleetprov.provisioning")

MAX_TAG_LENGTH = 64


@dataclass(frozen=True)
class BootstrapScript:
    tag: str
    content: str

    @property
    def filename(self) -> str:
        return f"register-{self.tag}.sh"


class BootstrapLibrary:
    """Read-only lookup of bootstrap scripts by tag."""

    def __init__(self, directory: Optional[str | Path]) -> None:
        self.directory = Path(directory) if directory else None

    def get(self, tag: str) -> BootstrapScript:
        """Return the script for tag.

        Raises ValidationError for a missing or malformed tag, NotFoundError
        when no script carries it, and ConfigError when no directory is
        configured or the stored script is empty.
        """
        if not tag:
            raise ValidationError("A 'tag' query parameter is required.", detail="Example: ?tag=leak-detection")
        if len(tag) > MAX_TAG_LENGTH or not is_safe_identifier(tag):
            raise ValidationError("Invalid bootstrap tag.", detail="Only letters, digits, '-' and '_' are allowed.")
        if self.directory is None:
            logger.error("Bootstrap script requested for tag %r but BOOTSTRAP_SCRIPTS_DIR is not set", tag)
            raise ConfigError("Bootstrap scripts are not configured.", detail="Set BOOTSTRAP_SCRIPTS_DIR.")

        # The allow-list above keeps the tag a single path component.
        path = self.directory / f"{tag}.sh"
        if not path.is_file():
            logger.warning("Bootstrap script with tag %r not found", tag)
            raise NotFoundError("Script tag not found.", detail=f"No bootstrap script tagged {tag!r}.")

        content = path.read_text(encoding="utf-8")
        if not content.strip():
            logger.error("Bootstrap script %s is empty", path)
            raise ConfigError("Script content is empty.", detail=f"{path.name} has no content.")

        logger.info("Serving bootstrap script for tag %r", tag)
        return BootstrapScript(tag=tag, content=content)


def error_script(tag: str, reason: str, timestamp: str) -> str:
    """Render a script that reports a bootstrap failure on the device console."""
    lines = [
        "#!/bin/bash",
        f"# BOOTSTRAP FAILED at {timestamp}",
        'echo "===================================================================="',
        'echo "ERROR: Failed to download registration script."',
        f"echo 'Timestamp:' {shell_quote(timestamp)}",
        f"echo 'Requested tag:' {shell_quote(tag.replace(chr(0), ''))}",
        f"echo 'Reason:' {shell_quote(reason)}",
        'echo "Please check the tag and server status."',
        'echo "===================================================================="',
        "exit 1",
        "",
    ]
    return "\n".join(lines)
