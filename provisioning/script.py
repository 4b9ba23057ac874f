"""
provisioning/script.py -- Renders the one-time provisioning shell script.

The script runs as root on the device, and every value substituted into it is
influenced by someone other than us: the serial comes from the device itself,
image names and URLs from deployment configuration, tokens from upstream
services. All of them are therefore treated as data:

  - Every value is wrapped in single quotes, with an embedded ' written as
    '"'"' (close quote, double-quoted quote, reopen). Inside single quotes
    bash interprets nothing -- no $, no backticks, no backslashes.
  - Placeholders (__NAME__) may only appear as the complete right-hand side
    of an assignment (VAR=__NAME__ followed by whitespace). The template
    then uses "${VAR}", never the raw placeholder. A placeholder anywhere
    else would let a quoted value land in a comment or a larger word, so
    render() rejects such a template outright.
  - Values used as a hostname, container name, or filename component must
    also pass a strict [A-Za-z0-9_-] allow-list.

Rendering is deterministic for identical bindings. GENERATED_AT is the only
per-call value and is informational.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from core.errors import ConfigError, ValidationError
from core.identity import is_safe_identifier
from credentials.issuer import CredentialBundle
from registry.models import DeviceRecord

logger = logging.getLogger("fleetprov.provisioning")

_DEFAULT_TEMPLATE = Path(__file__).parent / "templates" / "provision.sh"

PLACEHOLDER_RE = re.compile(r"__([A-Z][A-Z0-9_]*)__")

# Bindings whose values end up in a hostname, a docker --name, or a filename.
IDENTIFIER_BINDINGS = frozenset({"DEVICE_ID", "DEVICE_HOSTNAME", "CONTAINER_NAME"})


def shell_quote(value: str) -> str:
    """Quote value as a single bash word that expands to exactly value."""
    return "'" + value.replace("'", "'\"'\"'") + "'"


def _check_placement(template: str) -> None:
    for match in PLACEHOLDER_RE.finditer(template):
        start, end = match.span()
        before = template[start - 1] if start > 0 else ""
        after = template[end] if end < len(template) else "\n"
        if before != "=" or not after.isspace():
            raise ConfigError(
                "Provisioning template is unsafe.",
                detail=f"Placeholder {match.group(0)} is not the full value of an assignment.",
            )


def render(template: str, bindings: Mapping[str, str]) -> str:
    """Substitute every __NAME__ placeholder with the shell-quoted binding.

    Raises ConfigError if the template uses a placeholder with no binding or
    in an unsafe position, and ValidationError if a value cannot be embedded
    (NUL byte) or an identifier binding fails the allow-list.
    """
    _check_placement(template)

    used = set(PLACEHOLDER_RE.findall(template))
    missing = sorted(used - set(bindings))
    if missing:
        raise ConfigError("Provisioning template references unbound values.", detail=", ".join(missing))

    for name in used:
        value = bindings[name]
        if "\x00" in value:
            raise ValidationError("Value cannot be embedded in a shell script.", detail=f"{name} contains a NUL byte.")
        if name in IDENTIFIER_BINDINGS and not is_safe_identifier(value):
            raise ValidationError(
                "Value is not a safe identifier.",
                detail=f"{name} may only contain letters, digits, '-' and '_'.",
            )

    return PLACEHOLDER_RE.sub(lambda m: shell_quote(bindings[m.group(1)]), template)


@dataclass(frozen=True)
class ProvisioningScript:
    device_id: str
    serial: str
    instance_uuid: str
    filename: str
    content: str

    def __repr__(self) -> str:
        # content embeds live credentials
        return f"ProvisioningScript(device_id={self.device_id!r}, filename={self.filename!r})"


class ScriptGenerator:
    """Builds the binding set for a device and renders the template."""

    def __init__(
        self,
        docker_image: str,
        update_status_url: str,
        container_name: str = "bacnet-service",
        api_base_url: str = "",
        template: str | None = None,
    ) -> None:
        self._docker_image = docker_image
        self._update_status_url = update_status_url
        self._container_name = container_name
        self._api_base_url = api_base_url
        self._template = template if template is not None else _DEFAULT_TEMPLATE.read_text(encoding="utf-8")

    def check_ready(self) -> None:
        """Raise ConfigError if deployment settings the script needs are missing.

        Called before any credential is issued, so a misconfigured server
        does not burn join keys.
        """
        missing = []
        if not self._docker_image:
            missing.append("DEVICE_DOCKER_IMAGE")
        if not self._update_status_url:
            missing.append("UPDATE_STATUS_URL")
        if missing:
            logger.error("FATAL: provisioning configuration incomplete, missing %s", ", ".join(missing))
            raise ConfigError("Server configuration is incomplete.", detail="Missing " + ", ".join(missing))
        if not is_safe_identifier(self._container_name):
            logger.error("FATAL: DEVICE_CONTAINER_NAME %r is not a safe identifier", self._container_name)
            raise ConfigError("Container name is invalid.", detail="DEVICE_CONTAINER_NAME must match [A-Za-z0-9_-]+.")

    def generate(
        self,
        record: DeviceRecord,
        credentials: CredentialBundle,
        instance_uuid: str,
        generated_at: str,
    ) -> ProvisioningScript:
        bindings = {
            "GENERATED_AT": generated_at,
            "DEVICE_SERIAL": record.serial,
            "DEVICE_ID": record.id,
            "DEVICE_HOSTNAME": record.serial,
            "PROVISIONING_INSTANCE_UUID": instance_uuid,
            "DEVICE_AUTH_TOKEN": credentials.auth_token,
            "TAILSCALE_AUTH_KEY": credentials.vpn_join_key,
            "DOCKER_IMAGE": self._docker_image,
            "CONTAINER_NAME": self._container_name,
            "UPDATE_STATUS_URL": self._update_status_url,
            "DEVICE_API_BASE_URL": self._api_base_url,
        }
        content = render(self._template, bindings)
        logger.info("Provisioning script rendered for device %s", record.id)
        return ProvisioningScript(
            device_id=record.id,
            serial=record.serial,
            instance_uuid=instance_uuid,
            filename=f"provision-{record.serial}.sh",
            content=content,
        )
