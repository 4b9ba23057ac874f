"""
credentials/tailscale.py -- Overlay network control plane client (Tailscale API v2).

Issues the join key a device uses to enter the private tailnet:

    POST {api}/api/v2/tailnet/{tailnet}/keys
    {
      "capabilities": {"devices": {"create": {
          "reusable": false, "ephemeral": false,
          "preauthorized": true, "tags": ["tag:provisioned"]}}},
      "expirySeconds": 600,
      "description": "provision SN-001"
    }

Single-use, pre-authorized, tagged, time-boxed. Every successful call consumes
one key allocation, so there are no retries here: a failure surfaces as an
UpstreamError carrying the upstream status and body, and the device retries on
its own schedule.

The requests.Session is injected so tests can substitute a fake and the
application shares one pooled session. max_redirects is clamped the same way
the rest of the codebase does for known APIs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

import requests

from core.errors import ConfigError, UpstreamError

logger = logging.getLogger("fleetprov.credentials")

_DEFAULT_API_URL = "https://api.tailscale.com"

# Tailscale accepts at most 50 chars of [A-Za-z0-9 -] in a key description.
_DESCRIPTION_UNSAFE_RE = re.compile(r"[^A-Za-z0-9 -]")


@dataclass(frozen=True)
class JoinKey:
    key: str
    key_id: str | None = None
    expires: str | None = None


def _description_for(serial: str) -> str:
    return f"provision {_DESCRIPTION_UNSAFE_RE.sub('-', serial)}"[:50]


def default_session() -> requests.Session:
    session = requests.Session()
    session.max_redirects = 3
    return session


class TailscaleClient:
    """Minimal Tailscale API client for auth-key issuance and deletion."""

    def __init__(
        self,
        api_key: str,
        tailnet: str,
        tag: str = "tag:provisioned",
        expiry_seconds: int = 600,
        api_url: str = _DEFAULT_API_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key
        self._tailnet = tailnet
        self._tag = tag
        self._expiry_seconds = expiry_seconds
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = session or default_session()

    def _keys_url(self) -> str:
        if not self._api_key:
            logger.error("Tailscale API key is not configured (TAILSCALE_API_KEY)")
            raise ConfigError("Overlay network API key is not configured.", detail="Set TAILSCALE_API_KEY.")
        if not self._tailnet:
            logger.error("Tailscale tailnet is not configured (TAILSCALE_TAILNET)")
            raise ConfigError("Overlay network tailnet is not configured.", detail="Set TAILSCALE_TAILNET.")
        return f"{self._api_url}/api/v2/tailnet/{quote(self._tailnet, safe='')}/keys"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def create_join_key(self, serial: str) -> JoinKey:
        """Create a single-use, pre-authorized, tagged join key for one device.

        Raises ConfigError when the client is not configured and UpstreamError
        on transport failures, non-2xx responses, or a response without a key.
        """
        url = self._keys_url()
        body = {
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": False,
                        "ephemeral": False,
                        "preauthorized": True,
                        "tags": [self._tag],
                    }
                }
            },
            "expirySeconds": self._expiry_seconds,
            "description": _description_for(serial),
        }
        logger.info("Requesting join key (tailnet=%s, tag=%s, serial=%r)", self._tailnet, self._tag, serial)
        try:
            resp = self._session.post(url, json=body, headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as e:
            logger.error("Join key request failed for serial %r: %s", serial, e)
            raise UpstreamError("Overlay network control plane unreachable.", None, str(e)) from e

        if not resp.ok:
            logger.error("Join key request rejected for serial %r: HTTP %d %s", serial, resp.status_code, resp.text[:500])
            raise UpstreamError("Overlay network control plane rejected the key request.", resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Overlay network control plane returned invalid JSON.", resp.status_code, resp.text) from e

        key = data.get("key") if isinstance(data, dict) else None
        if not isinstance(key, str) or not key:
            logger.error("Join key response for serial %r had no key field", serial)
            raise UpstreamError("Overlay network control plane returned no key.", resp.status_code, resp.text)
        if not key.startswith("tskey-auth-"):
            logger.warning("Join key for serial %r has an unexpected prefix", serial)

        logger.info("Join key issued for serial %r (key_id=%s)", serial, data.get("id"))
        return JoinKey(key=key, key_id=data.get("id"), expires=data.get("expires"))

    def delete_key(self, key_id: str) -> None:
        """Revoke a key by id. Raises UpstreamError on failure (404 counts as done)."""
        url = f"{self._keys_url()}/{quote(key_id, safe='')}"
        try:
            resp = self._session.delete(url, headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as e:
            raise UpstreamError("Overlay network control plane unreachable.", None, str(e)) from e
        if resp.status_code == 404:
            return
        if not resp.ok:
            raise UpstreamError("Overlay network control plane refused key deletion.", resp.status_code, resp.text)
        logger.info("Join key %s revoked", key_id)
