"""
Typed view over the backend's JSON configuration file.

The wrapper owns only a handful of keys in that file. OwnedSettings names
them; merge_owned() writes exactly those keys and leaves everything else
as the backend wrote it.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOOPBACK_PROXIES = ["127.0.0.1", "::1"]

# dotted key -> OwnedSettings attribute
OWNED_KEYS = {
    "gateway.mode": "mode",
    "gateway.bind": "bind",
    "gateway.port": "port",
    "gateway.auth.mode": "auth_mode",
    "gateway.auth.token": "token",
    "gateway.controlUi.allowInsecureAuth": "allow_insecure_auth",
    "gateway.controlUi.dangerouslyDisableDeviceAuth": "disable_device_auth",
    "gateway.trustedProxies": "trusted_proxies",
    "agents.defaults.workspace": "workspace",
}


@dataclass
class OwnedSettings:
    """The configuration keys the wrapper keeps consistent. None means unset."""

    mode: str | None = None
    bind: str | None = None
    port: int | None = None
    auth_mode: str | None = None
    token: str | None = None
    allow_insecure_auth: bool | None = None
    disable_device_auth: bool | None = None
    trusted_proxies: list[str] | None = None
    workspace: str | None = None

    def items(self):
        for key, attr in OWNED_KEYS.items():
            yield key, getattr(self, attr)


def headless_settings(workspace: Path | str) -> OwnedSettings:
    """Flags a headless deployment needs regardless of what onboarding wrote."""
    return OwnedSettings(
        allow_insecure_auth=True,
        disable_device_auth=True,
        trusted_proxies=list(LOOPBACK_PROXIES),
        workspace=str(workspace),
    )


def _lookup(data: dict, dotted: str) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _assign(data: dict, dotted: str, value: Any):
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


@dataclass
class BackendConfig:
    """Reads and patches the backend configuration file at `path`."""

    path: Path
    indent: int = field(default=2, repr=False)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> dict:
        """Parse the config file. Raises FileNotFoundError or ValueError."""
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def owned(self) -> OwnedSettings:
        """Current values of the owned keys (all None if the file is unreadable)."""
        try:
            data = self.read()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read backend config {self.path}: {e}")
            return OwnedSettings()
        return OwnedSettings(**{attr: _lookup(data, key) for key, attr in OWNED_KEYS.items()})

    def merge_owned(self, settings: OwnedSettings) -> list[str]:
        """
        Write the non-None owned settings into the file.

        Re-reads the file immediately before writing. Returns the dotted keys
        that changed.
        """
        data = self.read()
        changed = []
        for key, value in settings.items():
            if value is None or _lookup(data, key) == value:
                continue
            _assign(data, key, value)
            changed.append(key)

        if changed:
            self.path.write_text(json.dumps(data, indent=self.indent, ensure_ascii=False) + "\n", encoding="utf-8")
            logger.info(f"Updated backend config keys: {', '.join(changed)}")
        return changed

    def delete(self) -> bool:
        """Remove the config file. Returns True if a file was removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
