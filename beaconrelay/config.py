# beaconrelay/config.py
"""
Relay configuration.

Values come from an optional YAML file, then environment variables, then
whatever the CLI passes explicitly. Example file:

    domain: relay.example.com
    protocol: https://
    port: 8000
    data_dir: ./data
    admin_password: hunter2
    delivery_mode: sync
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

ENV_KEYS = {
    "domain": "DOMAIN",
    "protocol": "PROTOCOL",
    "host": "HOST",
    "port": "PORT",
    "data_dir": "DATA_DIR",
    "images_dir": "IMAGES_DIR",
    "admin_password": "ADMIN_PASSWORD",
    "debug": "DEBUG",
    "show_adult_content": "SHOW_ADULT_CONTENT",
    "delivery_mode": "DELIVERY_MODE",
}

DELIVERY_MODES = ("sync", "queued")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Settings for one relay process.

    Attributes:
        domain: Public host name (e.g. "relay.example.com" or "localhost:8000")
        protocol: URL scheme prefix, "https://" or "http://"
        host: Interface the HTTP server binds to
        port: Port the HTTP server binds to
        data_dir: Directory holding the row store
        images_dir: Directory for materialized inline images
        admin_password: Password exchanged for the admin capability; empty disables login
        debug: Include localhost listings in public directory views
        show_adult_content: Include adult listings in public directory views
        delivery_mode: "sync" or "queued" outgoing activity delivery
    """
    domain: str = "localhost:8000"
    protocol: str = "http://"
    host: str = "127.0.0.1"
    port: int = 8000
    data_dir: Path = Path("./data")
    images_dir: Optional[Path] = None
    admin_password: str = ""
    debug: bool = False
    show_adult_content: bool = False
    delivery_mode: str = "sync"

    def __post_init__(self):
        self.port = int(self.port)
        self.data_dir = Path(self.data_dir)
        self.images_dir = Path(self.images_dir) if self.images_dir else self.data_dir / "images"
        self.debug = _as_bool(self.debug)
        self.show_adult_content = _as_bool(self.show_adult_content)
        if not self.protocol.endswith("://"):
            self.protocol = f"{self.protocol}://"
        if self.delivery_mode not in DELIVERY_MODES:
            raise ValueError(
                f"delivery_mode must be one of {DELIVERY_MODES}, got {self.delivery_mode!r}"
            )

    @property
    def base_url(self) -> str:
        """Externally reachable root, e.g. https://relay.example.com"""
        return f"{self.protocol}{self.domain}"

    @property
    def system_identity(self) -> str:
        """Identity URI of the local system actor."""
        return f"{self.base_url}/relay"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(
        cls,
        path: Optional[Path | str] = None,
        environ: Optional[Dict[str, str]] = None,
        **overrides: Any,
    ) -> "Config":
        """
        Build a config from file, environment and explicit overrides.

        Args:
            path: Optional YAML file
            environ: Environment mapping (defaults to os.environ)
            overrides: Explicit values; None entries are ignored
        """
        data: Dict[str, Any] = {}
        if path:
            with open(path) as f:
                data.update(yaml.safe_load(f) or {})

        environ = os.environ if environ is None else environ
        for key, env_key in ENV_KEYS.items():
            if env_key in environ:
                data[key] = environ[env_key]

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(data)
