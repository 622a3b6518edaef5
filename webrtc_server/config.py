"""
Configuration module for the WebRTC HTTPS server.
Loads configuration from config.yaml file with fallback to default values.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Primary WiFi interface name per platform
WIFI_INTERFACES = {
    "darwin": "en0",
    "ios": "en0",
    "linux": "wlan0",
    "win32": "Wi-Fi",
}

PASSPHRASE_ENV_VAR = "WEBRTC_SERVER_P12_PASSPHRASE"


def default_wifi_interface(platform: Optional[str] = None) -> str:
    """Return the primary WiFi interface name for a platform (en0 if unknown)."""
    platform = platform or sys.platform
    for prefix, name in WIFI_INTERFACES.items():
        if platform.startswith(prefix):
            return name
    return "en0"


# Default configuration values (fallback if YAML file doesn't exist)
DEFAULT_CONFIG = {
    "network": {
        "https_port": 8443,
        "host_ip": "0.0.0.0",
        "wifi_interface": default_wifi_interface(),
    },
    "tls": {
        "identity_bundle": "server.p12",
        "passphrase": "123456",
        "min_version": "TLSv1_2",
    },
    "server": {
        "max_connections": 64,
        "idle_timeout": 10.0,
        "receive_max_bytes": 65536,
        "accept_poll_interval": 0.25,
        "keepalive": True,
        "reuse_address": True,
    },
    "document": {
        "path": "web-ui/webRTC.html",
    },
    "logging": {
        "level": "info",
        "capacity": 100,
    },
}


def _copy_defaults() -> dict:
    return {section: dict(values) for section, values in DEFAULT_CONFIG.items()}


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file with fallback to defaults."""
    config = _copy_defaults()

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    # Deep merge yaml config into default config
                    _deep_merge(config, yaml_config)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load config from {config_path}: {e}")
            logger.warning("Using default configuration")
    else:
        logger.debug(f"Config file {config_path} not found, using defaults")

    return config


def save_config(config: dict, config_path: str = "config.yaml") -> bool:
    """Save configuration to YAML file."""
    try:
        with open(config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False, indent=2)
        return True
    except OSError as e:
        logger.error(f"Error saving config to {config_path}: {e}")
        return False


def _deep_merge(base: dict, update: dict):
    """Deep merge update dict into base dict."""
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


@dataclass
class ServerConfig:
    """Main configuration class for the HTTPS server."""

    # Network settings
    https_port: int = DEFAULT_CONFIG["network"]["https_port"]
    host_ip: str = DEFAULT_CONFIG["network"]["host_ip"]
    wifi_interface: str = DEFAULT_CONFIG["network"]["wifi_interface"]

    # TLS settings
    identity_bundle: str = DEFAULT_CONFIG["tls"]["identity_bundle"]
    passphrase: str = DEFAULT_CONFIG["tls"]["passphrase"]
    min_tls_version: str = DEFAULT_CONFIG["tls"]["min_version"]

    # Connection limits
    max_connections: int = DEFAULT_CONFIG["server"]["max_connections"]
    idle_timeout: float = DEFAULT_CONFIG["server"]["idle_timeout"]
    receive_max_bytes: int = DEFAULT_CONFIG["server"]["receive_max_bytes"]
    accept_poll_interval: float = DEFAULT_CONFIG["server"]["accept_poll_interval"]
    keepalive: bool = DEFAULT_CONFIG["server"]["keepalive"]
    reuse_address: bool = DEFAULT_CONFIG["server"]["reuse_address"]

    # Paths
    document_path: str = DEFAULT_CONFIG["document"]["path"]

    # Logging
    log_level: str = DEFAULT_CONFIG["logging"]["level"]
    log_capacity: int = DEFAULT_CONFIG["logging"]["capacity"]

    def __post_init__(self):
        if not 0 <= self.https_port <= 65535:
            raise ConfigError(f"https_port out of range: {self.https_port}")
        if self.max_connections < 1:
            raise ConfigError(f"max_connections must be at least 1, got {self.max_connections}")
        if self.idle_timeout <= 0:
            raise ConfigError(f"idle_timeout must be positive, got {self.idle_timeout}")
        if self.receive_max_bytes < 1:
            raise ConfigError(f"receive_max_bytes must be at least 1, got {self.receive_max_bytes}")
        if self.log_capacity < 1:
            raise ConfigError(f"log capacity must be at least 1, got {self.log_capacity}")

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        """Build a config from the nested layout used by config.yaml."""
        merged = _copy_defaults()
        _deep_merge(merged, data or {})
        try:
            return cls(
                https_port=int(merged["network"]["https_port"]),
                host_ip=str(merged["network"]["host_ip"]),
                wifi_interface=str(merged["network"]["wifi_interface"]),
                identity_bundle=str(merged["tls"]["identity_bundle"]),
                passphrase=os.environ.get(PASSPHRASE_ENV_VAR, str(merged["tls"]["passphrase"])),
                min_tls_version=str(merged["tls"]["min_version"]),
                max_connections=int(merged["server"]["max_connections"]),
                idle_timeout=float(merged["server"]["idle_timeout"]),
                receive_max_bytes=int(merged["server"]["receive_max_bytes"]),
                accept_poll_interval=float(merged["server"]["accept_poll_interval"]),
                keepalive=bool(merged["server"]["keepalive"]),
                reuse_address=bool(merged["server"]["reuse_address"]),
                document_path=str(merged["document"]["path"]),
                log_level=str(merged["logging"]["level"]),
                log_capacity=int(merged["logging"]["capacity"]),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

    def to_dict(self) -> dict:
        """Inverse of from_dict, suitable for save_config."""
        return {
            "network": {
                "https_port": self.https_port,
                "host_ip": self.host_ip,
                "wifi_interface": self.wifi_interface,
            },
            "tls": {
                "identity_bundle": self.identity_bundle,
                "passphrase": self.passphrase,
                "min_version": self.min_tls_version,
            },
            "server": {
                "max_connections": self.max_connections,
                "idle_timeout": self.idle_timeout,
                "receive_max_bytes": self.receive_max_bytes,
                "accept_poll_interval": self.accept_poll_interval,
                "keepalive": self.keepalive,
                "reuse_address": self.reuse_address,
            },
            "document": {"path": self.document_path},
            "logging": {"level": self.log_level, "capacity": self.log_capacity},
        }

    def get_absolute_bundle_path(self):
        """Identity bundle path, resolved against the project root."""
        from .utils import get_absolute_path

        return get_absolute_path(self.identity_bundle)

    def get_absolute_document_path(self):
        """Static document path, resolved against the project root."""
        from .utils import get_absolute_path

        return get_absolute_path(self.document_path)

    @property
    def identity_bundle_exists(self) -> bool:
        """Check if the identity bundle file exists."""
        return self.get_absolute_bundle_path().exists()

    def ensure_identity_bundle(self) -> bool:
        """Ensure the identity bundle exists, generating it if necessary."""
        from .utils import ensure_identity_bundle

        return ensure_identity_bundle(self.identity_bundle, self.passphrase)


# Load configuration
_config_data = load_config()


def get_config_data() -> dict:
    """Get the current configuration data."""
    return _config_data.copy()


# Global configuration instance
config = ServerConfig.from_dict(_config_data)
