"""Process settings from an optional YAML file and the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Required startup configuration is missing or invalid."""


@dataclass
class Settings:
    region: str = "zrh"
    api_endpoint: str = ""
    oauth_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    user_email: str = ""
    legacy_credentials: bool = False
    username: str = ""
    password: str = ""
    disable_lb_ip_pool: bool = False
    disable_node_controller: bool = False

    cluster_name: str = ""
    namespace: str = ""
    tenant_kubeconfig: str = ""
    forwarding_namespace: str = "kube-system"
    forwarding_image: str = "praqma/network-multitool:alpine-extra"

    workers: int = 2
    resync_interval_s: float = 60.0
    lb_sync_interval_s: float = 30.0
    lb_discovery_interval_s: float = 300.0
    node_sync_interval_s: float = 30.0
    stale_node_threshold: int = 3
    shutdown_grace_s: float = 30.0
    clone_timeout_s: float = 300.0
    poll_interval_s: float = 5.0
    stop_timeout_s: float = 120.0
    stop_poll_interval_s: float = 10.0
    http_timeout_s: float = 30.0
    status_retries: int = 5
    api_port: int = 8080

    @property
    def impersonation_enabled(self) -> bool:
        return bool(self.oauth_url and self.client_id and self.client_secret)

    @property
    def legacy_enabled(self) -> bool:
        return bool(self.legacy_credentials and self.username and self.password)

    def validate(self) -> None:
        if not self.impersonation_enabled and not self.legacy_enabled:
            raise ConfigError(
                "no CloudSigma authentication configured: set CLOUDSIGMA_OAUTH_URL, CLOUDSIGMA_CLIENT_ID and "
                "CLOUDSIGMA_CLIENT_SECRET, or enable legacy credentials with CLOUDSIGMA_USERNAME and CLOUDSIGMA_PASSWORD"
            )
        if self.impersonation_enabled and not self.user_email and not self.legacy_enabled:
            raise ConfigError("CLOUDSIGMA_USER_EMAIL is required when impersonation is the only authentication method")
        if not self.disable_lb_ip_pool and not self.cluster_name:
            raise ConfigError("CAPCS_CLUSTER_NAME is required unless CLOUDSIGMA_DISABLE_LB_IP_POOL is set")
        if self.stale_node_threshold < 1:
            raise ConfigError("CAPCS_STALE_NODE_THRESHOLD must be at least 1")
        if self.workers < 1:
            raise ConfigError("CAPCS_WORKERS must be at least 1")
        for name in ("clone_timeout_s", "stop_timeout_s", "shutdown_grace_s", "http_timeout_s", "node_sync_interval_s"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")


ENV_VARS = {
    "CLOUDSIGMA_REGION": "region",
    "CLOUDSIGMA_API_ENDPOINT": "api_endpoint",
    "CLOUDSIGMA_OAUTH_URL": "oauth_url",
    "CLOUDSIGMA_CLIENT_ID": "client_id",
    "CLOUDSIGMA_CLIENT_SECRET": "client_secret",
    "CLOUDSIGMA_USER_EMAIL": "user_email",
    "CLOUDSIGMA_ENABLE_LEGACY_CREDENTIALS": "legacy_credentials",
    "CLOUDSIGMA_USERNAME": "username",
    "CLOUDSIGMA_PASSWORD": "password",
    "CLOUDSIGMA_DISABLE_LB_IP_POOL": "disable_lb_ip_pool",
    "CAPCS_DISABLE_NODE_CONTROLLER": "disable_node_controller",
    "CAPCS_CLUSTER_NAME": "cluster_name",
    "CAPCS_NAMESPACE": "namespace",
    "CAPCS_TENANT_KUBECONFIG": "tenant_kubeconfig",
    "CAPCS_FORWARDING_NAMESPACE": "forwarding_namespace",
    "CAPCS_FORWARDING_IMAGE": "forwarding_image",
    "CAPCS_WORKERS": "workers",
    "CAPCS_RESYNC_INTERVAL_S": "resync_interval_s",
    "CAPCS_LB_SYNC_INTERVAL_S": "lb_sync_interval_s",
    "CAPCS_LB_DISCOVERY_INTERVAL_S": "lb_discovery_interval_s",
    "CAPCS_NODE_SYNC_INTERVAL_S": "node_sync_interval_s",
    "CAPCS_STALE_NODE_THRESHOLD": "stale_node_threshold",
    "CAPCS_SHUTDOWN_GRACE_S": "shutdown_grace_s",
    "CAPCS_CLONE_TIMEOUT_S": "clone_timeout_s",
    "CAPCS_POLL_INTERVAL_S": "poll_interval_s",
    "CAPCS_STOP_TIMEOUT_S": "stop_timeout_s",
    "CAPCS_STOP_POLL_INTERVAL_S": "stop_poll_interval_s",
    "CAPCS_HTTP_TIMEOUT_S": "http_timeout_s",
    "CAPCS_STATUS_RETRIES": "status_retries",
    "CAPCS_API_PORT": "api_port",
}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value {value!r} for {name}") from e
    return str(value)


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build and validate settings.

    Values from the YAML file at ``path`` (or ``$CAPCS_CONFIG``) are applied
    first, then environment variables override them.

    Raises:
        ConfigError: The configuration cannot be used to start the process
    """
    env = os.environ if env is None else env
    path = path or env.get("CAPCS_CONFIG")
    defaults = Settings()
    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key {key!r} in {path}")
                continue
            values[key] = _coerce(key, value, getattr(defaults, key))
        logger.info(f"Loaded config file {path}")

    for var, key in ENV_VARS.items():
        if var in env and env[var] != "":
            values[key] = _coerce(var, env[var], getattr(defaults, key))

    settings = Settings(**values)
    settings.validate()
    return settings
