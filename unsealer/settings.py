from __future__ import annotations

import logging
import os
import re
import stat
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

MINIMUM_NODES = 3
MIN_CHECK_INTERVAL_S = 5.0
MIN_QUEUE_DELAY_S = 10.0
MAX_QUEUE_DELAY_S = 600.0
CONFIG_REFRESH_INTERVAL_S = 15.0
ALLOWED_CONFIG_PERMS = {0o600, 0o440, 0o400}
DISCOVERY_BACKENDS = {"", "docker", "dns"}

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class ConfigError(Exception):
    pass


def parse_duration(raw: Any) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as "30s",
    "1m30s" or "1h".
    """
    if isinstance(raw, bool):
        raise ConfigError(f"invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip().lower()
    if not text:
        raise ConfigError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration: {raw!r}")
    return total


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(name: str, raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _as_list(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = [str(x) for x in raw]
    return tuple(x.strip() for x in items if x and x.strip())


@dataclass(frozen=True)
class EmailSettings:
    enabled: bool = False
    hostname: str = ""
    port: int = 25
    username: str = ""
    password: str = ""
    from_addr: str = ""
    send_addrs: tuple[str, ...] = ()
    mandatory_tls: bool = False


@dataclass(frozen=True)
class Settings:
    environment: str = ""

    # Checks
    check_interval: float = 30.0
    max_check_interval: float = 0.0
    request_timeout: float = 15.0
    nodes: tuple[str, ...] = ()
    allow_single_node: bool = False
    tokens: tuple[str, ...] = field(default=(), repr=False)

    # Notifications
    notify_max_elapsed: float = 600.0
    notify_queue_delay: float = 60.0
    email: EmailSettings = field(default_factory=EmailSettings, repr=False)

    # Discovery
    discovery: str = ""
    discovery_interval: float = 7.5
    docker_label: str = "vault-unsealer.target=vault"
    docker_port: int = 8200
    dns_name: str = ""
    dns_port: int = 8200
    dns_scheme: str = "http"

    # Event journal / status API
    journal_path: str = ""
    api_host: str = "127.0.0.1"
    api_port: int = 0

    log_level: str = "info"

    @property
    def dynamic(self) -> bool:
        return bool(self.discovery)

    def redacted(self) -> dict[str, Any]:
        """Settings as a plain dict with secrets masked."""
        out: dict[str, Any] = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if name == "tokens":
                value = [f"<{len(value)} redacted>"]
            elif name == "email":
                value = {k: getattr(value, k) for k in value.__dataclass_fields__}
                if value["password"]:
                    value["password"] = "<redacted>"
                value["send_addrs"] = list(value["send_addrs"])
            elif isinstance(value, tuple):
                value = list(value)
            out[name] = value
        return out


# Environment variable -> settings key. Lists are comma separated.
_ENV_KEYS = {
    "ENVIRONMENT": "environment",
    "CHECK_INTERVAL": "check_interval",
    "MAX_CHECK_INTERVAL": "max_check_interval",
    "REQUEST_TIMEOUT": "request_timeout",
    "NODES": "vault_nodes",
    "ALLOW_SINGLE_NODE": "allow_single_node",
    "TOKENS": "unseal_tokens",
    "NOTIFY_MAX_ELAPSED": "notify_max_elapsed",
    "NOTIFY_QUEUE_DELAY": "notify_queue_delay",
    "DISCOVERY": "discovery",
    "DISCOVERY_INTERVAL": "discovery_interval",
    "DOCKER_LABEL": "docker_label",
    "DOCKER_PORT": "docker_port",
    "DNS_NAME": "dns_name",
    "DNS_PORT": "dns_port",
    "DNS_SCHEME": "dns_scheme",
    "JOURNAL_PATH": "journal_path",
    "API_HOST": "api_host",
    "API_PORT": "api_port",
    "LOG_LEVEL": "log_level",
}

_EMAIL_ENV_KEYS = {
    "EMAIL_ENABLED": "enabled",
    "EMAIL_HOSTNAME": "hostname",
    "EMAIL_PORT": "port",
    "EMAIL_USERNAME": "username",
    "EMAIL_PASSWORD": "password",
    "EMAIL_FROM_ADDR": "from_addr",
    "EMAIL_SEND_ADDRS": "send_addrs",
    "EMAIL_MANDATORY_TLS": "mandatory_tls",
}


def _from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    raw: dict[str, Any] = {}
    for env, key in _ENV_KEYS.items():
        if env in environ:
            raw[key] = environ[env]
    email = {key: environ[env] for env, key in _EMAIL_ENV_KEYS.items() if env in environ}
    if email:
        raw["email"] = email
    return raw


def _check_permissions(path: str) -> None:
    perms = stat.S_IMODE(os.stat(path).st_mode)
    if perms not in ALLOWED_CONFIG_PERMS:
        raise ConfigError(
            f"permissions of {path!r} are insecure: {oct(perms)}, please use 0600, 0440, or 0400"
        )


def read_config_file(path: str) -> dict[str, Any]:
    try:
        _check_permissions(path)
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigError(f"unable to read config {path!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml in {path!r}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path!r} must be a mapping")
    return data


def _build_email(raw: Mapping[str, Any]) -> EmailSettings:
    if not isinstance(raw, Mapping):
        raise ConfigError("email must be a mapping")
    return EmailSettings(
        enabled=_as_bool(raw.get("enabled", False)),
        hostname=str(raw.get("hostname") or ""),
        port=_as_int("email.port", raw.get("port", 25)),
        username=str(raw.get("username") or ""),
        password=str(raw.get("password") or ""),
        from_addr=str(raw.get("from_addr") or ""),
        send_addrs=_as_list(raw.get("send_addrs")),
        mandatory_tls=_as_bool(raw.get("mandatory_tls", False)),
    )


def build_settings(raw: Mapping[str, Any]) -> Settings:
    """Turn a raw key/value mapping into a validated snapshot."""
    d = Settings()
    email_raw = raw.get("email") or {}
    st = Settings(
        environment=str(raw.get("environment", d.environment) or ""),
        check_interval=parse_duration(raw.get("check_interval", d.check_interval)),
        max_check_interval=parse_duration(raw.get("max_check_interval", d.max_check_interval)),
        request_timeout=parse_duration(raw.get("request_timeout", d.request_timeout)),
        nodes=_as_list(raw.get("vault_nodes")),
        allow_single_node=_as_bool(raw.get("allow_single_node", d.allow_single_node)),
        tokens=_as_list(raw.get("unseal_tokens")),
        notify_max_elapsed=parse_duration(raw.get("notify_max_elapsed", d.notify_max_elapsed)),
        notify_queue_delay=parse_duration(raw.get("notify_queue_delay", d.notify_queue_delay)),
        email=_build_email(email_raw),
        discovery=str(raw.get("discovery", d.discovery) or "").strip().lower(),
        discovery_interval=parse_duration(raw.get("discovery_interval", d.discovery_interval)),
        docker_label=str(raw.get("docker_label", d.docker_label) or ""),
        docker_port=_as_int("docker_port", raw.get("docker_port", d.docker_port)),
        dns_name=str(raw.get("dns_name", d.dns_name) or ""),
        dns_port=_as_int("dns_port", raw.get("dns_port", d.dns_port)),
        dns_scheme=str(raw.get("dns_scheme", d.dns_scheme) or "http"),
        journal_path=str(raw.get("journal_path", d.journal_path) or ""),
        api_host=str(raw.get("api_host", d.api_host) or d.api_host),
        api_port=_as_int("api_port", raw.get("api_port", d.api_port)),
        log_level=str(raw.get("log_level", d.log_level) or d.log_level).lower(),
    )
    return validate(st)


def validate(st: Settings) -> Settings:
    """Validate a snapshot, returning a normalized copy.

    Raises ConfigError on anything that would leave the daemon unable to do
    its job. Soft issues (intervals too small, too many tokens) are fixed up
    or logged.
    """
    check_interval = max(st.check_interval, MIN_CHECK_INTERVAL_S)
    max_check_interval = st.max_check_interval
    if max_check_interval < check_interval:
        max_check_interval = check_interval * 2
    queue_delay = min(max(st.notify_queue_delay, MIN_QUEUE_DELAY_S), MAX_QUEUE_DELAY_S)

    if st.discovery not in DISCOVERY_BACKENDS:
        raise ConfigError(f"unknown discovery backend {st.discovery!r} (use docker or dns)")
    if st.discovery == "docker" and "=" not in st.docker_label:
        raise ConfigError("docker_label must look like key=value")
    if st.discovery == "dns" and not st.dns_name:
        raise ConfigError("dns_name is required for dns discovery")

    if len(st.nodes) < MINIMUM_NODES and not st.dynamic:
        if not st.allow_single_node:
            raise ConfigError(f"not enough nodes in node list (must have at least {MINIMUM_NODES})")
        logger.warning("running with less than %d nodes, this is not recommended", MINIMUM_NODES)

    if len(st.tokens) < 1:
        raise ConfigError("no tokens found in config")
    if len(st.tokens) >= 3:
        logger.warning("found %d tokens in the config, make sure this is not a security risk", len(st.tokens))

    if st.email.enabled:
        if not st.email.send_addrs:
            raise ConfigError("no send addresses setup for email")
        if not st.email.hostname or not st.email.from_addr:
            raise ConfigError("email hostname or from address is empty")

    if st.request_timeout <= 0:
        raise ConfigError("request_timeout must be positive")
    if st.discovery_interval <= 0:
        raise ConfigError("discovery_interval must be positive")

    return replace(
        st,
        check_interval=check_interval,
        max_check_interval=max_check_interval,
        notify_queue_delay=queue_delay,
    )


def load_settings(path: str | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load a snapshot from the environment, overlaid by the YAML file if given."""
    raw = _from_env(os.environ if environ is None else environ)
    if path:
        file_raw = read_config_file(path)
        if "email" in file_raw and "email" in raw:
            file_raw = {**file_raw, "email": {**raw["email"], **(file_raw["email"] or {})}}
        raw.update(file_raw)
    return build_settings(raw)


class SettingsStore:
    """Holds the current snapshot and swaps it atomically on reload."""

    def __init__(self, initial: Settings, path: str | None = None, environ: Mapping[str, str] | None = None):
        self._lock = Lock()
        self._current = initial
        self.path = path
        self._environ = environ
        self._mtime: float | None = self._stat_mtime()

    def _stat_mtime(self) -> float | None:
        if not self.path:
            return None
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def current(self) -> Settings:
        with self._lock:
            return self._current

    def replace(self, st: Settings) -> None:
        with self._lock:
            self._current = st

    def reload(self) -> bool:
        """Re-read the config file if it changed.

        Returns True when a new snapshot was applied. An invalid file leaves
        the previous snapshot in effect.
        """
        if not self.path:
            return False
        mtime = self._stat_mtime()
        if mtime is not None and mtime == self._mtime:
            return False
        try:
            st = load_settings(self.path, self._environ)
        except ConfigError as e:
            logger.error("config reload failed, keeping previous config: %s", e)
            return False
        self._mtime = mtime
        self.replace(st)
        logger.info("updated config from %s", self.path)
        return True
