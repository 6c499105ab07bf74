# Tunnel configuration: model, config files and layered resolution
import datetime
import getpass
import logging
import os
import pathlib
import shlex
from typing import Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigFileNotFound, InvalidConfigValue, MissingRequiredField

log = logging.getLogger("ssh_tunnel")

PathLike = Union[str, os.PathLike]

# -------------------------
# Locations
# -------------------------
CONFIG_NAME = "ssh-tunnel.conf"
SYSTEM_CONFIG = pathlib.Path("/etc") / CONFIG_NAME


def config_search_paths() -> List[pathlib.Path]:
    # First existing file wins
    return [
        pathlib.Path(".") / CONFIG_NAME,
        SYSTEM_CONFIG,
        pathlib.Path.home() / ".config" / "ssh-tunnel" / CONFIG_NAME,
    ]


# Config file variable -> model field
FILE_KEYS = {
    "SERVER_SSH_USER": "server_user",
    "SERVER_SSH_HOST": "server_host",
    "SERVER_SSH_PORT": "server_port",
    "LOCAL_SSH_PORT": "local_port",
    "SERVER_SSH_FORWARD_PORT": "remote_port",
    "INSTALL_LOCAL_SERVICE": "install_service",
    "LOCAL_SERVICE_USER": "local_user",
    "MONITOR_PORT": "monitor_port",
    "SERVER_ALIVE_INTERVAL": "server_alive_interval",
    "SERVER_ALIVE_COUNT_MAX": "server_alive_count_max",
    "EXIT_ON_FORWARD_FAILURE": "exit_on_forward_failure",
}

# Values end up verbatim in generated shell scripts
USER_PATTERN = r"^[A-Za-z0-9._-]*$"
HOST_PATTERN = r"^[A-Za-z0-9._:\[\]-]*$"


# -------------------------
# Pydantic model (v2)
# -------------------------
class TunnelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    server_user: str = Field("", pattern=USER_PATTERN)
    server_host: str = Field("", pattern=HOST_PATTERN)
    server_port: int = 22
    local_port: int = 22
    remote_port: int = 2222
    monitor_port: int = 20000
    local_user: str = Field(default_factory=lambda: getpass.getuser(), pattern=r"^[A-Za-z0-9._-]+$")
    server_alive_interval: int = Field(60, ge=0)
    server_alive_count_max: int = Field(3, ge=1)
    exit_on_forward_failure: bool = True
    install_service: bool = False

    @field_validator("server_port", "local_port", "remote_port", "monitor_port")
    @classmethod
    def _port_ok(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("Invalid port")
        return v


# -------------------------
# Config file parsing
# -------------------------
def parse_config_file(path: PathLike) -> Dict[str, str]:
    """
    Read a shell-sourceable KEY=value file and return the recognized values keyed by model field.

    Quoting and ``#`` comments follow POSIX shell rules. Variables are not expanded.
    """
    values: Dict[str, str] = {}
    # Undecodable bytes are replaced; sh sources such files without complaint
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except OSError as e:
        raise InvalidConfigValue(f"Could not read configuration file {path}: {e}")
    for lineno, line in enumerate(lines, 1):
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise InvalidConfigValue(f"{path}:{lineno}: {e}")
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        if not tokens:
            continue
        if len(tokens) != 1 or "=" not in tokens[0]:
            log.warning(f"{path}:{lineno}: ignoring line, not a KEY=value assignment")
            continue
        key, _, value = tokens[0].partition("=")
        field = FILE_KEYS.get(key)
        if field is None:
            log.debug(f"{path}:{lineno}: ignoring unknown variable {key}")
            continue
        values[field] = value
    return values


def find_config_file(search_paths: Optional[Sequence[PathLike]] = None) -> Optional[pathlib.Path]:
    paths = config_search_paths() if search_paths is None else search_paths
    for p in paths:
        p = pathlib.Path(p)
        if p.is_file():
            return p
    return None


def _file_layer(path: pathlib.Path) -> Dict[str, str]:
    log.info(f"Loading configuration from {path}")
    # Empty variables leave the previous layer untouched
    return {k: v for k, v in parse_config_file(path).items() if v != ""}


def _describe(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
    )


# -------------------------
# Resolution
# -------------------------
def resolve(
    cli_values: Optional[Mapping[str, object]] = None,
    config_file: Optional[PathLike] = None,
    defaults: Optional[TunnelConfig] = None,
    search_paths: Optional[Sequence[PathLike]] = None,
) -> TunnelConfig:
    """
    Merge defaults, config files and command line values into one TunnelConfig.

    Precedence, lowest first: defaults, the discovered config file, the explicit
    ``config_file``, then ``cli_values``. A CLI value of None means "not given".

    :raises ConfigFileNotFound:     ``config_file`` does not exist
    :raises MissingRequiredField:   server user or host is empty after merging
    :raises InvalidConfigValue:     a value does not validate
    """
    merged: Dict[str, object] = defaults.model_dump() if defaults is not None else {}

    discovered = find_config_file(search_paths)
    if discovered is not None:
        merged.update(_file_layer(discovered))

    if config_file is not None:
        explicit = pathlib.Path(config_file)
        if not explicit.is_file():
            raise ConfigFileNotFound(f"Configuration file {config_file} not found.")
        if discovered is None or explicit.resolve() != discovered.resolve():
            merged.update(_file_layer(explicit))

    merged.update({k: v for k, v in (cli_values or {}).items() if v is not None})

    try:
        config = TunnelConfig(**merged)
    except ValidationError as e:
        raise InvalidConfigValue(f"Invalid configuration: {_describe(e)}")
    if not config.server_user or not config.server_host:
        raise MissingRequiredField("Server username and hostname are required.")
    return config


# -------------------------
# Persistence
# -------------------------
def render_config(config: TunnelConfig, now: Optional[datetime.datetime] = None) -> str:
    now = now or datetime.datetime.now()
    return f"""# SSH Tunnel Configuration File
# Created by ssh-tunnel service installation on {now:%a %b %d %H:%M:%S %Y}
# This file is used by the ssh-tunnel service

# Server SSH connection details
SERVER_SSH_USER="{config.server_user}"
SERVER_SSH_HOST="{config.server_host}"
SERVER_SSH_PORT="{config.server_port}"

# Port forwarding configuration
LOCAL_SSH_PORT="{config.local_port}"
SERVER_SSH_FORWARD_PORT="{config.remote_port}"

# Service installation options
INSTALL_LOCAL_SERVICE="true"
LOCAL_SERVICE_USER="{config.local_user}"

# Advanced options
MONITOR_PORT="{config.monitor_port}"
SERVER_ALIVE_INTERVAL="{config.server_alive_interval}"
SERVER_ALIVE_COUNT_MAX="{config.server_alive_count_max}"
EXIT_ON_FORWARD_FAILURE="{'yes' if config.exit_on_forward_failure else 'no'}"
"""


def save_config(config: TunnelConfig, path: PathLike = SYSTEM_CONFIG) -> pathlib.Path:
    path = pathlib.Path(path)
    log.info(f"Saving current configuration to {path} for service use")
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(render_config(config))
    os.replace(tmp, path)
    os.chmod(path, 0o644)
    return path
