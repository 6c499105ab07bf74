# -------------------------
# ssh / autossh command lines
# -------------------------
from typing import List

from .config import TunnelConfig


def yes_no(value: bool) -> str:
    return "yes" if value else "no"


FORWARD_FORMAT = "{remote}:localhost:{local}"


def forward_spec(config: TunnelConfig) -> str:
    """Remote forwarding spec: server port -> local port on this host."""
    return FORWARD_FORMAT.format(remote=config.remote_port, local=config.local_port)


# pgrep -f pattern matching the supervised autossh process
SIGNATURE_FORMAT = "autossh.*{forward}"


def process_signature(config: TunnelConfig) -> str:
    return SIGNATURE_FORMAT.format(forward=forward_spec(config))


def ssh_args(config: TunnelConfig) -> List[str]:
    return [
        "-N",
        "-R", forward_spec(config),
        "-o", f"ServerAliveInterval={config.server_alive_interval}",
        "-o", f"ServerAliveCountMax={config.server_alive_count_max}",
        "-o", f"ExitOnForwardFailure={yes_no(config.exit_on_forward_failure)}",
        "-p", str(config.server_port),
        f"{config.server_user}@{config.server_host}",
    ]


def autossh_args(config: TunnelConfig) -> List[str]:
    return ["-M", str(config.monitor_port)] + ssh_args(config)
