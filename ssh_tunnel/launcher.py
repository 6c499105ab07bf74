# Foreground tunnel: replace this process with ssh
import logging
import os
import shlex

from .commands import ssh_args
from .config import TunnelConfig
from .errors import LaunchFailed

log = logging.getLogger("ssh_tunnel")


def run(config: TunnelConfig):
    """Exec ssh with reverse forwarding and keep-alive options. Does not return on success."""
    cmd = ["ssh"] + ssh_args(config)
    log.info(f"Executing: {shlex.join(cmd)}")
    log.info("This will allow the server to connect back to this client using:")
    log.info(f"  ssh -p {config.remote_port} localhost")
    log.info("Press Ctrl+C to terminate the tunnel.")
    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        raise LaunchFailed(f"Could not execute ssh: {e}")
