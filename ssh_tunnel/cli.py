# ssh-tunnel: persistent reverse SSH tunnel, in the foreground or as a system service
import argparse
import logging
from typing import Dict, List, Optional

from . import launcher
from .config import CONFIG_NAME, SYSTEM_CONFIG, TunnelConfig, resolve
from .errors import MissingRequiredField, TunnelError, UnknownFlag, UsageError
from .installer import install

# -------------------------
# Logging
# -------------------------
log = logging.getLogger("ssh_tunnel")

PROG = "ssh-tunnel"


def usage_text(prog: str = PROG) -> str:
    d = TunnelConfig()
    return f"""Persistent Reverse SSH Tunnel Setup (Non-systemd)
=================================================
This tool establishes a persistent reverse SSH tunnel from this client machine to a server,
allowing the server to connect back to this client. It uses autossh to automatically
reconnect if the connection drops.

Usage: {prog} [options]
Options:
  -u, --server-ssh-user USER     Server username (required)
  -h, --server-ssh-host HOST     Server hostname or IP (required)
  -p, --server-ssh-port PORT     Server SSH port (default: {d.server_port})
  -l, --local-ssh-port PORT      Local port to expose (default: {d.local_port})
  -r, --server-ssh-forward-port PORT   Remote port on server (default: {d.remote_port})
  -s, --install-local-service    Install as a startup service (requires root)
  -U, --local-service-user USER  Local user under which the service will run (default: {d.local_user})
  -c, --config FILE              Path to configuration file
  --help                         Display this help message

Configuration file:
  The configuration file is searched in the following order:
  1. Current directory: ./{CONFIG_NAME}
  2. System-wide: {SYSTEM_CONFIG}
  3. User config: ~/.config/ssh-tunnel/{CONFIG_NAME}

  Command line options override settings from the config file.
  See {CONFIG_NAME}.example for an example configuration.

  When installing as a service, the current configuration is saved to {SYSTEM_CONFIG}
  to ensure the service always uses the correct settings.

Example:
  {prog} --server-ssh-user admin --server-ssh-host myserver.com --server-ssh-forward-port 2222 --install-local-service

After running this tool, the server can connect back to this client using:
  ssh -p $REMOTE_PORT localhost"""


# -------------------------
# Argument parsing
# -------------------------
class TunnelArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_argparser():
    # -h is the server host, so argparse's own help is disabled
    p = TunnelArgumentParser(prog=PROG, add_help=False, allow_abbrev=False)
    p.add_argument("-u", "--server-ssh-user", dest="server_user")
    p.add_argument("-h", "--server-ssh-host", dest="server_host")
    p.add_argument("-p", "--server-ssh-port", dest="server_port", type=int)
    p.add_argument("-l", "--local-ssh-port", dest="local_port", type=int)
    p.add_argument("-r", "--server-ssh-forward-port", dest="remote_port", type=int)
    p.add_argument("-s", "--install-local-service", dest="install_service", action="store_true")
    p.add_argument("-U", "--local-service-user", dest="local_user")
    p.add_argument("-c", "--config")
    p.add_argument("--help", action="store_true")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    args, unknown = build_argparser().parse_known_args(argv)
    if unknown:
        raise UnknownFlag(f"Unknown option: {unknown[0]}")
    return args


def cli_values(args: argparse.Namespace) -> Dict[str, object]:
    """Fields set on the command line; None marks a field that was not given."""
    return {
        "server_user": args.server_user,
        "server_host": args.server_host,
        "server_port": args.server_port,
        "local_port": args.local_port,
        "remote_port": args.remote_port,
        "local_user": args.local_user,
        "install_service": True if args.install_service else None,
    }


# -------------------------
# Main
# -------------------------
def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    try:
        args = parse_args(argv)
    except UsageError as e:
        print(e)
        print(usage_text())
        return 1
    if args.help:
        print(usage_text())
        return 1

    try:
        config = resolve(cli_values(args), config_file=args.config)
    except MissingRequiredField as e:
        log.error(e)
        print(usage_text())
        return 1
    except TunnelError as e:
        log.error(e)
        return 1

    log.info("Setting up persistent reverse SSH tunnel...")
    log.info(f"Server: {config.server_user}@{config.server_host}:{config.server_port}")
    log.info(f"Local port: {config.local_port}")
    log.info(f"Remote port: {config.remote_port}")

    try:
        if config.install_service:
            install(config)
        else:
            launcher.run(config)
    except KeyboardInterrupt:
        log.warning("Aborted.")
        return 0
    except TunnelError as e:
        log.error(e)
        return 1
    return 0
