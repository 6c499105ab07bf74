# Service installation: autossh dependency, init scripts, registration, start
import logging
import os
import pathlib
import shlex
import shutil
import subprocess
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel

from .commands import FORWARD_FORMAT, SIGNATURE_FORMAT, autossh_args, process_signature
from .config import SYSTEM_CONFIG, TunnelConfig, save_config
from .errors import DependencyInstallFailed, InsufficientPrivilege, ServiceRegistrationFailed
from .initsys import InitKind, detect

log = logging.getLogger("ssh_tunnel")

# -------------------------
# Fixed locations (relative to the filesystem root)
# -------------------------
CONFIG_FILE = str(SYSTEM_CONFIG.relative_to("/"))
RC_SCRIPT = "etc/rc.d/reverse_ssh"
RC_CONF = "etc/rc.conf"
RC_ENABLE_LINE = 'reverse_ssh_enable="YES"'
INIT_SCRIPT = "etc/init.d/reverse-ssh"
INIT_NAME = "reverse-ssh"
WRAPPER_SCRIPT = "usr/local/bin/reverse_ssh_wrapper.sh"
CRON_SCHEDULE = "*/5 * * * *"

# Probe order is part of the installation contract: apt, yum, pkg, brew.
# (binary, needs root, install steps)
PACKAGE_MANAGERS = [
    ("apt-get", True, [["apt-get", "update"], ["apt-get", "install", "-y", "autossh"]]),
    ("yum", True, [["yum", "install", "-y", "autossh"]]),
    ("pkg", True, [["pkg", "install", "autossh"]]),
    ("brew", False, [["brew", "install", "autossh"]]),
]


class InstallResult(BaseModel):
    init_kind: InitKind
    script_path: str
    config_path: str
    registered: bool


def _target(rel: str) -> str:
    """Absolute path of ``rel`` as seen by the installed service."""
    return "/" + rel


def _run(cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
    log.info(f"Running: {shlex.join(cmd)}")
    return subprocess.run(cmd, **kwargs)


def _checked(cmd: List[str], error: str, **kwargs) -> subprocess.CompletedProcess:
    try:
        return _run(cmd, check=True, **kwargs)
    except (OSError, subprocess.CalledProcessError) as e:
        raise ServiceRegistrationFailed(f"{error}: {e}")


# -------------------------
# Preconditions
# -------------------------
def ensure_autossh() -> str:
    """
    Return the path of autossh, installing it with the first available package manager.

    :raises DependencyInstallFailed:    no package manager found, or the install did not work
    """
    path = shutil.which("autossh")
    if path:
        return path

    log.info("autossh is not installed. Installing...")
    for manager, needs_root, steps in PACKAGE_MANAGERS:
        if shutil.which(manager) is None:
            continue
        for step in steps:
            cmd = ["sudo"] + step if needs_root and os.geteuid() != 0 else step
            try:
                _run(cmd, check=True)
            except (OSError, subprocess.CalledProcessError) as e:
                raise DependencyInstallFailed(f"Could not install autossh with {manager}: {e}")
        break
    else:
        raise DependencyInstallFailed("Could not install autossh. Please install it manually.")

    path = shutil.which("autossh")
    if not path:
        raise DependencyInstallFailed(f"autossh still not found after installing it with {manager}.")
    return path


def require_root():
    if os.geteuid() != 0:
        raise InsufficientPrivilege(
            "Installing as a service requires root privileges. "
            "Please run with sudo or doas when using the -s option."
        )


# -------------------------
# Script templates
# -------------------------
def rc_script(config: TunnelConfig, autossh: str) -> str:
    args = " ".join(autossh_args(config))
    return f"""#!/bin/sh
#
# PROVIDE: reverse_ssh
# REQUIRE: NETWORKING
# KEYWORD: shutdown

. /etc/rc.subr

name="reverse_ssh"
rcvar="reverse_ssh_enable"
command="{autossh}"
command_args="{args}"
pidfile="/var/run/${{name}}.pid"
start_cmd="${{name}}_start"
stop_cmd="${{name}}_stop"
reverse_ssh_user="{config.local_user}"

reverse_ssh_start()
{{
    echo "Starting ${{name}}."
    /usr/sbin/daemon -u ${{reverse_ssh_user}} -p ${{pidfile}} -f ${{command}} ${{command_args}}
}}

reverse_ssh_stop()
{{
    if [ -e ${{pidfile}} ]; then
        kill `cat ${{pidfile}}`
    fi
}}

load_rc_config $name
run_rc_command "$1"
"""


def init_script(config: TunnelConfig, autossh: str) -> str:
    args = " ".join(autossh_args(config))
    return f"""#!/bin/sh
### BEGIN INIT INFO
# Provides:          {INIT_NAME}
# Required-Start:    $network $remote_fs $syslog
# Required-Stop:     $network $remote_fs $syslog
# Default-Start:     2 3 4 5
# Default-Stop:      0 1 6
# Short-Description: Reverse SSH tunnel
# Description:       Establishes a reverse SSH tunnel to a remote server
### END INIT INFO

DAEMON={autossh}
DAEMON_ARGS="{args}"
NAME={INIT_NAME}
PIDFILE=/var/run/$NAME.pid
USER={config.local_user}

case "$1" in
  start)
    echo "Starting $NAME"
    export AUTOSSH_GATETIME=0
    start-stop-daemon --start --background --make-pidfile --pidfile $PIDFILE --chuid $USER --exec $DAEMON -- $DAEMON_ARGS
    ;;
  stop)
    echo "Stopping $NAME"
    start-stop-daemon --stop --pidfile $PIDFILE
    rm -f $PIDFILE
    ;;
  restart)
    $0 stop
    $0 start
    ;;
  status)
    if [ -e $PIDFILE ]; then
      echo "$NAME is running, pid: `cat $PIDFILE`"
    else
      echo "$NAME is NOT running"
      exit 1
    fi
    ;;
  *)
    echo "Usage: $0 {{start|stop|restart|status}}"
    exit 1
    ;;
esac

exit 0
"""


def wrapper_script(config: TunnelConfig, autossh: str, config_path: Optional[str] = None) -> str:
    # Values below are fallbacks; the system config file wins on every run
    config_path = config_path or _target(CONFIG_FILE)
    forward = FORWARD_FORMAT.format(remote="$SERVER_SSH_FORWARD_PORT", local="$LOCAL_SSH_PORT")
    signature = SIGNATURE_FORMAT.format(forward="$FORWARD")
    return f"""#!/bin/sh
# Starts the reverse SSH tunnel unless it is already running. Run from cron.
if [ -f "{config_path}" ]; then
    . "{config_path}"
fi

: "${{SERVER_SSH_USER:={config.server_user}}}"
: "${{SERVER_SSH_HOST:={config.server_host}}}"
: "${{SERVER_SSH_PORT:={config.server_port}}}"
: "${{LOCAL_SSH_PORT:={config.local_port}}}"
: "${{SERVER_SSH_FORWARD_PORT:={config.remote_port}}}"
: "${{MONITOR_PORT:={config.monitor_port}}}"
: "${{SERVER_ALIVE_INTERVAL:={config.server_alive_interval}}}"
: "${{SERVER_ALIVE_COUNT_MAX:={config.server_alive_count_max}}}"
: "${{EXIT_ON_FORWARD_FAILURE:={'yes' if config.exit_on_forward_failure else 'no'}}}"

FORWARD="{forward}"
pgrep -f "{signature}" > /dev/null && exit 0

export AUTOSSH_GATETIME=0
exec {autossh} -f -M "$MONITOR_PORT" -N -R "$FORWARD" \\
    -o "ServerAliveInterval=$SERVER_ALIVE_INTERVAL" \\
    -o "ServerAliveCountMax=$SERVER_ALIVE_COUNT_MAX" \\
    -o "ExitOnForwardFailure=$EXIT_ON_FORWARD_FAILURE" \\
    -p "$SERVER_SSH_PORT" "$SERVER_SSH_USER@$SERVER_SSH_HOST"
"""


def _write_script(path: pathlib.Path, content: str) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, 0o755)
    log.info(f"Wrote {path}")
    return path


# -------------------------
# Per init system
# -------------------------
def _install_bsd(config: TunnelConfig, autossh: str, base: pathlib.Path) -> Tuple[pathlib.Path, bool]:
    script = _write_script(base / RC_SCRIPT, rc_script(config, autossh))
    rc_conf = base / RC_CONF
    existing = rc_conf.read_text(encoding="utf-8") if rc_conf.exists() else ""
    if RC_ENABLE_LINE in existing.splitlines():
        log.info(f"{rc_conf} already enables reverse_ssh")
    else:
        with open(rc_conf, "a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(RC_ENABLE_LINE + "\n")
        log.info(f"Enabled reverse_ssh in {rc_conf}")
    return script, True


def _install_sysv(config: TunnelConfig, autossh: str, base: pathlib.Path) -> Tuple[pathlib.Path, bool]:
    script = _write_script(base / INIT_SCRIPT, init_script(config, autossh))
    if shutil.which("update-rc.d"):
        cmds = [["update-rc.d", INIT_NAME, "defaults"]]
    elif shutil.which("chkconfig"):
        cmds = [["chkconfig", "--add", INIT_NAME], ["chkconfig", INIT_NAME, "on"]]
    else:
        log.warning("Neither update-rc.d nor chkconfig found; the service will not start on boot.")
        return script, False
    for cmd in cmds:
        _checked(cmd, f"Could not register {INIT_NAME}")
    return script, True


def _install_cron(config: TunnelConfig, autossh: str, base: pathlib.Path) -> Tuple[pathlib.Path, bool]:
    log.info("Unknown init system. Setting up a crontab entry instead.")
    script = _write_script(base / WRAPPER_SCRIPT, wrapper_script(config, autossh))
    user = config.local_user
    line = f"{CRON_SCHEDULE} {_target(WRAPPER_SCRIPT)}"

    if shutil.which("crontab") is None:
        log.warning(f"Could not add crontab entry. Please add it manually for user '{user}':")
        log.warning(line)
        return script, False

    try:
        current = _run(["su", "-", user, "-c", "crontab -l"], capture_output=True, text=True)
    except OSError as e:
        raise ServiceRegistrationFailed(f"Could not read crontab of '{user}': {e}")
    existing = current.stdout if current.returncode == 0 else ""
    if line in existing.splitlines():
        log.info(f"Crontab entry already present for user '{user}'")
        return script, True

    table = (existing.rstrip("\n") + "\n" if existing.strip() else "") + line + "\n"
    _checked(["su", "-", user, "-c", "crontab -"], f"Could not update crontab of '{user}'", input=table, text=True)
    log.info(f"Crontab entry added for user '{user}'. Every 5 minutes the tunnel is restarted "
             f"unless a process matches '{process_signature(config)}'.")
    return script, True


# -------------------------
# Entry point
# -------------------------
def install(
    config: TunnelConfig,
    init_kind: Optional[Union[InitKind, str]] = None,
    root: Union[str, os.PathLike] = "/",
) -> InstallResult:
    """
    Install the tunnel as a service for the given (or detected) init system and start it.

    Files already written stay in place when a later step fails.
    """
    base = pathlib.Path(root)
    autossh = ensure_autossh()
    require_root()

    config_path = save_config(config, base / CONFIG_FILE)

    kind = InitKind(init_kind) if init_kind is not None else detect(base)
    log.info(f"Detected init system: {kind.value}")

    if kind is InitKind.BSD:
        script, registered = _install_bsd(config, autossh, base)
        start = [str(script), "start"]
    elif kind is InitKind.SYSV:
        script, registered = _install_sysv(config, autossh, base)
        start = [str(script), "start"]
    else:
        script, registered = _install_cron(config, autossh, base)
        start = ["su", "-", config.local_user, "-c", str(script)]

    _checked(start, "Could not start the tunnel service")

    log.info("Service installed and started.")
    log.info(f"Configuration saved to {config_path}")
    log.info("You can modify this file to change the service settings.")
    return InstallResult(
        init_kind=kind,
        script_path=str(script),
        config_path=str(config_path),
        registered=registered,
    )
