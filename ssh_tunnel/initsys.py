# Init system detection
import enum
import os
import pathlib
from typing import Union


class InitKind(str, enum.Enum):
    BSD = "bsd"
    SYSV = "sysv"
    UNKNOWN = "unknown"


# Checked in order, first existing directory wins
DETECTORS = [
    (InitKind.BSD, "etc/rc.d"),
    (InitKind.SYSV, "etc/init.d"),
]


def detect(root: Union[str, os.PathLike] = "/") -> InitKind:
    """Classify the host init system by probing for its control directory under ``root``."""
    base = pathlib.Path(root)
    for kind, directory in DETECTORS:
        if (base / directory).is_dir():
            return kind
    return InitKind.UNKNOWN
