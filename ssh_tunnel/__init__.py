"""Persistent reverse SSH tunnel: run it in the foreground or install it as a service."""

__version__ = "1.0.0"

from .config import TunnelConfig, resolve
from .errors import TunnelError
from .initsys import InitKind, detect

__all__ = ["TunnelConfig", "TunnelError", "InitKind", "detect", "resolve", "__version__"]
