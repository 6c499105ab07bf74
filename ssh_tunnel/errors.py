# -------------------------
# Error types
# -------------------------
# Every failure is terminal: the CLI logs the message and exits with status 1.


class TunnelError(RuntimeError):
    pass


class UsageError(TunnelError):
    pass


class UnknownFlag(UsageError):
    pass


class ConfigError(TunnelError):
    pass


class MissingRequiredField(ConfigError):
    pass


class ConfigFileNotFound(ConfigError):
    pass


class InvalidConfigValue(ConfigError):
    pass


class InsufficientPrivilege(TunnelError):
    pass


class DependencyInstallFailed(TunnelError):
    pass


class ServiceRegistrationFailed(TunnelError):
    pass


class LaunchFailed(TunnelError):
    pass
