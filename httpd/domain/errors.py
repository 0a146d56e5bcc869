"""Error taxonomy for the HTTP server module."""


class ModuleError(Exception):
    """Base class for errors surfaced to the operator."""


class AlreadyRunning(ModuleError):
    """Raised when configure or start is invoked while the module is running."""

    def __init__(self, name: str = "http.server") -> None:
        super().__init__(f"module {name} is already running")


class NotRunning(ModuleError):
    """Raised when stop is invoked while the module is idle."""

    def __init__(self, name: str = "http.server") -> None:
        super().__init__(f"module {name} is not running")


class BadParameter(ModuleError):
    """Raised when a parameter is unknown, invalid, or cannot be resolved."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"parameter {name}: {reason}")
        self.name = name
        self.reason = reason


class CertificateProvisioningError(ModuleError):
    """Raised when a self-signed key/certificate pair cannot be generated."""


class ListenFault(ModuleError):
    """Unrecoverable listener failure other than a requested shutdown."""

    def __init__(self, address: str, error: BaseException) -> None:
        super().__init__(f"listener on {address} failed: {error}")
        self.address = address
        self.error = error
