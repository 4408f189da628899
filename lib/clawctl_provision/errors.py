from __future__ import annotations


class ProvisionError(RuntimeError):
    """Base provisioning error."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.details = details
        self.phase: int | None = None


class InputError(ProvisionError):
    """Invalid operator input, raised before any network call."""


class SessionError(ProvisionError):
    """Transport layer error."""


class SessionConnectError(SessionError, ConnectionError):
    """Authentication/network failure after the retry bound is exhausted."""


class SessionStateError(SessionError):
    """Operation attempted while the session is not ready."""


class UploadError(SessionError):
    pass


class PrivilegeError(ProvisionError):
    """Authenticated, but not as root."""


class HostCheckError(ProvisionError):
    pass


class PackageInstallError(ProvisionError):
    pass


class EngineInstallError(ProvisionError):
    pass


class PrincipalSetupError(ProvisionError):
    pass


class DirectoryError(ProvisionError):
    pass


class ImageBuildError(ProvisionError):
    pass


class ComposeUploadError(ProvisionError):
    pass


class OnboardingError(ProvisionError):
    pass


class ServiceStartError(ProvisionError):
    pass


class VerificationError(ProvisionError):
    pass


class StateError(ProvisionError):
    """Deployment state could not be persisted."""


class ResetError(ProvisionError):
    pass


class PairingError(ProvisionError):
    pass
