from __future__ import annotations

from clawctl_provision import errors

OK = 0
FAILURE = 1
INVALID_ARGS = 2
CONNECTION = 3
PRIVILEGE = 4
HOST_CHECK = 5
PACKAGES = 10
ENGINE = 11
PRINCIPAL = 12
DIRECTORIES = 13
IMAGE = 14
COMPOSE = 15
ONBOARDING = 16
SERVICE = 17
VERIFICATION = 18
ARTIFACT = 19
STATE = 20
RESET = 21

# Other SessionError subclasses fall through to FAILURE.
_BY_ERROR: tuple[tuple[type[errors.ProvisionError], int], ...] = (
    (errors.InputError, INVALID_ARGS),
    (errors.SessionConnectError, CONNECTION),
    (errors.PrivilegeError, PRIVILEGE),
    (errors.HostCheckError, HOST_CHECK),
    (errors.PackageInstallError, PACKAGES),
    (errors.EngineInstallError, ENGINE),
    (errors.PrincipalSetupError, PRINCIPAL),
    (errors.DirectoryError, DIRECTORIES),
    (errors.ImageBuildError, IMAGE),
    (errors.ComposeUploadError, COMPOSE),
    (errors.OnboardingError, ONBOARDING),
    (errors.ServiceStartError, SERVICE),
    (errors.VerificationError, VERIFICATION),
    (errors.StateError, STATE),
    (errors.ResetError, RESET),
)


def for_error(exc: BaseException) -> int:
    for cls, code in _BY_ERROR:
        if isinstance(exc, cls):
            return code
    return FAILURE
