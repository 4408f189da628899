from .errors import ProvisionError, SessionConnectError, SessionError
from .models import DeploymentFacts, DeploymentPlan, PrincipalInfo
from .pipeline import PHASES, DeploymentResult, ProvisioningPipeline
from .ssh import SSHSession, SshTarget

__all__ = [
    "DeploymentFacts",
    "DeploymentPlan",
    "DeploymentResult",
    "PHASES",
    "PrincipalInfo",
    "ProvisionError",
    "ProvisioningPipeline",
    "SSHSession",
    "SessionConnectError",
    "SessionError",
    "SshTarget",
]
