"""Child process supervision: the compute node and its Ollama companion."""

from dkn_launcher.process.companion import CompanionConfig, CompanionProcessManager
from dkn_launcher.process.signals import CancellationToken
from dkn_launcher.process.supervisor import ProcessSupervisor, SupervisorConfig, SupervisorState

__all__ = [
    "CancellationToken",
    "CompanionConfig",
    "CompanionProcessManager",
    "ProcessSupervisor",
    "SupervisorConfig",
    "SupervisorState",
]
