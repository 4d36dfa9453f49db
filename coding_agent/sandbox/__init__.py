from coding_agent.sandbox.provisioner import SandboxFactory, SandboxSlot
from coding_agent.sandbox.utils import SandboxHandle, create_sandbox

__all__ = ["SandboxFactory", "SandboxHandle", "SandboxSlot", "create_sandbox"]
