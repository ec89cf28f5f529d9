"""Worker capability backed by agent CLIs."""

from clawstown.agents.agents_config import AgentsConfig, load_agents_config
from clawstown.agents.capability import Capability, CommandCapability

__all__ = ["AgentsConfig", "load_agents_config", "Capability", "CommandCapability"]
