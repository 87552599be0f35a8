"""Remote agent integrations.

Available Clients:
- AgentClient: job calls with retry, health, cancel and load probes
"""

from .agent_client import AgentClient, is_retryable

__all__ = ["AgentClient", "is_retryable"]
