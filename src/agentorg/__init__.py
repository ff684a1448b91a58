"""AgentOrg: hierarchical delegation and agent execution runtime."""

__version__ = "0.1.0"
