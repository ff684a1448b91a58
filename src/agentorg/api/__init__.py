"""HTTP API for agentorg."""
