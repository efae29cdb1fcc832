"""agentdesk: dispatch chat requests to agent workers and track them live."""

__version__ = "0.3.0"
