"""agentdesk: an agentic chat-completion core."""

__all__ = ["__version__"]

__version__ = "0.1.0"
