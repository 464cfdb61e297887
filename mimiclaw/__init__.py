"""Personal AI assistant: message bus, scheduling, LLM tool-use agent and gateways."""

__version__ = "0.1.0"