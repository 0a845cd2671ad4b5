"""Agent orchestration core: backends, tools, security and conversation memory."""

__version__ = "0.1.0"
