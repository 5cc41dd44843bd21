"""Local coordinator for agent runs against markdown task cards."""

__version__ = "0.1.0"
