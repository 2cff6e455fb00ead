"""Local-network control bridge for Meross lights and plugs."""

__version__ = "0.1.0"
