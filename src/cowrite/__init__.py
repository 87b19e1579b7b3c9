"""Live commenting between a human reviewer and a coding agent."""

__version__ = "0.1.0"
