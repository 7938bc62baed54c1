"""Shipyard - workspace-locked deployment orchestration."""

__version__ = "0.1.0"
