"""Orchestration engine for autonomous coding agents."""

from importlib.metadata import version

__version__ = version("foreman-orchestrator")
