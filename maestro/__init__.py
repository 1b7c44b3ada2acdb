"""Orchestration control plane for task-executing agents."""

__version__ = "0.1.0"
