"""Workspace Registry: named environments with isolated state and variables."""

from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry

__all__ = ["WorkspaceRegistry"]
