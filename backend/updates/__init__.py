"""
Updates Module

In-place container updates using the rename-swap pattern.

Architecture:
- UpdateOrchestrator: runs the update workflow with backup and rollback
- UpdateStateMachine: phase order and commit point of one update
- ContainerLockRegistry: per-container mutual exclusion (shared with deploys)
"""

from updates.locks import ContainerLockRegistry
from updates.state_machine import UpdateStateMachine
from updates.types import UpdatePhase, UpdateRequest, UpdateResult, UpdateSession
from updates.update_orchestrator import UpdateOrchestrator

__all__ = [
    'ContainerLockRegistry',
    'UpdateOrchestrator',
    'UpdatePhase',
    'UpdateRequest',
    'UpdateResult',
    'UpdateSession',
    'UpdateStateMachine',
]
