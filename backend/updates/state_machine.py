"""
Update phase state machine.

Tracks the phase of a rename-swap update and its commit point so the
orchestrator's rollback decisions are explicit.

Phase Flow:
    pending -> config -> [backup] -> pull -> stop -> rename -> create -> start
            -> metadata -> [cleanup] -> completed

    Any phase up to and including rename can move to failed (clean abort).
    create and start move to rolled_back when compensation succeeded, or
    failed when it did not.

Commitment Point Pattern:
    The successful rename of the original container is the commit point.
    Before it, a failure leaves nothing to undo. After it, a failure must
    put the original container back under its name before it is reported.
"""

import logging

from updates.types import UpdatePhase, UpdateSession

logger = logging.getLogger(__name__)

P = UpdatePhase


class InvalidTransitionError(RuntimeError):
    """A phase change the update workflow never makes."""


class UpdateStateMachine:
    """Enforces phase order and records the commit point of an UpdateSession."""

    # Valid phase transitions (from_phase -> to_phases)
    VALID_TRANSITIONS = {
        P.PENDING: [P.CONFIG, P.FAILED],
        P.CONFIG: [P.BACKUP, P.PULL, P.FAILED],
        P.BACKUP: [P.PULL, P.FAILED],
        P.PULL: [P.STOP, P.FAILED],
        P.STOP: [P.RENAME, P.FAILED],
        P.RENAME: [P.CREATE, P.FAILED],
        P.CREATE: [P.START, P.ROLLED_BACK, P.FAILED],
        P.START: [P.METADATA, P.ROLLED_BACK, P.FAILED],
        P.METADATA: [P.CLEANUP, P.COMPLETED],
        P.CLEANUP: [P.COMPLETED],
        P.COMPLETED: [],  # Terminal
        P.FAILED: [],  # Terminal
        P.ROLLED_BACK: [],  # Terminal
    }

    TERMINAL_PHASES = {P.COMPLETED, P.FAILED, P.ROLLED_BACK}

    def can_transition(self, from_phase: UpdatePhase, to_phase: UpdatePhase) -> bool:
        return to_phase in self.VALID_TRANSITIONS.get(from_phase, [])

    def transition(self, session: UpdateSession, to_phase: UpdatePhase) -> None:
        """
        Move the session to a new phase.

        Raises:
            InvalidTransitionError: If the workflow tried to skip or reorder a phase
        """
        from_phase = session.phase
        if not self.can_transition(from_phase, to_phase):
            logger.error(f"Invalid phase transition for update of {session.id}: "
                         f"{from_phase.value} -> {to_phase.value}")
            raise InvalidTransitionError(f"{from_phase.value} -> {to_phase.value}")
        session.phase = to_phase
        logger.debug(f"Update of {session.id}: {from_phase.value} -> {to_phase.value}")

    def mark_committed(self, session: UpdateSession) -> None:
        """Record that the original container no longer owns its name."""
        session.committed = True
        logger.info(f"Update of {session.id} committed (original renamed to {session.backup_container_name})")

    def is_terminal(self, session: UpdateSession) -> bool:
        return session.phase in self.TERMINAL_PHASES
