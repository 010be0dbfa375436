"""Transition rules for a node's managed container.

Process state is never stored. Operations observe it, act, and observe
again; this module says which observed moves are legal and whether an
observation satisfies a desired target.
"""

from fleet.state import NodeStatus, ProcessState


class ProcessStateMachine:
    """Centralized transition logic for a node's container.

    Container lifecycle:
        absent -> running (start)
        stopped -> running (start, after removing the stale container)
        running -> stopped (graceful stop) -> absent (remove)
        running -> zombie (stop ignored) -> stopped (retry or kill)
        any -> absent (force kill + remove)
    """

    VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
        ProcessState.ABSENT: {ProcessState.RUNNING},
        ProcessState.STOPPED: {ProcessState.RUNNING, ProcessState.ABSENT},
        ProcessState.RUNNING: {ProcessState.STOPPED, ProcessState.ZOMBIE, ProcessState.ABSENT},
        ProcessState.ZOMBIE: {ProcessState.STOPPED, ProcessState.ABSENT},
    }

    # Only an explicit start may enter RUNNING
    START_SOURCES: set[ProcessState] = {ProcessState.ABSENT, ProcessState.STOPPED}

    @classmethod
    def can_transition(cls, current: ProcessState, target: ProcessState) -> bool:
        """Check if a state transition is valid."""
        if current == target:
            return True
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def can_start(cls, current: ProcessState) -> bool:
        return current in cls.START_SOURCES

    @classmethod
    def observe(cls, exists: bool, running: bool) -> ProcessState:
        """Derive process state from the two runtime probes."""
        if running:
            return ProcessState.RUNNING
        if exists:
            return ProcessState.STOPPED
        return ProcessState.ABSENT

    @classmethod
    def matches_desired(cls, actual: ProcessState, desired: ProcessState) -> bool:
        """Check if an observed state satisfies a desired state.

        ZOMBIE is transient and never satisfies a target.
        """
        if actual == ProcessState.ZOMBIE:
            return False
        return actual == desired

    @staticmethod
    def to_status(state: ProcessState) -> NodeStatus:
        if state == ProcessState.RUNNING:
            return NodeStatus.RUNNING
        if state == ProcessState.ABSENT:
            return NodeStatus.ABSENT
        return NodeStatus.STOPPED

    @staticmethod
    def from_status(status: NodeStatus) -> ProcessState | None:
        """Map a reported status back to a process state (None if unreachable)."""
        return {
            NodeStatus.RUNNING: ProcessState.RUNNING,
            NodeStatus.STOPPED: ProcessState.STOPPED,
            NodeStatus.ABSENT: ProcessState.ABSENT,
        }.get(status)
