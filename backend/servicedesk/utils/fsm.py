from __future__ import annotations
"""Small finite state machine helper for enforcing allowed status transitions.

Usage:
    from servicedesk.utils.fsm import TransitionValidator
    TICKET_FSM = TransitionValidator({
        'PENDING': {'IN_PROGRESS'},
        'IN_PROGRESS': {'COMPLETED'},
        'COMPLETED': set(),
    }, allow_same=True)
    TICKET_FSM.assert_can_transition(current_status, target_status)

Raises InvalidStateTransition if the edge is not in the graph.
"""
from typing import Dict, Set

from servicedesk.errors import InvalidStateTransition


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]], field_name: str = 'status', allow_same: bool = False):
        self.graph = graph
        self.field_name = field_name
        self.allow_same = allow_same

    def can_transition(self, current: str, target: str) -> bool:
        if self.allow_same and current == target:
            return True
        return target in self.graph.get(current, set())

    def assert_can_transition(self, current: str, target: str):
        if not self.can_transition(current, target):
            raise InvalidStateTransition(f"Invalid {self.field_name} transition {current} -> {target}")
        return True

    def is_terminal(self, state: str) -> bool:
        return not self.graph.get(state)

__all__ = ['TransitionValidator']
