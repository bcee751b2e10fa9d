"""
STATE MACHINE

Transition-table state machine for entity status fields.

- register() declares an allowed edge; add_state() declares a state with no
  outgoing edges (terminal)
- transition() validates the edge, then hands the entity to the handler
  together with the caller's transaction, so the status write joins the
  caller's atomic unit
- force=True is the manual override: the table is skipped but the target
  must still be a known state

Usage:
    machine = StateMachine("invoice", handler=persist_status)
    machine.register("Pending", "Paid").add_state("Paid")
    await machine.transition(invoice_doc, "Paid", session=txn, context={"user_id": uid})
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


class StateMachineError(Exception):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    """Raised when attempting an invalid state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(f"Invalid {entity} transition '{from_state}' -> '{to_state}'.{allowed_str}")


# async def handler(entity_doc, context, session) -> Dict[str, Any]
TransitionHandler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Dict[str, Any]]]


class StateMachine:

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        handler: Optional[TransitionHandler] = None
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.handler = handler
        # from_state -> ordered targets
        self._edges: Dict[str, List[str]] = {}

    def add_state(self, state: str) -> "StateMachine":
        self._edges.setdefault(state, [])
        return self

    def register(self, from_state: str, to_state: str) -> "StateMachine":
        targets = self.add_state(from_state).add_state(to_state)._edges[from_state]
        if to_state not in targets:
            targets.append(to_state)
        return self

    def allowed_targets(self, from_state: str) -> List[str]:
        return list(self._edges.get(from_state, []))

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return to_state in self._edges.get(from_state, [])

    def is_terminal(self, state: str) -> bool:
        return state in self._edges and not self._edges[state]

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """Raises InvalidTransitionError unless from_state -> to_state is registered"""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                self.entity_name, from_state, to_state, self.allowed_targets(from_state)
            )

    async def transition(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None,
        force: bool = False
    ) -> Dict[str, Any]:
        """
        Move entity_doc to to_state.

        The handler receives (entity_doc, context + from_state/to_state/forced,
        session). Handler exceptions propagate unchanged, aborting the caller's
        transaction.

        Returns {from_state, to_state, handler_result, transitioned_at}.
        """
        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise StateMachineError(f"Entity missing status field: {self.status_field}")

        if force:
            if to_state not in self._edges:
                raise InvalidTransitionError(self.entity_name, from_state, to_state)
            logger.warning(
                f"[STATE_MACHINE] Manual override {self.entity_name}: '{from_state}' -> '{to_state}'"
            )
        else:
            self.validate_transition(from_state, to_state)

        logger.info(f"[STATE_MACHINE] {self.entity_name}: '{from_state}' -> '{to_state}'")

        handler_result = {}
        if self.handler is not None:
            handler_result = await self.handler(
                entity_doc,
                {**(context or {}), "from_state": from_state, "to_state": to_state, "forced": force},
                session
            )

        return {
            "from_state": from_state,
            "to_state": to_state,
            "handler_result": handler_result or {},
            "transitioned_at": datetime.utcnow()
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Entry to append to the entity's state_history"""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def __repr__(self):
        return f"StateMachine({self.entity_name}, states={len(self._edges)})"
