"""Host that routes actor events into a python-statemachine machine."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Awaitable

from statemachine import StateMachine
from statemachine.exceptions import TransitionNotAllowed

from .actors import ActorRef, ObservableActorLogic, PromiseActorLogic, StreamRef
from .schema import EVENT_TYPE_KEY, SchemaBundle, safe_identifier

logger = logging.getLogger(__name__)


class MachineHost:
    """Parent for actors: validates their events and sends them to a StateMachine.

    Event names are converted to identifiers ("end game" -> ``end_game``)
    and the rest of the event is passed as the ``payload`` keyword, so
    callbacks can declare ``def on_submit(self, payload): ...``.

    Usage:
        class Quiz(StateMachine):
            asking = State(initial=True)
            checking = State()
            submit = asking.to(checking)

        host = MachineHost(Quiz(), schemas=schemas)
        await host.spawn(adapter.from_event_choice(prompt_fn), {"question": q})
    """

    def __init__(
        self,
        machine: StateMachine,
        schemas: SchemaBundle | None = None,
        *,
        strict: bool = False,
        history: int | None = 100,
    ):
        """
        Args:
            machine: The python-statemachine instance receiving events.
            schemas: If given, every event is validated before it is sent.
            strict: Raise TransitionNotAllowed for events the current state
                    does not handle instead of ignoring them.
            history: How many sent events to keep in ``sent``. None keeps all.
        """
        self.machine = machine
        self.schemas = schemas
        self.strict = strict
        self.sent: deque[dict[str, Any]] = deque(maxlen=history)

    @property
    def current_state(self) -> str:
        return self.machine.current_state.id

    def send(self, event: dict[str, Any]) -> Awaitable[None] | None:
        """Validate one event and forward it to the machine.

        A machine with async callbacks runs on the async engine of
        python-statemachine. Its transition only happens once the returned
        awaitable is awaited, and the event is recorded after that.
        """
        if self.schemas is not None:
            self.schemas.validate_event(event)
        event_id = safe_identifier(event[EVENT_TYPE_KEY])
        payload = {key: value for key, value in event.items() if key != EVENT_TYPE_KEY}

        try:
            result = self.machine.send(event_id, payload=payload)
        except TransitionNotAllowed:
            if self.strict:
                raise
            self._ignored(event)
            return None
        if inspect.isawaitable(result):
            return self._complete(event, result)
        self.sent.append(dict(event))
        return None

    async def _complete(self, event: dict[str, Any], pending: Awaitable[Any]) -> None:
        try:
            await pending
        except TransitionNotAllowed:
            if self.strict:
                raise
            self._ignored(event)
            return
        self.sent.append(dict(event))

    def _ignored(self, event: dict[str, Any]) -> None:
        logger.info("Event '%s' ignored in state '%s'", event[EVENT_TYPE_KEY], self.current_state)
        self.sent.append(dict(event))

    def spawn(
        self, logic: PromiseActorLogic | ObservableActorLogic, input: Any = None
    ) -> ActorRef | StreamRef:
        """Start actor logic with this host as its parent."""
        return logic.start(input, parent=self)
