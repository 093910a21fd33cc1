"""Minimal finite-state machine driver.

A machine is a session value plus one handler per named state. Each handler
returns either ``advance(next_session)`` or ``FINISH``; an ``Err`` aborts the
run. ``on_transition`` sees every new session before the next handler runs,
which is where callers emit progress lines or persist state.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from .result import Err, Ok, Result

S = TypeVar("S")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class StepAdvance[S]:
    session: S


@dataclass(frozen=True, slots=True)
class StepFinish:
    pass


@dataclass(frozen=True, slots=True)
class UnknownState:
    state: str

    @property
    def message(self) -> str:
        return f"no handler for state: {self.state}"


type StepOutcome[S] = StepAdvance[S] | StepFinish
type StepHandler[S, E] = Callable[[S], Result[StepOutcome[S], E]]


FINISH = StepFinish()


def advance[S](session: S) -> StepAdvance[S]:
    return StepAdvance(session=session)


def run_state_machine[S, E](
    *,
    initial_state: S,
    get_state: Callable[[S], str],
    handlers: Mapping[str, StepHandler[S, E]],
    on_transition: Callable[[S, S], None] | None = None,
) -> Result[S, E | UnknownState]:
    """Drive handlers until one finishes.

    Returns:
        Ok(final session) when a handler returns FINISH, otherwise the first Err.
    """
    current = initial_state

    while True:
        state = get_state(current)
        handler = handlers.get(state)
        if handler is None:
            return Err(UnknownState(state=state))

        outcome = handler(current)
        if isinstance(outcome, Err):
            return outcome

        if isinstance(outcome.value, StepFinish):
            return Ok(current)

        previous, current = current, outcome.value.session
        if on_transition is not None:
            on_transition(previous, current)
