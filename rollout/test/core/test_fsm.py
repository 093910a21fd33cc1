from __future__ import annotations

from dataclasses import dataclass

from rollout.core.fsm import FINISH, UnknownState, advance, run_state_machine
from rollout.core.result import Err, Ok


@dataclass(frozen=True)
class Session:
    state: str
    count: int = 0


def test_runs_until_finish_and_reports_transitions() -> None:
    seen: list[tuple[str, str]] = []

    result = run_state_machine(
        initial_state=Session("start"),
        get_state=lambda s: s.state,
        handlers={
            "start": lambda s: Ok(advance(Session("loop", s.count))),
            "loop": lambda s: Ok(
                advance(Session("loop" if s.count < 2 else "done", s.count + 1))
            ),
            "done": lambda s: Ok(FINISH),
        },
        on_transition=lambda old, new: seen.append((old.state, new.state)),
    )

    assert result == Ok(Session("done", 3))
    assert seen == [
        ("start", "loop"),
        ("loop", "loop"),
        ("loop", "loop"),
        ("loop", "done"),
    ]


def test_handler_error_stops_machine() -> None:
    calls: list[str] = []

    def failing(s: Session) -> Err[str]:
        calls.append(s.state)
        return Err("refused")

    result = run_state_machine(
        initial_state=Session("start"),
        get_state=lambda s: s.state,
        handlers={
            "start": lambda s: Ok(advance(Session("bad"))),
            "bad": failing,
            "never": lambda s: Ok(FINISH),
        },
    )

    assert result == Err("refused")
    assert calls == ["bad"]


def test_unknown_state() -> None:
    result = run_state_machine(
        initial_state=Session("nowhere"),
        get_state=lambda s: s.state,
        handlers={},
    )

    assert isinstance(result, Err)
    assert result.error == UnknownState(state="nowhere")
    assert "nowhere" in result.error.message
