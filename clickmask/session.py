# clickmask/session.py
"""
Click/undo session as an explicit transition function.

``transition(state, event) -> (state', effects)`` is pure: it never calls the
model, never touches the network and never yields. The caller (the editor)
carries out the returned effects and feeds the outcomes back in as events.

Committed history
    ``clicks[i]`` and ``masks[i]`` always have the same length; ``masks[i]``
    is the result of inference over ``clicks[:i + 1]``.

Pending clicks
    A click is pending until its inference returns. Pending clicks are
    issued one at a time, oldest first; ``awaiting`` holds the generation
    tag of the single call in flight. A result whose tag is not
    ``awaiting`` is stale and is dropped.
"""

from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple, Union

POSITIVE_CLICK = 1


@dataclass(frozen=True)
class Click:
    """A foreground prompt in Display space."""

    x: float
    y: float
    click_type: int = POSITIVE_CLICK


@dataclass(frozen=True)
class InferenceResult:
    """Full-resolution mask plus the low-res mask fed to the next call."""

    mask: Any
    low_res_mask: Any


@dataclass(frozen=True)
class SessionState:
    clicks: Tuple[Click, ...] = ()
    masks: Tuple[InferenceResult, ...] = ()
    pending: Tuple[Click, ...] = ()
    generation: int = 0
    awaiting: Optional[int] = None

    @property
    def current(self) -> Optional[InferenceResult]:
        return self.masks[-1] if self.masks else None

    @property
    def is_undoable(self) -> bool:
        return bool(self.clicks or self.pending)

    @property
    def is_empty(self) -> bool:
        return not (self.clicks or self.pending)


# ==========================
# EVENTS
# ==========================

@dataclass(frozen=True)
class AddClick:
    click: Click


@dataclass(frozen=True)
class Undo:
    pass


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class ImageChanged:
    pass


@dataclass(frozen=True)
class InferenceSucceeded:
    generation: int
    result: InferenceResult


@dataclass(frozen=True)
class InferenceErrored:
    generation: int
    error: str


Event = Union[AddClick, Undo, Clear, ImageChanged, InferenceSucceeded, InferenceErrored]


# ==========================
# EFFECTS
# ==========================

@dataclass(frozen=True)
class RecomputeEmbedding:
    generation: int


@dataclass(frozen=True)
class CallInference:
    generation: int
    clicks: Tuple[Click, ...]
    previous: Optional[InferenceResult] = None


@dataclass(frozen=True)
class RecomputeContour:
    result: Optional[InferenceResult]


@dataclass(frozen=True)
class StaleDiscarded:
    generation: int


@dataclass(frozen=True)
class ClickRolledBack:
    click: Click
    error: str


Effect = Union[RecomputeEmbedding, CallInference, RecomputeContour, StaleDiscarded, ClickRolledBack]


# ==========================
# TRANSITIONS
# ==========================

def _issue_next(state: SessionState) -> Tuple[SessionState, List[Effect]]:
    if state.awaiting is not None or not state.pending:
        return state, []
    gen = state.generation + 1
    call = CallInference(
        generation=gen,
        clicks=state.clicks + (state.pending[0],),
        previous=state.current,
    )
    return replace(state, generation=gen, awaiting=gen), [call]


def _undo(state: SessionState) -> Tuple[SessionState, List[Effect]]:
    if state.pending:
        # the in-flight call belongs to pending[0]; dropping the only pending click orphans it
        awaiting = None if len(state.pending) == 1 else state.awaiting
        return replace(state, pending=state.pending[:-1], awaiting=awaiting, generation=state.generation + 1), []
    if state.clicks:
        new_state = replace(
            state,
            clicks=state.clicks[:-1],
            masks=state.masks[:-1],
            generation=state.generation + 1,
        )
        return new_state, [RecomputeContour(new_state.current)]
    return state, []


def _clear(state: SessionState) -> Tuple[SessionState, List[Effect]]:
    if state.is_empty and state.awaiting is None:
        return state, []
    effects: List[Effect] = [RecomputeContour(None)] if state.masks else []
    return SessionState(generation=state.generation + 1), effects


def _resolve(state: SessionState, event: InferenceSucceeded) -> Tuple[SessionState, List[Effect]]:
    if event.generation != state.awaiting:
        return state, [StaleDiscarded(event.generation)]
    committed = replace(
        state,
        clicks=state.clicks + (state.pending[0],),
        masks=state.masks + (event.result,),
        pending=state.pending[1:],
        awaiting=None,
    )
    next_state, effects = _issue_next(committed)
    return next_state, [RecomputeContour(event.result)] + effects


def _rollback(state: SessionState, event: InferenceErrored) -> Tuple[SessionState, List[Effect]]:
    if event.generation != state.awaiting:
        return state, [StaleDiscarded(event.generation)]
    failed = state.pending[0]
    rolled = replace(state, pending=state.pending[1:], awaiting=None)
    next_state, effects = _issue_next(rolled)
    return next_state, [ClickRolledBack(failed, event.error)] + effects


def transition(state: SessionState, event: Event) -> Tuple[SessionState, List[Effect]]:
    """Apply one event; returns the new state and the effects to run."""
    if isinstance(event, AddClick):
        queued = replace(state, pending=state.pending + (event.click,), generation=state.generation + 1)
        return _issue_next(queued)
    if isinstance(event, Undo):
        return _undo(state)
    if isinstance(event, Clear):
        return _clear(state)
    if isinstance(event, ImageChanged):
        gen = state.generation + 1
        return SessionState(generation=gen), [RecomputeEmbedding(gen), RecomputeContour(None)]
    if isinstance(event, InferenceSucceeded):
        return _resolve(state, event)
    if isinstance(event, InferenceErrored):
        return _rollback(state, event)
    raise TypeError(f"unknown session event: {event!r}")


# ==========================
# OWNER
# ==========================

@dataclass
class ClickSession:
    """Exclusive owner of one session's state."""

    state: SessionState = field(default_factory=SessionState)

    def dispatch(self, event: Event) -> List[Effect]:
        self.state, effects = transition(self.state, event)
        return effects

    def add_click(self, x: float, y: float) -> List[Effect]:
        return self.dispatch(AddClick(Click(float(x), float(y))))

    def undo(self) -> List[Effect]:
        return self.dispatch(Undo())

    def clear(self) -> List[Effect]:
        return self.dispatch(Clear())

    @property
    def clicks(self) -> Tuple[Click, ...]:
        return self.state.clicks

    @property
    def masks(self) -> Tuple[InferenceResult, ...]:
        return self.state.masks

    @property
    def pending(self) -> Tuple[Click, ...]:
        return self.state.pending

    @property
    def generation(self) -> int:
        return self.state.generation

    @property
    def current(self) -> Optional[InferenceResult]:
        return self.state.current

    @property
    def is_undoable(self) -> bool:
        return self.state.is_undoable
