"""
TapVerif TAP Module - IEEE 1149.1 Controller Model
===================================================
Implements:
- The 16-state TAP finite state machine (total transition table)
- A behavioural TAPController driven one TMS bit per clock
- A shortest-path router producing TMS sequences between any two states
"""

from __future__ import annotations

from collections import deque
from enum import IntEnum
from functools import lru_cache


# --- IEEE 1149.1 TAP STATES ---
class TapState(IntEnum):
    TEST_LOGIC_RESET = 0
    RUN_TEST_IDLE    = 1
    SELECT_DR_SCAN   = 2
    CAPTURE_DR       = 3
    SHIFT_DR         = 4
    EXIT1_DR         = 5
    PAUSE_DR         = 6
    EXIT2_DR         = 7
    UPDATE_DR        = 8
    SELECT_IR_SCAN   = 9
    CAPTURE_IR       = 10
    SHIFT_IR         = 11
    EXIT1_IR         = 12
    PAUSE_IR         = 13
    EXIT2_IR         = 14
    UPDATE_IR        = 15


S = TapState

# The standard JTAG state diagram.
# state -> (next state when TMS=0, next state when TMS=1)
TRANSITIONS: dict[TapState, tuple[TapState, TapState]] = {
    S.TEST_LOGIC_RESET: (S.RUN_TEST_IDLE,  S.TEST_LOGIC_RESET),
    S.RUN_TEST_IDLE:    (S.RUN_TEST_IDLE,  S.SELECT_DR_SCAN),
    # DR column
    S.SELECT_DR_SCAN:   (S.CAPTURE_DR,     S.SELECT_IR_SCAN),
    S.CAPTURE_DR:       (S.SHIFT_DR,       S.EXIT1_DR),
    S.SHIFT_DR:         (S.SHIFT_DR,       S.EXIT1_DR),
    S.EXIT1_DR:         (S.PAUSE_DR,       S.UPDATE_DR),
    S.PAUSE_DR:         (S.PAUSE_DR,       S.EXIT2_DR),
    S.EXIT2_DR:         (S.SHIFT_DR,       S.UPDATE_DR),
    S.UPDATE_DR:        (S.RUN_TEST_IDLE,  S.SELECT_DR_SCAN),
    # IR column
    S.SELECT_IR_SCAN:   (S.CAPTURE_IR,     S.TEST_LOGIC_RESET),
    S.CAPTURE_IR:       (S.SHIFT_IR,       S.EXIT1_IR),
    S.SHIFT_IR:         (S.SHIFT_IR,       S.EXIT1_IR),
    S.EXIT1_IR:         (S.PAUSE_IR,       S.UPDATE_IR),
    S.PAUSE_IR:         (S.PAUSE_IR,       S.EXIT2_IR),
    S.EXIT2_IR:         (S.SHIFT_IR,       S.UPDATE_IR),
    S.UPDATE_IR:        (S.RUN_TEST_IDLE,  S.SELECT_DR_SCAN),
}

SHIFT_STATES = frozenset({S.SHIFT_DR, S.SHIFT_IR})
DR_STATES = frozenset({S.SELECT_DR_SCAN, S.CAPTURE_DR, S.SHIFT_DR, S.EXIT1_DR,
                       S.PAUSE_DR, S.EXIT2_DR, S.UPDATE_DR})
IR_STATES = frozenset({S.SELECT_IR_SCAN, S.CAPTURE_IR, S.SHIFT_IR, S.EXIT1_IR,
                       S.PAUSE_IR, S.EXIT2_IR, S.UPDATE_IR})

# IEEE 1149.1 fixes the two LSBs of the IR capture value to 01
IR_CAPTURE_PATTERN = 0b01


def next_state(state: TapState, tms: int) -> TapState:
    """One clock of the FSM. The table is total so this never fails."""
    return TRANSITIONS[TapState(state)][1 if tms else 0]


def is_legal_edge(src: TapState, dst: TapState) -> bool:
    return dst in TRANSITIONS[TapState(src)]


def _bfs(src: TapState, dst: TapState) -> tuple[int, ...]:
    # TMS=0 is explored first, so among equal-length routes the one that
    # stays in the current column wins.
    if src == dst:
        return ()
    seen = {src}
    queue = deque([(src, ())])
    while queue:
        state, tms_seq = queue.popleft()
        for tms in (0, 1):
            nxt = TRANSITIONS[state][tms]
            if nxt in seen:
                continue
            seq = tms_seq + (tms,)
            if nxt == dst:
                return seq
            seen.add(nxt)
            queue.append((nxt, seq))
    raise AssertionError(f"No route {src.name} -> {dst.name}")  # unreachable: graph is strongly connected


@lru_cache(maxsize=None)
def _cached_route(src: TapState, dst: TapState) -> tuple[int, ...]:
    return _bfs(src, dst)


def route(src: TapState, dst: TapState, via_pause: bool = False) -> tuple[int, ...]:
    """
    Minimal TMS sequence that moves the FSM from `src` to `dst`.

    via_pause: take the EXIT1 -> PAUSE -> EXIT2 detour inside the scan branch
    of the destination register (used for pause/resume testing). Without it
    the router always prefers EXIT1 -> UPDATE directly.
    """
    src, dst = TapState(src), TapState(dst)
    if not via_pause:
        return _cached_route(src, dst)

    pause = S.PAUSE_IR if dst in IR_STATES else S.PAUSE_DR
    # One extra TMS=0 clock inside PAUSE marks the stopover
    return _cached_route(src, pause) + (0,) + _cached_route(pause, dst)


def walk(src: TapState, tms_seq) -> list[TapState]:
    """States visited when applying `tms_seq` from `src` (src included)."""
    path = [TapState(src)]
    for tms in tms_seq:
        path.append(next_state(path[-1], tms))
    return path


class TAPController:
    """
    Behavioural model of an IEEE 1149.1 TAP Controller.
    Tracks exactly one current state and advances on every TMS bit.
    Illegal behaviour is never rejected here; it can only be observed by the
    protocol checker through the recorded path.
    """
    def __init__(self, initial: TapState = S.TEST_LOGIC_RESET):
        self.state = TapState(initial)
        # Every state entered, including forced ones, in order
        self.history: list[TapState] = [self.state]

    def current_state(self) -> TapState:
        return self.state

    def step(self, tms: int) -> TapState:
        """Advances the FSM one clock cycle based on TMS."""
        self.state = next_state(self.state, tms)
        self.history.append(self.state)
        return self.state

    def force(self, state: TapState) -> TapState:
        """
        Overwrites the state without a table edge (fault injection, TRST).
        The jump is still recorded in the history.
        """
        self.state = TapState(state)
        self.history.append(self.state)
        return self.state

    def route_to(self, dst: TapState, via_pause: bool = False) -> tuple[int, ...]:
        return route(self.state, dst, via_pause=via_pause)

    # Output decodes, as the hardware would expose them
    @property
    def shift_dr(self) -> bool: return self.state == S.SHIFT_DR
    @property
    def shift_ir(self) -> bool: return self.state == S.SHIFT_IR
    @property
    def update_dr(self) -> bool: return self.state == S.UPDATE_DR
    @property
    def update_ir(self) -> bool: return self.state == S.UPDATE_IR

    def __repr__(self) -> str:
        return f"TAPController(state={self.state.name})"
