"""
TAP Controller & Router Verification
====================================
Exhaustive checks of the 16-state transition table and the shortest-path
router over every (from, to) pair.
"""

import itertools

import pytest

from tapverif.tap import (
    TRANSITIONS, TAPController, TapState, is_legal_edge, next_state, route, walk,
)

S = TapState
ALL_PAIRS = list(itertools.product(TapState, TapState))


def test_table_is_total():
    assert len(TRANSITIONS) == 16
    for state in TapState:
        for tms in (0, 1):
            assert next_state(state, tms) in TapState


@pytest.mark.parametrize("src,dst", ALL_PAIRS, ids=lambda s: s.name)
def test_route_lands_on_destination(src, dst):
    seq = route(src, dst)
    path = walk(src, seq)
    assert path[-1] == dst
    assert all(is_legal_edge(a, b) for a, b in zip(path, path[1:]))


def test_route_to_self_is_empty():
    for state in TapState:
        assert route(state, state) == ()


def test_reset_never_bypasses_idle():
    for dst in TapState:
        if dst == S.TEST_LOGIC_RESET:
            continue
        path = walk(S.TEST_LOGIC_RESET, route(S.TEST_LOGIC_RESET, dst))
        assert S.RUN_TEST_IDLE in path, dst.name


def test_known_minimal_routes():
    assert route(S.RUN_TEST_IDLE, S.SHIFT_DR) == (1, 0, 0)
    assert route(S.RUN_TEST_IDLE, S.SHIFT_IR) == (1, 1, 0, 0)
    assert route(S.EXIT1_DR, S.UPDATE_DR) == (1,)
    assert route(S.UPDATE_IR, S.SHIFT_DR) == (1, 0, 0)
    assert route(S.SHIFT_IR, S.RUN_TEST_IDLE) == (1, 1, 0)


def test_dr_and_ir_paths_are_mirrors():
    dr = route(S.RUN_TEST_IDLE, S.UPDATE_DR)
    ir = route(S.RUN_TEST_IDLE, S.UPDATE_IR)
    assert ir == (1,) + dr


def test_pause_stopover_on_request():
    direct = walk(S.EXIT1_DR, route(S.EXIT1_DR, S.UPDATE_DR))
    assert S.PAUSE_DR not in direct

    seq = route(S.EXIT1_DR, S.UPDATE_DR, via_pause=True)
    path = walk(S.EXIT1_DR, seq)
    assert path[-1] == S.UPDATE_DR
    assert path.count(S.PAUSE_DR) == 2   # entered, then held one extra clock
    assert S.EXIT2_DR in path

    ir_path = walk(S.EXIT1_IR, route(S.EXIT1_IR, S.UPDATE_IR, via_pause=True))
    assert S.PAUSE_IR in ir_path and ir_path[-1] == S.UPDATE_IR


def test_five_tms_high_reaches_reset_from_anywhere():
    for state in TapState:
        assert walk(state, (1,) * 5)[-1] == S.TEST_LOGIC_RESET


def test_controller_step_and_force():
    tap = TAPController()
    assert tap.current_state() == S.TEST_LOGIC_RESET
    for tms in route(S.TEST_LOGIC_RESET, S.SHIFT_DR):
        tap.step(tms)
    assert tap.shift_dr and not tap.shift_ir

    tap.force(S.UPDATE_IR)
    assert tap.update_ir
    # The forced jump stays visible in the history
    assert not is_legal_edge(tap.history[-2], tap.history[-1])
    assert tap.route_to(S.RUN_TEST_IDLE) == (0,)
