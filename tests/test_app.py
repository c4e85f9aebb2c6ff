"""End to end tests for whole simulations."""

import pytest
import trio

from modarc.app import Orchestrator, run_simulation
from modarc.bus import BusRegistry
from modarc.cli import find_fatal
from modarc.config import Settings, load_testcase
from modarc.errors import CapacityError, ChannelError, ConfigError
from modarc.moderator import RemovalReport

from conftest import APP_KEY, FAST, MODERATOR_KEY, VALIDATION_KEY


def simulate(base, settings=FAST, registry=None):
    config = load_testcase("1", base, settings)

    async def main():
        with trio.fail_after(20):
            return await run_simulation(config, settings, base_dir=base, registry=registry)

    return trio.run(main)


def chatter(user, count):
    return ["{} hello{}".format(t, user) for t in range(count)]


def test_quiet_simulation(make_testcase):
    base = make_testcase(
        [
            [chatter(0, 5), chatter(1, 10)],
            [chatter(0, 3), chatter(1, 8), chatter(2, 8)],
            [chatter(0, 4)],
        ]
    )
    registry = BusRegistry()

    report = simulate(base, registry=registry)

    assert report.terminations == {0: 0, 1: 0, 2: 0}
    assert report.removals == []
    assert report.anomalies == []
    assert set(report.violations.values()) <= {0}
    assert report.forwarded[(0, 0)] == 5
    assert report.forwarded[(1, 0)] == 3
    assert report.forwarded[(2, 0)] == 0

    # Every bus is gone once the simulation is over.
    assert registry.keys() == []


def test_offenders_get_removed(make_testcase):
    # User 0 swears on every other line, and crosses a threshold of 2
    # on their fourth message. The others talk long enough for the
    # removal to come back while the group is still up.
    offender = ["{} {}".format(t, "spam" if t % 2 else "hi") for t in range(40)]
    base = make_testcase(
        [[offender, chatter(1, 80), chatter(2, 80)]], threshold=2
    )
    settings = Settings(pacing_delay=0.005, poll_interval=0.005)

    report = simulate(base, settings)

    assert report.removals == [RemovalReport(0, 0, 2)]
    assert report.terminations == {0: 1}
    assert report.forwarded[(0, 0)] < 40
    assert report.forwarded[(0, 1)] > 0
    assert report.forwarded[(0, 2)] > 0
    assert report.violations[(0, 0)] >= 2
    assert report.anomalies == []


def test_removal_ends_small_group(make_testcase):
    offender = ["{} scam".format(t) for t in range(60)]
    base = make_testcase([[offender, chatter(1, 60)]], threshold=1)
    settings = Settings(pacing_delay=0.01, poll_interval=0.005)

    report = simulate(base, settings)

    assert report.removals == [RemovalReport(0, 0, 1)]
    assert report.terminations == {0: 1}
    assert report.forwarded[(0, 1)] < 60


def test_removals_stay_in_their_group(make_testcase):
    offender = ["{} spamscam".format(t) for t in range(50)]
    base = make_testcase(
        [
            [chatter(0, 50), offender, chatter(2, 50)],
            [offender, chatter(1, 50), chatter(2, 50)],
        ],
        threshold=2,
    )
    settings = Settings(pacing_delay=0.005, poll_interval=0.005)

    report = simulate(base, settings)

    assert sorted(report.removals) == [RemovalReport(0, 1, 2), RemovalReport(1, 0, 2)]
    assert report.terminations == {0: 1, 1: 1}

    for bystander in [(0, 0), (0, 2), (1, 1), (1, 2)]:
        assert report.forwarded[bystander] > 0
    assert report.anomalies == []


def test_bad_group_spawns_nothing(make_testcase):
    base = make_testcase([[chatter(0, 3), chatter(1, 3)], [chatter(0, 3)]])
    (base / "testcase_1" / "users" / "user_1_0.txt").unlink()
    registry = BusRegistry()

    with pytest.raises(ConfigError):
        simulate(base, registry=registry)

    assert registry.keys() == []


def test_too_many_users(make_testcase):
    base = make_testcase([[chatter(0, 3), chatter(1, 3), chatter(2, 3)]])

    with pytest.raises(CapacityError):
        simulate(base, Settings(max_users=2))


def test_orchestrator_needs_buses(make_testcase):
    base = make_testcase([[chatter(0, 3), chatter(1, 3)]])
    config = load_testcase("1", base)
    registry = BusRegistry()
    orchestrator = Orchestrator(config, registry, settings=FAST, base_dir=base)

    async def main():
        with trio.fail_after(5):
            await orchestrator.run()

    # The session of group 0 fails to attach, inside the orchestrator's
    # nursery.
    with pytest.raises(BaseException) as info:
        trio.run(main)

    assert isinstance(find_fatal(info.value), ChannelError)
    assert registry.keys() == []


def test_orchestrator_collects_terminations(make_testcase):
    base = make_testcase([[chatter(0, 3), chatter(1, 5)], [chatter(0, 2)]])
    config = load_testcase("1", base)
    registry = BusRegistry()

    for key in (VALIDATION_KEY, MODERATOR_KEY):
        registry.open(key, create=True)

    orchestrator = Orchestrator(config, registry, settings=FAST, base_dir=base)

    async def main():
        with trio.fail_after(10):
            # A stray message on the app bus is skipped over.
            registry.open(APP_KEY, create=True).send_nowait(3, "garbage")
            await orchestrator.run()

    trio.run(main)

    assert orchestrator.terminations == {0: 0, 1: 0}
    assert [session.terminated for session in orchestrator.sessions] == [True, True]
    assert registry.keys() == []
