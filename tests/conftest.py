import typing

import pytest
import trio

from modarc.bus import BusRegistry
from modarc.config import Settings

VALIDATION_KEY = 1001
APP_KEY = 1002
MODERATOR_KEY = 1003

FAST = Settings(pacing_delay=0.002, poll_interval=0.005)


def drain(bus, topic=0) -> list:
    """Takes every pending envelope on a topic off a bus."""

    envelopes = []

    while True:
        try:
            envelopes.append(bus.receive_nowait(topic))

        except trio.WouldBlock:
            return envelopes


def make_registry() -> BusRegistry:
    registry = BusRegistry()

    for key in (VALIDATION_KEY, APP_KEY, MODERATOR_KEY):
        registry.open(key, create=True)

    return registry


@pytest.fixture
def make_testcase(tmp_path):
    """Writes a testcase_1 directory, and returns the directory it is in.

    groups is a list of groups, each a list of users, each a list of
    script lines.
    """

    def _make(
        groups: typing.List[typing.List[typing.List[str]]],
        words: typing.Iterable[str] = ("spam", "scam"),
        threshold: int = 3,
        testcase_id: str = "1",
    ):
        root = tmp_path / "testcase_{}".format(testcase_id)
        (root / "groups").mkdir(parents=True)
        (root / "users").mkdir()

        group_names = []

        for g, users in enumerate(groups):
            user_names = []

            for u, lines in enumerate(users):
                name = "users/user_{}_{}.txt".format(g, u)
                (root / name).write_text("".join(line + "\n" for line in lines))
                user_names.append(name)

            name = "groups/group_{}.txt".format(g)
            (root / name).write_text(
                "{}\n{}\n".format(len(user_names), "\n".join(user_names))
            )
            group_names.append(name)

        (root / "input.txt").write_text(
            "{} {} {} {} {}\n{}\n".format(
                len(group_names),
                VALIDATION_KEY,
                APP_KEY,
                MODERATOR_KEY,
                threshold,
                "\n".join(group_names),
            )
        )
        (root / "filtered_words.txt").write_text("\n".join(words) + "\n")

        return tmp_path

    return _make
