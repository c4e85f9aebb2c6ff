"""
The Orchestrator spawns every Group Session of a testcase, waits for
all of them to terminate, and then tears down the shared buses.
"""

import logging
import pathlib
import typing

import attr
import trio

from .bus import BusRegistry
from .config import GroupConfig, Settings, TestcaseConfig, load_group
from .events import GROUP_TERMINATED, AdminEvent, AdminKind
from .moderator import ModerationEngine, RemovalReport
from .session import GroupSession
from .validation import ValidationLog


@attr.s(auto_attribs=True)
class Orchestrator:
    """
    Runs the groups of a testcase to completion.

    Arguments:
        config {TestcaseConfig} -- The testcase.
        registry {BusRegistry} -- The registry the validation and moderator
                                  buses were already created in.

    Keyword Arguments:
        settings {Settings} -- Settings passed on to every Group Session. (default: Settings())
        base_dir {pathlib.Path} -- The directory the testcase lives in. (default: '.')
    """

    config: TestcaseConfig
    registry: BusRegistry
    settings: Settings = attr.Factory(Settings)
    base_dir: pathlib.Path = pathlib.Path(".")
    logger: logging.Logger = attr.Factory(lambda: logging.getLogger("modarc.app"))

    sessions: typing.List[GroupSession] = attr.Factory(list)
    terminations: typing.Dict[int, int] = attr.Factory(dict)

    def make_session(self, index: int, group_path: pathlib.Path) -> GroupSession:
        return GroupSession(
            group_path,
            index,
            self.config.testcase_id,
            self.config.validation_key,
            self.config.app_key,
            self.config.moderator_key,
            self.config.violation_threshold,
            self.registry,
            settings=self.settings,
            base_dir=self.base_dir,
        )

    async def _await_terminations(self, app_bus):
        while len(self.terminations) < self.config.n_groups:
            envelope = await app_bus.receive(GROUP_TERMINATED)
            event = envelope.payload

            if not (
                isinstance(event, AdminEvent) and event.kind is AdminKind.TERMINATED
            ):
                self.logger.warning(
                    "Skipping malformed termination message: %r", event
                )
                continue

            if event.group_id in self.terminations:
                self.logger.warning(
                    "Group %d terminated more than once", event.group_id
                )
                continue

            self.terminations[event.group_id] = event.payload
            self.logger.info(
                "All users terminated. Exiting group process %d.", event.group_id
            )

    def load_groups(self) -> typing.List[GroupConfig]:
        """Loads and validates every group descriptor of the testcase.

        Raises:
            ConfigError: A group descriptor or user file is malformed or missing.
            CapacityError: A group has too many users.
        """

        return [
            load_group(group_path, index, self.config.root, self.settings)
            for index, group_path in enumerate(self.config.group_paths)
        ]

    def teardown(self):
        """Tears down every bus of the testcase."""

        for key in {
            self.config.app_key,
            self.config.validation_key,
            self.config.moderator_key,
        }:
            self.registry.remove(key)

    async def run(self):
        """Spawns every group, and waits for all of them to terminate.

        Every group descriptor is validated before the first group is
        spawned. The buses are torn down on the way out, whether the groups
        terminated normally or not.

        Raises:
            ChannelError: A bus the groups need does not exist.
            ConfigError: A group descriptor or user file is malformed or missing.
            CapacityError: A group has too many users.
        """

        self.load_groups()

        app_bus = self.registry.open(self.config.app_key, create=True)

        try:
            async with trio.open_nursery() as nursery:
                for index, group_path in enumerate(self.config.group_paths):
                    session = self.make_session(index, group_path)
                    self.sessions.append(session)

                    nursery.start_soon(session.run)
                    self.logger.info("Spawned group %d", index)

                await self._await_terminations(app_bus)

        finally:
            self.teardown()


@attr.s(auto_attribs=True)
class SimulationReport:
    """The outcome of a simulation."""

    terminations: typing.Dict[int, int]
    removals: typing.List[RemovalReport]
    violations: typing.Dict[typing.Tuple[int, int], int]
    forwarded: typing.Dict[typing.Tuple[int, int], int]
    anomalies: typing.List[str]


async def run_simulation(
    config: TestcaseConfig,
    settings: typing.Optional[Settings] = None,
    base_dir: typing.Union[str, pathlib.Path] = ".",
    registry: typing.Optional[BusRegistry] = None,
) -> SimulationReport:
    """Runs a whole testcase: validation sink, moderation engine and
    all of its groups.

    Arguments:
        config {TestcaseConfig} -- The testcase.

    Keyword Arguments:
        settings {Settings} -- The settings to use. (default: Settings())
        base_dir {str} -- The directory the testcase lives in. (default: '.')
        registry {BusRegistry} -- The bus registry to use. (default: a new one)

    Raises:
        ModarcFatalError: The testcase is misconfigured.

    Returns:
        SimulationReport -- What happened.
    """

    settings = settings or Settings()
    registry = registry if registry is not None else BusRegistry()

    engine = ModerationEngine.from_config(config, settings)
    validation = ValidationLog(config.validation_key)
    orchestrator = Orchestrator(
        config, registry, settings=settings, base_dir=pathlib.Path(base_dir)
    )
    orchestrator.load_groups()

    async with trio.open_nursery() as nursery:
        await nursery.start(validation.run, registry)
        await nursery.start(engine.run, registry)

        await orchestrator.run()

    forwarded = {}

    for session in orchestrator.sessions:
        for user_id, count in session.forwarded.items():
            forwarded[(session.group_index, user_id)] = count

    return SimulationReport(
        terminations=dict(orchestrator.terminations),
        removals=list(engine.removals),
        violations=dict(engine.counters),
        forwarded=forwarded,
        anomalies=list(validation.anomalies),
    )
