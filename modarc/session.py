"""
The Group Session.

A Group Session owns the users of one group. It spawns a User Agent
per user, multiplexes their streams, forwards their chat to the
validation and moderator buses, applies removal commands sent back by
the Moderation Engine, and decides when the group terminates.
"""

import enum
import logging
import pathlib
import typing

import attr
import trio

from .agent import UserAgent
from .bus import BusRegistry, Envelope, MessageBus
from .config import GroupConfig, Settings, load_group, testcase_dir
from .errors import BusClosedError, ParseError
from .events import (
    AdminEvent,
    BusEvent,
    ChatEvent,
    RemovalCommand,
    LineBuffer,
    parse_record,
    removal_topic,
)
from .stream import open_user_stream

# Fewer Active users than this and the group terminates.
MIN_ACTIVE_USERS = 2


class UserState(enum.Enum):
    """The lifecycle of a user. ACTIVE is the only non-terminal state."""

    ACTIVE = "active"
    CLOSED = "closed"
    REMOVED = "removed"


@attr.s(auto_attribs=True)
class UserSlot:
    """Everything a Group Session knows about one of its users."""

    index: int
    script_path: pathlib.Path
    state: UserState = UserState.ACTIVE
    stream: typing.Optional[trio.abc.ReceiveStream] = None
    reader_scope: trio.CancelScope = attr.Factory(trio.CancelScope)
    agent: typing.Optional[UserAgent] = None

    @property
    def active(self) -> bool:
        return self.state is UserState.ACTIVE


@attr.s(auto_attribs=True, frozen=True)
class StreamRecord:
    """A line read off a user's stream, or EOF if line is None."""

    user_id: int
    line: typing.Optional[str]


def _is_removal(envelope: Envelope) -> bool:
    return isinstance(envelope.payload, RemovalCommand)


@attr.s(auto_attribs=True)
class GroupSession:
    """
    The session of a single chat group.

    Arguments:
        group_path {pathlib.Path} -- The group descriptor file.
        group_index {int} -- The index of this group.
        testcase_id {str} -- The testcase, against which user paths are resolved.
        validation_key {int} -- The key of the validation bus.
        app_key {int} -- The key of the app (orchestrator) bus.
        moderator_key {int} -- The key of the moderator bus.
        violation_threshold {int} -- The violation threshold of the testcase.
        registry {BusRegistry} -- The registry buses are attached through.

    Keyword Arguments:
        settings {Settings} -- Timing and capacity settings. (default: Settings())
        base_dir {pathlib.Path} -- The directory testcases live in. (default: '.')
    """

    group_path: pathlib.Path
    group_index: int
    testcase_id: str
    validation_key: int
    app_key: int
    moderator_key: int
    violation_threshold: int
    registry: BusRegistry
    settings: Settings = attr.Factory(Settings)
    base_dir: pathlib.Path = pathlib.Path(".")
    logger: logging.Logger = attr.Factory(
        lambda: logging.getLogger("modarc.session")
    )

    group: typing.Optional[GroupConfig] = None
    users: typing.List[UserSlot] = attr.Factory(list)
    removed_count: int = 0
    forwarded: typing.Dict[int, int] = attr.Factory(dict)
    terminated: bool = False

    validation_bus: typing.Optional[MessageBus] = None
    app_bus: typing.Optional[MessageBus] = None
    moderator_bus: typing.Optional[MessageBus] = None

    def active_count(self) -> int:
        """The number of users still able to produce traffic."""
        return sum(1 for slot in self.users if slot.active)

    def should_terminate(self) -> bool:
        """Whether the group is done, i.e. fewer than two users are Active.

            >>> from modarc.bus import BusRegistry
            >>> session = GroupSession('g.txt', 0, '1', 1, 2, 3, 5, BusRegistry())
            >>> session.users = [UserSlot(0, 'a'), UserSlot(1, 'b')]
            >>> session.should_terminate()
            False
            >>> session.users[1].state = UserState.CLOSED
            >>> session.should_terminate()
            True
        """
        return self.active_count() < MIN_ACTIVE_USERS

    # === Startup ===

    def _load(self):
        root = testcase_dir(self.testcase_id, self.base_dir)
        self.group = load_group(self.group_path, self.group_index, root, self.settings)
        self.users = [
            UserSlot(index, path) for index, path in enumerate(self.group.user_paths)
        ]
        self.forwarded = {slot.index: 0 for slot in self.users}

    def _attach(self):
        self.validation_bus = self.registry.open(self.validation_key)
        self.moderator_bus = self.registry.open(self.moderator_key)
        self.app_bus = self.registry.open(self.app_key)

    def _post(self, bus: MessageBus, event: BusEvent) -> bool:
        """Sends an event, tolerating buses that were already torn down."""

        try:
            bus.send_nowait(event.topic, event)

        except BusClosedError:
            self.logger.error(
                "Group %d could not send %r: bus %d is gone",
                self.group_index,
                event,
                bus.key,
            )
            return False

        return True

    def _spawn_user(
        self,
        nursery: trio.Nursery,
        slot: UserSlot,
        records: trio.MemorySendChannel,
    ):
        write_end, read_end = open_user_stream()

        slot.stream = read_end
        slot.agent = UserAgent(
            self.group_index,
            slot.index,
            slot.script_path,
            self.settings.pacing_delay,
        )

        nursery.start_soon(slot.agent.run, write_end)
        nursery.start_soon(self._read_user, slot, records.clone())

        self._post(
            self.validation_bus, AdminEvent.user_joined(self.group_index, slot.index)
        )

    # === Reading ===

    async def _read_user(self, slot: UserSlot, records: trio.MemorySendChannel):
        """Reads a user's stream line by line, funneling lines and
        finally EOF into the session's fan-in channel.

        Once the session stops listening, the rest of the stream is
        read and discarded, so that the user's agent still runs its
        script to completion.
        """

        buf = LineBuffer()

        with slot.reader_scope:
            try:
                async with records:
                    async for data in slot.stream:
                        for line in buf.feed(data):
                            await records.send(StreamRecord(slot.index, line))

                    for line in buf.flush():
                        await records.send(StreamRecord(slot.index, line))

                    await records.send(StreamRecord(slot.index, None))

                return

            except trio.ClosedResourceError:
                # The stream got closed under us by a removal.
                return

            except trio.BrokenResourceError:
                pass

            await self._discard_rest(slot)

    async def _discard_rest(self, slot: UserSlot):
        self.logger.debug(
            "Group %d no longer listens to user %d, discarding the rest of their chat",
            self.group_index,
            slot.index,
        )

        try:
            async for _ in slot.stream:
                pass

        except (trio.ClosedResourceError, trio.BrokenResourceError):
            pass

    def _handle_record(self, record: StreamRecord):
        slot = self.users[record.user_id]

        if not slot.active:
            self.logger.debug(
                "Dropping record of %s user %d in group %d",
                slot.state.value,
                slot.index,
                self.group_index,
            )
            return

        if record.line is None:
            slot.state = UserState.CLOSED
            self.logger.info(
                "User %d left group %d (%d users active)",
                slot.index,
                self.group_index,
                self.active_count(),
            )
            return

        try:
            timestamp, text = parse_record(record.line)

        except ParseError as err:
            self.logger.warning(
                "Error parsing message from user %d in group %d: %s",
                slot.index,
                self.group_index,
                err,
            )
            return

        event = ChatEvent.create(self.group_index, slot.index, timestamp, text)

        self._post(self.validation_bus, event)
        self._post(self.moderator_bus, attr.evolve(event))
        self.forwarded[slot.index] += 1

    # === Removal ===

    async def remove_user(self, user_id: int) -> bool:
        """Removes an Active user: stops reading their stream and closes it.

        Returns:
            bool -- Whether the user was Active, and thus got removed.
        """

        if not 0 <= user_id < len(self.users):
            self.logger.warning(
                "Group %d got a removal for unknown user %d", self.group_index, user_id
            )
            return False

        slot = self.users[user_id]

        if not slot.active:
            self.logger.debug(
                "Ignoring removal of %s user %d in group %d",
                slot.state.value,
                user_id,
                self.group_index,
            )
            return False

        slot.state = UserState.REMOVED
        self.removed_count += 1

        slot.reader_scope.cancel()
        await slot.stream.aclose()

        self.logger.info(
            "Removed user %d from group %d (%d users active)",
            user_id,
            self.group_index,
            self.active_count(),
        )

        return True

    async def _drain_removals(self):
        topic = removal_topic(self.group_index)

        while True:
            try:
                envelope = self.moderator_bus.receive_nowait(topic, _is_removal)

            except (trio.WouldBlock, BusClosedError):
                break

            command = envelope.payload

            if command.group_id != self.group_index:
                self.logger.warning(
                    "Group %d ignoring removal addressed to group %d",
                    self.group_index,
                    command.group_id,
                )
                continue

            await self.remove_user(command.user_id)

    # === Main loop ===

    async def _serve(self, records: trio.MemoryReceiveChannel):
        while not self.should_terminate():
            batch = []

            with trio.move_on_after(self.settings.poll_interval):
                try:
                    batch.append(await records.receive())

                except trio.EndOfChannel:
                    break

            while True:
                try:
                    batch.append(records.receive_nowait())

                except (trio.WouldBlock, trio.EndOfChannel):
                    break

            for record in batch:
                self._handle_record(record)

            await self._drain_removals()

    async def _close_streams(self):
        for slot in self.users:
            if slot.stream is not None:
                await slot.stream.aclose()

    # === Entry point ===

    async def run(self, task_status=trio.TASK_STATUS_IGNORED):
        """Runs this group from creation to termination.

        Raises:
            ConfigError: The group descriptor is malformed or a user file is missing.
            CapacityError: The group has too many users.
            ChannelError: One of the buses does not exist.
        """

        self._load()
        self._attach()

        self._post(self.validation_bus, AdminEvent.created(self.group_index))

        send_records, receive_records = trio.open_memory_channel(
            self.settings.fan_in_buffer
        )

        try:
            async with trio.open_nursery() as nursery:
                async with send_records:
                    for slot in self.users:
                        self._spawn_user(nursery, slot, send_records)

                task_status.started()

                async with receive_records:
                    await self._serve(receive_records)

                # Leaving the nursery joins every agent. Readers of users
                # that are still Active drain their streams until EOF.

        finally:
            with trio.CancelScope(shield=True):
                await self._close_streams()

        self.terminated = True
        terminated = AdminEvent.terminated(self.group_index, self.removed_count)

        self._post(self.validation_bus, terminated)
        self._post(self.app_bus, terminated)

        self.logger.info(
            "Group %d terminated, %d users removed",
            self.group_index,
            self.removed_count,
        )
