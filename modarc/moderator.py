"""
The Moderation Engine.

The engine is the single consumer of chat traffic on the moderator bus.
It scores every chat event against a set of filtered words, keeps a
violation count per (group, user), and sends a removal command to the
user's group the moment that count first reaches the threshold.
"""

import logging
import typing

import attr
import trio

from .bus import BusRegistry, Envelope, MessageBus
from .config import Settings, TestcaseConfig, load_filtered_words
from .errors import BusClosedError
from .events import AdminEvent, ChatEvent, RemovalCommand, chat_topic, is_admin_topic

UserKey = typing.Tuple[int, int]


def count_violations(text: str, words: typing.Iterable[str]) -> int:
    """Counts how many distinct filtered words occur in a text.

    Matching is case-insensitive and by substring; a word counts once
    no matter how many times it occurs.

        >>> count_violations('SpamSpamScam', {'spam', 'scam', 'ham'})
        2
        >>> count_violations('hello', {'spam'})
        0

    Arguments:
        text {str} -- The text to score.
        words {Iterable[str]} -- The filtered words, lowercased.

    Returns:
        int -- The number of filtered words found.
    """

    lowered = text.lower()
    return sum(1 for word in words if word in lowered)


def _not_removal(envelope: Envelope) -> bool:
    return not isinstance(envelope.payload, RemovalCommand)


@attr.s(auto_attribs=True, frozen=True)
class RemovalReport:
    """A record of a user having been removed for violations."""

    group_id: int
    user_id: int
    violations: int


@attr.s(auto_attribs=True)
class ModerationEngine:
    """
    Tracks violations and signals removals.

        >>> engine = ModerationEngine(99, 2, frozenset({'spam'}))
        >>> engine.record(ChatEvent(0, 1, 1, 'spam'))
        >>> engine.record(ChatEvent(0, 1, 2, 'SPAM!'))
        RemovalCommand(group_id=0, user_id=1)
        >>> engine.record(ChatEvent(0, 1, 3, 'spam'))
        >>> engine.counters[(0, 1)]
        3

    Arguments:
        moderator_key {int} -- The key of the moderator bus.
        violation_threshold {int} -- The violation count at which users get removed.
        filtered_words {FrozenSet[str]} -- The lowercased filtered words.
    """

    moderator_key: int
    violation_threshold: int
    filtered_words: typing.FrozenSet[str]
    logger: logging.Logger = attr.Factory(
        lambda: logging.getLogger("modarc.moderator")
    )

    counters: typing.Dict[UserKey, int] = attr.Factory(dict)
    removals: typing.List[RemovalReport] = attr.Factory(list)
    bus: typing.Optional[MessageBus] = None

    @classmethod
    def from_config(
        cls, config: TestcaseConfig, settings: typing.Optional[Settings] = None
    ) -> "ModerationEngine":
        """Builds an engine for a testcase, loading its filtered words.

        Raises:
            ConfigError: The filtered words file is missing or malformed.
        """

        return cls(
            config.moderator_key,
            config.violation_threshold,
            load_filtered_words(config.filtered_words_path, settings),
        )

    def record(self, event: ChatEvent) -> typing.Optional[RemovalCommand]:
        """Accounts for a chat event's violations.

        Arguments:
            event {ChatEvent} -- The chat event.

        Returns:
            Optional[RemovalCommand] -- A removal command, if and only if
                                        this event made the user's count
                                        cross the threshold.
        """

        key = (event.group_id, event.user_id)
        hits = count_violations(event.text, self.filtered_words)

        before = self.counters.get(key, 0)
        after = before + hits
        self.counters[key] = after

        if hits > 0 and before < self.violation_threshold <= after:
            report = RemovalReport(event.group_id, event.user_id, after)
            self.removals.append(report)

            self.logger.info(
                "User %d from group %d has been removed due to %d violations.",
                event.user_id,
                event.group_id,
                after,
            )

            return RemovalCommand(event.group_id, event.user_id)

        return None

    def handle(self, envelope: Envelope) -> typing.Optional[RemovalCommand]:
        """Classifies and handles a single envelope off the moderator bus.

        Administrative traffic is ignored, and so is anything that is
        not a well-formed chat event.

        Returns:
            Optional[RemovalCommand] -- The removal command to send, if any.
        """

        payload = envelope.payload

        if is_admin_topic(envelope.topic) or isinstance(payload, AdminEvent):
            return None

        if not isinstance(payload, ChatEvent):
            self.logger.warning(
                "Skipping malformed message on topic %d: %r", envelope.topic, payload
            )
            return None

        if envelope.topic != chat_topic(payload.group_id):
            self.logger.warning(
                "Skipping chat event of group %d sent on topic %d",
                payload.group_id,
                envelope.topic,
            )
            return None

        return self.record(payload)

    async def run(
        self, registry: BusRegistry, task_status=trio.TASK_STATUS_IGNORED
    ):
        """Runs the engine until the moderator bus is torn down.

        Creates the moderator bus if it does not exist yet; reports
        being started once it does.

        Arguments:
            registry {BusRegistry} -- The registry to open the moderator bus in.
        """

        self.bus = registry.open(self.moderator_key, create=True)
        task_status.started()

        self.logger.info(
            "Moderating with %d filtered words, threshold %d",
            len(self.filtered_words),
            self.violation_threshold,
        )

        while True:
            try:
                envelope = await self.bus.receive(match=_not_removal)

            except BusClosedError:
                break

            command = self.handle(envelope)

            if command is None:
                continue

            try:
                await self.bus.send(command.topic, command)

            except BusClosedError:
                self.logger.error(
                    "Could not send removal of user %d to group %d: bus is gone",
                    command.user_id,
                    command.group_id,
                )
                break

        self.logger.info("Moderator bus torn down, stopping")
