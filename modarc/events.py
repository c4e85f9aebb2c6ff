"""
Everything that travels between modarc tasks.

Chat records travel from User Agents to their Group Session over
one-way byte streams. Admin events, chat events and removal commands
travel over message buses. Bus payloads are tagged classes, so
consumers route by type. Each payload still carries the numeric
topic that the validation side relies on:

* 1, 2, 3 -- group created, user joined, group terminated;
* CHAT_TOPIC_BASE + group -- chat traffic of a group;
* group + 1 -- removal commands addressed to a group.
"""

import enum
import logging
import typing

import attr

from .errors import ParseError

GROUP_CREATED = 1
USER_JOINED = 2
GROUP_TERMINATED = 3

ADMIN_TOPICS = frozenset((GROUP_CREATED, USER_JOINED, GROUP_TERMINATED))

CHAT_TOPIC_BASE = 30

MAX_TEXT_BYTES = 255

logger = logging.getLogger("modarc.events")


def chat_topic(group_id: int) -> int:
    """Returns the topic on which a group's chat traffic is sent.

        >>> chat_topic(0), chat_topic(4)
        (30, 34)
    """
    return CHAT_TOPIC_BASE + group_id


def removal_topic(group_id: int) -> int:
    """Returns the topic a group drains its removal commands from.

        >>> removal_topic(0)
        1
    """
    return group_id + 1


def is_admin_topic(topic: int) -> bool:
    return topic in ADMIN_TOPICS


def is_chat_topic(topic: int) -> bool:
    return topic >= CHAT_TOPIC_BASE


class AdminKind(enum.IntEnum):
    """The kinds of administrative events. Values double as topics."""

    CREATED = GROUP_CREATED
    USER_JOINED = USER_JOINED
    TERMINATED = GROUP_TERMINATED


@attr.s(auto_attribs=True, frozen=True)
class AdminEvent:
    """A lifecycle notification emitted by a Group Session.

    The payload is the joining user's index for USER_JOINED, the number
    of users removed for violations for TERMINATED, and 0 otherwise.
    """

    kind: AdminKind
    group_id: int
    payload: int = 0

    @property
    def topic(self) -> int:
        return int(self.kind)

    @classmethod
    def created(cls, group_id: int) -> "AdminEvent":
        return cls(AdminKind.CREATED, group_id)

    @classmethod
    def user_joined(cls, group_id: int, user_id: int) -> "AdminEvent":
        return cls(AdminKind.USER_JOINED, group_id, user_id)

    @classmethod
    def terminated(cls, group_id: int, removed_count: int) -> "AdminEvent":
        return cls(AdminKind.TERMINATED, group_id, removed_count)


@attr.s(auto_attribs=True, frozen=True)
class ChatEvent:
    """A single chat line, attributed to a user of a group."""

    group_id: int
    user_id: int
    timestamp: int
    text: str
    truncated: bool = False

    @property
    def topic(self) -> int:
        return chat_topic(self.group_id)

    @classmethod
    def create(
        cls, group_id: int, user_id: int, timestamp: int, text: str
    ) -> "ChatEvent":
        """Builds a ChatEvent, truncating overlong text.

        Text longer than MAX_TEXT_BYTES (in UTF-8) is cut at the last
        whole character that fits, and the event is marked as truncated.

            >>> ChatEvent.create(0, 1, 5, 'hello').truncated
            False

            >>> event = ChatEvent.create(0, 1, 5, 'x' * 300)
            >>> len(event.text), event.truncated
            (255, True)

        Arguments:
            group_id {int} -- The group the text was posted in.
            user_id {int} -- The index of the posting user within the group.
            timestamp {int} -- The timestamp attached by the user's script.
            text {str} -- The posted text.

        Returns:
            ChatEvent -- The event.
        """

        encoded = text.encode("utf-8")

        if len(encoded) <= MAX_TEXT_BYTES:
            return cls(group_id, user_id, timestamp, text)

        logger.warning(
            "Truncating %d-byte message from user %d in group %d",
            len(encoded),
            user_id,
            group_id,
        )

        text = encoded[:MAX_TEXT_BYTES].decode("utf-8", errors="ignore")
        return cls(group_id, user_id, timestamp, text, truncated=True)


@attr.s(auto_attribs=True, frozen=True)
class RemovalCommand:
    """An instruction to a Group Session to remove one of its users."""

    group_id: int
    user_id: int

    @property
    def topic(self) -> int:
        return removal_topic(self.group_id)


BusEvent = typing.Union[AdminEvent, ChatEvent, RemovalCommand]


# === Stream records ===


def encode_record(timestamp: int, text: str) -> bytes:
    """Encodes a chat record for a user stream.

        >>> encode_record(12, 'hi')
        b'12 hi\\n'
    """
    return "{} {}\n".format(timestamp, text).encode("utf-8")


def parse_record(line: str) -> typing.Tuple[int, str]:
    """Parses a chat record into a timestamp and a single text token.

        >>> parse_record('17 hello')
        (17, 'hello')

        >>> parse_record('hello there')
        Traceback (most recent call last):
            ...
        modarc.errors.ParseError: Bad timestamp in record: 'hello there'

    Arguments:
        line {str} -- A single record, without its trailing newline.

    Raises:
        ParseError: The line is not exactly '<int> <token>'.

    Returns:
        (int, str) -- The timestamp and the text token.
    """

    fields = line.split()

    if len(fields) != 2:
        raise ParseError("Expected 2 fields in record: {}".format(repr(line)))

    try:
        timestamp = int(fields[0])

    except ValueError:
        raise ParseError("Bad timestamp in record: {}".format(repr(line))) from None

    return timestamp, fields[1]


class LineBuffer:
    """
    Splits chunks of bytes received from a stream into lines,
    carrying partial lines over to the next chunk.

        >>> buf = LineBuffer()
        >>> buf.feed(b'1 a\\n2 ')
        ['1 a']
        >>> buf.feed(b'b\\r\\n3 c')
        ['2 b']
        >>> buf.flush()
        ['3 c']
    """

    def __init__(self):
        self._pending = b""

    def feed(self, data: bytes) -> typing.List[str]:
        data = self._pending + data
        lines = []

        while b"\n" in data:
            line, data = data.split(b"\n", 1)

            if line.endswith(b"\r"):
                line = line[:-1]

            lines.append(line.decode("utf-8", errors="replace"))

        self._pending = data
        return lines

    def flush(self) -> typing.List[str]:
        """Returns whatever partial line is left, e.g. at EOF."""

        pending, self._pending = self._pending, b""

        if not pending:
            return []

        return [pending.decode("utf-8", errors="replace")]
