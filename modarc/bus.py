"""
Topic-addressed message buses.

A bus is a single in-memory queue of (topic, payload) envelopes, shared
by any number of producers and consumers. Consumers may ask for the
next envelope on a topic, on any topic, or for the next one that
satisfies an arbitrary predicate. Delivery is FIFO per topic.

Buses are opened by integer key through a BusRegistry, which acts as the
create-or-attach namespace shared by every task of a simulation.
"""

import collections
import logging
import typing

import attr
import trio

from .errors import BusClosedError, ChannelError

ANY_TOPIC = 0

EnvelopeFilter = typing.Callable[["Envelope"], bool]


@attr.s(auto_attribs=True, frozen=True)
class Envelope:
    """A payload, as addressed to a topic of a bus."""

    topic: int
    payload: typing.Any


class MessageBus:
    """
    A topic-addressed message bus.

    Sends never block. Receives may either block until a matching
    envelope arrives, or fail immediately with trio.WouldBlock.

        >>> import trio
        >>> bus = MessageBus(1234)
        >>> bus.send_nowait(7, 'seven')
        >>> bus.send_nowait(8, 'eight')
        ...
        >>> async def receive_eight():
        ...     envelope = await bus.receive(8)
        ...     print(envelope.payload)
        ...
        >>> trio.run(receive_eight)
        eight
        >>> len(bus)
        1
    """

    def __init__(self, key: int, logger: typing.Optional[logging.Logger] = None):
        self.key = key
        self.logger = logger or logging.getLogger("modarc.bus")

        self._queue = collections.deque()  # type: typing.Deque[Envelope]
        self._changed = trio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._queue)

    def __repr__(self) -> str:
        return "{}(key={}, pending={}{})".format(
            type(self).__name__,
            self.key,
            len(self._queue),
            ", closed" if self._closed else "",
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise BusClosedError("Message bus {} has been torn down".format(self.key))

    def send_nowait(self, topic: int, payload: typing.Any):
        """Puts a payload on this bus, addressed to a topic.

        Arguments:
            topic {int} -- The topic. Must be positive.
            payload {any} -- The payload. Not copied.

        Raises:
            ValueError: The topic is not positive.
            BusClosedError: The bus has been torn down.
        """

        self._check_open()

        if topic <= ANY_TOPIC:
            raise ValueError("Topics must be positive, got {}".format(topic))

        self._queue.append(Envelope(topic, payload))

        # Wake everyone waiting on the previous state.
        self._changed.set()
        self._changed = trio.Event()

    async def send(self, topic: int, payload: typing.Any):
        """Same as send_nowait, but checkpoints afterwards."""

        self.send_nowait(topic, payload)
        await trio.sleep(0)

    def _matches(
        self, envelope: Envelope, topic: int, match: typing.Optional[EnvelopeFilter]
    ) -> bool:
        if topic != ANY_TOPIC and envelope.topic != topic:
            return False

        return match is None or match(envelope)

    def receive_nowait(
        self, topic: int = ANY_TOPIC, match: typing.Optional[EnvelopeFilter] = None
    ) -> Envelope:
        """Takes the oldest matching envelope off this bus.

        Keyword Arguments:
            topic {int} -- The topic to receive from, or ANY_TOPIC. (default: {ANY_TOPIC})
            match {callable} -- An optional predicate envelopes must satisfy. (default: {None})

        Raises:
            trio.WouldBlock: No matching envelope is pending.
            BusClosedError: The bus has been torn down.

        Returns:
            Envelope -- The envelope received.
        """

        self._check_open()

        for i, envelope in enumerate(self._queue):
            if self._matches(envelope, topic, match):
                del self._queue[i]
                return envelope

        raise trio.WouldBlock

    async def receive(
        self, topic: int = ANY_TOPIC, match: typing.Optional[EnvelopeFilter] = None
    ) -> Envelope:
        """Takes the oldest matching envelope off this bus, waiting for
        one to arrive if none is pending.

        Keyword Arguments:
            topic {int} -- The topic to receive from, or ANY_TOPIC. (default: {ANY_TOPIC})
            match {callable} -- An optional predicate envelopes must satisfy. (default: {None})

        Raises:
            BusClosedError: The bus has been (or got) torn down.

        Returns:
            Envelope -- The envelope received.
        """

        # A cancelled receive never takes an envelope off the queue.
        await trio.lowlevel.checkpoint_if_cancelled()

        while True:
            changed = self._changed

            try:
                envelope = self.receive_nowait(topic, match)

            except trio.WouldBlock:
                await changed.wait()

            else:
                await trio.lowlevel.cancel_shielded_checkpoint()
                return envelope

    def remove(self):
        """Tears this bus down.

        Pending envelopes are dropped, and every blocked receiver is
        woken up with a BusClosedError.
        """

        if self._closed:
            return

        self._closed = True

        if self._queue:
            self.logger.debug(
                "Dropping %d pending envelopes of bus %d", len(self._queue), self.key
            )

        self._queue.clear()
        self._changed.set()


@attr.s(auto_attribs=True)
class BusRegistry:
    """
    The namespace in which buses are opened by key.

        >>> registry = BusRegistry()
        >>> bus = registry.open(4, create=True)
        >>> registry.open(4) is bus
        True
        >>> registry.open(5)
        Traceback (most recent call last):
            ...
        modarc.errors.ChannelError: No message bus with key 5
    """

    buses: typing.Dict[int, MessageBus] = attr.Factory(dict)
    logger: logging.Logger = attr.Factory(lambda: logging.getLogger("modarc.bus"))

    def open(self, key: int, create: bool = False) -> MessageBus:
        """Attaches to a bus, optionally creating it first.

        Arguments:
            key {int} -- The key of the bus.

        Keyword Arguments:
            create {bool} -- Whether to create the bus if it does not exist yet. (default: {False})

        Raises:
            ChannelError: The key is invalid, or no such bus exists and
                          create is False.

        Returns:
            MessageBus -- The bus.
        """

        if not isinstance(key, int) or isinstance(key, bool) or key < 0:
            raise ChannelError("Invalid message bus key: {}".format(repr(key)))

        if key in self.buses:
            return self.buses[key]

        if not create:
            raise ChannelError("No message bus with key {}".format(key))

        bus = MessageBus(key, self.logger)
        self.buses[key] = bus
        self.logger.debug("Created message bus %d", key)

        return bus

    def remove(self, key: int) -> bool:
        """Tears down a bus and forgets it.

        Returns:
            bool -- Whether there was such a bus to tear down.
        """

        bus = self.buses.pop(key, None)

        if bus is None:
            return False

        bus.remove()
        self.logger.debug("Removed message bus %d", key)

        return True

    def keys(self) -> typing.List[int]:
        return list(self.buses)
