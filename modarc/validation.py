"""
A minimal consumer of the validation bus.

The real validation service is external to modarc; this sink merely
stands in for it, so that a simulation is self-contained. It records
the traffic it sees, and flags traffic that breaks the group protocol.
"""

import logging
import typing

import attr
import trio

from .bus import BusRegistry, Envelope, MessageBus
from .errors import BusClosedError
from .events import AdminEvent, AdminKind, ChatEvent


@attr.s(auto_attribs=True)
class ValidationLog:
    """
    Records administrative and chat traffic sent for validation.

        >>> from modarc.bus import Envelope
        >>> from modarc.events import AdminEvent, ChatEvent
        >>> log = ValidationLog(1)
        >>> log.handle(Envelope(30, ChatEvent(0, 0, 1, 'hi')))
        >>> log.anomalies
        ['Chat from user 0 of group 0, who never joined']
    """

    validation_key: int
    logger: logging.Logger = attr.Factory(
        lambda: logging.getLogger("modarc.validation")
    )

    created: typing.Set[int] = attr.Factory(set)
    joined: typing.Dict[int, typing.Set[int]] = attr.Factory(dict)
    chat_counts: typing.Dict[typing.Tuple[int, int], int] = attr.Factory(dict)
    terminated: typing.Dict[int, int] = attr.Factory(dict)
    anomalies: typing.List[str] = attr.Factory(list)
    bus: typing.Optional[MessageBus] = None

    def _anomaly(self, description: str):
        self.logger.warning(description)
        self.anomalies.append(description)

    def _handle_admin(self, event: AdminEvent):
        group = event.group_id

        if event.kind is AdminKind.CREATED:
            if group in self.created:
                self._anomaly("Group {} was created twice".format(group))

            self.created.add(group)
            self.joined.setdefault(group, set())

        elif event.kind is AdminKind.USER_JOINED:
            if group not in self.created:
                self._anomaly(
                    "User {} joined group {} before its creation".format(
                        event.payload, group
                    )
                )

            self.joined.setdefault(group, set()).add(event.payload)

        elif event.kind is AdminKind.TERMINATED:
            self.terminated[group] = event.payload
            self.logger.info(
                "Group %d terminated with %d users removed", group, event.payload
            )

    def handle(self, envelope: Envelope):
        """Records a single envelope off the validation bus."""

        payload = envelope.payload

        if isinstance(payload, (AdminEvent, ChatEvent)):
            if payload.group_id in self.terminated:
                self._anomaly(
                    "Got {!r} after group {} terminated".format(
                        payload, payload.group_id
                    )
                )

        if isinstance(payload, AdminEvent):
            self._handle_admin(payload)

        elif isinstance(payload, ChatEvent):
            key = (payload.group_id, payload.user_id)

            if payload.user_id not in self.joined.get(payload.group_id, ()):
                self._anomaly(
                    "Chat from user {} of group {}, who never joined".format(
                        payload.user_id, payload.group_id
                    )
                )

            self.chat_counts[key] = self.chat_counts.get(key, 0) + 1

        else:
            self.logger.warning(
                "Skipping malformed message on topic %d: %r", envelope.topic, payload
            )

    async def run(
        self, registry: BusRegistry, task_status=trio.TASK_STATUS_IGNORED
    ):
        """Consumes the validation bus until it is torn down.

        Arguments:
            registry {BusRegistry} -- The registry to open the validation bus in.
        """

        self.bus = registry.open(self.validation_key, create=True)
        task_status.started()

        while True:
            try:
                envelope = await self.bus.receive()

            except BusClosedError:
                break

            self.handle(envelope)
