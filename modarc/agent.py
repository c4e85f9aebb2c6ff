"""
User Agents replay a user's scripted chat log, one paced record at
a time, over their private stream to the owning Group Session.
"""

import logging
import pathlib
import typing

import attr
import trio

from .errors import ConfigError


@attr.s(auto_attribs=True)
class UserAgent:
    """A scripted chat user.

    Lines are sent verbatim; parsing them is up to the reader.
    """

    group_id: int
    index: int
    script_path: pathlib.Path
    pacing_delay: float = 0.005
    logger: logging.Logger = attr.Factory(lambda: logging.getLogger("modarc.agent"))

    sent: int = 0
    finished: bool = False

    def read_script(self) -> typing.List[str]:
        """Reads the non-blank lines of this agent's script.

        Raises:
            ConfigError: The script cannot be read.
        """

        try:
            with open(self.script_path, encoding="utf-8") as fp:
                return [line.strip() for line in fp if line.strip()]

        except OSError as err:
            raise ConfigError(
                "Error opening user file '{}': {}".format(self.script_path, err)
            ) from err

    async def run(self, stream: trio.abc.SendStream):
        """Sends this agent's whole script down a stream, then closes it.

        If the reading end goes away first, i.e. the user got removed,
        the rest of the script is discarded.

        Arguments:
            stream {trio.abc.SendStream} -- The write end of the user's stream.
        """

        async with stream:
            lines = self.read_script()

            for line in lines:
                try:
                    await stream.send_all(line.encode("utf-8") + b"\n")

                except (trio.BrokenResourceError, trio.ClosedResourceError):
                    self.logger.debug(
                        "User %d of group %d: stream closed, dropping %d lines",
                        self.index,
                        self.group_id,
                        len(lines) - self.sent,
                    )
                    break

                self.sent += 1
                await trio.sleep(self.pacing_delay)

        self.finished = True
