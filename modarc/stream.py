"""One-way byte streams between User Agents and their Group Session."""

import os
import typing

import trio


def open_user_stream() -> typing.Tuple[trio.abc.SendStream, trio.abc.ReceiveStream]:
    """Opens a one-way byte stream, backed by an OS pipe.

    The send half belongs to the writing User Agent, the receive half to
    the reading Group Session. Closing the receive half makes any later
    write fail with trio.BrokenResourceError. Closing the send half makes
    the reader see EOF.

    Returns:
        (SendStream, ReceiveStream) -- The write and read ends, respectively.
    """

    read_fd, write_fd = os.pipe()

    return trio.lowlevel.FdStream(write_fd), trio.lowlevel.FdStream(read_fd)
