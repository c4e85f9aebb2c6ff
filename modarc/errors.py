class ModarcError(Exception):
    """
    A common superclass for all
    exceptions regarding modarc.
    """
    pass

# == Fatal errors ==

class ModarcFatalError(ModarcError):
    """
    A common superclass for all exceptions
    that must stop the simulation. The command
    line maps these to a non-zero exit status.
    """
    pass

class ConfigError(ModarcFatalError):
    """
    Raised when a testcase, group descriptor,
    user script or filtered words file is
    missing or malformed.
    """
    pass

class CapacityError(ModarcFatalError):
    """
    Raised when a group or user count exceeds
    the configured maximum. Always raised before
    any task is spawned.
    """
    pass

class ChannelError(ModarcFatalError):
    """
    Raised when a message bus cannot be opened,
    e.g. attaching to a key nobody has created.
    """
    pass

# == Recoverable errors ==

class BusClosedError(ModarcError):
    """
    Raised when sending to, or receiving from, a
    message bus that has already been torn down.
    """
    pass

class ParseError(ModarcError, ValueError):
    """
    Raised when a single chat record or bus payload
    cannot be parsed. The offending item is dropped.
    """
    pass
