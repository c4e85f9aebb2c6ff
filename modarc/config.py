"""
Testcase configuration and runtime settings.

A testcase lives in a directory named 'testcase_<id>' and contains:

* input.txt -- '<n_groups> <validation_key> <app_key> <moderator_key>
  <violation_threshold>', followed by n_groups group file paths;
* one group descriptor per group -- '<n_users>' followed by n_users
  user script paths;
* one script per user -- lines of '<timestamp> <token>';
* filtered_words.txt -- one word per line.

Every path inside a testcase is relative to the testcase directory.
"""

import logging
import os
import pathlib
import typing

import attr

from .errors import CapacityError, ConfigError

MAX_GROUPS = 30
MAX_USERS = 50
MAX_FILTERED_WORDS = 50
MAX_WORD_LENGTH = 20

INPUT_FILE = "input.txt"
FILTERED_WORDS_FILE = "filtered_words.txt"

ENV_PREFIX = "MODARC_"

logger = logging.getLogger("modarc.config")

PathLike = typing.Union[str, "os.PathLike[str]"]


@attr.s(auto_attribs=True, frozen=True)
class Settings:
    """Runtime knobs of a simulation.

    Keyword Arguments:
        pacing_delay {float} -- Seconds a User Agent waits between records. (default: 0.005)
        poll_interval {float} -- The longest a Group Session waits for chat before
                                 checking for removal commands again. (default: 0.05)
        fan_in_buffer {int} -- The buffer size of a Group Session's fan-in channel. (default: 16)
        max_groups {int} -- The maximum number of groups in a testcase. (default: 30)
        max_users {int} -- The maximum number of users in a group. (default: 50)
        max_filtered_words {int} -- The maximum number of filtered words read. (default: 50)
        max_word_length {int} -- The maximum length of a filtered word. (default: 20)
    """

    pacing_delay: float = 0.005
    poll_interval: float = 0.05
    fan_in_buffer: int = 16
    max_groups: int = MAX_GROUPS
    max_users: int = MAX_USERS
    max_filtered_words: int = MAX_FILTERED_WORDS
    max_word_length: int = MAX_WORD_LENGTH

    @classmethod
    def from_env(
        cls, environ: typing.Optional[typing.Mapping[str, str]] = None, **overrides
    ) -> "Settings":
        """Builds Settings from MODARC_* environment variables.

        Keyword arguments that are not None take precedence over the
        environment.

            >>> Settings.from_env({'MODARC_MAX_USERS': '8'}).max_users
            8

        Raises:
            ConfigError: An environment variable holds a malformed value.
        """

        if environ is None:
            environ = os.environ

        values = {}

        for field in attr.fields(cls):
            name = ENV_PREFIX + field.name.upper()

            if name in environ:
                try:
                    values[field.name] = field.type(environ[name])

                except ValueError:
                    raise ConfigError(
                        "Malformed value for {}: {}".format(name, repr(environ[name]))
                    ) from None

        values.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**values)


@attr.s(auto_attribs=True, frozen=True)
class GroupConfig:
    """A parsed group descriptor."""

    index: int
    path: pathlib.Path
    user_paths: typing.Tuple[pathlib.Path, ...]

    @property
    def n_users(self) -> int:
        return len(self.user_paths)


@attr.s(auto_attribs=True, frozen=True)
class TestcaseConfig:
    """A parsed top-level testcase configuration."""

    # Not a test class, despite the name.
    __test__ = False

    testcase_id: str
    root: pathlib.Path
    validation_key: int
    app_key: int
    moderator_key: int
    violation_threshold: int
    group_paths: typing.Tuple[pathlib.Path, ...]
    filtered_words_path: pathlib.Path

    @property
    def n_groups(self) -> int:
        return len(self.group_paths)


def testcase_dir(testcase_id: str, base_dir: PathLike = ".") -> pathlib.Path:
    """Returns the directory of a testcase.

        >>> testcase_dir(3, '/data').as_posix()
        '/data/testcase_3'
    """
    return pathlib.Path(base_dir) / "testcase_{}".format(testcase_id)


def _read_tokens(path: pathlib.Path, what: str) -> typing.List[str]:
    try:
        with open(path, encoding="utf-8") as fp:
            return fp.read().split()

    except FileNotFoundError:
        raise ConfigError("{} '{}' does not exist".format(what, path)) from None

    except (OSError, UnicodeDecodeError) as err:
        raise ConfigError("Error reading {} '{}': {}".format(what, path, err)) from err


def _parse_int(token: str, path: pathlib.Path, what: str) -> int:
    try:
        return int(token)

    except ValueError:
        raise ConfigError(
            "Error reading '{}': expected {}, got {}".format(path, what, repr(token))
        ) from None


def load_testcase(
    testcase_id: str,
    base_dir: PathLike = ".",
    settings: typing.Optional[Settings] = None,
) -> TestcaseConfig:
    """Loads and validates the top-level configuration of a testcase.

    Arguments:
        testcase_id {str} -- The testcase identifier.

    Keyword Arguments:
        base_dir {str} -- The directory holding the testcase directories. (default: '.')
        settings {Settings} -- Limits to validate against. (default: Settings())

    Raises:
        ConfigError: input.txt is missing or malformed, or a group file is missing.
        CapacityError: There are more groups than settings.max_groups.

    Returns:
        TestcaseConfig -- The configuration.
    """

    settings = settings or Settings()
    root = testcase_dir(testcase_id, base_dir)
    input_path = root / INPUT_FILE

    tokens = _read_tokens(input_path, "Testcase input")

    if len(tokens) < 5:
        raise ConfigError("Error reading '{}': Invalid format".format(input_path))

    n_groups, validation_key, app_key, moderator_key, threshold = (
        _parse_int(token, input_path, what)
        for token, what in zip(
            tokens[:5],
            (
                "group count",
                "validation key",
                "app key",
                "moderator key",
                "violation threshold",
            ),
        )
    )

    if n_groups < 0:
        raise ConfigError("Error reading '{}': negative group count".format(input_path))

    if len({validation_key, app_key, moderator_key}) != 3:
        raise ConfigError(
            "Error reading '{}': the validation, app and moderator keys must differ".format(
                input_path
            )
        )

    if n_groups > settings.max_groups:
        raise CapacityError(
            "Number of groups ({}) exceeds maximum supported ({})".format(
                n_groups, settings.max_groups
            )
        )

    group_names = tokens[5 : 5 + n_groups]

    if len(group_names) < n_groups:
        raise ConfigError(
            "Error reading group file paths from '{}': expected {}, got {}".format(
                input_path, n_groups, len(group_names)
            )
        )

    group_paths = tuple(root / name for name in group_names)

    for path in group_paths:
        if not path.is_file():
            raise ConfigError("Group file '{}' does not exist".format(path))

    return TestcaseConfig(
        testcase_id=str(testcase_id),
        root=root,
        validation_key=validation_key,
        app_key=app_key,
        moderator_key=moderator_key,
        violation_threshold=threshold,
        group_paths=group_paths,
        filtered_words_path=root / FILTERED_WORDS_FILE,
    )


def load_group(
    path: PathLike,
    index: int,
    testcase_root: PathLike,
    settings: typing.Optional[Settings] = None,
) -> GroupConfig:
    """Loads a group descriptor and checks all of its user scripts exist.

    Arguments:
        path {str} -- The path of the group descriptor.
        index {int} -- The index of the group.
        testcase_root {str} -- The testcase directory user paths are relative to.

    Keyword Arguments:
        settings {Settings} -- Limits to validate against. (default: Settings())

    Raises:
        ConfigError: The descriptor is missing or malformed, or a user
                     script is missing.
        CapacityError: There are more users than settings.max_users.

    Returns:
        GroupConfig -- The group configuration.
    """

    settings = settings or Settings()
    path = pathlib.Path(path)
    tokens = _read_tokens(path, "Group file")

    if not tokens:
        raise ConfigError("Error reading '{}': missing user count".format(path))

    n_users = _parse_int(tokens[0], path, "user count")

    if n_users < 0:
        raise ConfigError("Error reading '{}': negative user count".format(path))

    if n_users > settings.max_users:
        raise CapacityError(
            "Cannot add {} users to group {} (limit is {})".format(
                n_users, index, settings.max_users
            )
        )

    user_names = tokens[1 : 1 + n_users]

    if len(user_names) < n_users:
        raise ConfigError(
            "Error reading user file paths from '{}': expected {}, got {}".format(
                path, n_users, len(user_names)
            )
        )

    user_paths = tuple(pathlib.Path(testcase_root) / name for name in user_names)

    for user_path in user_paths:
        if not user_path.is_file():
            raise ConfigError("User file '{}' does not exist".format(user_path))

    return GroupConfig(index, path, user_paths)


def load_filtered_words(
    path: PathLike, settings: typing.Optional[Settings] = None
) -> typing.FrozenSet[str]:
    """Loads the set of filtered words, lowercased.

    Only the first settings.max_filtered_words words are used; the rest
    are ignored with a warning.

    Raises:
        ConfigError: The file is missing, or a word is too long.

    Returns:
        frozenset -- The filtered words.
    """

    settings = settings or Settings()
    path = pathlib.Path(path)
    words = _read_tokens(path, "Filtered words file")

    if len(words) > settings.max_filtered_words:
        logger.warning(
            "Using only the first %d of %d filtered words in '%s'",
            settings.max_filtered_words,
            len(words),
            path,
        )
        words = words[: settings.max_filtered_words]

    for word in words:
        if len(word) > settings.max_word_length:
            raise ConfigError(
                "Filtered word {} is longer than {} characters".format(
                    repr(word), settings.max_word_length
                )
            )

    return frozenset(word.lower() for word in words)
