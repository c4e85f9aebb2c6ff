"""The modarc command line."""

import functools
import logging
import sys
import typing

import click
import trio

from .app import run_simulation
from .config import Settings, load_filtered_words, load_group, load_testcase
from .errors import ModarcFatalError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> logging.Logger:
    logging.basicConfig(
        format=LOG_FORMAT,
        level=logging.DEBUG if verbose else logging.INFO,
    )
    return logging.getLogger("modarc")


def find_fatal(err: BaseException) -> typing.Optional[ModarcFatalError]:
    """Finds a fatal modarc error, possibly inside (nested) exception groups
    raised by trio nurseries."""

    if isinstance(err, ModarcFatalError):
        return err

    for inner in getattr(err, "exceptions", ()):
        fatal = find_fatal(inner)

        if fatal is not None:
            return fatal

    return None


def fatal_errors_exit(func):
    """Turns fatal modarc errors into a message and exit status 1."""

    @functools.wraps(func)
    def _wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)

        except Exception as err:
            fatal = find_fatal(err)

            if fatal is None:
                raise

            click.echo("Error: {}".format(fatal), err=True)
            sys.exit(1)

    return _wrapper


@click.group()
def main():
    """modarc -- group chat simulation with centralized moderation."""


@main.command()
@click.argument("testcase")
@click.option(
    "--base-dir",
    default=".",
    type=click.Path(file_okay=False),
    help="Directory holding the testcase_<id> directories.",
)
@click.option("--pacing-delay", type=float, default=None, help="Seconds between user messages.")
@click.option("--poll-interval", type=float, default=None, help="Longest wait for chat per cycle.")
@click.option("-v", "--verbose", is_flag=True, help="Log debug messages.")
@fatal_errors_exit
def run(testcase, base_dir, pacing_delay, poll_interval, verbose):
    """Run the simulation of TESTCASE."""

    configure_logging(verbose)

    settings = Settings.from_env(
        pacing_delay=pacing_delay, poll_interval=poll_interval
    )
    config = load_testcase(testcase, base_dir, settings)

    report = trio.run(
        functools.partial(run_simulation, config, settings, base_dir=base_dir)
    )

    for group_id in sorted(report.terminations):
        click.echo(
            "Group {} terminated, {} users removed".format(
                group_id, report.terminations[group_id]
            )
        )

    for removal in report.removals:
        click.echo(
            "User {} from group {} has been removed due to {} violations.".format(
                removal.user_id, removal.group_id, removal.violations
            )
        )

    if report.anomalies:
        click.echo("{} validation anomalies".format(len(report.anomalies)), err=True)


@main.command()
@click.argument("testcase")
@click.option(
    "--base-dir",
    default=".",
    type=click.Path(file_okay=False),
    help="Directory holding the testcase_<id> directories.",
)
@fatal_errors_exit
def check(testcase, base_dir):
    """Validate the configuration of TESTCASE without running it."""

    settings = Settings.from_env()
    config = load_testcase(testcase, base_dir, settings)

    for index, path in enumerate(config.group_paths):
        group = load_group(path, index, config.root, settings)
        click.echo("Group {}: {} users".format(index, group.n_users))

    words = load_filtered_words(config.filtered_words_path, settings)

    click.echo(
        "Testcase {}: {} groups, threshold {}, {} filtered words".format(
            config.testcase_id,
            config.n_groups,
            config.violation_threshold,
            len(words),
        )
    )


if __name__ == "__main__":
    main()
