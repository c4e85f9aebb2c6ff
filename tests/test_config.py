"""Tests for testcase loading and settings."""

import pytest

from modarc.config import (
    Settings,
    load_filtered_words,
    load_group,
    load_testcase,
)
from modarc import config as modarc_config
from modarc.errors import CapacityError, ConfigError

from conftest import APP_KEY, MODERATOR_KEY, VALIDATION_KEY


def test_load_testcase(make_testcase):
    base = make_testcase([[["1 a"], ["2 b"]], [["3 c"]]], threshold=4)
    config = load_testcase("1", base)

    assert config.root == modarc_config.testcase_dir("1", base)
    assert config.n_groups == 2
    assert (config.validation_key, config.app_key, config.moderator_key) == (
        VALIDATION_KEY,
        APP_KEY,
        MODERATOR_KEY,
    )
    assert config.violation_threshold == 4
    assert config.group_paths[1] == config.root / "groups" / "group_1.txt"


def test_load_group(make_testcase):
    base = make_testcase([[["1 a"], [], ["3 c"]]])
    config = load_testcase("1", base)
    group = load_group(config.group_paths[0], 0, config.root)

    assert group.index == 0
    assert group.n_users == 3
    assert group.user_paths[2] == config.root / "users" / "user_0_2.txt"


def test_missing_testcase(tmp_path):
    with pytest.raises(ConfigError):
        load_testcase("9", tmp_path)


@pytest.mark.parametrize(
    "contents",
    ["", "1 2 3", "x 1 2 3 4", "2 1 2 3 4\ngroups/a.txt", "1 5 5 6 3\ngroups/a.txt"],
)
def test_malformed_input(tmp_path, contents):
    root = tmp_path / "testcase_1"
    (root / "groups").mkdir(parents=True)
    (root / "groups" / "a.txt").write_text("0\n")
    (root / "input.txt").write_text(contents)

    with pytest.raises(ConfigError):
        load_testcase("1", tmp_path)


def test_missing_group_file(make_testcase):
    base = make_testcase([[["1 a"]]])
    (base / "testcase_1" / "groups" / "group_0.txt").unlink()

    with pytest.raises(ConfigError, match="does not exist"):
        load_testcase("1", base)


def test_too_many_groups(make_testcase):
    base = make_testcase([[], [], []])

    with pytest.raises(CapacityError):
        load_testcase("1", base, Settings(max_groups=2))


def test_too_many_users(make_testcase):
    base = make_testcase([[[], [], []]])
    config = load_testcase("1", base)

    with pytest.raises(CapacityError):
        load_group(config.group_paths[0], 0, config.root, Settings(max_users=2))


def test_missing_user_file(make_testcase):
    base = make_testcase([[["1 a"], ["2 b"]]])
    config = load_testcase("1", base)
    (config.root / "users" / "user_0_1.txt").unlink()

    with pytest.raises(ConfigError, match="user_0_1"):
        load_group(config.group_paths[0], 0, config.root)


def test_short_group_file(make_testcase):
    base = make_testcase([[["1 a"]]])
    config = load_testcase("1", base)
    config.group_paths[0].write_text("3\nusers/user_0_0.txt\n")

    with pytest.raises(ConfigError):
        load_group(config.group_paths[0], 0, config.root)


def test_filtered_words(make_testcase):
    base = make_testcase([], words=["Spam", "scam", "SPAM"])
    config = load_testcase("1", base)

    assert load_filtered_words(config.filtered_words_path) == {"spam", "scam"}


def test_filtered_words_bounded(make_testcase):
    base = make_testcase([], words=["w{}".format(i) for i in range(10)])
    config = load_testcase("1", base)
    words = load_filtered_words(config.filtered_words_path, Settings(max_filtered_words=4))

    assert words == {"w0", "w1", "w2", "w3"}


def test_filtered_word_too_long(make_testcase):
    base = make_testcase([], words=["x" * 30])
    config = load_testcase("1", base)

    with pytest.raises(ConfigError):
        load_filtered_words(config.filtered_words_path)


def test_settings_from_env():
    settings = Settings.from_env(
        {"MODARC_POLL_INTERVAL": "0.5", "MODARC_MAX_GROUPS": "3", "OTHER": "x"},
        pacing_delay=0.25,
        max_users=None,
    )

    assert settings.poll_interval == 0.5
    assert settings.max_groups == 3
    assert settings.pacing_delay == 0.25
    assert settings.max_users == Settings().max_users


def test_settings_from_env_malformed():
    with pytest.raises(ConfigError):
        Settings.from_env({"MODARC_MAX_USERS": "many"})
