import os
import sys

from stacksmith.cli.profiles import parse_profile_argument, set_profile_from_sys_argv


def profile_test(monkeypatch, input_args, expected_profile, expected_argv):
    monkeypatch.setattr(sys, "argv", input_args)
    monkeypatch.setenv("CONFIG_PROFILE", "")
    set_profile_from_sys_argv()
    assert os.environ["CONFIG_PROFILE"] == expected_profile
    assert sys.argv == expected_argv


def test_profiles_equals_notation(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=["--profile=non-existing-test-profile"],
        expected_profile="non-existing-test-profile",
        expected_argv=[],
    )


def test_profiles_separate_args_notation(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=["--profile", "non-existing-test-profile"],
        expected_profile="non-existing-test-profile",
        expected_argv=[],
    )


def test_p_equals_notation(monkeypatch):
    # the short flag is left for click, which accepts and ignores it
    profile_test(
        monkeypatch,
        input_args=["smith", "-p=non-existing-test-profile", "plan"],
        expected_profile="non-existing-test-profile",
        expected_argv=["smith", "-p=non-existing-test-profile", "plan"],
    )


def test_p_separate_args_notation(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=["smith", "-p", "non-existing-test-profile", "plan"],
        expected_profile="non-existing-test-profile",
        expected_argv=["smith", "-p", "non-existing-test-profile", "plan"],
    )


def test_profiles_args_before_and_after(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=["smith", "-d", "--profile=non-existing-test-profile", "apply", "erp"],
        expected_profile="non-existing-test-profile",
        expected_argv=["smith", "-d", "apply", "erp"],
    )


def test_profiles_args_multiple_profile_args(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=[
            "smith",
            "--profile",
            "non-existing-test-profile",
            "plan",
            "--profile",
            "another-profile",
        ],
        expected_profile="another-profile",
        expected_argv=["smith", "plan"],
    )


def test_no_profile(monkeypatch):
    profile_test(
        monkeypatch,
        input_args=["smith", "plan", "erp"],
        expected_profile="",
        expected_argv=["smith", "plan", "erp"],
    )


def test_parse_profile_argument():
    assert parse_profile_argument(["-p", "dev"]) == "dev"
    assert parse_profile_argument(["-p=dev"]) == "dev"
    assert parse_profile_argument(["-p"]) is None
    assert parse_profile_argument(["plan"]) is None
