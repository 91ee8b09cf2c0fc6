import json
import logging
import os
import textwrap

import click
import pytest
from click.testing import CliRunner

from stacksmith import config
from stacksmith.cli.exceptions import CLIError
from stacksmith.cli.smith import smith as cli
from stacksmith.constants import VERSION
from stacksmith.engine.exceptions import CyclicDependencyError
from stacksmith.engine.state import FileStateStore
from stacksmith.services.local import provider as local_provider

TEMPLATE = textwrap.dedent(
    """
    Resources:
      Vpc:
        Type: Network
        Properties:
          CidrBlock: 10.0.0.0/16
      Database:
        Type: Database
        DependsOn: Vpc
        Properties:
          Engine: postgres
          EngineVersion: "14.7"
      Service:
        Type: Service
        Properties:
          Environment:
            - Name: DB_HOST
              Value: !GetAtt Database.Endpoint.Address
    Outputs:
      dbEndpoint:
        Value: !GetAtt Database.Endpoint.Address
    """
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    return str(tmp_path / "cli-state")


@pytest.fixture
def template_file(tmp_path):
    def _write(body: str = TEMPLATE, name: str = "shop.yaml") -> str:
        path = tmp_path / name
        path.write_text(body)
        return str(path)

    return _write


def _invoke(runner, state_dir, *args):
    return runner.invoke(cli, ["--state-dir", state_dir, *args])


@pytest.mark.parametrize(
    "exception,expected_message",
    [
        (KeyError("NoneType"), "Error: 'NoneType'"),
        (Exception("Unexpected"), "Error: Unexpected"),
        (CyclicDependencyError(["A", "B"]), "Error: Circular dependency"),
    ],
)
def test_error_handling(runner: CliRunner, monkeypatch, exception, expected_message):
    """Test different globally handled exceptions, their status code, and error message."""

    def mock_call():
        raise exception

    from stacksmith.cli import smith

    monkeypatch.setattr(smith, "_load_stack", lambda *args: mock_call())
    result = runner.invoke(cli, ["synth", "erp"])
    assert result.exit_code == getattr(exception, "exit_code", 1)
    assert expected_message in result.output


def test_cli_error_exit_code():
    error = CLIError("stack is locked", exit_code=7)
    assert error.exit_code == 7
    assert "stack is locked" in error.format_message()


def test_create_with_plugins(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("synth", "plan", "diff", "apply", "destroy", "config"):
        assert command in result.output


@pytest.mark.parametrize("flag", ["--version", "-v"])
def test_version(runner, flag):
    result = runner.invoke(cli, [flag])
    assert result.exit_code == 0
    assert result.output.strip() == f"stacksmith CLI {VERSION}"


def test_synth_json(runner, state_dir, template_file):
    result = _invoke(runner, state_dir, "synth", template_file(), "--stage", "prod", "-f", "json")

    assert result.exit_code == 0, result.output
    document = json.loads(result.output)
    assert document["StackName"] == "shop"
    assert document["Stage"] == "prod"
    assert [r["LogicalResourceId"] for r in document["Resources"]] == ["Vpc", "Database", "Service"]
    assert document["Resources"][2]["Properties"]["Environment"][0]["Value"] == {
        "Fn::GetAtt": ["Database", "Endpoint.Address"]
    }


def test_synth_writes_out_file(runner, state_dir, template_file, tmp_path):
    out = str(tmp_path / "document.json")

    result = _invoke(runner, state_dir, "synth", template_file(), "--stack-name", "other", "-o", out)

    assert result.exit_code == 0, result.output
    assert "Vpc" in result.output
    with open(out) as fd:
        assert json.load(fd)["StackName"] == "other"


def test_synth_bundled_topology(runner, state_dir):
    result = _invoke(runner, state_dir, "synth", "erp")

    assert result.exit_code == 0, result.output
    assert "Vpc" in result.output
    assert "review required" in result.output


def test_synth_tags(runner, state_dir, template_file):
    result = _invoke(
        runner, state_dir, "synth", template_file(), "--tag", "owner=ops", "--tag", "cost=1", "-f", "json"
    )

    assert result.exit_code == 0, result.output
    tags = json.loads(result.output)["Resources"][0]["Tags"]
    assert tags["owner"] == "ops"
    assert tags["cost"] == "1"


def test_invalid_tag(runner, state_dir, template_file):
    result = _invoke(runner, state_dir, "synth", template_file(), "--tag", "owner")
    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


def test_unknown_source(runner, state_dir):
    result = _invoke(runner, state_dir, "synth", "does-not-exist")
    assert result.exit_code == 2
    assert "neither a template file nor a bundled topology" in result.output


def test_invalid_stack_name(runner, state_dir, template_file):
    result = _invoke(runner, state_dir, "synth", template_file(), "--stack-name", "not valid")
    assert result.exit_code == 2


@pytest.mark.parametrize(
    "body,exit_code",
    [
        ("Resources:\n  Vpc:\n    Type: Bucket\n", 8),
        ("Resources: [unclosed", 8),
        ("Resources:\n  Service:\n    Type: Service\n    Properties:\n      Host: !Ref Missing\n", 4),
        (
            "Resources:\n"
            "  A:\n    Type: Network\n    DependsOn: B\n"
            "  B:\n    Type: Network\n    DependsOn: A\n",
            5,
        ),
    ],
)
def test_engine_error_exit_codes(runner, state_dir, template_file, body, exit_code):
    result = _invoke(runner, state_dir, "synth", template_file(body))
    assert result.exit_code == exit_code
    assert "Error:" in result.output


def test_plan_apply_and_noop(runner, state_dir, template_file):
    source = template_file()

    result = _invoke(runner, state_dir, "plan", source, "-f", "json")
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["Summary"]["Create"] == 3

    result = _invoke(runner, state_dir, "apply", source, "-f", "json")
    assert result.exit_code == 0, result.output
    applied = json.loads(result.output)
    assert [o["Status"] for o in applied["Outcomes"]] == ["Success"] * 3
    assert applied["Outputs"]["dbEndpoint"].endswith(".rds.amazonaws.com")
    assert os.path.exists(os.path.join(state_dir, "shop.state.json"))

    result = _invoke(runner, state_dir, "plan", source)
    assert result.exit_code == 0, result.output
    assert "No changes" in result.output

    result = _invoke(runner, state_dir, "diff", source)
    assert result.exit_code == 0, result.output
    assert "is up to date" in result.output


def test_plan_table(runner, state_dir, template_file):
    result = _invoke(runner, state_dir, "plan", template_file())
    assert result.exit_code == 0, result.output
    assert "3 to create" in result.output


def test_diff_after_version_change(runner, state_dir, template_file):
    _invoke(runner, state_dir, "apply", template_file())

    result = _invoke(
        runner, state_dir, "diff", template_file(TEMPLATE.replace('"14.7"', '"15.2"')), "-f", "json"
    )

    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)
    assert {
        "LogicalResourceId": "Database",
        "Action": "Update",
        "Attribute": "EngineVersion",
        "Before": "14.7",
        "After": "15.2",
    } in rows


def test_diff_of_new_stack_lists_created_properties(runner, state_dir, template_file):
    result = _invoke(runner, state_dir, "diff", template_file(), "-f", "json")

    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)
    assert {
        "LogicalResourceId": "Vpc",
        "Action": "Create",
        "Attribute": "CidrBlock",
        "Before": None,
        "After": "10.0.0.0/16",
    } in rows


def test_apply_partial_failure(runner, state_dir, template_file, monkeypatch, create_provider):
    provider = create_provider(failing=["Database"])
    monkeypatch.setattr(local_provider, "create_local_providers", provider.as_providers)

    result = _invoke(runner, state_dir, "apply", template_file(), "-f", "json")

    assert result.exit_code == 6
    assert "Database exploded" in result.output
    assert provider.logical_ids("create") == ["Vpc", "Database"]
    state = FileStateStore(state_dir).load("shop")
    assert list(state.resources) == ["Vpc"]


def test_apply_locked_stack(runner, state_dir, template_file, monkeypatch):
    monkeypatch.setattr(config, "STATE_LOCK_TIMEOUT", 0.1)
    other = FileStateStore(state_dir, lock_timeout=0.1)

    with other.lock("shop"):
        result = _invoke(runner, state_dir, "apply", template_file())

    assert result.exit_code == 7


def test_destroy(runner, state_dir, template_file):
    _invoke(runner, state_dir, "apply", template_file())

    result = _invoke(runner, state_dir, "destroy", "shop", "--yes", "-f", "json")

    assert result.exit_code == 0, result.output
    outcomes = json.loads(result.output)["Outcomes"]
    assert [o["LogicalResourceId"] for o in outcomes] == ["Service", "Database", "Vpc"]
    assert FileStateStore(state_dir).load("shop").is_empty()


def test_destroy_asks_for_confirmation(runner, state_dir, template_file):
    _invoke(runner, state_dir, "apply", template_file())

    result = runner.invoke(cli, ["--state-dir", state_dir, "destroy", "shop"], input="n\n")

    assert result.exit_code == 1
    assert not FileStateStore(state_dir).load("shop").is_empty()


def test_destroy_unknown_stack(runner, state_dir):
    result = _invoke(runner, state_dir, "destroy", "unknown", "--yes")
    assert result.exit_code == 0
    assert "has no recorded resources" in result.output


def test_config_show(runner, state_dir):
    result = _invoke(runner, state_dir, "config", "show", "-f", "json")

    assert result.exit_code == 0, result.output
    values = json.loads(result.output)
    assert values["STATE_DIR"] == state_dir
    assert "APPLY_MAX_WORKERS" in values


def test_debug_flag(runner, state_dir, template_file, monkeypatch):
    from stacksmith.logging import setup

    levels = []
    monkeypatch.setattr(setup, "setup_logging_for_cli", levels.append)
    monkeypatch.setattr(config, "DEBUG", False)
    monkeypatch.setenv("DEBUG", "0")

    result = runner.invoke(cli, ["--debug", "--state-dir", state_dir, "plan", template_file()])

    assert result.exit_code == 0, result.output
    assert config.DEBUG
    assert levels == [logging.DEBUG]


def test_click_exceptions_are_not_wrapped(runner, monkeypatch):
    from stacksmith.cli import smith

    def _raise(*args):
        raise click.BadParameter("bad source")

    monkeypatch.setattr(smith, "_load_stack", _raise)
    result = runner.invoke(cli, ["plan", "erp"])
    assert result.exit_code == 2
