import json
import textwrap

import pytest

from stacksmith.engine.entities import ResourceKind, StackConfig
from stacksmith.engine.exceptions import DuplicateIdError, TemplateError
from stacksmith.engine.intrinsics import Join, Reference, StackValue
from stacksmith.engine.template import load_stack, parse_template, read_template

YAML_TEMPLATE = textwrap.dedent(
    """
    Description: shop backend
    Tags:
      team: platform
    Resources:
      Vpc:
        Type: Network
        Properties:
          CidrBlock: 10.0.0.0/16
          CreatedOn: 2024-01-01
      Database:
        Type: Database
        DependsOn: Vpc
        Properties:
          DBInstanceIdentifier: !Join ["-", [!Ref "Stack::Name", db, !Ref "Stack::Stage"]]
          Engine: postgres
      Service:
        Type: Service
        Properties:
          Environment:
            - Name: DB_HOST
              Value: !GetAtt Database.Endpoint.Address
            - Name: VPC
              Value: !Ref Vpc
    Outputs:
      dbEndpoint:
        Description: database host
        Value: !GetAtt [Database, Endpoint.Address]
    """
)


def test_parse_yaml_template():
    template = parse_template(YAML_TEMPLATE)

    # dates are kept as strings
    assert template["Resources"]["Vpc"]["Properties"]["CreatedOn"] == "2024-01-01"
    assert template["Resources"]["Service"]["Properties"]["Environment"][1]["Value"] == {"Ref": "Vpc"}


def test_parse_json_template():
    body = json.dumps({"Resources": {"Vpc": {"Type": "Network"}}})
    assert parse_template(body) == {"Resources": {"Vpc": {"Type": "Network"}}}


@pytest.mark.parametrize("body", ["Resources: [unclosed", "- just\n- a list\n", "42"])
def test_parse_invalid_templates(body):
    with pytest.raises(TemplateError):
        parse_template(body)


def test_load_stack(tmp_path, stack_config):
    path = tmp_path / "shop.yaml"
    path.write_text(YAML_TEMPLATE)

    stack = load_stack(str(path), stack_config)

    assert [node.logical_id for node in stack] == ["Vpc", "Database", "Service"]
    assert stack.config.tags == {"team": "platform"}
    database = stack.get("Database")
    assert database.kind == ResourceKind.DATABASE
    assert database.depends_on == {"Vpc"}
    assert database.properties["DBInstanceIdentifier"] == Join(
        "-", [StackValue("Name"), "db", StackValue("Stage")]
    )
    assert stack.get("Service").properties["Environment"][0]["Value"] == Reference(
        "Database", "Endpoint.Address"
    )
    assert stack.outputs["dbEndpoint"].value == Reference("Database", "Endpoint.Address")
    assert stack.outputs["dbEndpoint"].description == "database host"

    document = stack.synthesize()
    assert document.get("Database").properties["DBInstanceIdentifier"] == "shop-db-dev"


def test_configured_tags_override_template_tags():
    config = StackConfig(stack_name="shop", tags={"team": "data"})
    stack = load_stack({"Tags": {"team": "platform", "cost": 1}, "Resources": {"Vpc": {"Type": "Network"}}}, config)

    assert stack.config.tags == {"team": "data", "cost": "1"}


@pytest.mark.parametrize(
    "template,message",
    [
        ({}, "at least one resource"),
        ({"Resources": {"Vpc": "Network"}}, "must be a mapping with a Type"),
        ({"Resources": {"Vpc": {"Type": "Bucket"}}}, "Unknown resource kind"),
        ({"Resources": {"bad id": {"Type": "Network"}}}, "Invalid logical id"),
        ({"Resources": {"Vpc": {"Type": "Network", "Properties": []}}}, "must be a mapping"),
        ({"Resources": {"Vpc": {"Type": "Network", "DependsOn": [1]}}}, "DependsOn"),
        ({"Resources": {"Vpc": {"Type": "Network", "Properties": {"Id": {"Ref": ""}}}}}, "Invalid intrinsic"),
        ({"Resources": {"Vpc": {"Type": "Network"}}, "Outputs": {"id": {"Ref": "Vpc"}}}, "must have a Value"),
        ({"Resources": {"Vpc": {"Type": "Network"}}, "Tags": ["a"]}, "Tags must be a mapping"),
        ({"Resources": {"Vpc": {"Type": "Network"}}, "Tags": []}, "Tags must be a mapping"),
        ({"Resources": {"Vpc": {"Type": "Network"}}, "Outputs": []}, "Outputs must be a mapping"),
        ({"Resources": {"Vpc": {"Type": "Network", "DependsOn": ""}}}, "DependsOn"),
        ({"Resources": {"Vpc": {"Type": "Network", "DependsOn": {}}}}, "DependsOn"),
    ],
)
def test_invalid_templates(template, message, stack_config):
    with pytest.raises(TemplateError, match=message) as e:
        load_stack(template, stack_config)
    assert e.value.exit_code == 8


def test_missing_template_file(tmp_path):
    with pytest.raises(TemplateError, match="Unable to read template"):
        read_template(str(tmp_path / "missing.yaml"))


def test_duplicate_output_key(stack_config):
    stack = load_stack(
        {"Resources": {"Vpc": {"Type": "Network"}}, "Outputs": {"a": {"Value": "x"}}}, stack_config
    )
    with pytest.raises(DuplicateIdError):
        stack.add_output("a", "y")


def test_empty_sections_are_optional(stack_config):
    stack = load_stack(
        parse_template(
            "Tags:\nOutputs:\nResources:\n  Vpc:\n    Type: Network\n    Properties:\n    DependsOn:\n"
        ),
        stack_config,
    )

    assert stack.get("Vpc").properties == {}
    assert stack.get("Vpc").depends_on == set()
    assert stack.outputs == {}
