import json

from stacksmith.engine.entities import ResourceKind, StackConfig
from stacksmith.engine.intrinsics import DeferredToken, get_att, join, ref, stack_value
from stacksmith.engine.stack import Stack
from stacksmith.engine.synthesizer import Document, find_unrestricted_rules


def test_document_lists_resources_in_dependency_order(three_tier_stack):
    document = three_tier_stack.synthesize()

    assert document.logical_ids == ["N1", "D1", "S1"]
    assert document.stack_name == "shop"
    assert document.get("D1").dependencies == ["N1"]
    assert document.get("S1").properties == {
        "Environment": [{"Name": "HOST", "Value": DeferredToken("D1", "Endpoint.Address")}]
    }


def test_tags_merge_stack_tags_and_system_tags(stack_config):
    config = StackConfig(
        stack_name=stack_config.stack_name,
        stage=stack_config.stage,
        tags={"team": "platform", "stacksmith:logical-id": "overridden"},
    )
    stack = Stack(config)
    stack.declare(ResourceKind.CLUSTER, "Cluster")

    tags = stack.synthesize().get("Cluster").tags

    assert tags == {
        "team": "platform",
        "stacksmith:stack-name": "shop",
        "stacksmith:logical-id": "Cluster",
    }


def test_static_values_are_inlined(stack_config):
    stack = Stack(stack_config)
    stack.declare(ResourceKind.ROLE, "TaskRole", {"RoleName": join("-", "task", stack_value("Stage"))})
    stack.declare(ResourceKind.TASK_DEFINITION, "Task", {"TaskRoleArn": get_att("TaskRole", "Arn")})
    stack.declare(ResourceKind.SERVICE, "Service", {"Role": ref("TaskRole")})

    document = stack.synthesize()

    assert document.get("Service").properties == {"Role": "task-dev"}
    assert document.get("Task").properties == {"TaskRoleArn": DeferredToken("TaskRole", "Arn")}


def test_synthesis_is_deterministic(three_tier_stack):
    assert three_tier_stack.synthesize().to_json() == three_tier_stack.synthesize().to_json()


def test_document_serialization(three_tier_stack):
    three_tier_stack.add_output("dbEndpoint", get_att("D1", "Endpoint.Address"), "database host")

    data = json.loads(three_tier_stack.synthesize().to_json())

    assert data["FormatVersion"]
    assert data["StackName"] == "shop"
    assert data["Region"] == "eu-central-1"
    assert [resource["LogicalResourceId"] for resource in data["Resources"]] == ["N1", "D1", "S1"]
    assert data["Resources"][2]["Properties"]["Environment"][0]["Value"] == {
        "Fn::GetAtt": ["D1", "Endpoint.Address"]
    }
    assert data["Outputs"] == {
        "dbEndpoint": {
            "Value": {"Fn::GetAtt": ["D1", "Endpoint.Address"]},
            "Description": "database host",
        }
    }


def test_document_from_json_ignores_unknown_fields(three_tier_stack):
    document = three_tier_stack.synthesize()
    data = json.loads(document.to_json())
    data["FutureField"] = {"some": "value"}
    data["Resources"][0]["UpdatePolicy"] = "Retain"

    loaded = Document.from_dict(data)

    assert loaded.logical_ids == document.logical_ids
    assert loaded.get("S1").properties == document.get("S1").properties
    assert loaded.get("N1").tags == document.get("N1").tags


def test_unrestricted_rules_are_reported(stack_config):
    stack = Stack(stack_config)
    stack.declare(
        ResourceKind.SECURITY_GROUP,
        "LbSg",
        {
            "SecurityGroupIngress": [
                {"IpProtocol": "tcp", "FromPort": 8069, "ToPort": 8069, "CidrIp": "0.0.0.0/0"},
                {"IpProtocol": "tcp", "FromPort": 443, "ToPort": 443, "CidrIp": "10.0.0.0/8"},
            ],
            "SecurityGroupEgress": [{"IpProtocol": "-1", "CidrIp": "0.0.0.0/0"}],
        },
    )

    findings = find_unrestricted_rules(stack.synthesize())

    assert findings == [
        "LbSg: SecurityGroupIngress rule (tcp/8069) is open to 0.0.0.0/0",
        "LbSg: SecurityGroupEgress rule (all traffic) is open to 0.0.0.0/0",
    ]
