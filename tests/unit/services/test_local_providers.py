import json
import logging

import pytest

from stacksmith.engine.entities import ResourceKind
from stacksmith.engine.resource_provider import (
    OperationStatus,
    ResourceAction,
    ResourceProviderExecutor,
    ResourceRequest,
    load_resource_provider,
)
from stacksmith.services.local.provider import (
    DatabaseProvider,
    LOCAL_PROVIDERS,
    NetworkProvider,
    SecretProvider,
    create_local_providers,
    generate_secret_string,
    secret_values,
)


def _request(kind: ResourceKind, desired_state: dict, action=ResourceAction.CREATE, **kwargs):
    return ResourceRequest(
        stack_name="shop",
        account_id="111111111111",
        region_name="eu-central-1",
        action=action,
        desired_state=desired_state,
        logical_resource_id=kwargs.pop("logical_resource_id", "Resource"),
        resource_type=kind.value,
        logger=logging.getLogger(__name__),
        **kwargs,
    )


def test_every_kind_has_a_local_provider():
    assert set(LOCAL_PROVIDERS) == set(ResourceKind)
    assert set(create_local_providers()) == {kind.value for kind in ResourceKind}


@pytest.mark.parametrize("kind", list(ResourceKind))
def test_plugins_load_local_providers(kind):
    provider = load_resource_provider(kind.value)
    assert isinstance(provider, LOCAL_PROVIDERS[kind])


@pytest.mark.parametrize("kind", list(ResourceKind))
def test_create_assigns_physical_id(kind):
    provider = LOCAL_PROVIDERS[kind]()

    event = provider.create(_request(kind, {}))

    assert event.status == OperationStatus.SUCCESS
    physical_id = ResourceProviderExecutor.extract_physical_resource_id_from_model_with_schema(
        event.resource_model, provider.SCHEMA
    )
    assert physical_id


def test_network_ids_are_deterministic():
    provider = NetworkProvider()
    first = provider.create(_request(ResourceKind.NETWORK, {"CidrBlock": "10.0.0.0/16"}))
    second = provider.create(_request(ResourceKind.NETWORK, {"CidrBlock": "10.0.0.0/16"}))
    other = provider.create(
        _request(ResourceKind.NETWORK, {"CidrBlock": "10.0.0.0/16"}, logical_resource_id="Other")
    )

    assert first.resource_model["VpcId"].startswith("vpc-")
    assert len(first.resource_model["VpcId"]) == len("vpc-") + 17
    assert first.resource_model == second.resource_model
    assert other.resource_model["VpcId"] != first.resource_model["VpcId"]


def test_database_endpoint():
    event = DatabaseProvider().create(
        _request(
            ResourceKind.DATABASE,
            {"DBInstanceIdentifier": "Shop-DB", "Engine": "postgres"},
            logical_resource_id="Database",
        )
    )

    model = event.resource_model
    assert model["DBInstanceIdentifier"] == "shop-db"
    assert model["Endpoint"]["Address"].startswith("shop-db.c")
    assert model["Endpoint"]["Address"].endswith(".eu-central-1.rds.amazonaws.com")
    assert model["Endpoint"]["Port"] == "5432"
    assert model["DbiResourceId"].startswith("db-")


def test_database_replacement_gets_new_endpoint():
    provider = DatabaseProvider()
    postgres = provider.create(_request(ResourceKind.DATABASE, {"Engine": "postgres"}))
    mysql = provider.create(_request(ResourceKind.DATABASE, {"Engine": "mysql", "Port": 3306}))

    assert postgres.resource_model["Endpoint"]["Address"] != mysql.resource_model["Endpoint"]["Address"]
    assert mysql.resource_model["Endpoint"]["Port"] == "3306"


def test_update_keeps_assigned_attributes():
    provider = DatabaseProvider()
    created = provider.create(
        _request(ResourceKind.DATABASE, {"Engine": "postgres", "EngineVersion": "14.7"})
    )
    updated = provider.update(
        _request(
            ResourceKind.DATABASE,
            {"Engine": "postgres", "EngineVersion": "15.2"},
            action=ResourceAction.UPDATE,
        )
    )

    assert updated.resource_model["EngineVersion"] == "15.2"
    assert updated.resource_model["Endpoint"] == created.resource_model["Endpoint"]


def test_secret_value_is_generated_and_not_in_model():
    provider = SecretProvider()
    event = provider.create(
        _request(
            ResourceKind.SECRET,
            {
                "Name": "shop-credentials",
                "GenerateSecretString": {
                    "SecretStringTemplate": json.dumps({"username": "opususer"}),
                    "GenerateStringKey": "password",
                    "PasswordLength": 20,
                    "ExcludeCharacters": "\"@/\\",
                },
            },
        )
    )

    arn = event.resource_model["Arn"]
    assert arn.startswith("arn:aws:secretsmanager:eu-central-1:111111111111:secret:shop-credentials-")
    assert event.resource_model["Id"] == arn
    secret = json.loads(secret_values.get(arn))
    assert secret["password"] not in json.dumps(event.resource_model)
    assert secret["username"] == "opususer"
    assert len(secret["password"]) == 20
    assert not set(secret["password"]) & set("\"@/\\")

    provider.delete(
        _request(ResourceKind.SECRET, {}, action=ResourceAction.DELETE, physical_resource_id=arn)
    )
    assert secret_values.get(arn) is None


def test_generate_secret_string_without_template():
    assert len(generate_secret_string({"PasswordLength": 12})) == 12
