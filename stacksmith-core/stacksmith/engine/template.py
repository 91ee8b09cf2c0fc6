"""
Stack templates: YAML or JSON documents declaring resources, outputs and stack tags.

.. code-block:: yaml

    Tags:
      team: platform
    Resources:
      Vpc:
        Type: Network
        Properties:
          CidrBlock: 10.0.0.0/16
      Subnet:
        Type: Subnet
        Properties:
          VpcId: !Ref Vpc       # or {"Ref": "Vpc"}
        DependsOn: [Vpc]
    Outputs:
      vpcId:
        Value: {"Ref": "Vpc"}
"""

import json
import logging
import os
from typing import Any, Optional, Union

import yaml

from stacksmith.engine.entities import StackConfig
from stacksmith.engine.exceptions import TemplateError
from stacksmith.engine.intrinsics import GET_ATT, JOIN, REF, parse_value
from stacksmith.engine.stack import Stack

LOG = logging.getLogger(__name__)

TEMPLATE_SECTIONS = ("Resources", "Outputs", "Tags", "Description")
RESOURCE_KEYS = ("Type", "Properties", "DependsOn")


class NoDatesSafeLoader(yaml.SafeLoader):
    """Safe yaml loader that parses date strings as strings, not date objects."""


NoDatesSafeLoader.yaml_implicit_resolvers = {
    k: [r for r in v if r[0] != "tag:yaml.org,2002:timestamp"]
    for k, v in NoDatesSafeLoader.yaml_implicit_resolvers.items()
}


def _construct_ref(loader: yaml.SafeLoader, node: yaml.Node) -> dict:
    return {REF: loader.construct_scalar(node)}


def _construct_get_att(loader: yaml.SafeLoader, node: yaml.Node) -> dict:
    if isinstance(node, yaml.ScalarNode):
        return {GET_ATT: loader.construct_scalar(node)}
    return {GET_ATT: loader.construct_sequence(node, deep=True)}


def _construct_join(loader: yaml.SafeLoader, node: yaml.Node) -> dict:
    return {JOIN: loader.construct_sequence(node, deep=True)}


NoDatesSafeLoader.add_constructor("!Ref", _construct_ref)
NoDatesSafeLoader.add_constructor("!GetAtt", _construct_get_att)
NoDatesSafeLoader.add_constructor("!Join", _construct_join)


def parse_template(template_body: str) -> dict:
    """
    Parses a template body. JSON is tried first, everything else is parsed as YAML.

    :raises TemplateError: if the body is neither valid JSON nor YAML, or is not a mapping
    """
    try:
        template = json.loads(template_body)
    except ValueError:
        try:
            template = yaml.load(template_body, Loader=NoDatesSafeLoader)
        except yaml.YAMLError as e:
            raise TemplateError(f"Unable to parse template: {e}") from e
    if not isinstance(template, dict):
        raise TemplateError("Template must be a mapping with a Resources section")
    return template


def read_template(path: Union[str, os.PathLike]) -> dict:
    try:
        with open(path, "r") as fd:
            body = fd.read()
    except OSError as e:
        raise TemplateError(f"Unable to read template {path}: {e}") from e
    return parse_template(body)


def load_stack(source: Union[str, os.PathLike, dict], config: StackConfig) -> Stack:
    """
    Creates a stack from a template.

    :param source: path of a template file, or an already parsed template
    :param config: configuration of the stack; template ``Tags`` are added to the configured tags
    :raises TemplateError: if the template is malformed
    :raises DuplicateIdError: if an output key is declared twice
    """
    template = source if isinstance(source, dict) else read_template(source)

    for section in template:
        if section not in TEMPLATE_SECTIONS:
            LOG.debug("Ignoring unknown template section %s", section)

    tags = template.get("Tags")
    if tags is None:
        tags = {}
    if not isinstance(tags, dict):
        raise TemplateError("Tags must be a mapping of tag names to values")
    if tags:
        config = StackConfig(
            stack_name=config.stack_name,
            stage=config.stage,
            region=config.region,
            account=config.account,
            tags={**{str(k): str(v) for k, v in tags.items()}, **config.tags},
        )

    resources = template.get("Resources")
    if not isinstance(resources, dict) or not resources:
        raise TemplateError("Template must declare at least one resource in its Resources section")

    stack = Stack(config)
    for logical_id, definition in resources.items():
        _declare_resource(stack, str(logical_id), definition)

    outputs = template.get("Outputs")
    if outputs is None:
        outputs = {}
    if not isinstance(outputs, dict):
        raise TemplateError("Outputs must be a mapping")
    for key, definition in outputs.items():
        if not isinstance(definition, dict) or "Value" not in definition:
            raise TemplateError(f"Output {key} must have a Value")
        stack.add_output(
            str(key),
            _parse_intrinsics(definition["Value"], f"Outputs.{key}"),
            description=definition.get("Description"),
        )
    return stack


def _declare_resource(stack: Stack, logical_id: str, definition: Any):
    if not isinstance(definition, dict) or "Type" not in definition:
        raise TemplateError(f"Resource {logical_id} must be a mapping with a Type")
    for key in definition:
        if key not in RESOURCE_KEYS:
            LOG.debug("Ignoring unknown key %s of resource %s", key, logical_id)

    properties = definition.get("Properties")
    if properties is None:
        properties = {}
    if not isinstance(properties, dict):
        raise TemplateError(f"Properties of resource {logical_id} must be a mapping")

    depends_on = definition.get("DependsOn")
    if depends_on is None:
        depends_on = []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(isinstance(d, str) and d for d in depends_on):
        raise TemplateError(f"DependsOn of resource {logical_id} must be a list of logical ids")

    try:
        stack.declare(
            definition["Type"],
            logical_id,
            properties=_parse_intrinsics(properties, logical_id),
            depends_on=depends_on,
        )
    except ValueError as e:
        raise TemplateError(f"Invalid resource {logical_id}: {e}") from e


def _parse_intrinsics(value: Any, context: Optional[str] = None) -> Any:
    try:
        return parse_value(value)
    except ValueError as e:
        raise TemplateError(f"Invalid intrinsic function in {context}: {e}") from e
