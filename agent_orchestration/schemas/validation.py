# agent_orchestration/schemas/validation.py
import jsonschema
from typing import Dict, Any

from agent_orchestration.core.errors import (
    CapabilitySchemaError,
    InvalidInputError,
    PlanningFailedError,
)
from agent_orchestration.core.models import Capability, Domain
from agent_orchestration.schemas.workflow_schema import PLAN_SCHEMA


def validate_plan(plan: Dict[str, Any]):
    """Validate a parsed plan document against the plan schema"""
    try:
        jsonschema.validate(instance=plan, schema=PLAN_SCHEMA)
    except jsonschema.ValidationError as e:
        raise PlanningFailedError(f"Plan validation failed: {e.message}", e)


def validate_capability(capability: Capability):
    """Check a capability's declared schemas at registration time"""
    if not isinstance(capability.domain, Domain):
        raise CapabilitySchemaError(
            f"Capability {capability.name} has unknown domain {capability.domain!r}"
        )

    for label, schema in (("input", capability.input_schema),
                          ("output", capability.output_schema)):
        if not isinstance(schema, dict):
            raise CapabilitySchemaError(
                f"Capability {capability.name} {label} schema must be an object"
            )
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise CapabilitySchemaError(
                f"Capability {capability.name} has an invalid {label} schema: {e.message}", e
            )
        if schema.get("type", "object") != "object":
            raise CapabilitySchemaError(
                f"Capability {capability.name} {label} schema must describe an object"
            )


def validate_payload(capability: Capability, payload: Dict[str, Any]):
    """Validate a task input against its capability's input schema.

    Fields not declared in the schema's properties are rejected unless the
    schema sets additionalProperties itself.
    """
    schema = capability.input_schema
    if "properties" in schema and "additionalProperties" not in schema:
        schema = {**schema, "additionalProperties": False}

    try:
        jsonschema.validate(instance=payload, schema=schema)
    except jsonschema.ValidationError as e:
        raise InvalidInputError(
            f"Invalid input for capability {capability.name}: {e.message}", e
        )
