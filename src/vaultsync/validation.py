"""
Manifest Validation - JSON Schema validation of resource manifests.

A manifest lists the resources to reconcile:

    resources:
      - kind: mount
        spec:
          path: secret
          type: kv-v2

Each entry is checked against the manifest schema and then against a JSON
Schema derived from the field table of its kind.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator

from vaultsync.errors import ManifestError
from vaultsync.fields import FieldTable, FieldType
from vaultsync.registry import ResourceRegistry

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["resources"],
    "additionalProperties": False,
    "properties": {
        "resources": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["kind", "spec"],
                "additionalProperties": False,
                "properties": {
                    "kind": {"type": "string", "minLength": 1},
                    "id": {"type": "string", "minLength": 1},
                    "spec": {"type": "object"},
                },
            },
        }
    },
}

_JSON_TYPES = {
    FieldType.STRING: {"type": "string"},
    FieldType.BOOL: {"type": "boolean"},
    FieldType.INTEGER: {"type": "integer"},
    FieldType.LIST_OF_STRING: {"type": "array", "items": {"type": "string"}},
    FieldType.MAP_OF_STRING: {
        "type": "object",
        "additionalProperties": {"type": "string"},
    },
}


@dataclass
class ManifestEntry:
    """One resource declared in a manifest."""

    kind: str
    spec: Dict[str, Any]
    id: Optional[str] = None


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is a valid JSON Schema (Draft 7).

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_against_schema(
    document: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against a JSON Schema.

    Args:
        document: The document to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(document))

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def field_table_schema(fields: FieldTable) -> Dict[str, Any]:
    """
    Derive a JSON Schema for the desired state of a resource kind.

    Computed-only fields are left out, so setting one is reported as an
    unexpected property. Fields with a normalizer also accept strings, since
    normalization (e.g. "5m" for a duration) happens after this check.
    """
    properties: Dict[str, Any] = {}
    for spec in fields:
        if spec.computed_only:
            continue
        prop = dict(_JSON_TYPES[spec.type])
        if spec.normalize is not None and spec.type is FieldType.INTEGER:
            prop = {"type": ["integer", "string"]}
        if spec.description:
            prop["description"] = spec.description
        properties[spec.name] = prop

    schema: Dict[str, Any] = {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
    }
    required = [spec.name for spec in fields if spec.required]
    if required:
        schema["required"] = required
    return schema


def load_manifest(
    document: Any, registry: ResourceRegistry
) -> List[ManifestEntry]:
    """
    Validate a parsed manifest and return its entries.

    Args:
        document: The manifest as loaded from YAML or JSON.
        registry: Registry used to resolve resource kinds.

    Returns:
        The manifest entries in declaration order.

    Raises:
        ManifestError: If the manifest or one of its entries is invalid.
    """
    is_valid, error = validate_against_schema(document, MANIFEST_SCHEMA)
    if not is_valid:
        raise ManifestError(f"Invalid manifest: {error}")

    entries = []
    for index, item in enumerate(document["resources"]):
        kind = item["kind"]
        if not registry.has_kind(kind):
            raise ManifestError(f"resources.{index}: unknown kind '{kind}'")

        schema = field_table_schema(registry.get(kind).fields)
        is_valid, error = validate_schema(schema)
        if not is_valid:
            raise ManifestError(f"resources.{index} ({kind}): {error}")
        is_valid, error = validate_against_schema(item["spec"], schema)
        if not is_valid:
            raise ManifestError(f"resources.{index} ({kind}): {error}")

        entries.append(ManifestEntry(kind=kind, spec=item["spec"], id=item.get("id")))

    logger.debug(f"Loaded manifest with {len(entries)} resource(s)")
    return entries
