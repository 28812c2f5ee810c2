"""Presentation Exchange evaluation."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import jsonpath_ng as jsonpath
from jsonpath_ng import JSONPath
from jsonpath_ng.exceptions import JSONPathError
from jsonschema import Draft7Validator, ValidationError

from .models.credential import ParsedCredential

LOGGER = logging.getLogger(__name__)


class FilterEvaluator:
    """Evaluate a filter."""

    def __init__(self, validator: Draft7Validator):
        """Initliaze."""
        self.validator = validator

    @classmethod
    def compile(cls, filter: dict) -> "FilterEvaluator":
        """Compile an input descriptor."""
        Draft7Validator.check_schema(filter)
        validator = Draft7Validator(filter)
        return cls(validator)

    def match(self, value: Any) -> bool:
        """Check value."""
        try:
            self.validator.validate(value)
            return True
        except ValidationError:
            return False


class ConstraintFieldEvaluator:
    """Evaluate a constraint."""

    def __init__(
        self,
        paths: Sequence[Tuple[str, JSONPath]],
        filter: Optional[FilterEvaluator] = None,
        optional: bool = False,
    ):
        """Initialize the constraint field evaluator."""
        self.paths = paths
        self.filter = filter
        self.optional = optional

    @classmethod
    def compile(cls, constraint: Mapping[str, Any]):
        """Compile an input descriptor field."""
        if not isinstance(constraint, Mapping):
            raise TypeError("constraint must be a dict")
        try:
            paths = [(path, jsonpath.parse(path)) for path in constraint["path"]]
        except (KeyError, JSONPathError) as err:
            raise ValueError(f"Invalid constraint path: {err}") from err

        filter = None
        if constraint.get("filter"):
            filter = FilterEvaluator.compile(constraint["filter"])

        return cls(paths, filter, bool(constraint.get("optional")))

    def match(self, value: Any) -> Optional[Tuple[str, Any]]:
        """Check if value matches and return path and value of first match."""
        matched = [
            (path, found.value)
            for path, expression in self.paths
            for found in expression.find(value)
        ]
        for path, found in matched:
            if self.filter is None or self.filter.match(found):
                return path, found
        return None


class DescriptorMatchFailed(Exception):
    """Raised when a Descriptor fails to match."""


class DescriptorEvaluator:
    """Evaluate input descriptors."""

    def __init__(
        self,
        id: str,
        field_constraints: List[ConstraintFieldEvaluator],
        formats: Optional[List[str]] = None,
    ):
        """Initialize descriptor evaluator."""
        self.id = id
        self._field_constraints = field_constraints
        self.formats = formats or []

    @classmethod
    def compile(cls, descriptor: Mapping[str, Any]) -> "DescriptorEvaluator":
        """Compile an input descriptor."""
        if not isinstance(descriptor, Mapping) or "id" not in descriptor:
            raise TypeError("descriptor must be a dict with an id")

        formats = list((descriptor.get("format") or {}).keys())
        fields = (descriptor.get("constraints") or {}).get("fields") or []
        field_constraints = [
            ConstraintFieldEvaluator.compile(constraint) for constraint in fields
        ]
        return cls(descriptor["id"], field_constraints, formats)

    def match(self, value: Any) -> Dict[str, Any]:
        """Check value."""
        matched_fields = {}
        for constraint in self._field_constraints:
            matched = constraint.match(value)
            if matched is None:
                if constraint.optional:
                    continue
                raise DescriptorMatchFailed("Failed to match descriptor to submission")
            path, found = matched
            matched_fields[path] = found
        return matched_fields


@dataclass
class PexVerifyResult:
    """Result of verification."""

    verified: bool = False
    descriptor_id_to_claims: Dict[str, dict] = field(default_factory=dict)
    descriptor_id_to_fields: Dict[str, Any] = field(default_factory=dict)
    details: Optional[str] = None


class PresentationExchangeEvaluator:
    """Evaluate presented credentials against presentation definitions."""

    def __init__(self, id: str, descriptors: List[DescriptorEvaluator]):
        """Initialize the evaluator."""
        self.id = id
        self._id_to_descriptor: Dict[str, DescriptorEvaluator] = {
            desc.id: desc for desc in descriptors
        }

    @classmethod
    def compile(cls, definition: Mapping[str, Any]):
        """Compile a presentation definition object into evaluatable state."""
        if not isinstance(definition, Mapping):
            raise TypeError("definition must be a dict")
        descriptors = [
            DescriptorEvaluator.compile(desc)
            for desc in definition.get("input_descriptors") or []
        ]
        return cls(definition.get("id"), descriptors)

    def verify(
        self,
        credentials: Sequence[ParsedCredential],
        submission: Optional[Mapping[str, Any]] = None,
    ) -> PexVerifyResult:
        """Check that every input descriptor is satisfied by a distinct credential."""
        if submission:
            definition_id = submission.get("definition_id")
            if definition_id and self.id and definition_id != self.id:
                return PexVerifyResult(details="Submission id doesn't match definition")
            for item in submission.get("descriptor_map") or []:
                if item.get("id") not in self._id_to_descriptor:
                    return PexVerifyResult(
                        details="Could not find input descriptor corresponding "
                        f"to {item.get('id')}"
                    )

        descriptor_id_to_claims = {}
        descriptor_id_to_fields = {}
        used = set()
        for descriptor_id, evaluator in self._id_to_descriptor.items():
            for index, credential in enumerate(credentials):
                if index in used:
                    continue
                if evaluator.formats and credential.fmt not in evaluator.formats:
                    continue
                try:
                    fields = evaluator.match(credential.vc)
                except DescriptorMatchFailed:
                    continue
                used.add(index)
                descriptor_id_to_claims[descriptor_id] = dict(credential.vc)
                descriptor_id_to_fields[descriptor_id] = fields
                break
            else:
                LOGGER.debug("No credential satisfies descriptor %s", descriptor_id)
                return PexVerifyResult(
                    details=f"No credential satisfies input descriptor {descriptor_id}"
                )

        return PexVerifyResult(
            verified=True,
            descriptor_id_to_claims=descriptor_id_to_claims,
            descriptor_id_to_fields=descriptor_id_to_fields,
        )


def definition_for_types(vc_types: Sequence[str]) -> dict:
    """Build a presentation definition requesting one credential per type."""
    return {
        "id": str(uuid.uuid4()),
        "input_descriptors": [
            {
                "id": f"{vc_type}-{index}",
                "constraints": {
                    "fields": [
                        {
                            "path": ["$.type"],
                            "filter": {
                                "type": "array",
                                "contains": {"const": vc_type},
                            },
                        }
                    ]
                },
            }
            for index, vc_type in enumerate(vc_types)
        ],
    }


def definition_for_schemas(schema_uris: Sequence[str]) -> dict:
    """Build a presentation definition requesting one credential per schema."""
    return {
        "id": str(uuid.uuid4()),
        "input_descriptors": [
            {
                "id": f"schema-{index}",
                "schema": [{"uri": uri}],
                "constraints": {
                    "fields": [
                        {
                            "path": [
                                "$.credentialSchema.id",
                                "$.credentialSchema[*].id",
                            ],
                            "filter": {
                                "anyOf": [
                                    {"const": uri},
                                    {"type": "array", "contains": {"const": uri}},
                                ]
                            },
                        }
                    ]
                },
            }
            for index, uri in enumerate(schema_uris)
        ],
    }


def requested_types(definition: Mapping[str, Any]) -> List[str]:
    """Return the credential types a definition asks for by type constraint."""
    types = []
    for descriptor in definition.get("input_descriptors") or []:
        for constraint in (descriptor.get("constraints") or {}).get("fields") or []:
            if "$.type" not in (constraint.get("path") or []):
                continue
            filter = constraint.get("filter") or {}
            const = (filter.get("contains") or {}).get("const") or filter.get("const")
            if const and const not in types:
                types.append(const)
    return types
