"""
Declarative mapping of Jira fields onto ticket attributes.

A mapping names a target attribute, a dotted path into the issue's
"fields" object, and one transform from a closed set:

    direct     copy the value as-is
    value_map  look the value up in a table (unmapped values pass through)
    custom     one of the named transforms in CUSTOM_TRANSFORMS

Mappings are validated when loaded, so a bad transform name fails at
configuration time rather than halfway through a sync.
"""
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, model_validator

_MISSING = object()


class TransformKind(str, Enum):
    DIRECT = "direct"
    VALUE_MAP = "value_map"
    CUSTOM = "custom"


def _array_to_string(value: Any, mapping: "FieldMapping") -> Any:
    if not isinstance(value, list):
        return value
    parts = []
    for item in value:
        if isinstance(item, dict):
            parts.append(str(item.get("name") or item.get("value") or ""))
        else:
            parts.append(str(item))
    return ", ".join(parts)


def _extract_field(value: Any, mapping: "FieldMapping") -> Any:
    if isinstance(value, list):
        value = value[0] if value else None
    if not isinstance(value, dict):
        return value
    if mapping.custom_field and value.get(mapping.custom_field) is not None:
        return value[mapping.custom_field]
    return value.get("name") or value.get("value")


CUSTOM_TRANSFORMS: Dict[str, Callable[[Any, "FieldMapping"], Any]] = {
    "array_to_string": _array_to_string,
    "extract_field": _extract_field,
}


class FieldMapping(BaseModel):
    target: str
    source_path: str  # dotted path under issue["fields"], e.g. "priority.name"
    transform: TransformKind = TransformKind.DIRECT
    value_map: Dict[str, Any] = Field(default_factory=dict)
    custom: Optional[str] = None
    custom_field: Optional[str] = None  # key read by extract_field
    enabled: bool = True

    @model_validator(mode="after")
    def _check_transform(self) -> "FieldMapping":
        if self.transform == TransformKind.CUSTOM and self.custom not in CUSTOM_TRANSFORMS:
            raise ValueError(
                f"unknown custom transform {self.custom!r} for {self.target}; "
                f"expected one of {sorted(CUSTOM_TRANSFORMS)}"
            )
        if self.transform == TransformKind.VALUE_MAP and not self.value_map:
            raise ValueError(f"value_map transform for {self.target} needs a value_map")
        if not self.source_path.strip():
            raise ValueError(f"empty source_path for {self.target}")
        return self

    def extract(self, fields: Dict[str, Any]) -> Any:
        """Return the transformed value, or _MISSING if the path is absent."""
        value: Any = fields
        for part in self.source_path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return _MISSING
        if value is None:
            return None

        if self.transform == TransformKind.VALUE_MAP:
            return self.value_map.get(str(value), value)
        if self.transform == TransformKind.CUSTOM:
            return CUSTOM_TRANSFORMS[self.custom](value, self)
        return value


# Priority fields carried by our Jira instance.
DEFAULT_FIELD_MAPPINGS: List[FieldMapping] = [
    FieldMapping(
        target="mgxPriority",
        source_path="customfield_10112",
        transform=TransformKind.CUSTOM,
        custom="extract_field",
        custom_field="value",
    ),
    FieldMapping(
        target="customerPriority",
        source_path="customfield_10142",
        transform=TransformKind.CUSTOM,
        custom="extract_field",
        custom_field="value",
    ),
]


def load_field_mappings(raw: Iterable[Dict[str, Any]]) -> List[FieldMapping]:
    """Validate raw mapping dicts (e.g. from a JSON config). Raises ValidationError."""
    return [FieldMapping.model_validate(item) for item in raw]


def apply_field_mappings(
    fields: Dict[str, Any], mappings: Iterable[FieldMapping]
) -> Dict[str, Any]:
    """Evaluate every enabled mapping against an issue's fields."""
    mapped: Dict[str, Any] = {}
    for mapping in mappings:
        if not mapping.enabled:
            continue
        value = mapping.extract(fields)
        if value is _MISSING or value is None:
            continue
        mapped[mapping.target] = value
    return mapped
