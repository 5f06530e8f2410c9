"""
Field declarations - Typed field tables for remote resources.

A FieldTable describes every field of one resource kind: its semantic type,
whether a change can be applied in place, its default, and how remote values
are normalized before they are compared against desired ones. Tables are
built once at import time and never mutated afterwards.
"""

import copy
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from vaultsync.errors import UnknownFieldError, ValidationError


class _Unset:
    """Sentinel type for fields that have no default."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


class FieldType(Enum):
    """Semantic types a field value can have."""

    STRING = "string"
    BOOL = "bool"
    INTEGER = "integer"
    LIST_OF_STRING = "list_of_string"
    MAP_OF_STRING = "map_of_string"


class Mutability(Enum):
    """How a change to a field is carried out remotely."""

    IMMUTABLE = "immutable"  # change forces replacement
    MUTABLE = "mutable"  # change is applied in place
    COMPUTED_ONLY = "computed_only"  # never sent, only read back


_ADAPTERS: Dict[FieldType, TypeAdapter] = {
    FieldType.STRING: TypeAdapter(str),
    FieldType.BOOL: TypeAdapter(bool),
    FieldType.INTEGER: TypeAdapter(int),
    FieldType.LIST_OF_STRING: TypeAdapter(List[str]),
    FieldType.MAP_OF_STRING: TypeAdapter(Dict[str, str]),
}

Validator = Callable[[Any], Optional[str]]
Normalizer = Callable[[Any], Any]
AliasHook = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class FieldSpec:
    """Declaration of a single resource field."""

    name: str
    type: FieldType
    mutability: Mutability = Mutability.MUTABLE
    default: Any = UNSET
    validator: Optional[Validator] = None
    normalize: Optional[Normalizer] = None
    latch: bool = False
    send_on_update: bool = False
    required: bool = False
    description: str = ""

    def __post_init__(self):
        if self.latch and self.type is not FieldType.BOOL:
            raise ValueError(f"Latch field '{self.name}' must be a bool field")
        if self.latch and self.mutability is not Mutability.MUTABLE:
            raise ValueError(f"Latch field '{self.name}' must be mutable")
        if self.required and self.mutability is Mutability.COMPUTED_ONLY:
            raise ValueError(f"Computed field '{self.name}' cannot be required")

    @property
    def computed_only(self) -> bool:
        return self.mutability is Mutability.COMPUTED_ONLY

    @property
    def has_default(self) -> bool:
        return self.default is not UNSET

    def coerce(self, value: Any) -> Any:
        """
        Normalize and type-coerce a raw value.

        Args:
            value: The value as written in config or returned by the API.

        Returns:
            The normalized value in its semantic type.

        Raises:
            ValidationError: If the value cannot be represented in the
                field's type.
        """
        if self.normalize is not None:
            try:
                value = self.normalize(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(self.name, str(e)) from e

        try:
            return _ADAPTERS[self.type].validate_python(value)
        except PydanticValidationError as e:
            detail = e.errors()[0]["msg"] if e.errors() else str(e)
            raise ValidationError(
                self.name, f"expected {self.type.value}, got {value!r} ({detail})"
            ) from e

    def check(self, value: Any) -> None:
        """Run the field validator, raising ValidationError on failure."""
        if self.validator is None:
            return
        error = self.validator(value)
        if error:
            raise ValidationError(self.name, error)

    def default_value(self) -> Any:
        """Return a fresh, coerced copy of the default."""
        return self.coerce(copy.deepcopy(self.default))


class FieldTable:
    """
    Immutable, ordered table of FieldSpecs for one resource kind.

    Field order is the order in which the planner compares fields, so the
    first immutable change in declaration order is reported as the
    replacement reason.
    """

    def __init__(
        self,
        kind: str,
        specs: List[FieldSpec],
        aliases: Optional[AliasHook] = None,
    ):
        by_name: Dict[str, FieldSpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise ValueError(f"Duplicate field '{spec.name}' in {kind}")
            by_name[spec.name] = spec

        self._kind = kind
        self._specs: Tuple[FieldSpec, ...] = tuple(specs)
        self._by_name = MappingProxyType(by_name)
        self._aliases = aliases

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self._specs]

    def __iter__(self) -> Iterator[FieldSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> FieldSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownFieldError(name, self._kind) from None

    def coerce_desired(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate desired state and fill in defaults.

        Args:
            desired: Field values as declared by the caller.

        Returns:
            A new dict holding a coerced value for every field that is set
            or has a default. Fields without a default that were not set are
            left out.

        Raises:
            UnknownFieldError: If a field is not declared in this table.
            ValidationError: If a value is malformed, fails its validator,
                targets a computed-only field, or a required field is unset.
        """
        for name in desired:
            if name not in self._by_name:
                raise UnknownFieldError(name, self._kind)

        result: Dict[str, Any] = {}
        for spec in self._specs:
            value = desired.get(spec.name)
            if value is not None:
                if spec.computed_only:
                    raise ValidationError(
                        spec.name, "field is computed and cannot be set"
                    )
                value = spec.coerce(value)
                spec.check(value)
                result[spec.name] = value
            elif spec.required:
                raise ValidationError(spec.name, "field is required")
            elif spec.has_default and not spec.computed_only:
                result[spec.name] = spec.default_value()
        return result

    def coerce_remote(self, remote: Dict[str, Any]) -> Dict[str, Any]:
        """
        Normalize remote state read back from the API.

        Keys the table does not declare are dropped; the API is free to
        return more than the resource manages.

        Raises:
            ValidationError: If the API returned a value of the wrong type.
        """
        result: Dict[str, Any] = {}
        for spec in self._specs:
            value = remote.get(spec.name)
            if value is not None:
                result[spec.name] = spec.coerce(value)
        return result

    def resolve_aliases(
        self, desired: Dict[str, Any], remote: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Rewrite remote values that are equivalent spellings of desired ones."""
        if self._aliases is None:
            return remote
        return self._aliases(desired, dict(remote))

    def create_payload(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Return every settable field of a coerced desired state."""
        return {
            name: value
            for name, value in desired.items()
            if not self._by_name[name].computed_only
        }

    def update_companions(self) -> List[str]:
        """Names of fields that must accompany every update."""
        return [spec.name for spec in self._specs if spec.send_on_update]


# Normalizers

_DURATION_PART = re.compile(r"(\d+)([smhd])")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def duration_seconds(value: Any) -> Any:
    """
    Convert a duration to whole seconds.

    Accepts integers (already seconds), digit strings, and unit strings such
    as "300s", "5m", "1h30m" or "7d".
    """
    if isinstance(value, bool) or not isinstance(value, str):
        return value

    text = value.strip().lower()
    if text.isdigit():
        return int(text)
    if not text or _DURATION_PART.sub("", text):
        raise ValueError(f"invalid duration {value!r}")
    return sum(
        int(amount) * _DURATION_UNITS[unit]
        for amount, unit in _DURATION_PART.findall(text)
    )


def casefold(value: Any) -> Any:
    """Lower-case string values so enum aliases compare equal."""
    if isinstance(value, str):
        return value.strip().lower()
    return value


def sorted_strings(value: Any) -> Any:
    """Order and de-duplicate a list whose order carries no meaning."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return sorted(set(value), key=str)
    return value


# Validators


def at_least(minimum: int) -> Validator:
    def validate(value: Any) -> Optional[str]:
        if value < minimum:
            return f"must be equal to or greater than {minimum}, got: {value}"
        return None

    return validate


def between(minimum: int, maximum: int) -> Validator:
    def validate(value: Any) -> Optional[str]:
        if value < minimum or value > maximum:
            return f"must be between {minimum} and {maximum}, got: {value}"
        return None

    return validate


def one_of(*choices: str) -> Validator:
    allowed = set(choices)

    def validate(value: Any) -> Optional[str]:
        if value not in allowed:
            return f"must be one of {', '.join(sorted(allowed))}, got: {value!r}"
        return None

    return validate
