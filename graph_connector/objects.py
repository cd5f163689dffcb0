"""
Value objects exchanged between the identity-management host and the connector.

Object classes, identifiers, attributes, attribute deltas, query results,
operation options and the small filter vocabulary understood by the processors.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

UID_NAME = '__UID__'
NAME_NAME = '__NAME__'
PASSWORD_NAME = '__PASSWORD__'
ENABLE_NAME = '__ENABLE__'


def _as_tuple(values: Optional[Iterable[Any]]) -> Optional[Tuple[Any, ...]]:
    if values is None:
        return None
    if isinstance(values, (str, bytes)):
        return (values,)
    return tuple(values)


@dataclass(frozen=True)
class ObjectClass:
    """Object class name as supplied by the host."""

    name: str

    ACCOUNT_NAME = '__ACCOUNT__'
    GROUP_NAME = '__GROUP__'

    def is_(self, name: str) -> bool:
        return self.name.lower() == name.lower()

    def __str__(self) -> str:
        return self.name


ObjectClass.ACCOUNT = ObjectClass(ObjectClass.ACCOUNT_NAME)
ObjectClass.GROUP = ObjectClass(ObjectClass.GROUP_NAME)


class ObjectClassKind(Enum):
    """The closed set of object classes this connector handles."""

    ACCOUNT = ObjectClass.ACCOUNT_NAME
    GROUP = ObjectClass.GROUP_NAME

    @classmethod
    def resolve(cls, object_class: Union[ObjectClass, str]) -> Optional['ObjectClassKind']:
        """Return the kind for an object class, or None when it is not supported."""
        if isinstance(object_class, str):
            object_class = ObjectClass(object_class)
        for kind in cls:
            if object_class.is_(kind.value):
                return kind
        return None


@dataclass(frozen=True)
class Uid:
    """Opaque identifier of an existing directory object."""

    value: Optional[str]

    def is_empty(self) -> bool:
        return not self.value

    def __str__(self) -> str:
        return self.value or ''


@dataclass(frozen=True)
class Attribute:
    """A named attribute with an ordered sequence of values."""

    name: str
    values: Tuple[Any, ...] = ()

    def __init__(self, name: str, values: Optional[Iterable[Any]] = None):
        object.__setattr__(self, 'name', name)
        object.__setattr__(self, 'values', _as_tuple(values) or ())

    def single_value(self) -> Any:
        return self.values[0] if self.values else None


AttributeSet = Dict[str, Attribute]


def build_attribute_set(
    attributes: Union[None, AttributeSet, Iterable[Attribute]]
) -> Optional[AttributeSet]:
    """
    Normalise host-supplied attributes into a name-keyed mapping.

    None is passed through so callers can tell an unset argument from an empty one.
    """
    if attributes is None:
        return None
    if isinstance(attributes, dict):
        return dict(attributes)
    return {attr.name: attr for attr in attributes}


@dataclass(frozen=True)
class AttributeDelta:
    """
    A named change to one attribute.

    Carries either values_to_replace (possibly empty, meaning "clear") or
    values_to_add/values_to_remove for a multi-valued attribute, never both
    and never neither.
    """

    name: str
    values_to_replace: Optional[Tuple[Any, ...]] = None
    values_to_add: Optional[Tuple[Any, ...]] = None
    values_to_remove: Optional[Tuple[Any, ...]] = None

    def __post_init__(self):
        object.__setattr__(self, 'values_to_replace', _as_tuple(self.values_to_replace))
        object.__setattr__(self, 'values_to_add', _as_tuple(self.values_to_add))
        object.__setattr__(self, 'values_to_remove', _as_tuple(self.values_to_remove))

        has_replace = self.values_to_replace is not None
        has_incremental = self.values_to_add is not None or self.values_to_remove is not None
        if has_replace and has_incremental:
            raise ValueError(f"Delta for '{self.name}' carries both replace and add/remove values")
        if not has_replace and not has_incremental:
            raise ValueError(f"Delta for '{self.name}' carries no values")

    @classmethod
    def replace(cls, name: str, values: Iterable[Any] = ()) -> 'AttributeDelta':
        return cls(name, values_to_replace=_as_tuple(values))

    @classmethod
    def add_remove(cls, name: str, add: Optional[Iterable[Any]] = None,
                   remove: Optional[Iterable[Any]] = None) -> 'AttributeDelta':
        return cls(name, values_to_add=_as_tuple(add) if add is not None else (),
                   values_to_remove=_as_tuple(remove) if remove is not None else ())


@dataclass
class ConnectorObject:
    """A directory object returned from a query."""

    object_class: ObjectClass
    uid: Uid
    name: Optional[str]
    attributes: AttributeSet = field(default_factory=dict)

    def get(self, name: str) -> Optional[Attribute]:
        return self.attributes.get(name)


ResultsHandler = Callable[[ConnectorObject], bool]


@dataclass
class OperationOptions:
    """Per-call options supplied by the host."""

    attributes_to_get: Optional[List[str]] = None
    page_size: Optional[int] = None


# Filters

@dataclass(frozen=True)
class EqualsFilter:
    attribute: Attribute


@dataclass(frozen=True)
class StartsWithFilter:
    attribute: Attribute


@dataclass(frozen=True)
class ContainsFilter:
    attribute: Attribute


@dataclass(frozen=True)
class AndFilter:
    left: Any
    right: Any


@dataclass(frozen=True)
class OrFilter:
    left: Any
    right: Any


Filter = Union[EqualsFilter, StartsWithFilter, ContainsFilter, AndFilter, OrFilter]
