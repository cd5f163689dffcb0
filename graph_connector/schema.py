"""
Schema description and the build-once schema cache.

Processors contribute one ObjectClassInfo each to a SchemaBuilder; the
resulting Schema answers host schema queries and tells the connector which
attributes are multi-valued.
"""

import logging
import threading
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributeInfo:
    """Definition of one attribute of an object class."""

    name: str
    type: type = str
    multi_valued: bool = False
    required: bool = False
    creatable: bool = True
    updateable: bool = True
    readable: bool = True
    returned_by_default: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            'name': self.name,
            'type': self.type.__name__,
            'multiValued': self.multi_valued,
            'required': self.required,
            'creatable': self.creatable,
            'updateable': self.updateable,
            'readable': self.readable,
            'returnedByDefault': self.returned_by_default,
        }


@dataclass(frozen=True)
class ObjectClassInfo:
    """Attribute catalog of one object class."""

    type: str
    attributes: Mapping[str, AttributeInfo] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'attributes', MappingProxyType(dict(self.attributes)))

    def find_attribute_info(self, name: str) -> Optional[AttributeInfo]:
        return self.attributes.get(name)


@dataclass(frozen=True)
class Schema:
    """Read-only catalog shared by every caller of the schema cache."""

    object_classes: Mapping[str, ObjectClassInfo] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'object_classes', MappingProxyType(dict(self.object_classes)))

    def find_object_class_info(self, name: str) -> Optional[ObjectClassInfo]:
        return self.object_classes.get(name)

    def to_dict(self) -> Dict[str, object]:
        return {
            name: [info.to_dict() for info in oci.attributes.values()]
            for name, oci in self.object_classes.items()
        }


class ObjectClassInfoBuilder:
    """Collects attribute definitions for a single object class."""

    def __init__(self, type_name: str):
        self.type_name = type_name
        self._attributes: Dict[str, AttributeInfo] = {}

    def add_attribute_info(self, info: AttributeInfo) -> 'ObjectClassInfoBuilder':
        if info.name in self._attributes:
            raise ValueError(f"Attribute '{info.name}' defined twice for {self.type_name}")
        self._attributes[info.name] = info
        return self

    def build(self) -> ObjectClassInfo:
        return ObjectClassInfo(self.type_name, self._attributes)


class SchemaBuilder:
    """Shared builder that each processor contributes its object class to."""

    def __init__(self):
        self._object_classes: Dict[str, ObjectClassInfo] = {}

    def define_object_class(self, info: ObjectClassInfo):
        if info.type in self._object_classes:
            raise ValueError(f"Object class '{info.type}' defined twice")
        self._object_classes[info.type] = info

    def build(self) -> Schema:
        return Schema(self._object_classes)


class SchemaCache:
    """
    Builds the schema on first use and keeps it for the connector's lifetime.

    Concurrent first callers block on a lock so exactly one build runs; later
    callers read the cached value without locking. A failed build caches nothing.
    """

    def __init__(self, build_schema: Callable[[], Schema]):
        self._build_schema = build_schema
        self._schema: Optional[Schema] = None
        self._lock = threading.Lock()

    def get_or_build(self) -> Schema:
        schema = self._schema
        if schema is not None:
            return schema

        with self._lock:
            if self._schema is None:
                logger.info("Building connector schema")
                self._schema = self._build_schema()
                logger.debug(f"Schema built with object classes: {', '.join(self._schema.object_classes)}")
            return self._schema

    def invalidate(self):
        with self._lock:
            self._schema = None

    @property
    def is_built(self) -> bool:
        return self._schema is not None
