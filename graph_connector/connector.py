"""
Connector entry point.

MSGraphConnector is the surface the identity-management host calls. It
validates arguments, resolves the object class to the user or group
processor, splits incremental updates into replace and multi-value parts and
serves the cached schema. Provider errors raised by the processors are passed
through unchanged.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Mapping, NoReturn, Optional, Set, Union

from graph_connector.client import GraphClient
from graph_connector.config import validate_config
from graph_connector.delta import partition_deltas
from graph_connector.exceptions import (
    ConnectorError,
    InvalidAttributeValueError,
    UnsupportedObjectClassError,
)
from graph_connector.logging_setup import audit_logger
from graph_connector.objects import (
    Attribute,
    AttributeDelta,
    AttributeSet,
    ObjectClass,
    ObjectClassKind,
    OperationOptions,
    ResultsHandler,
    Uid,
    build_attribute_set,
)
from graph_connector.processors.base import ObjectProcessing
from graph_connector.processors.groups import GroupProcessing
from graph_connector.processors.users import UserProcessing
from graph_connector.schema import Schema, SchemaBuilder, SchemaCache

logger = logging.getLogger(__name__)

Attributes = Union[None, AttributeSet, Iterable[Attribute]]


def _unhandled_kind(kind: NoReturn) -> NoReturn:
    """Exhaustiveness guard: kind must already be narrowed to no remaining ObjectClassKind member."""
    raise AssertionError(f"Unhandled object class kind {kind!r}")


class MSGraphConnector:
    """
    Dispatches host operations to the Graph user and group processors.

    Usage:
        with MSGraphConnector(load_config("config.yaml")) as connector:
            uid = connector.create(ObjectClass.ACCOUNT, attributes)
    """

    def __init__(self, configuration: Optional[Dict[str, Any]] = None,
                 processors: Optional[Mapping[ObjectClassKind, ObjectProcessing]] = None):
        """
        Initialize connector.

        Args:
            configuration: Full connector configuration; init() is called when given
            processors: Processors to use instead of the Graph ones, keyed by kind
        """
        self.configuration = None
        self.client: Optional[GraphClient] = None
        self._injected_processors = processors is not None
        self._processors: Dict[ObjectClassKind, ObjectProcessing] = dict(processors or {})
        self._schema_cache = SchemaCache(self._build_schema)

        if self._injected_processors:
            self._check_processors()
        if configuration is not None:
            self.init(configuration)

    # Lifecycle

    def init(self, configuration: Dict[str, Any]):
        """Validate configuration and acquire the Graph transport."""
        logger.info("Initializing Graph connector")
        self.configuration = validate_config(configuration)

        if self.client is not None:
            logger.info("Re-initializing: closing previous Graph client")
            self.client.close()
            self.client = None
        self._schema_cache.invalidate()

        graph_config = self.configuration['graph']
        self.client = GraphClient(graph_config, self.configuration.get('error_handling'))

        if not self._injected_processors:
            self._processors = {
                ObjectClassKind.ACCOUNT: UserProcessing(self.client, graph_config, self),
                ObjectClassKind.GROUP: GroupProcessing(self.client, graph_config, self),
            }
        self._check_processors()

    def dispose(self):
        """Release the transport and drop configuration and cached schema."""
        logger.info("Disposing Graph connector")
        if self.client is not None:
            self.client.close()
            self.client = None
        self.configuration = None
        self._schema_cache.invalidate()
        if not self._injected_processors:
            self._processors = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()

    def _check_processors(self):
        missing = [kind.value for kind in ObjectClassKind if kind not in self._processors]
        if missing:
            raise ConnectorError(f"No processor configured for {', '.join(missing)}")

    def _processor(self, kind: ObjectClassKind) -> ObjectProcessing:
        processor = self._processors.get(kind)
        if processor is None:
            raise ConnectorError("Connector is not initialized")
        return processor

    # Argument checks

    @staticmethod
    def _require(condition: bool, message: str):
        if not condition:
            logger.error(message)
            raise InvalidAttributeValueError(message)

    def _require_uid(self, uid: Optional[Uid]):
        self._require(uid is not None and not uid.is_empty(), "Uid not provided or empty")

    @contextmanager
    def _audited(self, operation: str, object_class: ObjectClass, uid: Optional[Uid] = None):
        try:
            yield
        except Exception as e:
            audit_logger.log_operation(operation, object_class, uid, success=False, detail=str(e))
            raise
        audit_logger.log_operation(operation, object_class, uid)

    # Operations

    def create(self, object_class: ObjectClass, attributes: Attributes,
               options: Optional[OperationOptions] = None) -> Uid:
        """
        Create a user or group.

        An empty attribute set is valid; an unset one is rejected.

        Returns:
            Uid assigned by Graph
        """
        self._require(object_class is not None, "Object class not provided")
        attribute_set = build_attribute_set(attributes)
        self._require(attribute_set is not None, "Attributes not provided")

        kind = ObjectClassKind.resolve(object_class)
        if kind is None:
            raise UnsupportedObjectClassError(f"Unsupported object class {object_class}")

        with self._audited('create', object_class):
            if kind is ObjectClassKind.ACCOUNT or kind is ObjectClassKind.GROUP:
                uid = self._processor(kind).create(None, attribute_set)
            else:
                _unhandled_kind(kind)
        logger.info(f"Created {object_class} {uid}")
        return uid

    def delete(self, object_class: ObjectClass, uid: Uid, options: Optional[OperationOptions] = None):
        """
        Delete a user or group.

        Object classes other than __ACCOUNT__ and __GROUP__ are silently ignored.
        """
        self._require_uid(uid)
        logger.info(f"Delete requested for uid {uid}")
        self._require(object_class is not None, "Object class not provided")

        kind = ObjectClassKind.resolve(object_class)
        if kind is None:
            logger.debug(f"Delete ignored for unsupported object class {object_class}")
            return

        with self._audited('delete', object_class, uid):
            if kind is ObjectClassKind.ACCOUNT or kind is ObjectClassKind.GROUP:
                self._processor(kind).delete(uid)
            else:
                _unhandled_kind(kind)

    def execute_query(self, object_class: ObjectClass, query: Any, handler: ResultsHandler,
                      options: OperationOptions):
        """
        Stream objects matching query to handler.

        The handler receives one ConnectorObject per call and may return
        False to stop the search.
        """
        logger.debug(f"Filter query {query}")
        self._require(object_class is not None, "Object class not provided")
        self._require(handler is not None, "Results handler not provided")
        self._require(options is not None, "Operation options not provided")

        logger.info(f"Query on {object_class}, filter: {query}, options: {options}")

        kind = ObjectClassKind.resolve(object_class)
        if kind is None:
            logger.error(f"Unsupported object class {object_class}")
            raise UnsupportedObjectClassError(f"Unsupported object class {object_class}")

        if kind is ObjectClassKind.ACCOUNT or kind is ObjectClassKind.GROUP:
            self._processor(kind).execute_query(query, handler, options)
        else:
            _unhandled_kind(kind)

    def test(self):
        """Check that Graph is reachable with the configured credentials."""
        self._processor(ObjectClassKind.ACCOUNT).test_connection()

    def update(self, object_class: ObjectClass, uid: Uid, attributes: Attributes,
               options: OperationOptions) -> Uid:
        """
        Replace the given attributes of an existing object.

        Returns:
            uid, unchanged
        """
        self._require(object_class is not None, "Object class not provided")
        self._require_uid(uid)
        self._require(options is not None, "Operation options not provided")
        attribute_set = build_attribute_set(attributes)
        self._require(attribute_set is not None, "Attributes not provided")

        kind = ObjectClassKind.resolve(object_class)
        if kind is None:
            logger.debug(f"Update ignored for unsupported object class {object_class}")
            return uid

        with self._audited('update', object_class, uid):
            self._replace(kind, uid, attribute_set)
        return uid

    def update_delta(self, object_class: ObjectClass, uid: Uid, deltas: Optional[Iterable[AttributeDelta]],
                     options: OperationOptions) -> Set[AttributeDelta]:
        """
        Apply incremental attribute changes.

        Replace deltas are applied first in one whole-attribute update, then
        add/remove deltas in one multi-value update. Either every delta is
        applied or an error is raised.

        Returns:
            Empty set; partially applied deltas are never reported
        """
        self._require(object_class is not None, "Object class not provided")
        self._require_uid(uid)
        self._require(deltas is not None, "Attribute deltas not provided")
        self._require(options is not None, "Operation options not provided")

        deltas = list(deltas)
        logger.info(f"Delta update of {object_class} {uid}: {', '.join(delta.name for delta in deltas)}")

        kind = ObjectClassKind.resolve(object_class)
        if kind is None:
            logger.error(f"Unsupported object class {object_class}")
            raise UnsupportedObjectClassError(f"Unsupported object class {object_class}")

        replace_set, multi_value = partition_deltas(deltas)

        with self._audited('updateDelta', object_class, uid):
            if replace_set:
                self._replace(kind, uid, replace_set)
            if multi_value:
                self._processor(kind).update_multi_value_delta(uid, multi_value, options)
        return set()

    def _replace(self, kind: ObjectClassKind, uid: Uid, attributes: AttributeSet):
        if kind is ObjectClassKind.ACCOUNT:
            self._processor(kind).update_replace(uid, attributes)
        elif kind is ObjectClassKind.GROUP:
            self._processor(kind).create(uid, attributes)
        else:
            _unhandled_kind(kind)

    def add_attribute_values(self, object_class: ObjectClass, uid: Uid, attributes: Attributes,
                             options: Optional[OperationOptions] = None) -> Uid:
        """Add values to group membership attributes; a no-op for other object classes."""
        return self._update_attribute_values('addAttributeValues', object_class, uid, attributes, options)

    def remove_attribute_values(self, object_class: ObjectClass, uid: Uid, attributes: Attributes,
                                options: Optional[OperationOptions] = None) -> Uid:
        """Remove values from group membership attributes; a no-op for other object classes."""
        return self._update_attribute_values('removeAttributeValues', object_class, uid, attributes, options)

    def _update_attribute_values(self, operation: str, object_class: ObjectClass, uid: Uid,
                                 attributes: Attributes, options: Optional[OperationOptions]) -> Uid:
        self._require(object_class is not None, "Object class not provided")
        self._require_uid(uid)
        if options is None:
            logger.error("Operation options not provided")

        kind = ObjectClassKind.resolve(object_class)
        if kind is ObjectClassKind.GROUP:
            attribute_set = build_attribute_set(attributes) or {}
            with self._audited(operation, object_class, uid):
                if operation == 'addAttributeValues':
                    self._processor(kind).add_members(uid, attribute_set)
                else:
                    self._processor(kind).remove_members(uid, attribute_set)
        elif kind is ObjectClassKind.ACCOUNT or kind is None:
            logger.debug(f"{operation} ignored for object class {object_class}")
        else:
            _unhandled_kind(kind)

        return uid

    # Schema

    def schema(self) -> Schema:
        """Return the schema, building it on first use."""
        return self._schema_cache.get_or_build()

    def _build_schema(self) -> Schema:
        schema_builder = SchemaBuilder()
        for kind in ObjectClassKind:
            self._processor(kind).build_object_class(schema_builder)
        return schema_builder.build()

    def is_attribute_multi_valued(self, object_class_name: str, attribute_name: str) -> bool:
        """
        Whether the schema declares the attribute multi-valued.

        Returns False for attributes or object classes the schema does not know.
        """
        object_class_info = self.schema().find_object_class_info(object_class_name)
        if object_class_info is None:
            return False
        attribute_info = object_class_info.find_attribute_info(attribute_name)
        return attribute_info is not None and attribute_info.multi_valued
