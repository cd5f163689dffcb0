"""
Base object processor interface and common functionality.

This module defines the abstract base class that the user and group
processors implement, along with the attribute-table driven mapping between
connector attributes and Graph JSON properties, OData filter translation and
streaming query support shared by both.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from graph_connector.client import GraphClient
from graph_connector.exceptions import GraphObjectNotFoundError, InvalidAttributeValueError
from graph_connector.objects import (
    UID_NAME,
    AndFilter,
    Attribute,
    AttributeDelta,
    AttributeSet,
    ConnectorObject,
    ContainsFilter,
    EqualsFilter,
    ObjectClass,
    OperationOptions,
    OrFilter,
    ResultsHandler,
    StartsWithFilter,
    Uid,
)
from graph_connector.schema import AttributeInfo, ObjectClassInfoBuilder, SchemaBuilder

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class GraphAttribute:
    """Maps one connector attribute onto a Graph property."""

    name: str
    graph_name: str
    type: type = str
    multi_valued: bool = False
    required: bool = False
    creatable: bool = True
    updateable: bool = True
    readable: bool = True
    returned_by_default: bool = True

    def to_attribute_info(self) -> AttributeInfo:
        return AttributeInfo(
            name=self.name,
            type=self.type,
            multi_valued=self.multi_valued,
            required=self.required,
            creatable=self.creatable,
            updateable=self.updateable,
            readable=self.readable,
            returned_by_default=self.returned_by_default,
        )


class ObjectProcessing(ABC):
    """
    Abstract base class for Graph object processors.

    Each processor handles one object class against one Graph collection.
    Subclasses declare OBJECT_CLASS, COLLECTION, NAME_PROPERTY and ATTRIBUTES
    and implement the abstract operations.
    """

    OBJECT_CLASS: ObjectClass
    COLLECTION: str
    NAME_PROPERTY: str
    ATTRIBUTES: Tuple[GraphAttribute, ...] = ()

    def __init__(self, client: GraphClient, config: Dict[str, Any], connector=None):
        """
        Initialize processor.

        Args:
            client: Graph transport
            config: The 'graph' configuration section
            connector: Owning connector, used for schema lookups
        """
        self.client = client
        self.config = config
        self.connector = connector
        self.page_size = config.get('page_size', DEFAULT_PAGE_SIZE)
        self._by_name = {attr.name: attr for attr in self.ATTRIBUTES}

    # Operations that processors must implement

    @abstractmethod
    def create(self, uid: Optional[Uid], attributes: AttributeSet) -> Uid:
        """
        Create an object, or update the object identified by uid.

        Args:
            uid: Existing object identifier, None to create
            attributes: Attributes of the object

        Returns:
            Identifier of the created or updated object
        """
        pass

    @abstractmethod
    def update_replace(self, uid: Uid, attributes: AttributeSet):
        """Replace the whole value of every given attribute."""
        pass

    @abstractmethod
    def update_multi_value_delta(self, uid: Uid, deltas: List[AttributeDelta],
                                 options: OperationOptions):
        """Apply add/remove deltas to multi-valued attributes."""
        pass

    @abstractmethod
    def build_object_class(self, schema_builder: SchemaBuilder):
        """Contribute this processor's object class to the schema."""
        pass

    # Operations shared by all processors

    def delete(self, uid: Uid):
        logger.info(f"Deleting {self.COLLECTION} object {uid}")
        self.client.request('DELETE', f'/{self.COLLECTION}/{uid.value}')

    def add_members(self, uid: Uid, attributes: AttributeSet):
        raise NotImplementedError(f"{self.OBJECT_CLASS} does not support adding attribute values")

    def remove_members(self, uid: Uid, attributes: AttributeSet):
        raise NotImplementedError(f"{self.OBJECT_CLASS} does not support removing attribute values")

    def test_connection(self):
        """Verify credentials and reachability of the tenant."""
        self.client.authenticate(force=True)
        self.client.request('GET', '/organization', params={'$select': 'id'})
        logger.info("Graph connection test succeeded")

    def execute_query(self, query: Any, handler: ResultsHandler, options: OperationOptions):
        """
        Stream matching objects to handler.

        Stops fetching further pages as soon as the handler returns False.
        """
        params = {'$select': ','.join(self._select_properties(options))}

        uid_value = self._uid_from_filter(query)
        if uid_value is not None:
            try:
                item = self.client.request('GET', f'/{self.COLLECTION}/{uid_value}', params=params)
            except GraphObjectNotFoundError:
                logger.debug(f"No {self.COLLECTION} object with id {uid_value}")
                return
            handler(self.to_connector_object(item, options))
            return

        odata_filter = self.translate_filter(query)
        if odata_filter:
            params['$filter'] = odata_filter
        params['$top'] = (options.page_size if options and options.page_size else self.page_size)

        items = self.client.iter_collection(f'/{self.COLLECTION}', params=params)
        try:
            count = 0
            for item in items:
                count += 1
                if handler(self.to_connector_object(item, options)) is False:
                    logger.debug(f"Result handler stopped the query after {count} objects")
                    break
        finally:
            items.close()

    # Attribute mapping

    def attribute(self, name: str) -> GraphAttribute:
        attr = self._by_name.get(name)
        if attr is None:
            raise InvalidAttributeValueError(f"Unknown attribute '{name}' for {self.OBJECT_CLASS}")
        return attr

    def build_object_class_info(self, schema_builder: SchemaBuilder):
        builder = ObjectClassInfoBuilder(self.OBJECT_CLASS.name)
        for attr in self.ATTRIBUTES:
            builder.add_attribute_info(attr.to_attribute_info())
        schema_builder.define_object_class(builder.build())

    def build_payload(self, attributes: AttributeSet, creating: bool) -> Dict[str, Any]:
        """
        Translate connector attributes into a Graph JSON body.

        Raises:
            InvalidAttributeValueError: For unknown attributes or attributes that
                cannot be written in this operation
        """
        payload: Dict[str, Any] = {}
        for name, attribute in attributes.items():
            if name == UID_NAME:
                continue
            attr = self.attribute(name)
            if creating and not attr.creatable:
                raise InvalidAttributeValueError(f"Attribute '{name}' cannot be set on create")
            if not creating and not attr.updateable:
                raise InvalidAttributeValueError(f"Attribute '{name}' cannot be updated")
            payload[attr.graph_name] = self.to_graph_value(attr, attribute)
        return payload

    def to_graph_value(self, attr: GraphAttribute, attribute: Attribute) -> Any:
        if attr.multi_valued:
            return list(attribute.values)
        if len(attribute.values) > 1:
            raise InvalidAttributeValueError(f"Attribute '{attr.name}' is single-valued")
        return attribute.single_value()

    def to_connector_object(self, item: Dict[str, Any],
                            options: Optional[OperationOptions] = None) -> ConnectorObject:
        attributes: AttributeSet = {}
        wanted = set(self._wanted_attributes(options))
        for attr in self.ATTRIBUTES:
            if attr.name not in wanted or attr.graph_name not in item:
                continue
            value = item[attr.graph_name]
            if value is None:
                values: Iterable[Any] = ()
            elif attr.multi_valued:
                values = value
            else:
                values = (value,)
            attributes[attr.name] = Attribute(attr.name, values)

        uid = Uid(item.get('id'))
        attributes[UID_NAME] = Attribute(UID_NAME, [uid.value])
        return ConnectorObject(self.OBJECT_CLASS, uid, item.get(self.NAME_PROPERTY), attributes)

    def _wanted_attributes(self, options: Optional[OperationOptions]) -> List[str]:
        if options and options.attributes_to_get:
            return [name for name in options.attributes_to_get if name in self._by_name]
        return [attr.name for attr in self.ATTRIBUTES if attr.returned_by_default and attr.readable]

    def _select_properties(self, options: Optional[OperationOptions]) -> List[str]:
        properties = ['id', self.NAME_PROPERTY]
        for name in self._wanted_attributes(options):
            attr = self._by_name[name]
            if attr.readable and attr.graph_name not in properties and self.is_selectable(attr):
                properties.append(attr.graph_name)
        return properties

    def is_selectable(self, attr: GraphAttribute) -> bool:
        """Whether the attribute is a plain property that $select can return."""
        return True

    def apply_collection_deltas(self, uid: Uid, deltas: List[AttributeDelta]):
        """
        Apply add/remove deltas to multi-valued properties stored on the object.

        Graph only accepts whole collections, so the current values are read,
        removals applied, additions appended in order without duplicates, and
        the resulting collections written back in a single PATCH.
        """
        if not deltas:
            return

        attrs = [self.attribute(delta.name) for delta in deltas]
        select = ','.join(sorted({attr.graph_name for attr in attrs}))
        current = self.client.request('GET', f'/{self.COLLECTION}/{uid.value}', params={'$select': select})

        payload: Dict[str, List[Any]] = {}
        for delta, attr in zip(deltas, attrs):
            values = list(payload.get(attr.graph_name, current.get(attr.graph_name) or []))
            for value in delta.values_to_remove or ():
                values = [v for v in values if v != value]
            for value in delta.values_to_add or ():
                if value not in values:
                    values.append(value)
            payload[attr.graph_name] = values

        logger.info(f"Updating multi-valued properties {', '.join(payload)} of {self.COLLECTION} object {uid}")
        self.client.request('PATCH', f'/{self.COLLECTION}/{uid.value}', body=payload)

    def check_multi_valued_delta(self, delta: AttributeDelta) -> GraphAttribute:
        """Reject add/remove deltas on attributes the schema declares single-valued."""
        if self.connector is not None:
            multi_valued = self.connector.is_attribute_multi_valued(self.OBJECT_CLASS.name, delta.name)
        else:
            multi_valued = self.attribute(delta.name).multi_valued
        if not multi_valued:
            raise InvalidAttributeValueError(
                f"Attribute '{delta.name}' of {self.OBJECT_CLASS} is not multi-valued; "
                f"use a replace delta instead"
            )
        attr = self.attribute(delta.name)
        if not attr.updateable:
            raise InvalidAttributeValueError(f"Attribute '{delta.name}' cannot be updated")
        return attr

    # Filter translation

    def _uid_from_filter(self, query: Any) -> Optional[str]:
        if isinstance(query, EqualsFilter) and query.attribute.name == UID_NAME:
            return query.attribute.single_value()
        return None

    def translate_filter(self, query: Any) -> Optional[str]:
        """
        Translate a connector filter into an OData $filter expression.

        Returns:
            Filter expression, or None for an unrestricted query
        """
        if query is None:
            return None

        if isinstance(query, (AndFilter, OrFilter)):
            operator = 'and' if isinstance(query, AndFilter) else 'or'
            left = self.translate_filter(query.left)
            right = self.translate_filter(query.right)
            return f"({left}) {operator} ({right})"

        if isinstance(query, (EqualsFilter, StartsWithFilter, ContainsFilter)):
            name = query.attribute.name
            value = query.attribute.single_value()
            prop = 'id' if name == UID_NAME else self.attribute(name).graph_name
            multi_valued = name != UID_NAME and self.attribute(name).multi_valued

            if isinstance(query, StartsWithFilter):
                if multi_valued:
                    return f"{prop}/any(x:startswith(x,{odata_literal(value)}))"
                return f"startswith({prop},{odata_literal(value)})"

            if multi_valued:
                return f"{prop}/any(x:x eq {odata_literal(value)})"
            if isinstance(query, ContainsFilter):
                raise InvalidAttributeValueError(
                    f"Contains filter is only supported on multi-valued attributes, not '{name}'"
                )
            return f"{prop} eq {odata_literal(value)}"

        raise InvalidAttributeValueError(f"Unsupported filter type: {type(query).__name__}")


def odata_literal(value: Any) -> str:
    """Render a Python value as an OData literal."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return 'null'
    return "'" + str(value).replace("'", "''") + "'"
