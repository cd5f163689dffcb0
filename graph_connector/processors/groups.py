"""
Group processor for Microsoft Graph.

Maps the __GROUP__ object class onto the Graph /groups collection, including
the members and owners relationships.
"""

import logging
from typing import Any, Dict, List, Optional

from graph_connector.exceptions import GraphAPIError, GraphObjectNotFoundError, InvalidAttributeValueError
from graph_connector.objects import (
    NAME_NAME,
    Attribute,
    AttributeDelta,
    AttributeSet,
    ConnectorObject,
    ObjectClass,
    OperationOptions,
    Uid,
)
from graph_connector.processors.base import GraphAttribute, ObjectProcessing
from graph_connector.schema import SchemaBuilder

logger = logging.getLogger(__name__)

MEMBERS = 'members'
OWNERS = 'owners'
RELATIONSHIPS = (MEMBERS, OWNERS)


class GroupProcessing(ObjectProcessing):
    """
    Processor for Graph groups.

    Graph API reference:
    - Create: POST /groups (initial members/owners via @odata.bind)
    - Update: PATCH /groups/{id}
    - Add member: POST /groups/{id}/members/$ref
    - Remove member: DELETE /groups/{id}/members/{memberId}/$ref
    """

    OBJECT_CLASS = ObjectClass.GROUP
    COLLECTION = 'groups'
    NAME_PROPERTY = 'displayName'
    ATTRIBUTES = (
        GraphAttribute(NAME_NAME, 'displayName', required=True),
        GraphAttribute('description', 'description'),
        GraphAttribute('mailNickname', 'mailNickname', required=True),
        GraphAttribute('mail', 'mail', creatable=False, updateable=False),
        GraphAttribute('mailEnabled', 'mailEnabled', type=bool),
        GraphAttribute('securityEnabled', 'securityEnabled', type=bool),
        GraphAttribute('visibility', 'visibility'),
        GraphAttribute('groupTypes', 'groupTypes', multi_valued=True, updateable=False),
        GraphAttribute(MEMBERS, MEMBERS, multi_valued=True, returned_by_default=False),
        GraphAttribute(OWNERS, OWNERS, multi_valued=True, returned_by_default=False),
    )

    def build_object_class(self, schema_builder: SchemaBuilder):
        self.build_object_class_info(schema_builder)

    def is_selectable(self, attr: GraphAttribute) -> bool:
        return attr.name not in RELATIONSHIPS

    def to_connector_object(self, item: Dict[str, Any],
                            options: Optional[OperationOptions] = None) -> ConnectorObject:
        obj = super().to_connector_object(item, options)
        for relationship in RELATIONSHIPS:
            if relationship in self._wanted_attributes(options):
                obj.attributes[relationship] = Attribute(
                    relationship, self._read_relationship(obj.uid, relationship)
                )
        return obj

    def create(self, uid: Optional[Uid], attributes: AttributeSet) -> Uid:
        """
        Create a group when uid is None, otherwise update the existing group.

        Returns:
            Identifier of the created or updated group
        """
        properties = {name: attr for name, attr in attributes.items() if name not in RELATIONSHIPS}
        relationships = {name: attr for name, attr in attributes.items() if name in RELATIONSHIPS}

        if uid is None or uid.is_empty():
            return self._create_group(properties, relationships)

        payload = self.build_payload(properties, creating=False)
        if payload:
            logger.info(f"Updating group {uid}: {', '.join(sorted(payload))}")
            self.client.request('PATCH', f'/groups/{uid.value}', body=payload)

        for relationship, attribute in relationships.items():
            self._reconcile_relationship(uid, relationship, attribute.values)

        return uid

    def _create_group(self, properties: AttributeSet, relationships: AttributeSet) -> Uid:
        payload = self.build_payload(properties, creating=True)
        payload.setdefault('mailEnabled', False)
        payload.setdefault('securityEnabled', True)

        for relationship, attribute in relationships.items():
            if attribute.values:
                payload[f'{relationship}@odata.bind'] = [
                    self._directory_object_url(member_id) for member_id in attribute.values
                ]

        logger.info(f"Creating group '{payload.get('displayName')}'")
        response = self.client.request('POST', '/groups', body=payload)

        group_id = response.get('id')
        if not group_id:
            raise GraphAPIError(f"Group creation response missing id for '{payload.get('displayName')}'")
        logger.info(f"Created group '{payload.get('displayName')}' with id {group_id}")
        return Uid(group_id)

    def update_replace(self, uid: Uid, attributes: AttributeSet):
        self.create(uid, attributes)

    def update_multi_value_delta(self, uid: Uid, deltas: List[AttributeDelta],
                                 options: OperationOptions):
        property_deltas = []
        for delta in deltas:
            self.check_multi_valued_delta(delta)
            if delta.name in RELATIONSHIPS:
                for member_id in delta.values_to_add or ():
                    self._add_reference(uid, delta.name, member_id)
                for member_id in delta.values_to_remove or ():
                    self._remove_reference(uid, delta.name, member_id)
            else:
                property_deltas.append(delta)

        self.apply_collection_deltas(uid, property_deltas)

    def add_members(self, uid: Uid, attributes: AttributeSet):
        for name, attribute in attributes.items():
            self._check_relationship(name)
            for member_id in attribute.values:
                self._add_reference(uid, name, member_id)

    def remove_members(self, uid: Uid, attributes: AttributeSet):
        for name, attribute in attributes.items():
            self._check_relationship(name)
            for member_id in attribute.values:
                self._remove_reference(uid, name, member_id)

    # Relationship helpers

    def _check_relationship(self, name: str):
        if name not in RELATIONSHIPS:
            raise InvalidAttributeValueError(
                f"Attribute '{name}' of {self.OBJECT_CLASS} does not support adding or removing values"
            )

    def _directory_object_url(self, object_id: str) -> str:
        return f"{self.client.base_url}/directoryObjects/{object_id}"

    def _read_relationship(self, uid: Uid, relationship: str) -> List[str]:
        items = self.client.iter_collection(
            f'/groups/{uid.value}/{relationship}', params={'$select': 'id'}
        )
        return [item['id'] for item in items]

    def _reconcile_relationship(self, uid: Uid, relationship: str, desired: tuple):
        current = self._read_relationship(uid, relationship)
        to_add = [member_id for member_id in desired if member_id not in current]
        to_remove = [member_id for member_id in current if member_id not in desired]

        logger.info(f"Reconciling {relationship} of group {uid}: +{len(to_add)} -{len(to_remove)}")
        for member_id in to_add:
            self._add_reference(uid, relationship, member_id)
        for member_id in to_remove:
            self._remove_reference(uid, relationship, member_id)

    def _add_reference(self, uid: Uid, relationship: str, member_id: str):
        body = {'@odata.id': self._directory_object_url(member_id)}
        try:
            self.client.request('POST', f'/groups/{uid.value}/{relationship}/$ref', body=body)
            logger.debug(f"Added {member_id} to {relationship} of group {uid}")
        except GraphAPIError as e:
            if e.status_code == 400 and 'already exist' in str(e).lower():
                logger.debug(f"{member_id} is already in {relationship} of group {uid}")
                return
            raise

    def _remove_reference(self, uid: Uid, relationship: str, member_id: str):
        try:
            self.client.request('DELETE', f'/groups/{uid.value}/{relationship}/{member_id}/$ref')
            logger.debug(f"Removed {member_id} from {relationship} of group {uid}")
        except GraphObjectNotFoundError:
            logger.debug(f"{member_id} is not in {relationship} of group {uid}")
