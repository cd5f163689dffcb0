"""
User processor for Microsoft Graph.

Maps the __ACCOUNT__ object class onto the Graph /users collection.
"""

import logging
from typing import Any, Dict, List, Optional

from graph_connector.exceptions import GraphAPIError, InvalidAttributeValueError
from graph_connector.objects import (
    ENABLE_NAME,
    NAME_NAME,
    PASSWORD_NAME,
    Attribute,
    AttributeDelta,
    AttributeSet,
    ObjectClass,
    OperationOptions,
    Uid,
)
from graph_connector.processors.base import GraphAttribute, ObjectProcessing
from graph_connector.schema import SchemaBuilder

logger = logging.getLogger(__name__)


class UserProcessing(ObjectProcessing):
    """
    Processor for Graph users.

    Graph API reference:
    - Create: POST /users
    - Update: PATCH /users/{id}
    - Delete: DELETE /users/{id}
    - Search: GET /users?$filter=...
    """

    OBJECT_CLASS = ObjectClass.ACCOUNT
    COLLECTION = 'users'
    NAME_PROPERTY = 'userPrincipalName'
    ATTRIBUTES = (
        GraphAttribute(NAME_NAME, 'userPrincipalName', required=True),
        GraphAttribute(ENABLE_NAME, 'accountEnabled', type=bool),
        GraphAttribute(PASSWORD_NAME, 'passwordProfile', readable=False, returned_by_default=False),
        GraphAttribute('displayName', 'displayName', required=True),
        GraphAttribute('mailNickname', 'mailNickname', required=True),
        GraphAttribute('givenName', 'givenName'),
        GraphAttribute('surname', 'surname'),
        GraphAttribute('mail', 'mail'),
        GraphAttribute('jobTitle', 'jobTitle'),
        GraphAttribute('department', 'department'),
        GraphAttribute('companyName', 'companyName'),
        GraphAttribute('employeeId', 'employeeId'),
        GraphAttribute('officeLocation', 'officeLocation'),
        GraphAttribute('mobilePhone', 'mobilePhone'),
        GraphAttribute('usageLocation', 'usageLocation'),
        GraphAttribute('city', 'city'),
        GraphAttribute('country', 'country'),
        GraphAttribute('businessPhones', 'businessPhones', multi_valued=True),
        GraphAttribute('otherMails', 'otherMails', multi_valued=True),
        GraphAttribute('proxyAddresses', 'proxyAddresses', multi_valued=True,
                       creatable=False, updateable=False),
    )

    def __init__(self, client, config: Dict[str, Any], connector=None):
        super().__init__(client, config, connector)
        self.force_password_change = config.get('force_password_change', False)

    def build_object_class(self, schema_builder: SchemaBuilder):
        self.build_object_class_info(schema_builder)

    def to_graph_value(self, attr: GraphAttribute, attribute: Attribute) -> Any:
        if attr.name == PASSWORD_NAME:
            password = attribute.single_value()
            if not password:
                raise InvalidAttributeValueError("Password must not be empty")
            return {
                'password': password,
                'forceChangePasswordNextSignIn': self.force_password_change,
            }
        return super().to_graph_value(attr, attribute)

    def create(self, uid: Optional[Uid], attributes: AttributeSet) -> Uid:
        """
        Create a user.

        Graph assigns user ids, so an existing uid turns the call into an update.
        """
        if uid is not None and not uid.is_empty():
            self.update_replace(uid, attributes)
            return uid

        payload = self.build_payload(attributes, creating=True)
        payload.setdefault('accountEnabled', True)

        logger.info(f"Creating user '{payload.get('userPrincipalName')}'")
        response = self.client.request('POST', '/users', body=payload)

        user_id = response.get('id')
        if not user_id:
            raise GraphAPIError(f"User creation response missing id for '{payload.get('userPrincipalName')}'")
        logger.info(f"Created user '{payload.get('userPrincipalName')}' with id {user_id}")
        return Uid(user_id)

    def update_replace(self, uid: Uid, attributes: AttributeSet):
        payload = self.build_payload(attributes, creating=False)
        if not payload:
            logger.debug(f"No fields to update for user {uid}")
            return

        logger.info(f"Updating user {uid}: {', '.join(sorted(payload))}")
        self.client.request('PATCH', f'/users/{uid.value}', body=payload)

    def update_multi_value_delta(self, uid: Uid, deltas: List[AttributeDelta],
                                 options: OperationOptions):
        for delta in deltas:
            self.check_multi_valued_delta(delta)
        self.apply_collection_deltas(uid, deltas)
