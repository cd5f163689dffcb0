"""Object processors: one per supported object class."""

from graph_connector.processors.base import GraphAttribute, ObjectProcessing
from graph_connector.processors.groups import GroupProcessing
from graph_connector.processors.users import UserProcessing

__all__ = ['GraphAttribute', 'ObjectProcessing', 'UserProcessing', 'GroupProcessing']
