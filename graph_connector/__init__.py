"""
MS Graph Identity Connector - Provision users and groups in Microsoft Entra ID.

This package exposes a uniform create/delete/search/update/schema contract to an
identity-management host and translates each call into Microsoft Graph
directory-object operations.
"""

__version__ = "1.0.0"
__author__ = "Graph Connector Team"
