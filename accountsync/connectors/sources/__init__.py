"""
Source Connectors

Implementations of BaseConnector. Importing this package registers them.
"""

# Email
from accountsync.connectors.sources.email.gmail import GmailConnector

# CRM
from accountsync.connectors.sources.crm.hubspot import HubSpotConnector

__all__ = [
    "GmailConnector",
    "HubSpotConnector",
]
