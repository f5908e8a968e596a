"""Provider connectors, OAuth token lifecycle and shared HTTP helpers.

Keep imports in this module lightweight: `accountsync.connectors.http` and
`accountsync.connectors.base` are imported from many places.
"""
