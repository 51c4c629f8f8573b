"""Provider integrations for brainsync.

Pulls activity from connected third-party providers, stores it as
normalized ingested items and tracks per-(user, provider) sync state.
"""
