"""Forwarding engine: credentials, bookmarks, tailing, serialization and the poll loop."""
