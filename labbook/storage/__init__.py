"""Labbook storage backends.

Local-first storage using SQLite, the identifier mapping table that links
local ids to remote ids, and the remote document store adapters.
"""

from .codecs import COLLECTIONS, collection_for, decode, decode_all, encode
from .mappings import IdentifierMappingStore
from .remote import HttpDocumentStore, InMemoryDocumentStore, RemoteStore
from .schema import SCHEMA_VERSION
from .sqlite import SQLiteStorage

__all__ = [
    # Local
    "SQLiteStorage",
    "SCHEMA_VERSION",
    "IdentifierMappingStore",
    # Remote
    "RemoteStore",
    "HttpDocumentStore",
    "InMemoryDocumentStore",
    # Codecs
    "COLLECTIONS",
    "collection_for",
    "encode",
    "decode",
    "decode_all",
]
