"""Storage layer for NoteVault."""

from notevault.storage.content_codec import ContentCodec
from notevault.storage.link_graph import LinkGraph
from notevault.storage.metadata_parser import MetadataParser
from notevault.storage.repository_index import RepositoryIndex
from notevault.storage.version_store import VersionStore

__all__ = [
    "ContentCodec",
    "LinkGraph",
    "MetadataParser",
    "RepositoryIndex",
    "VersionStore",
]
