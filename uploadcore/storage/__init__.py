from .paths import StorageLayout, safe_token, safe_file_name, public_path, ORIGINAL, THUMBNAIL
from .mime import get_mime_type, is_image, DEFAULT_MIME_TYPE
from .chunks import ChunkStore, FileSystemChunkStore, remove_tree

__all__ = [
    'StorageLayout',
    'safe_token',
    'safe_file_name',
    'public_path',
    'ORIGINAL',
    'THUMBNAIL',
    'get_mime_type',
    'is_image',
    'DEFAULT_MIME_TYPE',
    'ChunkStore',
    'FileSystemChunkStore',
    'remove_tree'
]
