"""MIME type lookup by file extension"""

from pathlib import PurePosixPath

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.gif': 'image/gif',
    '.webp': 'image/webp',
    '.mp4': 'video/mp4',
    '.mov': 'video/quicktime',
    '.avi': 'video/x-msvideo',
    '.webm': 'video/webm',
}


def extension(file_name: str) -> str:
    return PurePosixPath(file_name).suffix.lower()


def get_mime_type(file_name: str) -> str:
    return MIME_TYPES.get(extension(file_name), DEFAULT_MIME_TYPE)


def is_image(mime_type: str) -> bool:
    return bool(mime_type) and mime_type.startswith('image/')
