"""Storage layout and path-token sanitizing"""

import re
from pathlib import Path

from ..exceptions import InvalidArgument

ORIGINAL = "original"
THUMBNAIL = "thumbnail"

# Owner and file ids: opaque tokens, never path fragments
_TOKEN_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$')
_UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9._ ()+-]')
MAX_NAME_LENGTH = 255


def safe_token(value: str, what: str = "token") -> str:
    """Validate an id used as a single path segment"""
    if not isinstance(value, str) or not _TOKEN_RE.match(value) or '..' in value:
        raise InvalidArgument(f"Invalid {what}: {value!r}")
    return value


def safe_file_name(name: str) -> str:
    """
    Reduce a client-supplied file name to a single safe path segment.
    Directory parts are dropped and unsafe characters replaced.
    """
    if not isinstance(name, str):
        raise InvalidArgument(f"Invalid file name: {name!r}")

    base = re.split(r'[\\/]', name)[-1]
    base = _UNSAFE_NAME_CHARS.sub('_', base).strip(' .')
    if not base:
        raise InvalidArgument(f"Invalid file name: {name!r}")

    if len(base) > MAX_NAME_LENGTH:
        stem, dot, ext = base.rpartition('.')
        if dot and len(ext) < 16:
            base = stem[:MAX_NAME_LENGTH - len(ext) - 1] + '.' + ext
        else:
            base = base[:MAX_NAME_LENGTH]
    return base


def public_path(owner_id: str, file_id: str, kind: str, name: str) -> str:
    """Path exposed to the static-file layer, relative to the upload root"""
    return f"{owner_id}/{file_id}/{kind}/{name}"


class StorageLayout:
    """
    Directory layout under the upload root

        <root>/.staging/<session_id>/chunk-<n>
        <root>/<owner>/<file_id>/original/<name>
        <root>/<owner>/<file_id>/thumbnail/<name>

    Staging lives under a dot-directory, which no owner token can name.
    """

    STAGING = ".staging"

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def staging_root(self) -> Path:
        return self.root / self.STAGING

    def staging_dir(self, session_id: str) -> Path:
        return self.staging_root / safe_token(session_id, "session id")

    def chunk_path(self, session_id: str, chunk_index: int) -> Path:
        return self.staging_dir(session_id) / f"chunk-{int(chunk_index)}"

    def owner_dir(self, owner_id: str) -> Path:
        return self.root / safe_token(owner_id, "owner id")

    def file_dir(self, owner_id: str, file_id: str) -> Path:
        return self.owner_dir(owner_id) / safe_token(file_id, "file id")

    def original_path(self, owner_id: str, file_id: str, name: str) -> Path:
        return self.file_dir(owner_id, file_id) / ORIGINAL / safe_file_name(name)

    def thumbnail_path(self, owner_id: str, file_id: str, name: str) -> Path:
        return self.file_dir(owner_id, file_id) / THUMBNAIL / safe_file_name(name)
