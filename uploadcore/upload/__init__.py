from .engine import UploadEngine, InitiatedUpload, create_backend

__all__ = [
    'UploadEngine',
    'InitiatedUpload',
    'create_backend'
]
