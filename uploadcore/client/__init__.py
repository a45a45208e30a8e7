from .uploader import ChunkedUploader, RETRYABLE_ERRORS

__all__ = [
    'ChunkedUploader',
    'RETRYABLE_ERRORS'
]
