"""Upload engine error taxonomy"""


class UploadError(Exception):
    """Base exception for upload engine errors"""
    pass


class InvalidArgument(UploadError):
    """Raised when a request is malformed, before any state is touched"""
    pass


class NotFound(UploadError):
    """Raised when a session id, or the stored file it produced, is unknown"""

    def __init__(self, session_id: str, what: str = "Upload session"):
        super().__init__(f"{what} not found: {session_id}")
        self.session_id = session_id


class OutOfRange(UploadError):
    """Raised when a chunk index falls outside [0, total_chunks)"""

    def __init__(self, index: int, total_chunks: int):
        super().__init__(f"Chunk index {index} out of range [0, {total_chunks})")
        self.index = index
        self.total_chunks = total_chunks


class MissingChunk(UploadError):
    """Raised by the chunk store when a staged chunk is absent"""

    def __init__(self, session_id: str, index: int):
        super().__init__(f"Chunk {index} of session {session_id} is missing")
        self.session_id = session_id
        self.index = index


class IncompleteUpload(UploadError):
    """Raised when assembly is attempted before every chunk is present"""

    def __init__(self, session_id: str, missing_index: int):
        super().__init__(
            f"Upload {session_id} is incomplete: chunk {missing_index} is missing"
        )
        self.session_id = session_id
        self.missing_index = missing_index


class PayloadTooLarge(UploadError):
    """Raised at initiate when the declared size exceeds the configured limit"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"File size {size} exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class IllegalState(UploadError):
    """Raised when a status transition is not permitted"""

    def __init__(self, current, requested):
        super().__init__(
            f"Illegal transition {getattr(current, 'value', current)} -> "
            f"{getattr(requested, 'value', requested)}"
        )
        self.current = current
        self.requested = requested
