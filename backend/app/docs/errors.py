"""Error taxonomy for the ingestion pipeline and chat responder."""

from uuid import UUID


class PipelineError(Exception):
    """Base class for ingestion and chat pipeline failures."""

    pass


class EmptyDocumentError(PipelineError):
    """Chunking produced zero chunks."""

    def __init__(self, message: str = "No chunks generated from document") -> None:
        super().__init__(message)


class EmbeddingServiceError(PipelineError):
    """The embedding batch call failed or returned malformed output."""

    pass


class PersistenceError(PipelineError):
    """A chunk batch insert failed."""

    pass


class AlreadyProcessingError(PipelineError):
    """Processing was requested for a document that is already processing."""

    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document {document_id} is already being processed")
        self.document_id = document_id


class DocumentNotFoundError(PipelineError):
    """Document does not exist or is not visible to the caller."""

    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class StorageError(PipelineError):
    """Object storage read/write failed."""

    pass


class RetrievalError(PipelineError):
    """Vector search failed."""

    pass


class GenerationError(PipelineError):
    """The completion stream failed."""

    pass


class ChatSessionNotFoundError(PipelineError):
    """Chat session does not exist or belongs to another user."""

    def __init__(self, session_id: UUID) -> None:
        super().__init__("Session not found")
        self.session_id = session_id
