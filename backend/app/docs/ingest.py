"""Document ingestion - store the upload, create the row, start processing."""

import logging
from uuid import UUID

from backend.app.db.repositories import DocumentRepository
from backend.app.docs.errors import StorageError
from backend.app.docs.jobs import ProcessingJob, ProcessingJobRunner
from backend.app.docs.storage import StorageClient
from backend.app.models.docs import Document, DocumentUpload

logger = logging.getLogger(__name__)


async def upload_and_process(
    upload: DocumentUpload,
    content: str,
    *,
    user_id: UUID,
    documents: DocumentRepository,
    storage: StorageClient,
    runner: ProcessingJobRunner,
) -> tuple[Document, ProcessingJob]:
    """Ingest a document: keep the original bytes and submit a processing job.

    The content is written to storage first so that a later reprocess has
    a byte source. The document row starts in ``pending``; the returned job
    moves it through ``processing`` to a terminal state.

    Args:
        upload: Upload metadata (title, file info, storage path)
        content: Extracted document text
        user_id: Owning user
        documents: Document repository
        storage: Object storage for the original content
        runner: Job runner that executes processing

    Returns:
        (created Document, handle for the processing job)

    Raises:
        StorageError: If the content cannot be stored (no row is created)
    """
    await storage.upload(upload.storage_path, content.encode("utf-8"))

    document = await documents.create(upload, user_id)
    logger.info(
        f"[{document.document_id}] Created document '{document.title}' "
        f"({document.file_size} bytes) for user {user_id}"
    )

    job = runner.submit(document.document_id, content)
    return document, job


async def delete_document(
    document_id: UUID,
    user_id: UUID,
    *,
    documents: DocumentRepository,
    storage: StorageClient,
) -> bool:
    """Delete a user's document, its chunks and its stored content.

    Storage removal is best effort: a failure is logged and the rows are
    deleted anyway.

    Returns:
        False if the document does not exist or belongs to another user
    """
    document = await documents.get_for_user(document_id, user_id)
    if document is None:
        return False

    try:
        await storage.remove(document.storage_path)
    except StorageError as e:
        logger.warning(f"[{document_id}] Storage delete error: {e}")

    deleted = await documents.delete(document_id, user_id)
    if deleted:
        logger.info(f"[{document_id}] Deleted document and its chunks")
    return deleted
