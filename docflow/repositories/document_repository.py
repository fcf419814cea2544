"""Repository for documents."""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.base import utcnow
from docflow.database.enums import DocumentStatus, DocumentType
from docflow.database.models import Document
from docflow.repositories.base_repository import BaseRepository


class DocumentRepository(BaseRepository[Document]):
    """Documents are never deleted; ``archive`` is the only way out."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Document)

    async def get_by_storage_key(self, storage_key: str) -> Optional[Document]:
        try:
            result = await self.session.execute(
                select(Document).where(Document.storage_key == storage_key)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving document by storage key: {str(e)}", exc_info=True)
            raise

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[DocumentStatus] = None,
        document_type: Optional[DocumentType] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Document]:
        """Newest first; archived documents only when asked for explicitly."""
        try:
            query = select(Document).where(Document.user_id == user_id)
            if status is not None:
                query = query.where(Document.status == status)
            else:
                query = query.where(Document.status != DocumentStatus.ARCHIVED)
            if document_type is not None:
                query = query.where(Document.document_type == document_type)

            query = query.order_by(Document.created_at.desc()).offset(skip).limit(limit)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing documents for user {user_id}: {str(e)}", exc_info=True)
            raise

    async def archive(self, document_id: UUID) -> Optional[Document]:
        document = await self.get_by_id(document_id)
        if document is None:
            return None
        document.status = DocumentStatus.ARCHIVED
        document.archived_at = utcnow()
        await self.session.flush()
        return document
