"""Repository for processing jobs, including the per-document lease."""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.base import utcnow
from docflow.database.models import ProcessingJob
from docflow.repositories.base_repository import BaseRepository


class ProcessingJobRepository(BaseRepository[ProcessingJob]):

    def __init__(self, session: AsyncSession):
        super().__init__(session, ProcessingJob)

    async def get_by_document_id(self, document_id: UUID) -> Optional[ProcessingJob]:
        try:
            result = await self.session.execute(
                select(ProcessingJob).where(ProcessingJob.document_id == document_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving processing job for document {document_id}: {str(e)}",
                exc_info=True,
            )
            raise

    async def get_by_external_id(self, external_job_id: str) -> Optional[ProcessingJob]:
        try:
            result = await self.session.execute(
                select(ProcessingJob).where(ProcessingJob.external_job_id == external_job_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving processing job {external_job_id}: {str(e)}", exc_info=True)
            raise

    async def claim(
        self,
        document_id: UUID,
        owner: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Take the job lease with a conditional UPDATE.

        Succeeds when nobody holds the lease or the holder's lease expired.
        The caller commits.

        Returns:
            True if this owner now holds the lease
        """
        now = now or utcnow()
        try:
            result = await self.session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.document_id == document_id)
                .where(
                    or_(
                        ProcessingJob.lease_owner.is_(None),
                        ProcessingJob.lease_expires_at < now,
                    )
                )
                .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=lease_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error(f"Error claiming processing job for {document_id}: {str(e)}", exc_info=True)
            raise

    async def release(self, document_id: UUID, owner: str) -> bool:
        """Drop the lease if ``owner`` still holds it. The caller commits."""
        try:
            result = await self.session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.document_id == document_id)
                .where(ProcessingJob.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error(f"Error releasing processing job for {document_id}: {str(e)}", exc_info=True)
            raise
