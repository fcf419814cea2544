"""Repository for prompt templates."""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.enums import PromptCategory
from docflow.database.models import PromptTemplate
from docflow.repositories.base_repository import BaseRepository


class PromptTemplateRepository(BaseRepository[PromptTemplate]):

    def __init__(self, session: AsyncSession):
        super().__init__(session, PromptTemplate)

    async def get_active_by_category(self, category: PromptCategory) -> Optional[PromptTemplate]:
        """Highest active version for a category, ties broken by newest row."""
        try:
            result = await self.session.execute(
                select(PromptTemplate)
                .where(PromptTemplate.category == category)
                .where(PromptTemplate.is_active.is_(True))
                .order_by(PromptTemplate.version.desc(), PromptTemplate.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error resolving active template for {category}: {str(e)}", exc_info=True)
            raise

    async def next_version(self, name: str) -> int:
        try:
            result = await self.session.execute(
                select(func.max(PromptTemplate.version)).where(PromptTemplate.name == name)
            )
            current = result.scalar_one_or_none()
            return (current or 0) + 1
        except SQLAlchemyError as e:
            self.logger.error(f"Error reading template versions for {name}: {str(e)}", exc_info=True)
            raise
