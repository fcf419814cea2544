"""Active prompt template lookup and rendering."""

from string import Template
from typing import Any, Dict, List, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.enums import PipelineStage, PromptCategory
from docflow.database.models import PromptTemplate
from docflow.pipeline.stages import prompt_category
from docflow.repositories.prompt_template_repository import PromptTemplateRepository
from docflow.schemas.pipeline import RenderedPrompt
from docflow.utils.exceptions import TemplateNotFoundError, TemplateRenderError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class PromptResolver:
    """Selects the highest active template version at query time.

    Nothing is cached: activating a new version takes effect on the next
    stage run.
    """

    def __init__(self, session: AsyncSession):
        self.templates = PromptTemplateRepository(session)

    async def resolve(self, category: PromptCategory) -> PromptTemplate:
        template = await self.templates.get_active_by_category(category)
        if template is None:
            raise TemplateNotFoundError(f"No active prompt template for category {category.value}")
        return template

    async def render_for_stage(self, stage: PipelineStage, context: Mapping[str, Any]) -> RenderedPrompt:
        category = prompt_category(stage)
        if category is None:
            raise TemplateNotFoundError(f"Stage {stage.value} does not use a prompt template")

        template = await self.resolve(category)
        text = render_template(template.template, template.variables or [], context)
        LOGGER.debug(
            f"Rendered prompt {template.name} v{template.version}",
            extra={"stage": stage.value, "length": len(text)},
        )
        return RenderedPrompt(name=template.name, version=template.version, text=text)


def render_template(template_text: str, variables: List[Dict[str, Any]], context: Mapping[str, Any]) -> str:
    """Substitute declared ``$name`` variables from ``context``.

    Optional variables missing from the context render as empty strings.

    Raises:
        TemplateRenderError: A required variable is missing, or the text
            references a variable that was not declared
    """
    values: Dict[str, str] = {}
    missing = []
    for variable in variables:
        name = variable["name"]
        value = context.get(name)
        if value is None or value == "":
            if variable.get("required", True):
                missing.append(name)
            value = ""
        values[name] = str(value)

    if missing:
        raise TemplateRenderError(f"Missing required template variables: {', '.join(sorted(missing))}")

    try:
        return Template(template_text).substitute(values)
    except KeyError as e:
        raise TemplateRenderError(f"Template references undeclared variable {e.args[0]!r}", original_error=e) from e
    except ValueError as e:
        raise TemplateRenderError(f"Malformed template: {e}", original_error=e) from e


DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "document-classification",
        "category": PromptCategory.CLASSIFICATION,
        "description": "Classify the uploaded document",
        "variables": [
            {"name": "filename", "required": False},
            {"name": "mime_type", "required": False},
        ],
        "template": (
            "Analyze the attached document ($filename, $mime_type) and classify it into one of:\n"
            "- INVOICE: Commercial invoice for goods or services\n"
            "- RECEIPT: Payment receipt (shopping, restaurant, etc.)\n"
            "- PAYSLIP: Employee salary/wage statement\n"
            "- BANK_STATEMENT: Bank account statement\n"
            "- TAX_FORM: Tax-related document\n"
            "- CONTRACT: Legal agreement or contract\n"
            "- OTHER: Any other document type\n\n"
            'Answer as JSON: {"document_type": "...", "reasoning": "...", "confidence": 0.0}'
        ),
    },
    {
        "name": "document-extraction",
        "category": PromptCategory.EXTRACTION,
        "description": "Extract structured fields for the classified type",
        "variables": [
            {"name": "document_type", "required": True},
            {"name": "filename", "required": False},
        ],
        "template": (
            "Extract all relevant structured data from this $document_type document ($filename).\n"
            "Use snake_case field names (for example invoice_number, date, total, currency), "
            "ISO 8601 dates and plain numbers for amounts.\n"
            "Return one JSON object with the fields as keys and a top-level confidence."
        ),
    },
    {
        "name": "document-validation",
        "category": PromptCategory.VALIDATION,
        "description": "Check extracted data for errors and inconsistencies",
        "variables": [
            {"name": "document_type", "required": True},
            {"name": "extracted_data", "required": True},
            {"name": "business_rules", "required": False},
        ],
        "template": (
            "Validate this data extracted from a $document_type document:\n$extracted_data\n\n"
            "$business_rules\n\n"
            'Answer as JSON: {"is_valid": true, "issues": [{"field": "...", "issue": "...", '
            '"severity": "error|warning|info", "suggested_fix": "..."}], "confidence": 0.0}'
        ),
    },
    {
        "name": "document-correction",
        "category": PromptCategory.CORRECTION,
        "description": "Fix the issues found during validation",
        "variables": [
            {"name": "document_type", "required": True},
            {"name": "extracted_data", "required": True},
            {"name": "validation_issues", "required": True},
        ],
        "template": (
            "The following data was extracted from a $document_type document:\n$extracted_data\n\n"
            "Validation found these issues:\n$validation_issues\n\n"
            "Re-read the attached document and fix the issues. Answer as JSON: "
            '{"corrected_data": {...all fields...}, "changes": ["..."], "confidence": 0.0}'
        ),
    },
]


async def seed_default_templates(session: AsyncSession) -> List[PromptTemplate]:
    """Install version-1 defaults for categories that have no active template."""
    repository = PromptTemplateRepository(session)
    created = []
    for spec in DEFAULT_TEMPLATES:
        if await repository.get_active_by_category(spec["category"]) is not None:
            continue
        created.append(
            await repository.create(
                name=spec["name"],
                category=spec["category"],
                version=await repository.next_version(spec["name"]),
                template=spec["template"],
                variables=spec["variables"],
                description=spec["description"],
                is_active=True,
            )
        )
    await session.commit()
    if created:
        LOGGER.info(f"Seeded {len(created)} default prompt template(s)")
    return created
