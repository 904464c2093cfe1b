"""Built-in workflow templates operators can copy into their own definitions."""

from functools import lru_cache
from pathlib import Path
from typing import List, Tuple

import yaml
from loguru import logger

from ..models.workflow import WorkflowTemplate
from .errors import TemplateNotFoundError

TEMPLATES_PATH = Path(__file__).with_name("templates.yaml")


@lru_cache
def _load(path: Path = TEMPLATES_PATH) -> Tuple[WorkflowTemplate, ...]:
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    templates = [WorkflowTemplate.model_validate(t) for t in data.get("templates", [])]
    templates.sort(key=lambda t: t.category)
    logger.debug(f"Loaded {len(templates)} workflow templates from {path.name}")
    return tuple(templates)


def list_templates() -> List[WorkflowTemplate]:
    """Templates ordered by category."""
    return list(_load())


def get_template(template_id: str) -> WorkflowTemplate:
    for template in _load():
        if template.id == template_id:
            return template
    raise TemplateNotFoundError(template_id)
