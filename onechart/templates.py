from __future__ import annotations

import threading
from typing import List, Optional
from uuid import uuid4

from onechart.errors import TemplateNotFound
from onechart.models import Template

DEFAULT_TEMPLATES: List[Template] = [
    Template(
        id="t1",
        name="SOAP Note",
        description="Standard Subjective, Objective, Assessment, Plan format.",
        system_prompt="Create a standard SOAP note. Structure: Subjective, Objective, Assessment, Plan.",
    ),
    Template(
        id="t2",
        name="Progress Note",
        description="For daily rounds or follow-up visits.",
        system_prompt=(
            "Create a hospital Progress Note. Structure: Interval History, Exam, "
            "Labs/Imaging, Assessment/Plan."
        ),
    ),
    Template(
        id="t3",
        name="Discharge Summary",
        description="Summary of hospital stay and discharge instructions.",
        system_prompt=(
            "Create a Discharge Summary. Structure: Admission Diagnosis, Discharge Diagnosis, "
            "Hospital Course, Discharge Medications, Follow-up."
        ),
    ),
    Template(
        id="t4",
        name="Psychiatric Evaluation",
        description="Mental status exam and history.",
        system_prompt=(
            "Create a Psychiatric Evaluation. Structure: History of Present Illness, "
            "Past Psych History, Mental Status Exam, Risk Assessment, Plan."
        ),
    ),
]


def _clean_str(x) -> str:
    return str(x).strip() if x is not None else ""


class TemplateRegistry:
    """Drafting templates, kept in process memory and seeded with the defaults."""

    def __init__(self, templates: Optional[List[Template]] = None) -> None:
        self._lock = threading.Lock()
        seed = DEFAULT_TEMPLATES if templates is None else templates
        self._templates: List[Template] = [t.model_copy() for t in seed]

    def list(self) -> List[Template]:
        with self._lock:
            return [t.model_copy() for t in self._templates]

    def get(self, template_id: str) -> Optional[Template]:
        with self._lock:
            for t in self._templates:
                if t.id == template_id:
                    return t.model_copy()
        return None

    def resolve(self, template_id: Optional[str]) -> Template:
        """The requested template, or the first one when the id is unknown."""
        found = self.get(template_id or "")
        if found is not None:
            return found
        with self._lock:
            if not self._templates:
                raise TemplateNotFound("No templates configured.")
            return self._templates[0].model_copy()

    def add(self, name: str, system_prompt: str, description: str = "") -> Template:
        name = _clean_str(name)
        system_prompt = _clean_str(system_prompt)
        if not name or not system_prompt:
            raise ValueError("Template name and instructions are required.")
        template = Template(
            id=uuid4().hex,
            name=name,
            description=_clean_str(description),
            system_prompt=system_prompt,
        )
        with self._lock:
            self._templates.append(template)
        return template.model_copy()

    def delete(self, template_id: str) -> bool:
        with self._lock:
            before = len(self._templates)
            self._templates = [t for t in self._templates if t.id != template_id]
            return len(self._templates) != before
