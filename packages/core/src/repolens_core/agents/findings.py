"""Structured shapes agents report through.

Investigators and the challenge pass report ``FindingDraft`` items, the
explanation pass reports ``ExplanationDraft`` items. Each shape is exposed to
the model as a loop-local tool (a ``ReportChannel``) whose input is validated
here; the same models validate items scraped from tagged text blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from repolens_store.models import SEVERITIES, Evidence


class _Draft(BaseModel):
    # Models write camelCase in text blocks and snake_case in tool calls.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EvidenceDraft(_Draft):
    file_path: str = Field(..., alias="filePath", description="File path relative to the repository root")
    start_line: int = Field(default=1, alias="startLine", ge=0)
    end_line: Optional[int] = Field(default=None, alias="endLine", ge=0)
    snippet: str = Field(default="", description="The relevant code, copied from the file")

    def to_evidence(self) -> Evidence:
        end = self.end_line if self.end_line is not None and self.end_line >= self.start_line else self.start_line
        return Evidence(file_path=self.file_path, start_line=self.start_line, end_line=end, snippet=self.snippet)


class FindingDraft(_Draft):
    id: Optional[str] = Field(default=None, description="Existing finding id, when re-scoring a known finding")
    category: str = Field(default="", description="architecture, security or bugs")
    severity: str = Field(default="medium", description="critical, high, medium, low or info")
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    confidence: float = Field(default=0.5, description="0.0 to 1.0")
    evidence: list[EvidenceDraft] = Field(default_factory=list)

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value):
        value = str(value or "").strip().lower()
        return value if value in SEVERITIES else "medium"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, value))

    def evidence_list(self) -> list[Evidence]:
        return [e.to_evidence() for e in self.evidence]


class ReportFindingsInput(_Draft):
    findings: list[FindingDraft] = Field(default_factory=list, description="Every finding, with evidence")


class ExplanationDraft(_Draft):
    finding_id: str = Field(..., alias="findingId")
    summary: str = Field(default="", description="One-sentence plain-language summary")
    why_it_matters: str = Field(default="", alias="whyItMatters")
    suggested_fix: str = Field(default="", alias="suggestedFix")


class ReportExplanationsInput(_Draft):
    explanations: list[ExplanationDraft] = Field(default_factory=list)


@dataclass(frozen=True)
class ReportChannel:
    """A loop-local tool through which an agent hands back its results.

    ``tag`` names the text block used by the legacy extraction path and
    ``field`` the list attribute of ``input_model`` holding the items.
    """

    tool_name: str
    description: str
    input_model: type[BaseModel]
    item_model: type[BaseModel]
    field: str
    tag: str

    def schema(self) -> dict:
        return {
            "name": self.tool_name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


FINDINGS_CHANNEL = ReportChannel(
    tool_name="report_findings",
    description=(
        "Report your findings once the investigation is complete. Every finding needs at least "
        "one evidence entry pointing at the exact lines. Calling this again replaces earlier reports."
    ),
    input_model=ReportFindingsInput,
    item_model=FindingDraft,
    field="findings",
    tag="findings",
)

EXPLANATIONS_CHANNEL = ReportChannel(
    tool_name="report_explanations",
    description="Report one explanation per finding id. Calling this again replaces earlier reports.",
    input_model=ReportExplanationsInput,
    item_model=ExplanationDraft,
    field="explanations",
    tag="explanations",
)
