"""Type definitions for the diff module."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChangeKind = Literal["added", "removed", "modified"]
Category = Literal["content", "style", "structure"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class DiffChange(_CamelModel):
    """One classified difference between two page versions."""

    type: Category
    priority: int
    element: str
    change: ChangeKind
    attribute: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None
    context: Optional[str] = None


class ChangeClassification(_CamelModel):
    content: list[DiffChange] = Field(default_factory=list)
    style: list[DiffChange] = Field(default_factory=list)
    structure: list[DiffChange] = Field(default_factory=list)

    def all_changes(self) -> list[DiffChange]:
        return [*self.content, *self.style, *self.structure]


class DiffSummary(_CamelModel):
    total_changes: int = 0
    content_changes: int = 0
    style_changes: int = 0
    structure_changes: int = 0
    highest_priority: int = 0

    @classmethod
    def from_classification(cls, classification: ChangeClassification) -> "DiffSummary":
        changes = classification.all_changes()
        return cls(
            total_changes=len(changes),
            content_changes=len(classification.content),
            style_changes=len(classification.style),
            structure_changes=len(classification.structure),
            highest_priority=max((c.priority for c in changes), default=0),
        )


class DiffMetadata(_CamelModel):
    generated_at: str
    generation_time: int = 0  # milliseconds
    is_partial: bool = False
    cache_key: Optional[str] = None


class DetailedDiff(_CamelModel):
    url: str
    date: str
    previous_hash: str
    current_hash: str
    classification: ChangeClassification = Field(default_factory=ChangeClassification)
    summary: DiffSummary = Field(default_factory=DiffSummary)
    metadata: DiffMetadata

    @property
    def has_changes(self) -> bool:
        return self.summary.total_changes > 0

    def refresh_summary(self) -> None:
        self.summary = DiffSummary.from_classification(self.classification)


class DiffOptions(_CamelModel):
    include_content: bool = True
    include_style: bool = True
    include_structure: bool = True
    max_changes: Optional[int] = None
    cache_enabled: bool = True
    progressive_load: bool = True


class DiffCacheEntry(_CamelModel):
    key: str
    diff: DetailedDiff
    expires_at: int  # epoch milliseconds


class DiffComparison(_CamelModel):
    """Input for one entry of a batch diff."""

    url: str
    previous_content: str
    current_content: str
    previous_hash: str
    current_hash: str


class UrlHistoryEntry(_CamelModel):
    date: str
    hash: str
    has_changes: bool = False


class DiffCacheStats(_CamelModel):
    total_entries: int = 0
    total_size: int = 0
