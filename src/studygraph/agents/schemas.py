"""Structured results submitted by agents.

Field aliases match the JSON agents write (``conceptName``, ``chunkTitle``...);
Python code uses the snake_case names.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

FileLinkKind = Literal["covers", "introduces", "applies", "references", "proves"]
ConceptLinkKind = Literal[
    "prerequisite", "related_to", "extends", "generalizes", "special_case_of", "contradicts"
]
QuestionLinkKind = Literal["tests", "applies", "requires"]

DEFAULT_FILE_CONFIDENCE = 0.8
DEFAULT_CONCEPT_CONFIDENCE = 0.7
DEFAULT_QUESTION_CONFIDENCE = 0.8


class AgentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExtractedConcept(AgentModel):
    name: str = Field(min_length=1)
    description: str | None = None
    aliases: list[str] = Field(default_factory=list)

    @field_validator("aliases", mode="before")
    @classmethod
    def _split_aliases(cls, v: Any) -> Any:
        # Agents usually send "A, B, C".
        if v is None:
            return []
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return v


class FileConceptLink(AgentModel):
    concept_name: str = Field(alias="conceptName")
    relationship: FileLinkKind
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    chunk_title: str | None = Field(default=None, alias="chunkTitle")


class ConceptConceptLink(AgentModel):
    source_concept: str = Field(alias="sourceConcept")
    target_concept: str = Field(alias="targetConcept")
    relationship: ConceptLinkKind
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class QuestionConceptLink(AgentModel):
    question_label: str = Field(alias="questionLabel")
    concept_name: str = Field(alias="conceptName")
    relationship: QuestionLinkKind
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ExtractionResult(AgentModel):
    concepts: list[ExtractedConcept] = Field(default_factory=list)
    file_concept_links: list[FileConceptLink] = Field(default_factory=list)
    concept_concept_links: list[ConceptConceptLink] = Field(default_factory=list)
    question_concept_links: list[QuestionConceptLink] = Field(default_factory=list)

    @property
    def link_count(self) -> int:
        return (
            len(self.file_concept_links)
            + len(self.concept_concept_links)
            + len(self.question_concept_links)
        )


class ConceptMerge(AgentModel):
    canonical_name: str = Field(alias="canonicalName")
    merge_names: list[str] = Field(alias="mergeNames")
    merged_description: str | None = Field(default=None, alias="mergedDescription")


class CleanupResult(AgentModel):
    merges: list[ConceptMerge] = Field(default_factory=list)
    delete_concepts: list[str] = Field(default_factory=list, alias="deleteConcepts")
    delete_relationships: list[str] = Field(default_factory=list, alias="deleteRelationships")
    notes: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.merges or self.delete_concepts or self.delete_relationships)


class CrossLinkResult(AgentModel):
    links: list[ConceptConceptLink] = Field(default_factory=list)


class QuestionConceptRef(AgentModel):
    concept_name: str = Field(alias="conceptName")
    relationship: QuestionLinkKind
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class QuestionRecord(AgentModel):
    question_number: str = Field(alias="questionNumber")
    content: str
    parent_number: str | None = Field(default=None, alias="parentNumber")
    marks: int | None = None
    question_type: str | None = Field(default=None, alias="questionType")
    command_words: str | None = Field(default=None, alias="commandWords")
    mark_scheme_text: str | None = Field(default=None, alias="markSchemeText")
    solution_text: str | None = Field(default=None, alias="solutionText")
    chunk_title: str | None = Field(default=None, alias="chunkTitle")
    concept_links: list[QuestionConceptRef] = Field(default_factory=list, alias="conceptLinks")
    metadata: dict[str, Any] | None = None


class ConceptUpdate(AgentModel):
    name: str
    content: str | None = None
    content_type: str | None = Field(default=None, alias="contentType")
    metadata: dict[str, Any] | None = None


class ChunkMetadata(AgentModel):
    chunk_title: str = Field(alias="chunkTitle")
    metadata: dict[str, Any]


class MetadataResult(AgentModel):
    questions: list[QuestionRecord] = Field(default_factory=list)
    concept_updates: list[ConceptUpdate] = Field(default_factory=list, alias="conceptUpdates")
    resource_metadata: dict[str, Any] | None = Field(default=None, alias="resourceMetadata")
    chunk_metadata: list[ChunkMetadata] = Field(default_factory=list, alias="chunkMetadata")


TaskKind = Literal["extraction", "cleanup", "cross_link", "metadata"]

RESULT_MODELS: dict[str, type[AgentModel]] = {
    "extraction": ExtractionResult,
    "cleanup": CleanupResult,
    "cross_link": CrossLinkResult,
    "metadata": MetadataResult,
}
