"""Pydantic schemas: import feeds, evaluator results, and API responses."""
from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

GIVEN_BEFORE_CATEGORY = "Have you given this talk before?"
NO_KEY_TAKEAWAYS = "No key takeaways provided"

SESSION_FALLBACK_JUSTIFICATION = "Unable to parse response"
SPEAKER_FALLBACK_JUSTIFICATION = "Unable to assess - no Sessionize profile found"


class _FeedModel(BaseModel):
    """Feed records keep unknown keys and accept both camelCase and snake_case."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ---------------------------------------------------------------------------
# Session feed
# ---------------------------------------------------------------------------


class QuestionAnswer(_FeedModel):
    question: str = ""
    answer: str | None = None
    question_type: str = Field("", alias="questionType")

    @field_validator("question", "question_type", mode="before")
    @classmethod
    def null_text_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class CategoryItem(_FeedModel):
    name: str = ""


class Category(_FeedModel):
    name: str = ""
    category_items: list[CategoryItem] = Field(default_factory=list, alias="categoryItems")


class SpeakerRef(_FeedModel):
    id: str | None = None
    name: str = ""


class SessionSubmission(_FeedModel):
    id: str
    title: str
    description: str = ""
    question_answers: list[QuestionAnswer] = Field(default_factory=list, alias="questionAnswers")
    categories: list[Category] = Field(default_factory=list)
    speakers: list[SpeakerRef] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def null_description_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("question_answers", "categories", "speakers", mode="before")
    @classmethod
    def null_list_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def key_takeaways(self) -> str:
        for qa in self.question_answers:
            if "key takeaways" in qa.question.lower():
                return qa.answer or NO_KEY_TAKEAWAYS
        return NO_KEY_TAKEAWAYS

    def given_before(self) -> str:
        for cat in self.categories:
            if cat.name == GIVEN_BEFORE_CATEGORY:
                return ", ".join(item.name for item in cat.category_items)
        return ""


class SessionGroup(_FeedModel):
    group_id: str | int | None = Field(None, alias="groupId")
    group_name: str = Field("", alias="groupName")
    sessions: list[dict[str, Any]]


class WrappedFeed(BaseModel):
    """``{"sessions": [group, ...]}``"""
    kind: Literal["wrapped"] = "wrapped"
    sessions: list[SessionGroup]


class GroupListFeed(BaseModel):
    """``[group, ...]``"""
    kind: Literal["group_list"] = "group_list"
    groups: list[SessionGroup]


SessionFeed = Annotated[WrappedFeed | GroupListFeed, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Speaker feed
# ---------------------------------------------------------------------------


class SpeakerRecord(_FeedModel):
    id: str
    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    full_name: str = Field("", alias="fullName")
    bio: str | None = ""
    tag_line: str | None = Field("", alias="tagLine")
    profile_picture: str | None = Field("", alias="profilePicture")
    is_top_speaker: bool = Field(False, alias="isTopSpeaker")
    sessions: list[Any] = Field(default_factory=list)
    links: list[Any] = Field(default_factory=list)
    question_answers: list[Any] = Field(default_factory=list, alias="questionAnswers")
    categories: list[Any] = Field(default_factory=list)

    @field_validator("first_name", "last_name", "full_name", mode="before")
    @classmethod
    def null_name_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("is_top_speaker", mode="before")
    @classmethod
    def null_flag_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("sessions", "links", "question_answers", "categories", mode="before")
    @classmethod
    def null_list_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


# ---------------------------------------------------------------------------
# Evaluator results
# ---------------------------------------------------------------------------


class CriterionScore(BaseModel):
    score: int = Field(ge=1, le=5)
    justification: str


class SessionEvaluationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: CriterionScore
    description: CriterionScore
    key_takeaways: CriterionScore = Field(alias="keyTakeaways")
    given_before: CriterionScore = Field(alias="givenBefore")

    @property
    def total(self) -> int:
        return self.title.score + self.description.score + self.key_takeaways.score + self.given_before.score

    @classmethod
    def fallback(cls) -> SessionEvaluationResult:
        default = {"score": 3, "justification": SESSION_FALLBACK_JUSTIFICATION}
        return cls(title=default, description=default, key_takeaways=default, given_before=default)


class SpeakerAssessmentResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expertise_match: int = Field(ge=1, le=3, alias="expertiseMatch")
    expertise_match_justification: str = Field(alias="expertiseMatchJustification")
    topics_relevance: int = Field(ge=1, le=3, alias="topicsRelevance")
    topics_relevance_justification: str = Field(alias="topicsRelevanceJustification")

    @classmethod
    def fallback(cls) -> SpeakerAssessmentResult:
        return cls(
            expertise_match=2,
            expertise_match_justification=SPEAKER_FALLBACK_JUSTIFICATION,
            topics_relevance=2,
            topics_relevance_justification=SPEAKER_FALLBACK_JUSTIFICATION,
        )


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class SpeakerOut(BaseModel):
    id: str
    first_name: str
    last_name: str
    full_name: str
    bio: str
    tag_line: str
    profile_picture: str
    is_top_speaker: bool
    links: list[Any] = []
    sessions: list[Any] = []


class SessionOut(BaseModel):
    id: str
    title: str
    status: str
    submission_status: str | None = None
    session_data: dict[str, Any] = {}
    title_score: int | None = None
    title_justification: str | None = None
    description_score: int | None = None
    description_justification: str | None = None
    key_takeaways_score: int | None = None
    key_takeaways_justification: str | None = None
    given_before_score: int | None = None
    given_before_justification: str | None = None
    evaluation_score_total: int | None = None
    created_at: str
    completed_at: str | None = None
    speakers: list[SpeakerOut] = []


class SpeakerEvaluationOut(BaseModel):
    id: int
    speaker_id: str
    profile_url: str
    expertise_match: int
    expertise_match_justification: str
    topics_relevance: int
    topics_relevance_justification: str
    created_at: str


class SessionStatsOut(BaseModel):
    total: int
    processed: int
    unprocessed: int
    average_total_score: float | None = None
    average_criteria: dict[str, float | None] = {}


class SpeakerStatsOut(BaseModel):
    total: int
    with_sessions: int
    top_speakers: int


class EvaluationStatsOut(BaseModel):
    rows: int
    evaluated_speakers: int
    average_expertise_match: float | None = None
    average_topics_relevance: float | None = None


class StatsOut(BaseModel):
    sessions: SessionStatsOut
    speakers: SpeakerStatsOut
    speaker_evaluations: EvaluationStatsOut


class ResetOut(BaseModel):
    reset: int
