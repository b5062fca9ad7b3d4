"""
Question Schemas

Pydantic models for questions, their options and tags as the backend
returns them, plus the filter used to query them.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================
# Enums
# ============================================================

class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class TagType(str, Enum):
    SUBJECT = "subject"
    SYSTEM = "system"
    TOPIC = "topic"


# ============================================================
# Backend Rows
# ============================================================

class QuestionOption(BaseModel):
    """A single answer choice."""
    id: str
    text: str


class Question(BaseModel):
    """
    A question as fetched from the `questions` table.

    Immutable from our side once fetched. `correct_option_id` never
    leaves the service before the user has answered.
    """
    id: str
    question_text: str
    options: List[QuestionOption] = Field(default_factory=list)
    correct_option_id: str
    explanation: str = ""
    difficulty: Difficulty = Difficulty.MEDIUM
    points: int = Field(default=1, ge=0)
    is_active: bool = True
    tag_ids: List[str] = Field(default_factory=list)

    @field_validator("id", "correct_option_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    def option_ids(self) -> List[str]:
        return [option.id for option in self.options]

    class Config:
        from_attributes = True


class Tag(BaseModel):
    """Subject / system / topic tag used for category filters."""
    id: str
    name: str
    slug: Optional[str] = None
    type: TagType
    is_active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)


# ============================================================
# Query Filter
# ============================================================

class QuestionFilter(BaseModel):
    """
    Filter for fetching active questions.

    `category_id` is a tag id (subject, system or topic); None means
    "mixed". `exclude_ids` drops already-seen questions, `include_ids`
    restricts the pool to a known set (used for backfill).
    """
    category_id: Optional[str] = None
    tag_ids: List[str] = Field(default_factory=list)
    difficulty: Optional[Difficulty] = None
    limit: Optional[int] = Field(default=None, ge=1)
    exclude_ids: List[str] = Field(default_factory=list)
    include_ids: Optional[List[str]] = None

    def all_tag_ids(self) -> List[str]:
        tags = list(self.tag_ids)
        if self.category_id and self.category_id not in tags:
            tags.insert(0, self.category_id)
        return tags
