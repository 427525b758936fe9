"""
Core Pydantic schemas for the Lexis reader.

The parser, scheduler, cache and vocabulary store all exchange these
models, so every annotated paragraph can be traced back to the book,
chunk and density it was produced for.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# --- Enumerations ------------------------------------------------------------

class SegmentLanguage(str, Enum):
    SOURCE = "source"            # untouched text in the book's language
    TARGET = "target"            # substitution in the language being learned


class ParagraphStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    DONE = "done"
    ERROR = "error"


class FetchStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    DONE = "done"
    ERROR = "error"


# --- Catalogue ----------------------------------------------------------------

class Author(BaseModel):
    name: str
    birth_year: Optional[int] = None
    death_year: Optional[int] = None


class Book(BaseModel):
    """A catalogue record as returned by Gutendex (or synthesised for local files)."""

    id: int | str
    title: str
    authors: list[Author] = Field(default_factory=list)
    subjects: list[str] = Field(default_factory=list)
    formats: dict[str, str] = Field(default_factory=dict)
    download_count: int = 0

    @computed_field
    @property
    def document_id(self) -> str:
        """Stable string key used by the paragraph cache."""
        return str(self.id)


class SearchResult(BaseModel):
    count: int
    next: Optional[str] = None
    previous: Optional[str] = None
    results: list[Book] = Field(default_factory=list)


# --- Parsed text --------------------------------------------------------------

class Chunk(BaseModel):
    """
    A titled, ordered group of paragraphs emitted by the parser.

    The title is either a detected heading ("CHAPTER IV.") or a synthesised
    placeholder ("Part 3") when no heading preceded the content.
    """

    model_config = ConfigDict(frozen=True)

    title: str
    paragraphs: tuple[str, ...]


# --- Enrichment ---------------------------------------------------------------

class Segment(BaseModel):
    """
    A contiguous span of a paragraph.

    source_base_form is the dictionary form in the book's language and is
    only meaningful for TARGET segments (empty string otherwise).
    """

    model_config = ConfigDict(frozen=True)

    text: str
    language: SegmentLanguage
    source_base_form: str = ""


class ParagraphState(BaseModel):
    raw: str
    segments: Optional[list[Segment]] = None
    status: ParagraphStatus = ParagraphStatus.IDLE


class CacheEntry(BaseModel):
    segments: list[Segment]
    processed_at: float          # epoch milliseconds


# --- Vocabulary ---------------------------------------------------------------

class VocabularyEntry(BaseModel):
    target_word: str
    source_base_form: str
    count: int = 1
    first_seen: float            # epoch milliseconds
    last_seen: float
