from __future__ import annotations

from typing import Any, Dict

from pydantic import AliasChoices, BaseModel, Field

from cardpipeline.utils.types import ExtractedDocument, Page


class PagePayload(BaseModel):
    page_number: int = Field(..., validation_alias=AliasChoices("page_number", "pageNumber"), description="1-based page number")
    text: str = Field("", description="Extracted page text")
    lines: list[str] | None = Field(None, description="Page text split into lines")
    word_count: int | None = Field(None, validation_alias=AliasChoices("word_count", "wordCount"))

    def to_page(self) -> Page:
        lines = self.lines if self.lines is not None else self.text.splitlines()
        word_count = self.word_count if self.word_count is not None else len(self.text.split())
        return Page(page_number=self.page_number, text=self.text, lines=tuple(lines), word_count=word_count)


class DocumentPayload(BaseModel):
    text: str = Field("", description="Full extracted text")
    pages: list[PagePayload] = Field(default_factory=list, description="Per-page structure; empty for plain text")
    metadata: dict = Field(default_factory=dict)

    def to_document(self) -> ExtractedDocument:
        return ExtractedDocument.from_dict({"text": self.text, "pages": [page.to_page() for page in self.pages], "metadata": self.metadata})


class GenerateCardsRequest(BaseModel):
    title: str = Field(..., min_length=1, description="Title of the content")
    author: str = Field("", description="Author of the content")
    source: str = Field("", description="Source file path or identifier; part of the content id")
    category: str | None = Field(None, description="Category tag added to generated cards")
    content_id: str | None = Field(None, description="Explicit content id; derived from title/author/source if omitted")
    upload_timestamp: str | None = Field(None, description="Upload timestamp; distinguishes re-uploads in the run guard")
    job_id: str | None = Field(None, description="Optional job id for progress reporting")
    document: DocumentPayload
    options: Dict[str, Any] = Field(default_factory=dict, description="Pipeline setting overrides")
