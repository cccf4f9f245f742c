"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class PageUnit:
    """The text of one OCR page, with its page markers removed."""

    page_number: int
    text: str


@dataclass
class Chunk:
    """A contiguous run of pages bundled for one model call."""

    pages: list[PageUnit] = field(default_factory=list)
    chunk_index: int = 0

    @property
    def first_page(self) -> int:
        return self.pages[0].page_number

    @property
    def last_page(self) -> int:
        return self.pages[-1].page_number

    @property
    def page_numbers(self) -> list[int]:
        return [p.page_number for p in self.pages]

    @property
    def page_texts(self) -> list[str]:
        return [p.text for p in self.pages]

    def render(self) -> str:
        """Text sent to the model.

        A single page is sent bare; several pages keep a start marker each so
        the model can tell which page an entry came from.
        """
        if len(self.pages) == 1:
            return self.pages[0].text.strip()
        return "\n".join(
            f"==Start of OCR for page {p.page_number}==\n{p.text.strip()}" for p in self.pages
        )
