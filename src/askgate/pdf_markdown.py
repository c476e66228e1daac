"""
PDF text extraction and a line-oriented heading heuristic.

Extracted PDF text has no structure, so headings are guessed one line at a time:
chapter markers, numbered section titles and short all-caps lines become
Markdown headings; everything else is copied through unchanged.
"""
from __future__ import annotations

import re
from pathlib import Path

import fitz

MAX_HEADING_CHARS = 80
MAX_CAPS_HEADING_CHARS = 60
MAX_HEADING_LEVEL = 4

_CJK_NUMERAL = "0-9一二三四五六七八九十百千零〇两"
_TOC_ROW_RE = re.compile(r"(?:\.{2,}|…+|\s{3,})\s*\d+\s*$")
_TRAILING_PAGE_RE = re.compile(r"\s+\d+\s*$")
_EXPLICIT_CHAPTER_RE = re.compile(r"^(?:chapter|ch\.)\s*(?:[0-9]+|[ivxlc]+)\b", re.IGNORECASE)
_CJK_CHAPTER_RE = re.compile(rf"^第[{_CJK_NUMERAL}]+[章篇部]")
_CJK_SECTION_RE = re.compile(rf"^第[{_CJK_NUMERAL}]+节")
_NUMBERED_RE = re.compile(r"^(\d{1,2}(?:\.\d{1,2}){0,3})\.?\s+(\S.*)$")
_SENTENCE_END = tuple(".。,，;；:：!！?？、")


def _clean_line(line: str) -> str:
    return " ".join(str(line or "").split()).strip()


def detect_heading_level(line: str) -> int | None:
    """Returns a Markdown heading level (1-4) for `line`, or None for body text."""
    cleaned = _clean_line(line)
    if len(cleaned) < 2 or len(cleaned) > MAX_HEADING_CHARS:
        return None
    if cleaned.startswith("#"):
        return None
    # Table-of-contents rows ("Intro ........ 3") are not headings.
    if _TOC_ROW_RE.search(line or ""):
        return None
    if cleaned.endswith(_SENTENCE_END):
        return None

    if _EXPLICIT_CHAPTER_RE.match(cleaned) or _CJK_CHAPTER_RE.match(cleaned):
        return 1
    if _CJK_SECTION_RE.match(cleaned):
        return 2

    numbered = _NUMBERED_RE.match(cleaned)
    if numbered:
        title = numbered.group(2)
        if not title[0].isalpha() or _TRAILING_PAGE_RE.search(title):
            return None
        depth = numbered.group(1).count(".") + 1
        return min(depth + 1, MAX_HEADING_LEVEL)

    if len(cleaned) <= MAX_CAPS_HEADING_CHARS and cleaned.isupper():
        letters = [ch for ch in cleaned if ch.isalpha()]
        if len(letters) >= 3:
            return 2
    return None


def text_to_markdown(text: str) -> str:
    """Converts plain extracted text to Markdown using `detect_heading_level`."""
    out: list[str] = []
    for raw in str(text or "").splitlines():
        line = raw.rstrip()
        level = detect_heading_level(line)
        if level is None:
            if not line.strip() and (not out or not out[-1]):
                continue
            out.append(line)
            continue
        if out and out[-1]:
            out.append("")
        out.append(f"{'#' * level} {_clean_line(line)}")
        out.append("")

    while out and not out[-1]:
        out.pop()
    return "\n".join(out) + ("\n" if out else "")


def extract_pdf_text(path: str | Path) -> str:
    """Returns the text of every page, in page order."""
    pages: list[str] = []
    with fitz.open(str(path)) as doc:
        for page in doc:
            pages.append(page.get_text("text"))
    return "\n".join(pages)


def pdf_to_markdown(path: str | Path) -> str:
    return text_to_markdown(extract_pdf_text(path))
