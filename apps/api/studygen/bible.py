from __future__ import annotations

import math
import re
from typing import Optional


BOOK_CHAPTERS: dict[str, int] = {
    "genesis": 50,
    "exodus": 40,
    "leviticus": 27,
    "numbers": 36,
    "deuteronomy": 34,
    "psalms": 150,
    "proverbs": 31,
    "ecclesiastes": 12,
    "isaiah": 66,
    "jeremiah": 52,
    "ezekiel": 48,
    "daniel": 12,
    "matthew": 28,
    "mark": 16,
    "luke": 24,
    "john": 21,
    "acts": 28,
    "romans": 16,
    "1 corinthians": 16,
    "2 corinthians": 13,
    "galatians": 6,
    "ephesians": 6,
    "philippians": 4,
    "colossians": 4,
    "1 thessalonians": 5,
    "2 thessalonians": 3,
    "1 timothy": 6,
    "2 timothy": 4,
    "titus": 3,
    "philemon": 1,
    "hebrews": 13,
    "james": 5,
    "1 peter": 5,
    "2 peter": 3,
    "1 john": 5,
    "2 john": 1,
    "3 john": 1,
    "jude": 1,
    "revelation": 22,
}

BOOK_NAMES: list[str] = [
    "Genesis", "Exodus", "Leviticus", "Numbers", "Deuteronomy", "Joshua", "Judges",
    "Ruth", "1 Samuel", "2 Samuel", "1 Kings", "2 Kings", "1 Chronicles",
    "2 Chronicles", "Ezra", "Nehemiah", "Esther", "Job", "Psalms", "Proverbs",
    "Ecclesiastes", "Song of Solomon", "Isaiah", "Jeremiah", "Lamentations",
    "Ezekiel", "Daniel", "Hosea", "Joel", "Amos", "Obadiah", "Jonah", "Micah",
    "Nahum", "Habakkuk", "Zephaniah", "Haggai", "Zechariah", "Malachi",
    "Matthew", "Mark", "Luke", "John", "Acts", "Romans", "1 Corinthians",
    "2 Corinthians", "Galatians", "Ephesians", "Philippians", "Colossians",
    "1 Thessalonians", "2 Thessalonians", "1 Timothy", "2 Timothy", "Titus",
    "Philemon", "Hebrews", "James", "1 Peter", "2 Peter", "1 John", "2 John",
    "3 John", "Jude", "Revelation",
]

# Longest names first so "1 John" wins over "John".
_BOOKS_BY_LENGTH = sorted(BOOK_NAMES, key=len, reverse=True)
_BOOK_PATTERNS = [
    (book, re.compile(rf"(?<![\w]){re.escape(book.lower())}(?![a-z])")) for book in _BOOKS_BY_LENGTH
]

_DURATION_RE = re.compile(r"(\d+)\s*-?\s*(day|week|month)s?\b", re.IGNORECASE)

REFERENCE_RE = re.compile(
    r"(?<![\w])("
    + "|".join(re.escape(book) for book in _BOOKS_BY_LENGTH)
    + r")\s+(\d{1,3})(?:\s*:\s*(\d{1,3})(?:\s*-\s*(\d{1,3}))?)?(?!\d)"
)


def extract_book_name(text: str) -> Optional[str]:
    if not text:
        return None
    lowered = text.lower()
    for book, pattern in _BOOK_PATTERNS:
        if pattern.search(lowered):
            return book
    return None


def chapter_count(book: Optional[str]) -> int:
    if not book:
        return 0
    return BOOK_CHAPTERS.get(book.lower(), 0)


def duration_instruction(book: Optional[str], days: int) -> str:
    chapters = chapter_count(book)
    if not book or chapters == 0:
        return "Structure the content appropriately for the requested duration."
    if days == 1 and chapters > 1:
        return (
            f"CRITICAL: This is a 1-day study. Focus ONLY on Chapter 1 of {book} "
            "with deep, comprehensive exposition. Do NOT attempt to cover the entire book."
        )
    if days < chapters:
        return (
            f"This {days}-day study must cover {chapters} chapters. Group chapters "
            "thoughtfully (e.g., combine shorter chapters, focus on key sections)."
        )
    if days == chapters:
        return (
            f"Perfect match: {days} days for {chapters} chapters. "
            "Dedicate one day to each chapter for thorough exposition."
        )
    return (
        f"With {days} days for {chapters} chapters, include introduction, review, "
        "and application days alongside chapter studies."
    )


def focus_passage_for_day(book: Optional[str], day: int, total_days: int) -> str:
    chapters = chapter_count(book)
    if not book or chapters == 0:
        return ""
    if total_days == 1:
        return f"{book} 1"
    if total_days < chapters:
        per_day = math.ceil(chapters / total_days)
        start = (day - 1) * per_day + 1
        end = min(start + per_day - 1, chapters)
        if start > chapters:
            return f"{book} {chapters}"
        return f"{book} {start}" if start == end else f"{book} {start}-{end}"
    if day <= chapters:
        return f"{book} {day}"
    # Review and application days revisit the book from the start.
    return f"{book} {(day - chapters - 1) % chapters + 1}"


def check_study_duration(book: Optional[str], days: int) -> tuple[bool, Optional[str]]:
    chapters = chapter_count(book)
    if not book or chapters == 0:
        return True, None
    if days > chapters * 3:
        return False, (
            f"{days} days is too long for {book} ({chapters} chapters). "
            "Consider a shorter duration or different book."
        )
    if days == 1 and chapters > 10:
        return True, (
            f"1-day study of {book} ({chapters} chapters) will focus only on Chapter 1. "
            "Consider a longer duration for comprehensive coverage."
        )
    return True, None


def parse_duration_to_days(text: Optional[str], default: int = 30) -> int:
    if not text:
        return default
    match = _DURATION_RE.search(text)
    if not match:
        return default
    value = int(match.group(1))
    unit = match.group(2).lower()
    if unit == "week":
        return value * 7
    if unit == "month":
        return value * 30
    return value


def normalize_reference(reference: str) -> str:
    value = re.sub(r"\s+", " ", reference.strip())
    value = re.sub(r"\s*:\s*", ":", value)
    value = re.sub(r"\s*-\s*", "-", value)
    return value


def find_references(text: str) -> list[str]:
    found: list[str] = []
    for match in REFERENCE_RE.finditer(text or ""):
        reference = normalize_reference(match.group(0))
        if reference not in found:
            found.append(reference)
    return found
