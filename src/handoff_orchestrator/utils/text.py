"""Text helpers for prompt context and log excerpts."""

import re
from typing import Iterable

ANSI_CODE_PATTERN = r"\x1b\[[0-?]*[ -/]*[@-~]"


def truncate(text: str, max_length: int) -> str:
    """Clip ``text`` to ``max_length`` characters, marking the cut with '...'."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max(max_length - 3, 0)] + "..."


def strip_ansi(text: str) -> str:
    return re.sub(ANSI_CODE_PATTERN, "", text)


def tail_excerpt(text: str, max_lines: int = 8, max_chars_per_line: int = 160) -> str:
    """Build a compact single-line tail excerpt for logs."""
    lines = [line.rstrip() for line in strip_ansi(text).splitlines() if line.strip()]
    if not lines:
        return ""

    tail_lines = lines[-max_lines:]
    clipped_lines = []
    for line in tail_lines:
        if len(line) > max_chars_per_line:
            clipped_lines.append(f"{line[:max_chars_per_line]}...")
        else:
            clipped_lines.append(line)

    return " | ".join(clipped_lines)


def mentions_any(text: str, keywords: Iterable[str]) -> bool:
    """True when ``text`` mentions any keyword as a word (common suffixes allowed).

    "test" matches "tests" and "testing"; "add" does not match "address".
    """
    text_lower = (text or "").lower()
    for keyword in keywords:
        pattern = rf"\b{re.escape(keyword.lower())}{_WORD_SUFFIXES}\b"
        if re.search(pattern, text_lower):
            return True
    return False


_WORD_SUFFIXES = r"(?:s|es|ed|d|ing|ion|ions|ation|ations|er|ers|ment|ments)?"
