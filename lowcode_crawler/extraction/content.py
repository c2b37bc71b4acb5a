"""
Markup to Markdown conversion for ``markdown``/``smart`` text fields.
"""

from __future__ import annotations

from typing import Optional

from bs4 import BeautifulSoup
from markdownify import markdownify as md

_DROP_TAGS = ("script", "style", "noscript", "template")


def html_to_markdown(html: Optional[str]) -> Optional[str]:
    """
    Convert an element's inner markup to Markdown.

    Script-like tags are dropped first. Runs of blank lines collapse to one.

    Args:
        html: inner HTML of the matched element

    Returns:
        Markdown string, or None for empty input
    """
    if html is None:
        return None

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_DROP_TAGS):
        tag.decompose()

    markdown = md(
        str(soup),
        heading_style="ATX",
        bullets="-",
        escape_asterisks=False,
        escape_underscores=False,
    )

    lines = markdown.split("\n")
    cleaned_lines = []
    prev_blank = False

    for line in lines:
        is_blank = not line.strip()
        if is_blank and prev_blank:
            continue
        cleaned_lines.append(line.rstrip())
        prev_blank = is_blank

    return "\n".join(cleaned_lines).strip() or None
