from .content import html_to_markdown
from .detector import DetectorConstraints, detect
from .selectors import ListingCursor, extract, extract_records, preview_selector

__all__ = [
    "html_to_markdown",
    "DetectorConstraints",
    "detect",
    "ListingCursor",
    "extract",
    "extract_records",
    "preview_selector",
]
