"""Region detection: propose repeating list-item regions on a rendered page.

The browser only supplies element descriptors, match counts and preview
screenshots. Filtering, locator generation and repair, scoring and ranking
are plain functions over ``ElementDescriptor`` and run without a browser.

The ranking is heuristic. Ties keep document order, and a page where nothing
survives yields an empty list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import Page

from ..metrics import DETECTION_CANDIDATES
from ..models import Candidate

# ───────── tunable constants ─────────

DEFAULT_MIN_AREA = 10_000          # px², roughly 100×100
DEFAULT_MAX_AREA = 600_000         # px², a bit over half a 1080p viewport
DEFAULT_TARGET_RATIO = 1.0         # width / height
DEFAULT_RATIO_TOLERANCE = 0.8
DEFAULT_MAX_CANDIDATES = 5

MIN_CHILD_COUNT = 3
MIN_DISTINCT_TAGS = 3
MIN_MATCH_COUNT = 3
MAX_MATCH_COUNT = 200
ESCALATION_LEVELS = 3              # tag+class, all classes, all classes + nth-of-type

IMAGE_BONUS = 60.0
CHILD_WEIGHT = 2.0
TAG_TYPE_WEIGHT = 3.0
RATIO_PENALTY = 10.0

SEMANTIC_CLASS = re.compile(r"item|card|list|cell|box|entry|block", re.IGNORECASE)


@dataclass
class DetectorConstraints:
    """Windows and limits for one detection run."""
    min_area: float = DEFAULT_MIN_AREA
    max_area: float = DEFAULT_MAX_AREA
    target_ratio: float = DEFAULT_TARGET_RATIO
    tolerance: float = DEFAULT_RATIO_TOLERANCE
    max_candidates: int = DEFAULT_MAX_CANDIDATES
    min_matches: int = MIN_MATCH_COUNT
    max_matches: int = MAX_MATCH_COUNT


@dataclass(frozen=True)
class NodeRef:
    """Tag, classes and 1-based nth-of-type position of one element."""
    tag: str
    classes: Tuple[str, ...] = ()
    nth: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeRef":
        return cls(
            tag=str(data.get("tag", "")).lower(),
            classes=tuple(c for c in data.get("classes", []) if c),
            nth=int(data.get("nth", 1)),
        )


@dataclass(frozen=True)
class ElementDescriptor:
    node: NodeRef
    width: float
    height: float
    child_count: int
    distinct_tags: int
    has_image: bool
    ancestors: Tuple[NodeRef, ...] = ()  # nearest first

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ElementDescriptor":
        return cls(
            node=NodeRef.from_dict(data),
            width=float(data.get("width", 0)),
            height=float(data.get("height", 0)),
            child_count=int(data.get("childCount", 0)),
            distinct_tags=int(data.get("distinctTags", 0)),
            has_image=bool(data.get("hasImage", False)),
            ancestors=tuple(NodeRef.from_dict(a) for a in data.get("ancestors", [])),
        )


@dataclass(frozen=True)
class SimpleSelector:
    """A compound CSS selector of the form ``tag.c1.c2:nth-of-type(n)``."""
    tag: str
    classes: Tuple[str, ...] = ()
    nth: Optional[int] = None

    def matches(self, node: NodeRef) -> bool:
        if node.tag != self.tag:
            return False
        if not set(self.classes).issubset(node.classes):
            return False
        return self.nth is None or node.nth == self.nth

    def css(self) -> str:
        text = self.tag + "".join(f".{css_escape(c)}" for c in self.classes)
        if self.nth is not None:
            text += f":nth-of-type({self.nth})"
        return text


@dataclass
class RankedElement:
    selector: str
    score: float
    descriptor: ElementDescriptor = field(repr=False)


# ───────── pure steps ─────────

def css_escape(identifier: str) -> str:
    """Escape a class token for use in a CSS selector."""
    out = []
    for i, ch in enumerate(identifier):
        if ch.isalnum() or ch in "-_":
            if i == 0 and ch.isdigit():
                out.append(f"\\3{ch} ")
            else:
                out.append(ch)
        else:
            out.append("\\" + ch)
    return "".join(out)


def passes_filters(element: ElementDescriptor, constraints: DetectorConstraints) -> bool:
    """Area window, ratio window and minimum structure."""
    if element.height <= 0 or element.width <= 0:
        return False
    if not constraints.min_area <= element.area <= constraints.max_area:
        return False
    if abs(element.ratio - constraints.target_ratio) > constraints.tolerance:
        return False
    return element.child_count >= MIN_CHILD_COUNT and element.distinct_tags >= MIN_DISTINCT_TAGS


def build_locator(node: NodeRef, level: int = 0) -> SimpleSelector:
    """Locator for ``node`` at an escalation level.

    0: tag + the longest semantic class token, else the first class, else
       positional ``nth-of-type``.
    1: tag + every class (positional when there are none).
    2: tag + every class + ``nth-of-type``.
    """
    if level <= 0:
        semantic = [c for c in node.classes if SEMANTIC_CLASS.search(c)]
        if semantic:
            return SimpleSelector(node.tag, (max(semantic, key=len),))
        if node.classes:
            return SimpleSelector(node.tag, (node.classes[0],))
        return SimpleSelector(node.tag, nth=node.nth)
    if level == 1:
        if node.classes:
            return SimpleSelector(node.tag, node.classes)
        return SimpleSelector(node.tag, nth=node.nth)
    return SimpleSelector(node.tag, node.classes, node.nth)


def reselects_ancestor(selector: SimpleSelector, ancestors: Sequence[NodeRef]) -> bool:
    return any(selector.matches(a) for a in ancestors)


def reselects_ancestor_with_parent(
    parent: SimpleSelector, selector: SimpleSelector, ancestors: Sequence[NodeRef]
) -> bool:
    """Would ``parent > selector`` match one of the ancestors?"""
    for i in range(len(ancestors) - 1):
        if selector.matches(ancestors[i]) and parent.matches(ancestors[i + 1]):
            return True
    return False


def repair_locator(element: ElementDescriptor) -> Optional[str]:
    """A locator that does not re-select any of the element's ancestors.

    At each level the plain locator is tried, then ``parent > self``; when
    both are ambiguous the level escalates. ``None`` after the last level.
    """
    ancestors = element.ancestors
    for level in range(ESCALATION_LEVELS):
        own = build_locator(element.node, level)
        if not reselects_ancestor(own, ancestors):
            return own.css()
        if ancestors:
            parent = build_locator(ancestors[0], 0)
            if not reselects_ancestor_with_parent(parent, own, ancestors):
                return f"{parent.css()} > {own.css()}"
    return None


def score(element: ElementDescriptor, constraints: DetectorConstraints) -> float:
    return (
        (IMAGE_BONUS if element.has_image else 0.0)
        + CHILD_WEIGHT * element.child_count
        + TAG_TYPE_WEIGHT * element.distinct_tags
        - RATIO_PENALTY * abs(constraints.target_ratio - element.ratio)
    )


def rank(elements: Sequence[ElementDescriptor], constraints: DetectorConstraints) -> List[RankedElement]:
    """Filter, build locators and sort by score (stable, descending)."""
    ranked: List[RankedElement] = []
    for element in elements:
        if not passes_filters(element, constraints):
            continue
        selector = repair_locator(element)
        if selector is None:
            continue
        ranked.append(RankedElement(selector, score(element, constraints), element))
    return sorted(ranked, key=lambda r: r.score, reverse=True)


# ───────── browser side ─────────

DESCRIBE_ELEMENTS_SCRIPT = """
(minChildren) => {
  const ref = (el) => {
    let nth = 1;
    for (let s = el.previousElementSibling; s; s = s.previousElementSibling) {
      if (s.tagName === el.tagName) nth++;
    }
    return { tag: el.tagName.toLowerCase(), classes: Array.from(el.classList), nth };
  };
  const out = [];
  if (!document.body) return out;
  for (const el of document.body.querySelectorAll('*')) {
    if (el.children.length < minChildren) continue;
    const rect = el.getBoundingClientRect();
    if (rect.width <= 0 || rect.height <= 0) continue;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') continue;
    const tags = new Set();
    for (const d of el.querySelectorAll('*')) tags.add(d.tagName);
    const ancestors = [];
    for (let p = el.parentElement; p && p !== document.documentElement; p = p.parentElement) {
      ancestors.push(ref(p));
    }
    out.push({
      ...ref(el),
      width: rect.width,
      height: rect.height,
      childCount: el.children.length,
      distinctTags: tags.size,
      hasImage: !!el.querySelector('img, picture, svg image'),
      ancestors,
    });
  }
  return out;
}
"""


async def describe_elements(page: Page) -> List[ElementDescriptor]:
    raw = await page.evaluate(DESCRIBE_ELEMENTS_SCRIPT, MIN_CHILD_COUNT)
    return [ElementDescriptor.from_dict(item) for item in raw or []]


async def detect(
    page: Page,
    constraints: Optional[DetectorConstraints] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> List[Candidate]:
    """Up to ``max_candidates`` list-item regions for the loaded page."""
    constraints = constraints or DetectorConstraints()
    log = logger or logging.getLogger("crawler.detect")

    ranked = rank(await describe_elements(page), constraints)
    log.info(f"🔎 {len(ranked)} elements passed the region filters")

    candidates: List[Candidate] = []
    seen: set = set()
    for item in ranked:
        if len(candidates) >= constraints.max_candidates:
            break
        if item.selector in seen:
            continue
        seen.add(item.selector)

        locator = page.locator(item.selector)
        try:
            match_count = await locator.count()
        except Exception as e:
            log.debug(f"Locator {item.selector} rejected by the page: {e}")
            continue
        if not constraints.min_matches <= match_count <= constraints.max_matches:
            continue

        try:
            preview = await locator.first.screenshot()
        except Exception as e:
            log.debug(f"No preview for {item.selector}: {e}")
            continue

        candidates.append(Candidate(
            selector=item.selector,
            match_count=match_count,
            score=item.score,
            preview=preview,
        ))

    DETECTION_CANDIDATES.observe(len(candidates))
    log.info(f"✅ Region detection proposed {len(candidates)} candidates")
    return candidates
