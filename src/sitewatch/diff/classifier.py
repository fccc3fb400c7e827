"""Heuristic classification of differences between two HTML documents."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from bs4 import BeautifulSoup

from ..utils.logging import get_structured_logger
from .types import ChangeClassification, DetailedDiff, DiffChange, DiffMetadata, DiffSummary

logger = get_structured_logger(__name__)

STRUCTURAL_TAGS = (
    "header",
    "nav",
    "main",
    "section",
    "article",
    "aside",
    "footer",
    "form",
    "iframe",
    "script",
)
INVISIBLE_TAGS = ("script", "style", "noscript", "template")
MIN_WORD_LENGTH = 4


@dataclass
class PageFeatures:
    """The parts of a document the classifier compares."""

    title: str = ""
    headings: list[str] = field(default_factory=list)
    description: str = ""
    twitter_description: str = ""
    text: str = ""
    style_blocks: int = 0
    inline_styles: int = 0
    tag_counts: dict[str, int] = field(default_factory=dict)
    links: int = 0


def _meta_content(soup: BeautifulSoup, name: str) -> str:
    tag = soup.find("meta", attrs={"name": name})
    if tag is None:
        return ""
    return (tag.get("content") or "").strip()


def extract_features(html: str) -> PageFeatures:
    """Parse ``html`` once and pull out every compared feature."""
    soup = BeautifulSoup(html or "", "html.parser")

    title_tag = soup.find("title")
    features = PageFeatures(
        title=title_tag.get_text(strip=True) if title_tag else "",
        headings=[
            text for text in (h1.get_text(" ", strip=True) for h1 in soup.find_all("h1")) if text
        ],
        description=_meta_content(soup, "description"),
        twitter_description=_meta_content(soup, "twitter:description"),
        style_blocks=len(soup.find_all("style")),
        inline_styles=len(soup.find_all(style=True)),
        tag_counts={tag: len(soup.find_all(tag)) for tag in STRUCTURAL_TAGS},
        links=len(soup.find_all("a", href=True)),
    )

    for tag in soup.find_all(list(INVISIBLE_TAGS)):
        tag.decompose()
    features.text = " ".join(soup.get_text(" ").split())
    return features


def _snippet(value: str, length: int) -> Optional[str]:
    if not value:
        return None
    return value if len(value) <= length else value[:length] + "..."


def _kind(before: str, after: str) -> str:
    if before and after:
        return "modified"
    return "added" if after else "removed"


def _distinct_words(text: str) -> list[str]:
    return list(dict.fromkeys(w for w in text.split() if len(w) >= MIN_WORD_LENGTH))


def _word_list(words: list[str], limit: int) -> str:
    shown = ", ".join(words[:limit])
    return shown + "..." if len(words) > limit else shown


def detect_content_changes(
    prev: PageFeatures,
    curr: PageFeatures,
    max_words: int = 20,
    snippet_length: int = 200,
) -> list[DiffChange]:
    changes = []

    def scalar(element, priority, before, after, context):
        if before != after:
            changes.append(
                DiffChange(
                    type="content",
                    priority=priority,
                    element=element,
                    change=_kind(before, after),
                    before=_snippet(before, snippet_length),
                    after=_snippet(after, snippet_length),
                    context=context,
                )
            )

    scalar("title", 5, prev.title, curr.title, "Page title")

    for heading in prev.headings:
        if heading not in curr.headings:
            changes.append(
                DiffChange(
                    type="content",
                    priority=4,
                    element="h1",
                    change="removed",
                    before=_snippet(heading, snippet_length),
                    context="Main heading",
                )
            )
    for heading in curr.headings:
        if heading not in prev.headings:
            changes.append(
                DiffChange(
                    type="content",
                    priority=4,
                    element="h1",
                    change="added",
                    after=_snippet(heading, snippet_length),
                    context="Main heading",
                )
            )

    scalar("meta", 4, prev.description, curr.description, "Meta description")
    scalar("meta", 3, prev.twitter_description, curr.twitter_description, "Twitter description")

    if prev.text != curr.text:
        prev_words = _distinct_words(prev.text)
        curr_words = _distinct_words(curr.text)
        prev_set, curr_set = set(prev_words), set(curr_words)
        added = [w for w in curr_words if w not in prev_set]
        removed = [w for w in prev_words if w not in curr_set]

        if added or removed:
            changes.append(
                DiffChange(
                    type="content",
                    priority=3,
                    element="body",
                    change="modified",
                    before=f"Removed: {_word_list(removed, max_words)}"
                    if removed
                    else "(no words removed)",
                    after=f"Added: {_word_list(added, max_words)}"
                    if added
                    else "(no words added)",
                    context=f"Body text: {len(added)} words added, {len(removed)} words removed",
                )
            )

    return changes


def detect_style_changes(prev: PageFeatures, curr: PageFeatures) -> list[DiffChange]:
    changes = []

    if prev.style_blocks != curr.style_blocks:
        changes.append(
            DiffChange(
                type="style",
                priority=2,
                element="style",
                attribute="count",
                change="added" if curr.style_blocks > prev.style_blocks else "removed",
                before=f"{prev.style_blocks} style blocks",
                after=f"{curr.style_blocks} style blocks",
            )
        )

    if prev.inline_styles != curr.inline_styles:
        changes.append(
            DiffChange(
                type="style",
                priority=1,
                element="inline",
                attribute="style",
                change="modified",
                before=f"{prev.inline_styles} inline styles",
                after=f"{curr.inline_styles} inline styles",
            )
        )

    return changes


def detect_structure_changes(prev: PageFeatures, curr: PageFeatures) -> list[DiffChange]:
    changes = []

    for tag in STRUCTURAL_TAGS:
        before, after = prev.tag_counts.get(tag, 0), curr.tag_counts.get(tag, 0)
        if before != after:
            changes.append(
                DiffChange(
                    type="structure",
                    priority=2,
                    element=tag,
                    change="added" if after > before else "removed",
                    before=str(before),
                    after=str(after),
                )
            )

    if prev.links != curr.links:
        changes.append(
            DiffChange(
                type="structure",
                priority=2,
                element="a",
                change="added" if curr.links > prev.links else "removed",
                before=str(prev.links),
                after=str(curr.links),
            )
        )

    return changes


def classify_changes(
    url: str,
    previous_content: str,
    current_content: str,
    previous_hash: str,
    current_hash: str,
    date: str,
    max_words: int = 20,
    snippet_length: int = 200,
) -> DetailedDiff:
    """Classify the differences between two versions of a page."""
    started = time.monotonic()

    prev = extract_features(previous_content)
    curr = extract_features(current_content)
    classification = ChangeClassification(
        content=detect_content_changes(prev, curr, max_words, snippet_length),
        style=detect_style_changes(prev, curr),
        structure=detect_structure_changes(prev, curr),
    )

    diff = DetailedDiff(
        url=url,
        date=date,
        previous_hash=previous_hash,
        current_hash=current_hash,
        classification=classification,
        summary=DiffSummary.from_classification(classification),
        metadata=DiffMetadata(
            generated_at=datetime.now(timezone.utc).isoformat(),
            generation_time=int((time.monotonic() - started) * 1000),
        ),
    )
    logger.debug("Classified changes", url=url, total=diff.summary.total_changes)
    return diff
