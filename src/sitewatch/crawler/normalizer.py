"""Noise-tolerant content normalization and hashing."""

import hashlib
import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

import blake3
from bs4 import BeautifulSoup, Comment

from ..utils.logging import get_structured_logger
from .types import NormalizationError

logger = get_structured_logger(__name__)

_MONTHS = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_WEEKDAYS = r"(?:mon|tues?|wed(?:nes)?|thu(?:rs)?|fri|sat(?:ur)?|sun)(?:day)?"
_UNITS = r"(?:seconds?|secs?|minutes?|mins?|hours?|hrs?|days?|weeks?|months?|years?)"


@dataclass(frozen=True)
class NoisePattern:
    name: str
    regex: re.Pattern
    replacement: str

    def apply(self, content: str) -> str:
        return self.regex.sub(self.replacement, content)


def _pattern(name: str, regex: str, replacement: str, flags: int = re.IGNORECASE) -> NoisePattern:
    return NoisePattern(name, re.compile(regex, flags), replacement)


# Order matters: longer date-time forms first so their parts are not
# consumed by the shorter date and time patterns.
BUILTIN_PATTERNS: tuple[NoisePattern, ...] = (
    _pattern(
        "iso_datetimes",
        r"\b\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}(?::\d{2})?(?:\.\d+)?(?:z|[+-]\d{2}:?\d{2})?",
        "[DATETIME]",
    ),
    _pattern("iso_dates", r"\b\d{4}-\d{2}-\d{2}\b", "[DATE]"),
    _pattern("ymd_dates", r"\b\d{4}/\d{1,2}/\d{1,2}\b", "[DATE]"),
    _pattern("numeric_dates", r"\b\d{1,2}[/-]\d{1,2}[/-](?:\d{4}|\d{2})\b", "[DATE]"),
    _pattern(
        "human_dates",
        rf"\b(?:{_WEEKDAYS},?\s+)?{_MONTHS}\.?\s*\d{{1,2}}(?:st|nd|rd|th)?,?\s*\d{{4}}\b",
        "[DATE]",
    ),
    _pattern(
        "human_dates_day_first",
        rf"\b(?:{_WEEKDAYS},?\s+)?\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTHS}\.?,?\s+\d{{4}}\b",
        "[DATE]",
    ),
    _pattern("times", r"\b\d{1,2}:\d{2}:\d{2}(?:\.\d+)?\b", "[TIME]"),
    _pattern("clock_times", r"\b\d{1,2}:\d{2}\s?(?:am|pm)\b", "[TIME]"),
    _pattern(
        "relative_times",
        r"(\b(?:last\s+updated|updated|published|posted|modified|generated)\s*[:\-–—]?\s*)"
        rf"(?:today|yesterday|just\s+now|\d+\s+{_UNITS}\s+ago)\b",
        r"\1[RELATIVE_TIME]",
    ),
    _pattern("ago_phrases", rf"\b\d+\s+{_UNITS}\s+ago\b", "[RELATIVE_TIME]"),
    _pattern(
        "timestamp_values",
        r"""(\btimestamp["']?\s*[:=]\s*["']?)\d+""",
        r"\1[TIMESTAMP]",
    ),
    _pattern("unix_timestamps", r"\b\d{10,13}\b", "[TIMESTAMP]"),
    _pattern(
        "csrf_tokens",
        r"""(\b(?:csrf|xsrf)[\w-]*["']?\s*[:=]\s*["']?)[^"'\s<>,;}]+""",
        r"\1[TOKEN]",
    ),
    _pattern(
        "token_fields",
        r"""(<(?:input|meta)\b[^>]*\b(?:name|id)="[^"]*(?:csrf|xsrf|token|authenticity)[^"]*"[^>]*\b(?:value|content)=")[^"]*(")""",
        r"\1[TOKEN]\2",
    ),
    _pattern(
        "token_fields_value_first",
        r"""(<(?:input|meta)\b[^>]*\b(?:value|content)=")[^"]*("[^>]*\b(?:name|id)="[^"]*(?:csrf|xsrf|token|authenticity)[^"]*")""",
        r"\1[TOKEN]\2",
    ),
    _pattern(
        "request_ids",
        r"""(\b(?:_?request[_-]?id|x-request-id|trace[_-]?id)["']?\s*[:=]\s*["']?)[^"'\s<>,;}]+""",
        r"\1[REQUEST_ID]",
    ),
    _pattern(
        "session_ids",
        r"""(\b(?:session[_-]?id|sessionid|jsessionid|phpsessid|session)["']?\s*[:=]\s*["']?)[^"'\s<>,;&}]{8,}""",
        r"\1[SESSION]",
    ),
    _pattern("nonces", r"""(\bnonce["']?\s*[:=]\s*["']?)[^"'\s<>,;}]+""", r"\1[NONCE]"),
    _pattern("test_ids", r'\s+data-(?:testid|test-id|test|cy|qa)="[^"]*"', ""),
    _pattern("inline_styles", r'\bstyle="[^"]*"', 'style="[STYLE]"'),
    _pattern(
        "uuids",
        r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
        "[UUID]",
    ),
    _pattern("versions", r"\bv?\d+\.\d+\.\d+(?:-[a-z0-9]+)?\b", "[VERSION]"),
    _pattern(
        "build_numbers",
        r"""(\bbuild[_-]?(?:id|number)?["']?\s*[:=]\s*["']?)[\w.-]+""",
        r"\1[BUILD]",
    ),
)

# Markers that identify a frontend framework, and the generated identifiers
# it sprinkles through markup. Replacements stay lowercase because they can
# land in attribute-name position, which the HTML parser lowercases.
FRAMEWORK_PATTERNS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "wordpress": (("wp-block", "wp-content"), (r"wp-block-[a-z0-9]+-[a-f0-9]{8,}", r"\bpost-\d+", r"\bpage_\d+")),
    "react": (("data-reactroot", "data-reactid"), (r"\bcss-[a-z0-9]+-[a-z0-9]+", r"\breact-\d+")),
    "vue": (("data-v-",), (r"data-v-[a-f0-9]{8}",)),
    "angular": (("_ngcontent", "_nghost"), (r"_ngcontent-[a-z0-9-]+", r"_nghost-[a-z0-9-]+")),
}
FRAMEWORK_PLACEHOLDER = "fw-dynamic"

_DYNAMIC_KEY = re.compile(
    r"csrf|token|nonce|session|timestamp|request_?id|build|version|_id$|uuid", re.IGNORECASE
)
_DYNAMIC_VALUES = (
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE),
    re.compile(r"^\d{10,13}$"),
    re.compile(r"^[a-zA-Z0-9]{20,}$"),
    re.compile(r"^(?:[a-f0-9]{32}|[a-f0-9]{40}|[a-f0-9]{64})$", re.IGNORECASE),
)
DYNAMIC_VALUE = "[DYNAMIC]"
CUSTOM_PLACEHOLDER = "[IGNORED]"


@dataclass
class NormalizedContent:
    original: str
    normalized: str
    hash: str
    content_type: str


def detect_content_type(content: str) -> str:
    """Classify content as ``html``, ``json`` or ``text``."""
    trimmed = content.strip().lower()

    if trimmed.startswith("<!doctype html") or trimmed.startswith("<html"):
        return "html"

    if trimmed.startswith("{") or trimmed.startswith("["):
        try:
            json.loads(content)
            return "json"
        except ValueError:
            return "text"

    if "<html" in trimmed or "<body" in trimmed or "<div" in trimmed:
        return "html"

    return "text"


def detect_frameworks(html: str) -> list[str]:
    return [
        name
        for name, (markers, _) in FRAMEWORK_PATTERNS.items()
        if any(marker in html for marker in markers)
    ]


def replace_framework_names(text: str, frameworks: list[str]) -> str:
    for framework in frameworks:
        for source in FRAMEWORK_PATTERNS[framework][1]:
            text = re.sub(source, FRAMEWORK_PLACEHOLDER, text, flags=re.IGNORECASE)
    return text


@lru_cache(maxsize=256)
def _compile_custom(patterns: tuple[str, ...]) -> tuple[re.Pattern, ...]:
    compiled = []
    for source in patterns:
        try:
            compiled.append(re.compile(source, re.IGNORECASE))
        except re.error as e:
            logger.warning("Skipping invalid ignore pattern", pattern=source, error=str(e))
    return tuple(compiled)


class ContentHasher:
    """Cryptographic digests for raw and normalized content."""

    SUPPORTED = ("sha256", "blake3")

    def __init__(self, hash_type: str = "sha256"):
        if hash_type not in self.SUPPORTED:
            raise ValueError(f"Unsupported hash type: {hash_type}")
        self.hash_type = hash_type

    def hash_content(self, content: str) -> str:
        data = content.encode("utf-8")
        if self.hash_type == "blake3":
            hasher = blake3.blake3()
            hasher.update(data)
            return hasher.hexdigest()
        return hashlib.sha256(data).hexdigest()


class ContentNormalizer:
    """Deterministic raw content -> normalized content -> hash pipeline.

    HTML is minified, stripped of built-in and site-specific noise and
    whitespace-collapsed. JSON goes through a structural normalizer that drops
    dynamic keys and redacts dynamic-looking values. Anything else is treated
    as text. ``normalize`` never raises.
    """

    def __init__(self, hasher: Optional[ContentHasher] = None, detect_framework_noise: bool = True):
        self.hasher = hasher or ContentHasher()
        self.detect_framework_noise = detect_framework_noise

    def normalize(
        self, content: str, ignore_patterns: Optional[list[str]] = None
    ) -> NormalizedContent:
        content = content or ""
        content_type = detect_content_type(content)

        if content_type == "json":
            normalized = self.normalize_json(content)
        elif content_type == "html":
            normalized = self.normalize_html(content, ignore_patterns)
        else:
            normalized = self.normalize_text(content, ignore_patterns)

        return NormalizedContent(
            original=content,
            normalized=normalized,
            hash=self.hasher.hash_content(normalized),
            content_type=content_type,
        )

    def normalized_hash(self, content: str, ignore_patterns: Optional[list[str]] = None) -> str:
        return self.normalize(content, ignore_patterns).hash

    def normalize_html(self, html: str, ignore_patterns: Optional[list[str]] = None) -> str:
        try:
            normalized = self.minify(html, rename_framework_attrs=self.detect_framework_noise)
        except NormalizationError as e:
            logger.warning("HTML minification failed, using original", error=str(e))
            normalized = html

        normalized = self.apply_builtin_patterns(normalized)
        if self.detect_framework_noise:
            normalized = self.apply_framework_patterns(normalized)
        normalized = self.apply_custom_patterns(normalized, ignore_patterns)
        return self.collapse_whitespace(normalized)

    def normalize_text(self, text: str, ignore_patterns: Optional[list[str]] = None) -> str:
        normalized = self.apply_builtin_patterns(text)
        normalized = self.apply_custom_patterns(normalized, ignore_patterns)
        return self.collapse_whitespace(normalized)

    def normalize_json(self, raw: str) -> str:
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("JSON parsing failed, treating as text")
            return self.normalize_text(raw)

        return json.dumps(
            self._normalize_json_value(parsed),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def _normalize_json_value(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._normalize_json_value(item) for item in value]
        if isinstance(value, dict):
            return {
                key: self._normalize_json_value(item)
                for key, item in value.items()
                if not _DYNAMIC_KEY.search(str(key))
            }
        if isinstance(value, str) and any(p.match(value) for p in _DYNAMIC_VALUES):
            return DYNAMIC_VALUE
        return value

    @staticmethod
    def minify(html: str, rename_framework_attrs: bool = False) -> str:
        """Strip comments, sort attributes and drop empty class/style.

        With ``rename_framework_attrs`` the generated attribute names of any
        detected framework are replaced before sorting, keeping the first
        value when several collapse onto the same name.
        """
        try:
            soup = BeautifulSoup(html, "html.parser")
            for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
                comment.extract()
            frameworks = detect_frameworks(str(soup)) if rename_framework_attrs else []
            for tag in soup.find_all(True):
                attrs: dict[str, Any] = {}
                for name, value in tag.attrs.items():
                    if name in ("class", "style") and not value:
                        continue
                    attrs.setdefault(replace_framework_names(name, frameworks), value)
                tag.attrs = dict(sorted(attrs.items()))
            return str(soup)
        except Exception as e:
            raise NormalizationError(str(e)) from e

    @staticmethod
    def apply_builtin_patterns(content: str) -> str:
        for pattern in BUILTIN_PATTERNS:
            content = pattern.apply(content)
        return content

    @staticmethod
    def apply_framework_patterns(html: str) -> str:
        return replace_framework_names(html, detect_frameworks(html))

    @staticmethod
    def apply_custom_patterns(content: str, ignore_patterns: Optional[list[str]]) -> str:
        if not ignore_patterns:
            return content
        for regex in _compile_custom(tuple(ignore_patterns)):
            content = regex.sub(CUSTOM_PLACEHOLDER, content)
        return content

    @staticmethod
    def collapse_whitespace(content: str) -> str:
        content = re.sub(r"\s+", " ", content)
        content = content.replace("> <", "><")
        return content.strip()


def get_builtin_patterns() -> list[dict[str, str]]:
    """Describe the built-in noise patterns in application order."""
    return [
        {"name": p.name, "pattern": p.regex.pattern, "replacement": p.replacement}
        for p in BUILTIN_PATTERNS
    ]
