from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

FIXED_OUTLINE = [
    "Company Overview",
    "Our Services",
    "Design Expertise",
    "Regional Experience & Clients",
    "Selected Projects",
    "Awards & Recognition",
    "Team & Leadership",
    "Design & Build Capability",
    "Compliance & Quality",
    "Contact",
]

SECTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Company Overview": (
        "company", "profile", "overview", "founded", "established", "headquarter",
        "business", "capital", "employee", "office", "公司", "成立", "概覽", "概况", "辦公",
    ),
    "Our Services": ("service", "offering", "scope", "solution", "design & build", "服務", "服务", "方案", "能力"),
    "Design Expertise": ("design", "style", "software", "bim", "expertise", "設計", "设计", "風格", "风格"),
    "Regional Experience & Clients": (
        "regional", "region", "country", "city", "client", "market", "asia", "地區", "地区", "客戶", "客户",
    ),
    "Selected Projects": ("project", "case", "portfolio", "highlight", "area", "sqft", "sqm", "項目", "项目", "案例"),
    "Awards & Recognition": ("award", "recognition", "accolade", "certification", "奖", "獎", "榮譽", "荣誉"),
    "Team & Leadership": (
        "team", "leadership", "manager", "designer", "organization", "personnel", "團隊", "团队", "人員", "人员",
    ),
    "Design & Build Capability": ("d&b", "design & build", "capacity", "concurrent", "delivery", "construction", "施工", "承接"),
    "Compliance & Quality": (
        "compliance", "quality", "safety", "insurance", "iso", "incident", "litigation", "governance",
        "合規", "合规", "質量", "质量", "保險", "保险",
    ),
    "Contact": ("contact", "email", "phone", "tel", "website", "address", "linkedin", "聯絡", "联系", "電郵", "电话"),
}

IMAGE_SECTIONS = {"Selected Projects": 2, "Team & Leadership": 1}
COMPANY_NAME_KEY = "Company English Name / 公司英文名"
MAX_FACTS_PER_SECTION = 36

_CJK_RE = re.compile(r"[㐀-鿿]")
_CJK_PUNCT_RE = re.compile(r"[，。；：、（）【】《》“”‘’「」『』]")
_WHITESPACE_RE = re.compile(r"\s+")
_IMAGE_EXT_RE = re.compile(r"\.(png|jpg|jpeg|webp|gif|bmp|svg)$", re.IGNORECASE)
_IMAGE_PATH_RE = re.compile(r"(image|photo|picture|logo|gallery|圖|图|照片|相片)", re.IGNORECASE)
_LINK_PATH_RE = re.compile(r"(website|web|linkedin|url|contact)", re.IGNORECASE)
_LOGO_RE = re.compile(r"(logo|brand|identity|商標|标识)", re.IGNORECASE)
_MISSING_RE = re.compile(
    r"^(?:n/?a|na|none|null|nil|unknown|not provided|not available|not applicable|tbd|pending|missing"
    r"|unavailable|no|without|--?)$",
    re.IGNORECASE,
)
_NEGATIVE_TEXT_RE = re.compile(
    r"(lawsuit|litigation|dispute|penalty|fine|incident|accident|injury|fatal|complaint|delay|overdue|defect"
    r"|failure|breach|non[-\s]?compliance|risk|issue|problem|weakness|shortage|debt|loss|bankrupt|negative)",
    re.IGNORECASE,
)
_NEGATIVE_FIELD_RE = re.compile(
    r"(risk|issue|problem|incident|accident|complaint|litigation|lawsuit|penalty|delay|defect|breach"
    r"|non[-\s]?compliance|loss|debt)",
    re.IGNORECASE,
)
_NEGATIVE_PREFIX_RE = re.compile(r"^(?:no|none|without|not\s+)", re.IGNORECASE)
_ZERO_RE = re.compile(r"^0+(?:\.0+)?%?$")
_COUNTED_FIELD_RE = re.compile(
    r"(project|client|award|team|employee|office|service|capability|experience|year|revenue|turnover|headcount)",
    re.IGNORECASE,
)
_BOOST_RE = re.compile(
    r"(award|recognition|project|service|capability|client|team|leadership|quality|compliance|contact|email"
    r"|phone|website|address|founded|established)",
    re.IGNORECASE,
)
_COMPANY_NAME_PATH_RE = re.compile(
    r"(company.*name|legal.*name|supplier.*name|vendor.*name|firm.*name|business.*name|studio.*name"
    r"|organization|organisation)",
    re.IGNORECASE,
)


@dataclass(slots=True)
class Fact:
    key: str
    value: str
    source_path: str
    raw_type: str = "str"

    @property
    def text(self) -> str:
        return f"{self.key}: {self.value}"


@dataclass(slots=True)
class ImageRef:
    url: str
    source_path: str


@dataclass(slots=True)
class Section:
    title: str
    key_message: str
    facts: list[Fact]
    images: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DeckDraft:
    presentation_title: str
    cover_logo: str
    sections: list[Section]
    skipped_sections: list[str]
    allowed_image_urls: list[str]


def english_safe_text(value: Any) -> str:
    text = str(value) if value is not None else ""
    text = _CJK_RE.sub(" ", text)
    text = _CJK_PUNCT_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_space(value: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(value) if value is not None else "").strip()


def is_missing_like(value: Any) -> bool:
    text = english_safe_text(value).lower()
    return not text or bool(_MISSING_RE.match(text))


def key_to_label(key: str) -> str:
    label = re.sub(r"[_-]+", " ", str(key or ""))
    label = re.sub(r"\s*/\s*", " / ", label)
    return english_safe_text(label)


def find_value_by_exact_key(node: Any, keys: set[str]) -> str:
    """Depth-first search for the first scalar stored under one of ``keys``."""
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, list):
            stack.extend(reversed(current))
            continue
        if not isinstance(current, dict):
            continue
        children = []
        for key, value in current.items():
            if key in keys and isinstance(value, (str, int, float)) and not isinstance(value, bool):
                safe = english_safe_text(value)
                if safe:
                    return safe
            if isinstance(value, (dict, list)):
                children.append(value)
        stack.extend(reversed(children))
    return ""


def collect_facts(value: Any, path: list[str] | None = None) -> list[Fact]:
    path = path or []
    if value is None:
        return []

    if isinstance(value, (str, int, float, bool)):
        fact = _scalar_fact(value, path)
        return [fact] if fact else []

    facts: list[Fact] = []
    if isinstance(value, list):
        for index, item in enumerate(value):
            facts.extend(collect_facts(item, [*path, str(index)]))
    elif isinstance(value, dict):
        for key, item in value.items():
            facts.extend(collect_facts(item, [*path, key_to_label(key)]))
    return facts


def collect_images(value: Any, path: list[str] | None = None) -> list[ImageRef]:
    path = path or []
    if isinstance(value, str):
        source_path = _join_path(path)
        if is_image_url(value, source_path):
            return [ImageRef(url=value.strip(), source_path=source_path)]
        return []

    images: list[ImageRef] = []
    if isinstance(value, list):
        for index, item in enumerate(value):
            images.extend(collect_images(item, [*path, str(index)]))
    elif isinstance(value, dict):
        for key, item in value.items():
            images.extend(collect_images(item, [*path, key_to_label(key)]))
    return images


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and bool(re.match(r"^https?://", value.strip(), re.IGNORECASE))


def is_image_url(value: Any, source_path: str = "") -> bool:
    if not is_http_url(value):
        return False
    if _IMAGE_EXT_RE.search(urlsplit(value.strip()).path or ""):
        return True
    return bool(_IMAGE_PATH_RE.search(source_path or ""))


def is_undesirable_fact(fact: Fact) -> bool:
    key_text = normalize_space(f"{fact.key} {fact.source_path}".lower())
    value = normalize_space(fact.value)
    lowered = value.lower()

    if is_missing_like(value):
        return True
    if _NEGATIVE_FIELD_RE.search(key_text):
        return True
    if _NEGATIVE_TEXT_RE.search(f"{key_text} {lowered}"):
        return True
    if _ZERO_RE.match(lowered) and _COUNTED_FIELD_RE.search(key_text):
        return True
    return bool(_NEGATIVE_PREFIX_RE.match(lowered))


def pick_section(text: str) -> str:
    best, best_score = "", 0
    for section in FIXED_OUTLINE:
        score = _keyword_score(text, SECTION_KEYWORDS[section])
        if score > best_score:
            best, best_score = section, score
    return best


def bucket_facts(facts: list[Fact]) -> dict[str, list[Fact]]:
    buckets: dict[str, list[Fact]] = {section: [] for section in FIXED_OUTLINE}
    for fact in facts:
        if is_undesirable_fact(fact):
            continue
        section = pick_section(f"{fact.key} {fact.value} {fact.source_path} {fact.text}") or "Company Overview"
        buckets[section].append(fact)

    for section, items in buckets.items():
        # Stable sort keeps source order between equally scored facts.
        items.sort(key=lambda fact, name=section: -_fact_score(fact, name))
        buckets[section] = items[:MAX_FACTS_PER_SECTION]
    return buckets


def pick_presentation_title(input_json: Any, facts: list[Fact]) -> str:
    exact = find_value_by_exact_key(input_json, {COMPANY_NAME_KEY})
    if _is_plausible_company_name(exact):
        return exact

    candidates = [
        (3 if re.search(r"(english|legal|company)", fact.source_path, re.IGNORECASE) else 1, fact.value)
        for fact in facts
        if _COMPANY_NAME_PATH_RE.search(f"{fact.key} {fact.source_path}")
        and _is_plausible_company_name(fact.value)
    ]
    if candidates:
        return max(candidates, key=lambda item: item[0])[1]
    return "Company"


def build_draft(input_json: Any, *, max_images_per_section: int = 2) -> DeckDraft:
    facts = _dedupe(collect_facts(input_json), lambda fact: f"{fact.source_path}|{fact.value}")
    images = _dedupe(collect_images(input_json), lambda image: image.url)
    buckets = bucket_facts(facts)

    sections: list[Section] = []
    skipped: list[str] = []
    for title in FIXED_OUTLINE:
        section_facts = buckets[title]
        if not section_facts:
            skipped.append(title)
            continue
        sections.append(Section(title=title, key_message=_key_message(title, section_facts), facts=section_facts[:30]))

    if not sections:
        sections.append(
            Section(
                title="Company Overview",
                key_message="Source JSON is available but lacks structured business facts for fixed sections.",
                facts=[],
            )
        )

    _assign_images(sections, images, max(1, min(2, max_images_per_section)))
    used = {url for section in sections for url in section.images}
    cover_logo = next(
        (
            image.url
            for image in images
            if (_LOGO_RE.search(image.source_path) or "logo" in image.url.lower()) and image.url not in used
        ),
        "",
    )

    return DeckDraft(
        presentation_title=pick_presentation_title(input_json, facts),
        cover_logo=cover_logo,
        sections=sections,
        skipped_sections=skipped,
        allowed_image_urls=[image.url for image in images],
    )


def _scalar_fact(value: str | int | float | bool, path: list[str]) -> Fact | None:
    raw = normalize_space(value)
    source_path = english_safe_text(_join_path(path))
    if not raw or value is False:
        return None
    if isinstance(value, str) and is_http_url(raw):
        if is_image_url(raw, source_path) or not _LINK_PATH_RE.search(source_path):
            return None

    final_value = "Yes" if value is True else english_safe_text(raw)
    if not final_value:
        return None
    key = english_safe_text(_fact_key(path)) or "Data Point"
    return Fact(key=key, value=final_value, source_path=source_path, raw_type=type(value).__name__)


def _fact_key(path: list[str]) -> str:
    last = path[-1] if path else ""
    if not last.isdigit():
        return key_to_label(last or "Value")
    # Items of scalar lists take their parent's label.
    return key_to_label(path[-2] if len(path) > 1 else "Value")


def _join_path(path: list[str]) -> str:
    return " > ".join(part for part in path if part)


def _keyword_score(text: str, keywords: tuple[str, ...]) -> int:
    lowered = text.lower()
    score = 0
    for keyword in keywords:
        if _CJK_RE.search(keyword):
            score += 2 if keyword in text else 0
        elif keyword.lower() in lowered:
            score += 1
    return score


def _fact_score(fact: Fact, section: str) -> int:
    haystack = f"{fact.key} {fact.source_path} {fact.value}"
    score = _keyword_score(haystack, SECTION_KEYWORDS.get(section, ()))
    if re.search(r"\d", fact.value):
        score += 2
    if is_http_url(fact.value):
        score -= 3
    if len(fact.value) > 130:
        score -= 1
    if _BOOST_RE.search(haystack):
        score += 2
    return score


def _key_message(title: str, facts: list[Fact]) -> str:
    first = facts[0]
    return normalize_space(f"{title} is supported by {first.key.lower()} ({first.value}).")


def _image_score(image: ImageRef, section: str) -> int:
    path_text = image.source_path.lower()
    score = 0
    if section == "Selected Projects":
        if re.search(r"(project|case|portfolio|site)", path_text):
            score += 4
        if re.search(r"(interior|office|hotel|retail|workplace)", path_text):
            score += 2
    if section == "Team & Leadership" and re.search(
        r"(team|leadership|people|staff|member|headshot|portrait)", path_text
    ):
        score += 3
    if _LOGO_RE.search(path_text):
        score -= 3
    if re.search(r"(svg|logo)", image.url.lower()):
        score -= 2
    return score


def _assign_images(sections: list[Section], images: list[ImageRef], max_per_section: int) -> None:
    used: set[str] = set()
    for section in sections:
        cap = IMAGE_SECTIONS.get(section.title)
        if cap is None:
            continue
        candidates = [image for image in images if pick_section(image.source_path) == section.title]
        candidates.sort(key=lambda image, name=section.title: -_image_score(image, name))
        for image in candidates:
            if len(section.images) >= min(cap, max_per_section):
                break
            if image.url in used:
                continue
            section.images.append(image.url)
            used.add(image.url)


def _is_plausible_company_name(value: str) -> bool:
    safe = english_safe_text(value)
    if len(safe) < 2 or len(safe) > 100:
        return False
    if not re.search(r"[A-Za-z]", safe):
        return False
    return not re.match(r"^(company|profile|overview|not provided|unknown|n/a)$", safe, re.IGNORECASE)


def _dedupe(items: list[Any], key_fn: Any) -> list[Any]:
    seen: set[str] = set()
    unique = []
    for item in items:
        key = key_fn(item)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique
