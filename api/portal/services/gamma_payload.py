from __future__ import annotations

from typing import Any

from portal.core.config import Settings
from portal.services.fact_pack import (
    FIXED_OUTLINE,
    DeckDraft,
    Fact,
    Section,
    build_draft,
    english_safe_text,
    find_value_by_exact_key,
    is_missing_like,
)

FIXED_PROMPT = " ".join(
    [
        "Generate an English business presentation using only facts from the provided JSON.",
        "Mandatory structure: include exactly one Cover slide and one Agenda slide at the beginning.",
        "For content sections, you may add extra continuation slides when a section has dense source data.",
        "Image rules:",
        "1) Only cover page can use one AI-generated white abstract background.",
        "2) All non-cover images must come only from image URLs in the source JSON.",
        "3) Prefer using images in project-related slides or where they clearly support the message.",
        "4) If a company logo is provided, place it at the top-right of the cover.",
        "5) Team/personnel images are optional and should be used only when layout fit is good.",
        "Writing style rules:",
        "1) Keep content data-backed and non-fabricated.",
        "2) Rewrite into presentation-ready narrative, not raw JSON key-value listing.",
        "3) Connect data points into coherent business statements with concise, professional tone.",
        "4) If a fact is missing or negative/unfavorable, skip that point instead of guessing.",
        '5) Cover must use the exact field "Company English Name / 公司英文名" as company name.',
        "6) Keep each content page concise to avoid overlapping text.",
    ]
)

FACTS_PER_CARD = 4
MAX_CHUNKS = 6
MAX_CHUNKS_COMPACT = 2
MAX_BULLETS_PER_CARD = 5
MAX_FACT_VALUE_CHARS = 150
MAX_CARDS = 75
MAX_FOLDER_IDS = 10
_NARRATIVE_VERBS = ("Strengthen", "Expand", "Accelerate", "Consolidate", "Improve")

# (label, exact form keys, fallback dotted paths)
_COVER_FIELDS = (
    ("Contact Person", {"Contact person / 聯絡人", "Contact Person / 联系人"},
     ("contact.name", "contact.person", "contactPerson", "representative", "salesContact")),
    ("Email", {"Email / 電郵", "Email / 邮箱"}, ("contact.email", "email")),
    ("Phone", {"Contact Number / 聯繫電話", "Contact Number / 联系电话"}, ("contact.phone", "phone", "tel")),
    ("Website", {"Or enter company website / 或輸入公司網站", "Company Website / 公司網站"},
     ("contact.website", "website", "web")),
    ("Address", {"Office Address / 辦公地址", "Address / 地址"}, ("contact.address", "address")),
)


def build_generation_payload(
    prompt: str,
    input_json: dict[str, Any],
    *,
    settings: Settings,
    compact_mode: bool = False,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Build the provider create request and the job meta describing it."""
    draft = build_draft(input_json, max_images_per_section=2)
    cover_ai_background = settings.gamma_cover_ai_background
    max_chunks = MAX_CHUNKS_COMPACT if compact_mode else MAX_CHUNKS

    section_cards: list[tuple[str, str, list[str]]] = []
    for section in draft.sections:
        for index, chunk in enumerate(_chunk(section.facts, FACTS_PER_CARD, max_chunks)):
            title = _continued_title(section.title, index)
            images = section.images[:2] if index == 0 else []
            section_cards.append((title, _section_card(section, chunk, index), images))
        if not section.facts:
            section_cards.append((section.title, _section_card(section, [], 0), section.images[:2]))

    section_titles = [section.title for section in draft.sections]
    cards = [
        _cover_card(draft, input_json, cover_ai_background=cover_ai_background),
        _agenda_card(section_titles),
        *(text for _, text, _ in section_cards),
    ]
    image_assignments = [
        {"title": draft.presentation_title, "images": [draft.cover_logo] if draft.cover_logo else []},
        {"title": "Agenda", "images": []},
        *({"title": title, "images": images} for title, _, images in section_cards),
    ]

    image_options: dict[str, Any] = {"source": "aiGenerated" if cover_ai_background else "noImages"}
    if cover_ai_background:
        image_options["style"] = "minimal, white, clean, abstract gradient background"

    request: dict[str, Any] = {
        "inputText": "\n---\n".join(cards),
        "textMode": settings.gamma_text_mode or "preserve",
        "format": "presentation",
        "cardSplit": "inputTextBreaks",
        "exportAs": settings.gamma_export_as or "pptx",
        "cardOptions": {"dimensions": "16x9"},
        "textOptions": {
            "language": "en",
            "amount": "medium" if compact_mode else "detailed",
            "tone": "professional, concise, business",
            "audience": "business stakeholders and decision makers",
        },
        "imageOptions": image_options,
        "additionalInstructions": _additional_instructions(
            prompt,
            skipped_sections=draft.skipped_sections,
            image_assignments=image_assignments,
        ),
    }
    if settings.gamma_theme_id:
        request["themeId"] = settings.gamma_theme_id
    folder_ids = parse_folder_ids(settings.gamma_folder_ids)
    if folder_ids:
        request["folderIds"] = folder_ids

    meta = {
        "provider": "gamma",
        "compact_mode": compact_mode,
        "fixed_outline": list(FIXED_OUTLINE),
        "final_outline": [draft.presentation_title, "Agenda", *section_titles],
        "skipped_sections": draft.skipped_sections,
        "image_assignments": image_assignments,
        "source_image_count": len(draft.allowed_image_urls),
        "cards_planned": max(1, min(MAX_CARDS, len(cards))),
        "mode": "generate",
    }
    return request, meta


def redacted_request(request: dict[str, Any]) -> dict[str, Any]:
    snapshot = dict(request)
    snapshot["inputText"] = f"[redacted length={len(str(request.get('inputText') or ''))}]"
    return snapshot


def parse_folder_ids(raw: str | None) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()][:MAX_FOLDER_IDS]


def _cover_card(draft: DeckDraft, input_json: dict[str, Any], *, cover_ai_background: bool) -> str:
    lines = [f"# {english_safe_text(draft.presentation_title) or 'Company'}"]
    if cover_ai_background:
        lines.append("## Visual Direction")
        lines.append("- Create one abstract white background image for this cover only.")

    contact_lines = []
    for label, exact_keys, paths in _COVER_FIELDS:
        value = find_value_by_exact_key(input_json, exact_keys) or _pick_field(input_json, paths)
        if value:
            contact_lines.append(f"- {label}: {value}")
    if contact_lines:
        lines.append("## Contact")
        lines.extend(contact_lines)

    if draft.cover_logo:
        lines.append("## Company Logo (place at top-right)")
        lines.append(draft.cover_logo)
    return "\n".join(lines)


def _agenda_card(section_titles: list[str]) -> str:
    lines = ["# Table of Contents"]
    lines.extend(f"{index}. {title}" for index, title in enumerate(section_titles, start=1))
    return "\n".join(lines)


def _section_card(section: Section, facts: list[Fact], chunk_index: int) -> str:
    if chunk_index > 0:
        key_message = _trim_sentence(f"Additional source-backed highlights for {section.title}.", 120)
    else:
        key_message = _trim_sentence(
            section.key_message or f"{section.title} supports business delivery outcomes.",
            130,
        )

    narrative = [line for index, fact in enumerate(facts[:MAX_BULLETS_PER_CARD]) if (line := _narrative_line(fact, index))]
    evidence = [line for fact in facts[:3] if (line := _evidence_line(fact))]

    lines = [
        f"# {_continued_title(section.title, chunk_index)}",
        "## Key Message",
        key_message,
        "## Highlights",
        *narrative,
    ]
    if evidence:
        lines.append("## Key Facts")
        lines.extend(evidence)

    images = section.images[:2] if chunk_index == 0 else []
    lines.append("## Image Rule")
    lines.append("- Do not generate AI images for this card.")
    if images:
        lines.append("- Use only the source URLs below if an image is needed.")
        lines.append("## Visual References")
        lines.extend(images)
    else:
        lines.append("- No source image is provided for this card; keep this card without images.")
    return "\n".join(lines)


def _additional_instructions(
    prompt: str,
    *,
    skipped_sections: list[str],
    image_assignments: list[dict[str, Any]],
) -> str:
    lines = [
        "Generate a professional English business presentation.",
        "Do not invent any facts, numbers, dates, clients, awards, institutions, or certifications.",
        "If source data is missing, skip the unsupported point. Do not fabricate.",
        "Use only positive and capability-forward facts from the input. "
        "Omit risks, incidents, disputes, and missing capability statements.",
        "Keep the first card as cover and second card as agenda. Both pages are mandatory.",
        f"Use section order exactly as: {' | '.join(FIXED_OUTLINE)}",
        "Use only image URLs present in inputText for non-cover pages. Do not add any extra non-cover images.",
        "Only the cover page may use one AI-generated abstract white background.",
        "Place images mainly in project pages or where imagery clearly supports the content.",
        "Avoid repeating the same image across many pages.",
        "If logo URL exists, place company logo at top-right of the cover.",
        "Team/personnel images are optional; use only when layout fit is good.",
        "Cover page must use the real company name from source data, not generic placeholders.",
        "Make wording presentation-ready and richer, connecting facts into coherent business statements.",
        "Do not output raw JSON-style key-value formatting.",
        "All output text must be in English only.",
        "Prevent crowded slides: keep each content card concise, with at most 5 bullets.",
        "For content-heavy sections, add continuation cards instead of overloading one card.",
        "Use clean hierarchy: title, key message, highlights, key facts.",
    ]

    emphasis = english_safe_text(prompt)
    if emphasis:
        lines.append(f"User emphasis: {emphasis}")
    if skipped_sections:
        lines.append(f"Skipped sections due to missing facts: {', '.join(skipped_sections)}")
    if image_assignments:
        summary = "; ".join(f"{item['title']} -> {len(item['images'])} images" for item in image_assignments)
        lines.append(f"Image assignment reference: {summary}")
    return "\n".join(lines)


def _narrative_line(fact: Fact, index: int) -> str:
    value = _fact_value(fact)
    if not value:
        return ""
    verb = _NARRATIVE_VERBS[index % len(_NARRATIVE_VERBS)]
    key = english_safe_text(fact.key) or "Data point"
    return f"- {_trim_sentence(f'{verb} execution with {key.lower()} at {value}.', 170)}"


def _evidence_line(fact: Fact) -> str:
    value = _fact_value(fact)
    if not value:
        return ""
    key = english_safe_text(fact.key) or "Data point"
    return f"- {_trim_sentence(f'{key}: {value}', 160)}"


def _fact_value(fact: Fact) -> str:
    text = english_safe_text(fact.value)
    if is_missing_like(text):
        return ""
    if len(text) > MAX_FACT_VALUE_CHARS:
        return f"{text[:MAX_FACT_VALUE_CHARS]}..."
    return text


def _trim_sentence(text: str, max_chars: int = 180) -> str:
    normalized = english_safe_text(text)
    if len(normalized) <= max_chars:
        return normalized
    sliced = normalized[:max_chars]
    cut = sliced.rfind(" ")
    return f"{(sliced[:cut] if cut > 60 else sliced).strip()}..."


def _continued_title(title: str, chunk_index: int) -> str:
    return f"{title} (Continued {chunk_index + 1})" if chunk_index > 0 else title


def _chunk(facts: list[Fact], size: int, max_chunks: int) -> list[list[Fact]]:
    return [facts[start:start + size] for start in range(0, len(facts), size)][:max_chunks]


def _pick_field(input_json: Any, paths: tuple[str, ...]) -> str:
    for path in paths:
        cursor = input_json
        for key in path.split("."):
            if not isinstance(cursor, dict) or key not in cursor:
                cursor = None
                break
            cursor = cursor[key]
        if isinstance(cursor, (str, int, float)) and not isinstance(cursor, bool):
            safe = english_safe_text(cursor)
            if safe:
                return safe
    return ""


