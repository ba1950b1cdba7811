"""
Activity content structure: metrics, validation and auto-repair.

Activity content arrives from the model as
``{title, kind, estimated_minutes, content_json: {blocks: [...]}, citations}``.
Repair is deterministic and idempotent: it adds a heading, lesson markers,
structural blocks and word-count padding until the per-kind minima hold, and
a second pass over repaired content changes nothing.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from src.pipeline.primitives import parse_uuid, string_from_any, string_list_from_any, word_count

LESSON_LIKE_KINDS = frozenset({"reading", "case", "lesson"})

# kind -> (min words, min paragraphs, min callouts)
ACTIVITY_MINIMA: dict[str, tuple[int, int, int]] = {
    "reading": (900, 6, 1),
    "case": (900, 6, 1),
    "lesson": (900, 6, 1),
    "drill": (350, 2, 1),
    "quiz": (220, 1, 0),
}
DEFAULT_MINIMA = (600, 4, 1)

MIN_PADDING_WORDS = 40
MAX_PADDING_SENTENCES = 200
WORD_TOP_UP_ATTEMPTS = 4
WORD_TOP_UP_SLACK = 80

ACTIVITY_EXCERPT_MAX_LINES = 12
ACTIVITY_EXCERPT_MAX_CHARS = 700

WORKED_EXAMPLE_TEXT = (
    "Example: Before you look at the solution, try to work this from memory. Write your steps clearly, "
    "then compare each step to the explanation and note the first place your reasoning diverged."
)
QUICK_CHECK_TEXT = (
    "Quick check: In one or two sentences, what is the key idea you would use here, and what would you "
    "check to be confident your answer is correct?"
)
HINT_LADDER = [
    "Hint 1: Restate the question and list the given information vs. what you need to find.",
    "Hint 2: Choose the key idea/method that applies, and write the next step you would take.",
    "Hint 3: Do a quick sanity check (units, sign, boundary cases, or an intuitive reasonableness check) "
    "before you finalize.",
]

_DRILL_SENTENCES = (
    "Approach this as a short loop: attempt from memory, check, explain the mismatch, then retry.",
    "Write your reasoning step by step rather than jumping to the final answer; clarity beats speed here.",
    "If you get stuck, use the hint to choose just the next step, then continue on your own without copying.",
    "After you verify the solution, identify the first point where your approach diverged and write a "
    "one-sentence correction.",
    "Do a second attempt from scratch and aim for a clean, minimal solution that you could reproduce tomorrow.",
    "Finish with a tiny takeaway: the rule/idea you should remember next time and one common trap to avoid.",
)
_LESSON_SENTENCES = (
    "Read actively: pause after each section and restate the key idea in your own words.",
    "When you see an example, try to predict the next step before reading it, then compare and correct yourself.",
    "Use the checks as retrieval practice: answer without looking back, then verify and note what you missed.",
    "Keep a small list of definitions and assumptions as you go; most confusion comes from mixing terms.",
    "At the end, summarize the mental model in 2-3 sentences and write one mistake you want to avoid next time.",
)
_QUIZ_SENTENCES = (
    "Answer from memory first; if unsure, eliminate options by explaining why each is inconsistent with the material.",
    "After you see the explanation, paraphrase it once in your own words so it sticks.",
    "If you miss a question, rewrite it as a flashcard prompt and retry it after a short break.",
)


@dataclass
class ActivityMetrics:
    word_count: int = 0
    headings: int = 0
    paragraphs: int = 0
    callouts: int = 0
    bullet_blocks: int = 0
    has_worked_example: bool = False
    has_self_check: bool = False


def _kind(value: Any) -> str:
    return string_from_any(value).strip().lower()


def is_lesson_like(kind: str) -> bool:
    return _kind(kind) in LESSON_LIKE_KINDS


def activity_minima(kind: str) -> tuple[int, int, int]:
    return ACTIVITY_MINIMA.get(_kind(kind), DEFAULT_MINIMA)


def make_block(kind: str, content_md: str = "", items: list[str] | None = None) -> dict[str, Any]:
    return {"kind": kind, "content_md": content_md, "items": list(items or []), "asset_refs": []}


def content_blocks(obj: dict[str, Any] | None) -> list[Any] | None:
    """The ``content_json.blocks`` list, or None when the shape is wrong."""
    if not isinstance(obj, dict):
        return None
    content = obj.get("content_json")
    if not isinstance(content, dict):
        return None
    blocks = content.get("blocks")
    return blocks if isinstance(blocks, list) else None


def activity_content_metrics(blocks: Iterable[Any]) -> ActivityMetrics:
    out = ActivityMetrics()
    for b in blocks or []:
        if not isinstance(b, dict):
            continue
        text = string_from_any(b.get("content_md")).strip()
        items = string_list_from_any(b.get("items"))
        if items:
            text = "\n".join([text, *items]) if text else "\n".join(items)
        out.word_count += word_count(text)

        lc = text.lower()
        if "worked example" in lc or "example:" in lc:
            out.has_worked_example = True
        if "quick check" in lc or "self-check" in lc or "check yourself" in lc or "?" in lc:
            out.has_self_check = True

        kind = _kind(b.get("kind"))
        if kind == "heading":
            out.headings += 1
        elif kind == "paragraph":
            out.paragraphs += 1
        elif kind == "callout":
            out.callouts += 1
        elif kind in ("bullets", "steps"):
            out.bullet_blocks += 1
    return out


def validate_activity_content(obj: dict[str, Any] | None, activity_kind: str) -> list[str]:
    """
    Structural validation errors; an empty list means the content is acceptable.

    The messages are fed back to the model verbatim on retry.
    """
    if not isinstance(obj, dict):
        return ["missing object"]
    title = string_from_any(obj.get("title")).strip()
    kind = _kind(obj.get("kind")) or _kind(activity_kind)

    if not isinstance(obj.get("content_json"), dict):
        return ["content_json missing or invalid"]
    blocks = content_blocks(obj)
    if not blocks:
        return ["content_json.blocks missing"]

    m = activity_content_metrics(blocks)
    min_words, min_paragraphs, min_callouts = activity_minima(kind)

    errs: list[str] = []
    if not title:
        errs.append("title missing")
    if min_words > 0 and m.word_count < min_words:
        errs.append(f"word_count too low ({m.word_count} < {min_words})")
    if min_paragraphs > 0 and m.paragraphs < min_paragraphs:
        errs.append(f"need >={min_paragraphs} paragraph blocks (got {m.paragraphs})")
    if min_callouts > 0 and m.callouts < min_callouts:
        errs.append(f"need >={min_callouts} callout blocks (got {m.callouts})")
    if m.headings < 1:
        errs.append("need at least 1 heading block")
    if is_lesson_like(kind) and not m.has_worked_example:
        errs.append("missing worked example (include a Worked example heading or callout)")
    if is_lesson_like(kind) and not m.has_self_check:
        errs.append("missing self-check prompt (include a Quick check/Self-check section)")
    return errs


def padding_text(kind: str, min_words: int, offset: int = 0) -> str:
    """Deterministic study-advice padding of at least ``min_words`` words, rotated by ``offset``."""
    min_words = max(min_words, MIN_PADDING_WORDS)
    k = _kind(kind)
    if k in LESSON_LIKE_KINDS:
        sentences = _LESSON_SENTENCES
    elif k == "quiz":
        sentences = _QUIZ_SENTENCES
    else:
        sentences = _DRILL_SENTENCES
    offset = max(offset, 0)

    parts: list[str] = []
    words = 0
    i = 0
    while words < min_words and i < MAX_PADDING_SENTENCES:
        s = sentences[(offset + i) % len(sentences)]
        parts.append(s)
        words += word_count(s)
        i += 1
    return " ".join(parts).strip()


def ensure_heading_block(obj: dict[str, Any] | None, fallback_heading: str) -> bool:
    """Prepend a heading when no block is one. Returns whether content changed."""
    blocks = content_blocks(obj)
    if not blocks:
        return False
    if any(isinstance(b, dict) and _kind(b.get("kind")) == "heading" for b in blocks):
        return False
    heading = string_from_any(obj.get("title")).strip() or (fallback_heading or "").strip() or "Overview"
    obj["content_json"]["blocks"] = [make_block("heading", heading), *blocks]
    return True


def ensure_minima(obj: dict[str, Any] | None, activity_kind: str) -> bool:
    """
    Repair content up to the per-kind minima.

    Lesson markers and structural blocks go right after the first heading;
    word padding is appended at the end.

    Returns:
        False when the object has no usable block list.
    """
    if not isinstance(obj, dict):
        return False
    if not string_from_any(obj.get("title")).strip():
        obj["title"] = (activity_kind or "").strip() or "Activity"
    kind = _kind(obj.get("kind"))
    if not kind:
        kind = _kind(activity_kind) or "reading"
        obj["kind"] = kind

    blocks = content_blocks(obj)
    if not blocks:
        return False

    m = activity_content_metrics(blocks)
    min_words, min_paragraphs, min_callouts = activity_minima(kind)

    insert_at = len(blocks)
    for i, b in enumerate(blocks):
        if isinstance(b, dict) and _kind(b.get("kind")) == "heading":
            insert_at = i + 1
            break

    inserts: list[dict[str, Any]] = []
    if is_lesson_like(kind) and not m.has_worked_example:
        inserts += [make_block("heading", "Worked example"), make_block("paragraph", WORKED_EXAMPLE_TEXT)]
        m.has_worked_example = True
    if is_lesson_like(kind) and not m.has_self_check:
        inserts += [make_block("heading", "Quick check"), make_block("paragraph", QUICK_CHECK_TEXT)]
        m.has_self_check = True

    pad_offset = m.paragraphs + m.callouts + m.headings
    while m.paragraphs < min_paragraphs:
        inserts.append(make_block("paragraph", padding_text(kind, 90, pad_offset)))
        m.paragraphs += 1
        pad_offset += 1
    while m.callouts < min_callouts:
        inserts.append(make_block("callout", "**Hint ladder**", HINT_LADDER))
        m.callouts += 1
        pad_offset += 1

    if inserts:
        blocks = blocks[:insert_at] + inserts + blocks[insert_at:]

    if min_words > 0:
        for attempt in range(WORD_TOP_UP_ATTEMPTS):
            total = activity_content_metrics(blocks).word_count
            if total >= min_words:
                break
            missing = min_words - total
            blocks.append(make_block("paragraph", padding_text(kind, missing + WORD_TOP_UP_SLACK, total + attempt)))

    obj["content_json"]["blocks"] = blocks
    return True


def repair_activity_content(obj: dict[str, Any] | None, activity_kind: str, fallback_heading: str) -> None:
    ensure_heading_block(obj, fallback_heading)
    ensure_minima(obj, activity_kind)


def filter_allowed_citations(values: Iterable[Any], allowed: set[str], fallback: Sequence[UUID]) -> list[str]:
    """Keep valid, allowed chunk IDs; with none left, fall back to the first allowed retrieved ID."""
    out: list[str] = []
    for v in values or []:
        cid = parse_uuid(v)
        if cid is None:
            continue
        s = str(cid)
        if (allowed and s not in allowed) or s in out:
            continue
        out.append(s)
    if out:
        return out
    for cid in fallback or []:
        if cid is None:
            continue
        s = str(cid)
        if not allowed or s in allowed:
            return [s]
    return []
