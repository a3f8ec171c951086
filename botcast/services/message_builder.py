# botcast/services/message_builder.py
"""
Turns campaign content into the list of Telegram calls for one recipient.

Media kind detection, caption vs. standalone text, chunking at the provider
limit and the plan keyboard are all decided here, before anything is sent.
"""
import html
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from botcast.core.config import CAPTION_LIMIT, TEXT_LIMIT

DEFAULT_PLANS_INTRO = "Clique abaixo para continuar:"
DEFAULT_OFFER_LABEL = "Oferta especial"

_TAG_RE = re.compile(r"<[^>]+>")
_TAG_TOKEN_RE = re.compile(r"<(/?)([a-zA-Z][\w-]*)[^>]*?(/?)>")
_ENTITY_RE = re.compile(r"&#?\w+;")


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ANIMATION = "animation"
    NONE = "none"


_DECLARED_ALIASES = {
    "photo": MediaKind.PHOTO,
    "image": MediaKind.PHOTO,
    "video": MediaKind.VIDEO,
    "audio": MediaKind.AUDIO,
    "voice": MediaKind.AUDIO,
    "document": MediaKind.DOCUMENT,
    "file": MediaKind.DOCUMENT,
    "animation": MediaKind.ANIMATION,
    "gif": MediaKind.ANIMATION,
}

_EXTENSIONS = {
    "mp4": MediaKind.VIDEO, "mov": MediaKind.VIDEO, "mkv": MediaKind.VIDEO, "webm": MediaKind.VIDEO,
    "mp3": MediaKind.AUDIO, "ogg": MediaKind.AUDIO, "oga": MediaKind.AUDIO,
    "m4a": MediaKind.AUDIO, "wav": MediaKind.AUDIO,
    "gif": MediaKind.ANIMATION,
    "jpg": MediaKind.PHOTO, "jpeg": MediaKind.PHOTO, "png": MediaKind.PHOTO, "webp": MediaKind.PHOTO,
    "pdf": MediaKind.DOCUMENT, "zip": MediaKind.DOCUMENT, "doc": MediaKind.DOCUMENT,
    "docx": MediaKind.DOCUMENT, "xlsx": MediaKind.DOCUMENT, "txt": MediaKind.DOCUMENT,
}


def detect_media_kind(media_type: Optional[str], media_url: Optional[str]) -> MediaKind:
    """Declared type first, then the URL extension; unknown extensions are photos."""
    if not media_url:
        return MediaKind.NONE

    declared = (media_type or "").strip().lower()
    if declared in _DECLARED_ALIASES:
        return _DECLARED_ALIASES[declared]

    path = urlparse(media_url).path or media_url
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _EXTENSIONS.get(ext, MediaKind.PHOTO)


def normalize_parse_mode(parse_mode: Optional[str]) -> Optional[str]:
    if parse_mode is None:
        return "HTML"
    value = parse_mode.strip()
    if value.lower() in ("", "none", "plain"):
        return None
    if value.lower() == "html":
        return "HTML"
    return value


def plain_text_length(text: Optional[str]) -> int:
    """Visible length of an HTML-formatted message."""
    if not text:
        return 0
    return len(html.unescape(_TAG_RE.sub("", text)))


def _break_point(window: str) -> int:
    """After a paragraph, else a line, else a word; the whole window when there is none."""
    for separator in ("\n\n", "\n", " "):
        idx = window.rfind(separator)
        if idx > 0:
            return idx + len(separator)
    return len(window)


def split_text(text: Optional[str], limit: int = TEXT_LIMIT) -> List[str]:
    """
    Split into chunks of at most `limit` characters.

    Breaks after a paragraph, else after a line, else after a word; cuts
    mid-word only when the window has no break point. "".join(chunks) == text.
    """
    if not text:
        return []

    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = _break_point(remaining[:limit])
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks


def _safe_html_cut(text: str, cut: int) -> int:
    """Move a cut back so it does not land inside a tag or an entity."""
    lt = text.rfind("<", 0, cut)
    if lt != -1 and text.find(">", lt, cut) == -1:
        cut = lt
    amp = text.rfind("&", 0, cut)
    if amp != -1:
        match = _ENTITY_RE.match(text, amp)
        if match and match.end() > cut:
            cut = amp
    return cut


def _open_tags(fragment: str, stack: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Tags still open after `fragment`, as (name, opening tag) pairs."""
    stack = list(stack)
    for match in _TAG_TOKEN_RE.finditer(fragment):
        closing, name, self_closing = match.group(1), match.group(2).lower(), match.group(3)
        if self_closing:
            continue
        if not closing:
            stack.append((name, match.group(0)))
            continue
        for i in range(len(stack) - 1, -1, -1):
            if stack[i][0] == name:
                del stack[i:]
                break
    return stack


def split_html(text: Optional[str], limit: int = TEXT_LIMIT) -> List[str]:
    """
    Split HTML-formatted text into chunks Telegram can parse on their own.

    Same break points as split_text, never inside a tag or an entity. Tags open
    at a cut are closed at the end of the chunk and reopened at the start of
    the next one, so each chunk is balanced and the visible text is unchanged.
    """
    if not text:
        return []

    chunks: List[str] = []
    remaining = text
    carried: List[Tuple[str, str]] = []
    while remaining:
        prefix = "".join(tag for _, tag in carried)
        if len(prefix) + len(remaining) <= limit:
            chunks.append(prefix + remaining)
            break

        budget = limit - len(prefix)
        cut, stack, suffix = 0, carried, ""
        while budget > 0:
            cut = _safe_html_cut(remaining, _break_point(remaining[:budget]))
            if cut <= 0:
                break
            stack = _open_tags(remaining[:cut], carried)
            suffix = "".join(f"</{name}>" for name, _ in reversed(stack))
            if len(prefix) + cut + len(suffix) <= limit:
                break
            budget = min(budget - 1, limit - len(prefix) - len(suffix))
            cut = 0

        if cut <= 0:
            # A single tag or entity wider than the room left
            end = remaining.find(">") + 1 if remaining.startswith("<") else 0
            cut = end or 1
            stack = _open_tags(remaining[:cut], carried)
            suffix = "".join(f"</{name}>" for name, _ in reversed(stack))

        chunks.append(prefix + remaining[:cut] + suffix)
        carried = stack
        remaining = remaining[cut:]
    return chunks


def format_price_brl(cents: int) -> str:
    return f"R$ {cents / 100:.2f}".replace(".", ",")


# ────────────────────────────────────────────
# Effective content & plans
# ────────────────────────────────────────────
@dataclass
class Plan:
    index: int
    label: str
    price_cents: int


@dataclass
class EffectiveContent:
    """Campaign content after the A/B override."""
    kind: str
    campaign_id: int
    text: Optional[str] = None
    parse_mode: Optional[str] = "HTML"
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    title: Optional[str] = None
    price_cents: Optional[int] = None
    button_text: Optional[str] = None
    intro_text: Optional[str] = None
    extra_plans: List[Dict[str, Any]] = field(default_factory=list)
    variant_key: Optional[str] = None

    @classmethod
    def from_campaign(cls, campaign, variant=None) -> "EffectiveContent":
        content = cls(
            kind=campaign.kind,
            campaign_id=campaign.id,
            text=campaign.text,
            parse_mode=campaign.parse_mode,
            media_url=campaign.media_url,
            media_type=campaign.media_type,
            title=campaign.title,
            price_cents=campaign.price_cents,
            button_text=campaign.button_text,
            intro_text=campaign.intro_text,
            extra_plans=list(campaign.extra_plans or []),
        )
        if variant is not None:
            content.variant_key = variant.key
            for attr in ("title", "price_cents", "text", "media_url", "media_type"):
                override = getattr(variant, attr, None)
                if override not in (None, ""):
                    setattr(content, attr, override)
        return content

    @property
    def has_content(self) -> bool:
        return bool((self.text or "").strip()) or bool(self.media_url)


def _valid_price(value) -> Optional[int]:
    try:
        cents = int(value)
    except (TypeError, ValueError):
        return None
    return cents if cents > 0 else None


def build_plans(content: EffectiveContent) -> List[Plan]:
    """Main offer (title/price) first, then extra plans with a valid price."""
    plans: List[Plan] = []

    main_price = _valid_price(content.price_cents)
    if main_price is not None:
        label = content.button_text or content.title or DEFAULT_OFFER_LABEL
        plans.append(Plan(index=0, label=label, price_cents=main_price))

    for raw in content.extra_plans or []:
        if not isinstance(raw, dict):
            continue
        price = _valid_price(raw.get("price_cents"))
        if price is None:
            continue
        label = (raw.get("label") or raw.get("name") or "").strip() or DEFAULT_OFFER_LABEL
        plans.append(Plan(index=len(plans), label=label, price_cents=price))

    return plans


def callback_data(kind: str, campaign_id: int, plan_index: int) -> str:
    return f"{kind}:{campaign_id}:p{plan_index}"


def build_keyboard(kind: str, campaign_id: int, plans: List[Plan]) -> Optional[Dict[str, Any]]:
    """One inline button per row, one row per plan."""
    if not plans:
        return None
    return {
        "inline_keyboard": [
            [{
                "text": f"{plan.label} - {format_price_brl(plan.price_cents)}",
                "callback_data": callback_data(kind, campaign_id, plan.index),
            }]
            for plan in plans
        ]
    }


# ────────────────────────────────────────────
# Message plan
# ────────────────────────────────────────────
@dataclass
class MessagePlan:
    media_kind: MediaKind = MediaKind.NONE
    media_url: Optional[str] = None
    caption: Optional[str] = None
    text_chunks: List[str] = field(default_factory=list)
    parse_mode: Optional[str] = "HTML"
    plans_text: Optional[str] = None
    keyboard: Optional[Dict[str, Any]] = None

    @property
    def has_media(self) -> bool:
        return self.media_kind is not MediaKind.NONE


def build_message_plan(
    content: EffectiveContent,
    caption_limit: int = CAPTION_LIMIT,
    text_limit: int = TEXT_LIMIT,
) -> MessagePlan:
    kind = detect_media_kind(content.media_type, content.media_url)
    text = content.text if (content.text or "").strip() else None

    plan = MessagePlan(
        media_kind=kind,
        media_url=content.media_url if kind is not MediaKind.NONE else None,
        parse_mode=normalize_parse_mode(content.parse_mode),
    )

    if text is not None:
        if plan.has_media and plain_text_length(text) <= caption_limit:
            plan.caption = text
        else:
            split = split_html if plan.parse_mode == "HTML" else split_text
            plan.text_chunks = split(text, text_limit)

    plans = build_plans(content)
    if plans:
        plan.plans_text = (content.intro_text or "").strip() or DEFAULT_PLANS_INTRO
        plan.keyboard = build_keyboard(content.kind, content.campaign_id, plans)

    return plan
