import re
from types import SimpleNamespace

from botcast.services.message_builder import (
    DEFAULT_PLANS_INTRO,
    EffectiveContent,
    MediaKind,
    build_keyboard,
    build_message_plan,
    build_plans,
    detect_media_kind,
    format_price_brl,
    normalize_parse_mode,
    plain_text_length,
    split_html,
    split_text,
)


def _content(**overrides):
    values = {"kind": "shot", "campaign_id": 7, "text": "Hi"}
    values.update(overrides)
    return EffectiveContent(**values)


# ────────────────────────────────────────────
# Media kind
# ────────────────────────────────────────────
def test_declared_type_wins_over_extension():
    assert detect_media_kind("video", "https://cdn.example.com/a.jpg") is MediaKind.VIDEO
    assert detect_media_kind("GIF", "https://cdn.example.com/a.png") is MediaKind.ANIMATION


def test_extension_fallback():
    assert detect_media_kind(None, "https://cdn.example.com/clip.MP4") is MediaKind.VIDEO
    assert detect_media_kind(None, "https://cdn.example.com/loop.gif") is MediaKind.ANIMATION
    assert detect_media_kind(None, "https://cdn.example.com/voice.ogg?sig=abc") is MediaKind.AUDIO
    assert detect_media_kind(None, "https://cdn.example.com/ebook.pdf") is MediaKind.DOCUMENT
    assert detect_media_kind("", "https://cdn.example.com/banner") is MediaKind.PHOTO
    assert detect_media_kind("photo", None) is MediaKind.NONE


def test_parse_mode_normalization():
    assert normalize_parse_mode(None) == "HTML"
    assert normalize_parse_mode("html") == "HTML"
    assert normalize_parse_mode("none") is None
    assert normalize_parse_mode("plain") is None
    assert normalize_parse_mode("MarkdownV2") == "MarkdownV2"


# ────────────────────────────────────────────
# Chunking
# ────────────────────────────────────────────
def test_split_prefers_paragraph_boundary():
    text = "a" * 30 + "\n\n" + "b" * 30

    chunks = split_text(text, limit=40)

    assert chunks == ["a" * 30 + "\n\n", "b" * 30]


def test_split_falls_back_to_lines_then_words():
    by_line = "a" * 20 + "\n" + "b" * 20 + "\n" + "c" * 5
    assert split_text(by_line, limit=30) == ["a" * 20 + "\n", "b" * 20 + "\n" + "c" * 5]

    by_word = "word " * 10
    chunks = split_text(by_word, limit=12)
    assert all(chunk.endswith(" ") for chunk in chunks)
    assert "".join(chunks) == by_word


def test_split_cuts_mid_word_only_without_break_points():
    chunks = split_text("x" * 100, limit=30)

    assert [len(c) for c in chunks] == [30, 30, 30, 10]


def test_split_round_trip_and_limit():
    paragraph = "Lorem ipsum dolor sit amet, consectetur adipiscing elit.\n"
    text = ("\n".join([paragraph * 12] * 8)) + "fim" + "z" * 5000

    chunks = split_text(text, limit=4096)

    assert "".join(chunks) == text
    assert all(0 < len(chunk) <= 4096 for chunk in chunks)
    assert len(chunks) >= 2


def test_split_short_and_empty():
    assert split_text("short", limit=10) == ["short"]
    assert split_text("", limit=10) == []
    assert split_text(None) == []


def _visible(chunk):
    return re.sub(r"<[^>]+>", "", chunk)


def _balanced(chunk, tag):
    return chunk.count(f"<{tag}>") == chunk.count(f"</{tag}>")


def test_html_split_closes_and_reopens_tags():
    text = "a" * 30 + " <b>bold words here</b> tail"

    chunks = split_html(text, limit=40)

    assert all(len(chunk) <= 40 for chunk in chunks)
    assert all(_balanced(chunk, "b") for chunk in chunks)
    assert "".join(_visible(c) for c in chunks) == _visible(text)


def test_html_split_carries_nested_tags_across_chunks():
    text = "<b><i>" + "word " * 20 + "</i></b>"

    chunks = split_html(text, limit=50)

    assert len(chunks) >= 2
    for chunk in chunks:
        assert len(chunk) <= 50
        assert chunk.startswith("<b><i>")
        assert chunk.endswith("</i></b>")
    assert "".join(_visible(c) for c in chunks) == _visible(text)


def test_html_split_never_cuts_inside_tag_or_entity():
    link = "word " * 6 + '<a href="https://x.test/a b">link text</a> end'
    for chunk in split_html(link, limit=40):
        assert not re.search(r"<[^>]*$", chunk)
        assert chunk.count("<a ") == chunk.count("</a>")

    assert split_html("x" * 39 + "&amp;y", limit=42) == ["x" * 39, "&amp;y"]


def test_plain_parse_mode_keeps_exact_round_trip():
    text = "<b>" + "palavra " * 30 + "</b>"

    plan = build_message_plan(_content(text=text, parse_mode="none"), text_limit=50)

    assert "".join(plan.text_chunks) == text

    html_plan = build_message_plan(_content(text=text), text_limit=50)
    assert all(_balanced(chunk, "b") for chunk in html_plan.text_chunks)


# ────────────────────────────────────────────
# Caption vs. standalone text
# ────────────────────────────────────────────
def test_media_with_short_text_uses_caption():
    plan = build_message_plan(_content(text="Oferta!", media_url="https://x/y.jpg"))

    assert plan.media_kind is MediaKind.PHOTO
    assert plan.caption == "Oferta!"
    assert plan.text_chunks == []


def test_media_with_long_text_sends_text_separately():
    long_text = "palavra " * 300

    plan = build_message_plan(_content(text=long_text, media_url="https://x/y.mp4"))

    assert plan.caption is None
    assert len(plan.text_chunks) >= 1
    assert "".join(plan.text_chunks) == long_text


def test_caption_limit_counts_visible_text_only():
    html_text = "<b>" + "a" * 1020 + "</b>"

    assert plain_text_length(html_text) == 1020
    assert build_message_plan(_content(text=html_text, media_url="https://x/y.jpg")).caption == html_text


def test_text_only_message():
    plan = build_message_plan(_content(text="Hello"))

    assert plan.has_media is False
    assert plan.text_chunks == ["Hello"]
    assert plan.keyboard is None


# ────────────────────────────────────────────
# Plans
# ────────────────────────────────────────────
def test_price_formatting():
    assert format_price_brl(1990) == "R$ 19,90"
    assert format_price_brl(5) == "R$ 0,05"


def test_plans_keyboard_encodes_campaign_and_index():
    content = _content(
        kind="downsell",
        title="Plano VIP",
        price_cents=1990,
        extra_plans=[
            {"label": "Mensal", "price_cents": 2990},
            {"label": "Sem preco", "price_cents": 0},
            {"label": "Anual", "price_cents": "9990"},
        ],
    )

    plans = build_plans(content)
    keyboard = build_keyboard(content.kind, content.campaign_id, plans)

    assert [p.label for p in plans] == ["Plano VIP", "Mensal", "Anual"]
    rows = keyboard["inline_keyboard"]
    assert len(rows) == 3
    assert all(len(row) == 1 for row in rows)
    assert rows[0][0] == {"text": "Plano VIP - R$ 19,90", "callback_data": "downsell:7:p0"}
    assert rows[2][0]["callback_data"] == "downsell:7:p2"


def test_plans_message_uses_intro_or_default():
    plan = build_message_plan(_content(price_cents=990))
    assert plan.plans_text == DEFAULT_PLANS_INTRO
    assert plan.keyboard["inline_keyboard"][0][0]["callback_data"] == "shot:7:p0"

    plan = build_message_plan(_content(price_cents=990, intro_text="Escolha:"))
    assert plan.plans_text == "Escolha:"


def test_variant_overrides_campaign_content():
    campaign = SimpleNamespace(
        id=3, kind="downsell", text="Base", parse_mode=None, media_url=None, media_type=None,
        title="Base offer", price_cents=4990, button_text=None, intro_text=None, extra_plans=None,
    )
    variant = SimpleNamespace(key="B", title="Promo B", price_cents=2990, text=None, media_url="", media_type=None)

    content = EffectiveContent.from_campaign(campaign, variant)

    assert content.variant_key == "B"
    assert content.title == "Promo B"
    assert content.price_cents == 2990
    assert content.text == "Base"
    assert content.media_url is None
