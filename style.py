"""
style.py — Complete visual style system for the bot.

Design language:
  • Structured cards with consistent emoji icons
  • Unicode box-drawing dividers
  • Clear visual hierarchy: header → body → footer
  • MarkdownV2 throughout

All text that goes into Telegram messages should be formatted through this module.
"""
from __future__ import annotations

import re
from typing import Any, Optional
from urllib.parse import quote

# ── Escape ────────────────────────────────────────────────────────────────────

def esc(text: Any) -> str:
    """Escape all MarkdownV2 special characters."""
    text = str(text)
    for ch in r"\_*[]()~`>#+-=|{}.!":
        text = text.replace(ch, f"\\{ch}")
    return text


# ── Visual constants ──────────────────────────────────────────────────────────

DIV   = "━━━━━━━━━━━━━━━━━━━━━━━━━━"    # thick divider
SDIV  = "┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄"    # subtle divider

STEP_LABELS = ["Front of the package", "Back of the package / barcode"]

DEFAULT_FALLBACK_QUERY = "thuốc"

# (title, url template); {q} is the URL-encoded query
FALLBACK_SITES = [
    ("Long Châu",  "https://nhathuoclongchau.com.vn/tim-kiem/{q}"),
    ("Vinmec",     "https://www.google.com/search?q=site:vinmec.com+{q}"),
    ("Pharmacity", "https://www.pharmacity.vn/tim-kiem/{q}"),
]

MAX_MESSAGE = 4050


def confidence_icon(confidence: Optional[float]) -> str:
    if confidence is None:
        return "⚪"
    if confidence >= 0.8:
        return "🟢"
    if confidence >= 0.4:
        return "🟡"
    return "🔴"


def step_label(step_index: int) -> str:
    if 0 <= step_index < len(STEP_LABELS):
        return STEP_LABELS[step_index]
    return f"Photo {step_index + 1}"


_ESCAPED = re.compile(r"\\.", re.DOTALL)
_ENTITY_CHARS = "*_`[]()~|"


def _is_plain(line: str) -> bool:
    """True if the line has no formatting entity, only escaped text."""
    bare = _ESCAPED.sub("", line)
    return not any(ch in bare for ch in _ENTITY_CHARS)


def _cut_escaped(line: str, limit: int) -> str:
    cut = line[:limit]
    # odd run of trailing backslashes: the last escape lost its character
    if (len(cut) - len(cut.rstrip("\\"))) % 2:
        cut = cut[:-1]
    return cut


def _truncate(lines: list[str]) -> str:
    """
    Join card lines, keeping the result under MAX_MESSAGE.
    Whole lines are kept while they fit; an overflowing line is cut only when
    it holds plain escaped text, otherwise it is dropped, so entities stay paired.
    """
    text = "\n".join(lines)
    if len(text) <= MAX_MESSAGE:
        return text

    out = ""
    for line in lines:
        joined = f"{out}\n{line}" if out else line
        if len(joined) <= MAX_MESSAGE:
            out = joined
            continue
        room = MAX_MESSAGE - len(out) - (1 if out else 0)
        if room > 0 and _is_plain(line):
            cut = _cut_escaped(line, room)
            out = f"{out}\n{cut}" if out else cut
        break
    return out + "\\.\\.\\."


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    return [str(value)]


def fallback_links(query: Optional[str]) -> list[tuple[str, str]]:
    """Search links on trusted pharmacy sites, as (title, url) pairs."""
    q = quote((query or "").strip() or DEFAULT_FALLBACK_QUERY, safe="")
    return [(title, template.format(q=q)) for title, template in FALLBACK_SITES]


# ══════════════════════════════════════════════════════════════════════════════
# START / WELCOME
# ══════════════════════════════════════════════════════════════════════════════

def welcome(n_steps: int) -> str:
    return (
        f"💊 *MEDICINE SCANNER*\n"
        f"{DIV}\n\n"
        f"Photograph a medicine package and I'll identify it with AI\\.\n\n"
        f"✨  *How it works*\n"
        f"▸ {n_steps} photos: front label, then back or barcode\n"
        f"▸ Review each photo before it counts\n"
        f"▸ Usage, dosage by age group and warnings\n"
        f"▸ Links to trusted pharmacy sites\n\n"
        f"{DIV}\n"
        f"_📸 Send the first photo to get started_"
    )


def help_text(n_steps: int) -> str:
    return (
        f"📖 *HOW TO USE*\n"
        f"{DIV}\n\n"
        f"*1️⃣  Send {n_steps} photos*\n"
        f"_Front label first, then the back or barcode_\n\n"
        f"*2️⃣  Review each one*\n"
        f"_✅ keep it or 🔄 retake it_\n\n"
        f"*3️⃣  Read the result*\n"
        f"_AI reads the package after the last photo_\n\n"
        f"{DIV}\n"
        f"🔑  *API key*\n"
        f"▸ /setkey `<key>` — save your key \\(the message is deleted\\)\n"
        f"▸ /deletekey — remove it\n"
        f"▸ /settings — key status and mode\n\n"
        f"💡  *Tips for best results*\n"
        f"▸ Good light, no glare on the foil\n"
        f"▸ Fill the frame with the label\n"
        f"▸ Keep the barcode flat and sharp\n\n"
        f"{DIV}\n"
        f"_Commands: /start · /new · /help · /settings_\n"
        f"_⚠️ Always check with a pharmacist or doctor\\._"
    )


# ══════════════════════════════════════════════════════════════════════════════
# CAPTURE STEPS
# ══════════════════════════════════════════════════════════════════════════════

def step_prompt(step_index: int, n_steps: int) -> str:
    return (
        f"📸 *Step {step_index + 1}/{n_steps}*\n"
        f"{SDIV}\n"
        f"{esc(step_label(step_index))}\n"
        f"_Send a photo_"
    )


def session_resumed(step_index: int, n_steps: int) -> str:
    return (
        f"♻️ *Scan resumed*\n"
        f"{SDIV}\n"
        f"{step_index} of {n_steps} photos already confirmed\\.\n"
        f"_Send /new to start over\\._\n\n"
        f"{step_prompt(step_index, n_steps)}"
    )


def review_card(step_index: int, n_steps: int, size_kb: float) -> str:
    return (
        f"🔎 *Check photo {step_index + 1}/{n_steps}*\n"
        f"{SDIV}\n"
        f"{esc(step_label(step_index))}   📦 `{esc(f'{size_kb:.0f} KB')}`\n"
        f"_Is the text sharp and readable?_"
    )


def review_pending() -> str:
    return (
        f"👆 *Photo waiting for review*\n"
        f"{SDIV}\n"
        f"Tap ✅ to keep it or 🔄 to retake it first\\."
    )


def busy() -> str:
    return "⏳ _Still analysing your photos — hang on\\._"


def loading_finalize(n_images: int) -> str:
    return (
        f"🔍 *Analysing your medicine*\n"
        f"{SDIV}\n"
        f"⠋ Reading {n_images} photos…"
    )


# ══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ══════════════════════════════════════════════════════════════════════════════

def _cost_line(extraction, show_cost: bool) -> str:
    if not show_cost or extraction is None:
        return ""
    return (
        f"\n🤖 {esc(extraction.provider_name)}  "
        f"💸 `{esc(extraction.cost_str)}`  ⚡ `{extraction.latency_ms}ms`"
    )


def advice_card(record, extraction=None, show_cost: bool = False) -> str:
    """Direct answer from the model: identity, usage, dosage by group, warnings."""
    conf = record.confidence
    conf_text = f"{conf:.0%}" if conf is not None else "n/a"

    lines = [
        f"💊 *{esc(record.name or 'Unknown medicine')}*",
        DIV,
    ]
    if record.get("active_ingredient"):
        lines.append(f"🧪 {esc(record.get('active_ingredient'))}")
    if record.get("manufacturer"):
        lines.append(f"🏭 {esc(record.get('manufacturer'))}")
    lines.append(f"{confidence_icon(conf)} *Confidence:* {esc(conf_text)}{_cost_line(extraction, show_cost)}")

    details = record.details
    if details.get("usage"):
        lines += ["", "📋 *Usage*", esc(", ".join(_as_list(details["usage"])))]

    dosage = _as_list(details.get("dosage"))
    if dosage:
        lines += ["", "💉 *Dosage*"] + [f"  ▸ {esc(d)}" for d in dosage]

    if details.get("contraindications"):
        lines += ["", "🚫 *Contraindications*", esc(", ".join(_as_list(details["contraindications"])))]

    if details.get("side_effects"):
        lines += ["", "🤒 *Side effects*", esc(", ".join(_as_list(details["side_effects"])))]

    if record.warnings:
        lines += ["", "⚠️ *Warnings*"] + [f"  ▸ {esc(w)}" for w in record.warnings]

    lines += [
        "",
        SDIV,
        "_Check with a pharmacist or doctor before use\\. More info:_",
    ]
    return _truncate(lines)


def _section(title: str, value: Any, limit: int = 600) -> list[str]:
    items = _as_list(value)
    if not items:
        return []
    text = " ".join(items)
    if len(text) > limit:
        text = text[:limit].rstrip() + "…"
    return ["", title, esc(text)]


def drug_card(lookup, record=None, extraction=None, show_cost: bool = False) -> str:
    """openFDA record for a found drug, with its sources."""
    drug = lookup.drug
    lines = [
        f"💊 *{esc(drug.display_name)}*",
        DIV,
    ]
    if drug.generic_name and drug.generic_name != drug.display_name:
        lines.append(f"🧪 {esc(drug.generic_name)}")
    meta = [
        f"{label} `{esc(value)}`"
        for label, value in (("NDC", drug.ndc), ("Form", drug.dosage_form), ("Route", drug.route))
        if value
    ]
    if meta:
        lines.append("   ".join(meta))
    if record is not None and record.get("strength"):
        lines.append(f"⚖️ {esc(record.get('strength'))}")
    cost = _cost_line(extraction, show_cost)
    if cost:
        lines.append(cost.lstrip("\n"))

    lines += _section("🧪 *Active ingredients*", drug.active_ingredients, limit=300)
    lines += _section("📋 *Indications*", drug.indications)
    lines += _section("💉 *Dosage*", drug.dosage)
    lines += _section("⚠️ *Warnings*", drug.warnings)
    lines += _section("🤒 *Adverse reactions*", drug.adverse_reactions, limit=400)
    lines += _section("👤 *For patients*", drug.information_for_patients, limit=400)

    if lookup.sources:
        lines += ["", SDIV, "📚 *Sources*"]
        lines += [f"▸ [{esc(s.name)}]({s.url.replace(')', '%29')})" for s in lookup.sources]
    return _truncate(lines)


def not_identified(record=None) -> str:
    hint = ""
    if record is not None and record.name:
        hint = f"\nBest guess: _{esc(record.name)}_\n"
    return (
        f"❓ *Medicine not identified*\n"
        f"{DIV}\n"
        f"The photos weren't clear enough to name this medicine\\.\n"
        f"{hint}\n"
        f"Try:\n"
        f"▸ Better lighting, no glare\n"
        f"▸ A closer shot of the brand name\n"
        f"▸ A sharp photo of the barcode\n\n"
        f"{SDIV}\n"
        f"_Or search a trusted pharmacy site:_"
    )


def not_found(record=None) -> str:
    name = record.name if record is not None else None
    name_line = f"🏷️ _{esc(name)}_\n" if name else ""
    return (
        f"🔍 *No matching record*\n"
        f"{DIV}\n"
        f"{name_line}"
        f"openFDA has no entry for what was read on the package\\.\n\n"
        f"{SDIV}\n"
        f"_Search a trusted pharmacy site instead:_"
    )


# ══════════════════════════════════════════════════════════════════════════════
# SETTINGS / KEYS
# ══════════════════════════════════════════════════════════════════════════════

def settings_card(key_status: str, provider: str, mode: str, n_steps: int, stats: Optional[dict] = None) -> str:
    lines = [
        "⚙️ *SETTINGS*",
        DIV,
        f"🔑 API key: {esc(key_status)}",
        f"🤖 Provider: `{esc(provider)}`",
        f"📄 Mode: `{esc(mode)}`",
        f"📸 Photos per scan: {n_steps}",
    ]
    if stats and stats.get("total_scans"):
        lines += [
            SDIV,
            f"📊 {stats['total_scans']} scans",
        ]
    lines += [
        SDIV,
        "/setkey `<key>` · /deletekey",
    ]
    return "\n".join(lines)


def key_prompt(provider: str) -> str:
    return (
        f"🔑 *API key needed*\n"
        f"{SDIV}\n"
        f"Send your {esc(provider)} key:\n"
        f"/setkey `<your key>`\n\n"
        f"_The message is deleted right after it is saved\\._"
    )


def key_saved(masked: str) -> str:
    return f"✅ *Key saved*  {esc(masked)}"


def key_deleted(existed: bool) -> str:
    if existed:
        return "🗑 *Key deleted*\\."
    return "_No saved key to delete\\._"


# ══════════════════════════════════════════════════════════════════════════════
# ERROR MESSAGES
# ══════════════════════════════════════════════════════════════════════════════

def error_extraction(message: str) -> str:
    return (
        f"❌ *Analysis Failed*\n"
        f"{DIV}\n\n"
        f"{esc(message)}\n\n"
        f"_Your photos are kept — tap retry or start a new scan\\._"
    )


def error_render() -> str:
    return (
        f"⚠️ *Result could not be displayed*\n"
        f"{SDIV}\n"
        f"The answer was too long or malformed for Telegram\\.\n"
        f"_Start a new scan to try again\\._"
    )


def error_config(message: str) -> str:
    return (
        f"⚠️ *Not configured*\n"
        f"{DIV}\n\n"
        f"{esc(message)}"
    )


def error_acquisition(step_index: int, n_steps: int) -> str:
    return (
        f"🖼 *Couldn't read that image*\n"
        f"{SDIV}\n"
        f"Please send it again as a regular photo\\.\n\n"
        f"{step_prompt(step_index, n_steps)}"
    )


def error_save_failed() -> str:
    return (
        f"💾 *Couldn't save the photo*\n"
        f"{SDIV}\n"
        f"_Tap ✅ again in a moment\\._"
    )


def not_a_photo() -> str:
    return (
        f"📸 *Send a Photo*\n"
        f"{SDIV}\n"
        f"I need a photo of the medicine package\\.\n"
        f"_Just take a pic and send it here\\!_"
    )


def error_rate_limited(max_requests: int, window_secs: int) -> str:
    return (
        f"⏱ *Slow Down\\!*\n"
        f"{SDIV}\n"
        f"You can send up to *{max_requests} photos* every *{window_secs} seconds*\\.\n\n"
        f"_Please wait a moment before sending another photo\\._"
    )
