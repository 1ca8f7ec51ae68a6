"""
Tests for style.py — MarkdownV2 formatting helpers.

Covers:
  - esc(): all MarkdownV2 special characters are escaped
  - fallback_links(): three trusted sites, URL-encoded query, default query
  - step prompts / review card
  - advice_card(): identity, age-grouped dosage, warnings
  - long cards: cut to MAX_MESSAGE without breaking MarkdownV2 escapes or entities
  - drug_card(): openFDA record + sources
  - not_identified() / not_found()
  - error_rate_limited(): contains limit numbers
"""
from __future__ import annotations

import re

import pytest

import style
from lookup_backends.base import DrugRecord, LookupResult, Source
from providers.base import ExtractionResult, IdentityRecord


# ── esc() ─────────────────────────────────────────────────────────────────────

class TestEsc:
    MDV2_SPECIALS = r"\_*[]()~`>#+-=|{}.!"

    def test_all_special_characters_escaped(self):
        for ch in self.MDV2_SPECIALS:
            escaped = style.esc(ch)
            assert escaped == f"\\{ch}", f"Character {ch!r} not escaped"

    def test_plain_text_unchanged(self):
        assert style.esc("Hello World") == "Hello World"

    def test_non_string(self):
        assert style.esc(0.5) == "0\\.5"

    def test_mixed_text(self):
        result = style.esc("Paracetamol 500mg (adults only!)")
        assert "\\(" in result
        assert "\\!" in result


# ── fallback_links() ──────────────────────────────────────────────────────────

class TestFallbackLinks:
    def test_three_sites(self):
        links = style.fallback_links("Panadol")
        assert [t for t, _ in links] == ["Long Châu", "Vinmec", "Pharmacity"]

    def test_urls(self):
        links = dict(style.fallback_links("Panadol Extra"))
        assert links["Long Châu"] == "https://nhathuoclongchau.com.vn/tim-kiem/Panadol%20Extra"
        assert links["Vinmec"] == "https://www.google.com/search?q=site:vinmec.com+Panadol%20Extra"
        assert links["Pharmacity"] == "https://www.pharmacity.vn/tim-kiem/Panadol%20Extra"

    @pytest.mark.parametrize("query", [None, "", "   "])
    def test_default_query(self, query):
        links = dict(style.fallback_links(query))
        assert links["Long Châu"].endswith("/tim-kiem/thu%E1%BB%91c")

    def test_special_characters_encoded(self):
        _, url = style.fallback_links("A&B/C")[0]
        assert url.endswith("A%26B%2FC")


# ── Capture steps ─────────────────────────────────────────────────────────────

class TestSteps:
    def test_step_prompt(self):
        text = style.step_prompt(0, 2)
        assert "Step 1/2" in text
        assert "Front" in text

    def test_step_prompt_beyond_labels(self):
        assert "Photo 4" in style.step_prompt(3, 4)

    def test_review_card(self):
        text = style.review_card(1, 2, 187.4)
        assert "2/2" in text
        assert "187 KB" in text

    def test_session_resumed(self):
        text = style.session_resumed(1, 2)
        assert "1 of 2" in text
        assert "Step 2/2" in text

    def test_welcome_and_help_mention_steps(self):
        assert "2 photos" in style.welcome(2)
        assert "/setkey" in style.help_text(2)


# ── Results ───────────────────────────────────────────────────────────────────

def advice_record() -> IdentityRecord:
    return IdentityRecord.from_payload({
        "identity": {
            "name": "Panadol Extra",
            "active_ingredient": "Paracetamol",
            "manufacturer": "GSK",
            "confidence": 0.9,
        },
        "details": {
            "usage": "Fever",
            "dosage": ["Children under 12: Contraindicated", "Adults: 1-2 tablets"],
            "contraindications": "Liver disease",
            "side_effects": "Rash",
        },
        "warnings": ["Max 8 tablets/day"],
    })


class TestAdviceCard:
    def test_contents(self):
        text = style.advice_card(advice_record())
        assert "Panadol Extra" in text
        assert "GSK" in text
        assert "90%" in text
        assert "Adults: 1\\-2 tablets" in text
        assert "Contraindicated" in text
        assert "Max 8 tablets/day" in text

    def test_cost_line_only_when_enabled(self):
        extraction = ExtractionResult("google/gemini-2.5-flash", "gemini-2.5-flash",
                                      advice_record(), 1234, 1000, 300, 0.0005)
        assert "1234ms" not in style.advice_card(advice_record(), extraction, show_cost=False)
        assert "1234ms" in style.advice_card(advice_record(), extraction, show_cost=True)

    def test_sparse_record(self):
        text = style.advice_card(IdentityRecord(fields={"name": "X"}))
        assert "X" in text
        assert "Dosage" not in text

    def test_truncated_when_too_long(self):
        record = advice_record()
        record.warnings = ["w" * 500] * 20
        text = style.advice_card(record)
        assert len(text) <= style.MAX_MESSAGE + 6
        assert text.endswith("\\.\\.\\.")


# ── Truncation ────────────────────────────────────────────────────────────────

_ESCAPED = re.compile(r"\\.", re.DOTALL)


def unescaped(text: str) -> str:
    """What Telegram sees as markup once every escape pair is removed."""
    return _ESCAPED.sub("", text)


class TestTruncation:
    @pytest.mark.parametrize("pad", range(60))
    def test_long_advice_card_stays_valid(self, pad):
        record = advice_record()
        record.details["usage"] = "Fever " + "x" * pad
        record.warnings = ["Do not exceed 4g/day. Ask a doctor (adults & children)!"] * 100
        text = style.advice_card(record)

        bare = unescaped(text)
        assert len(text) <= style.MAX_MESSAGE + 6
        assert "\\" not in bare
        assert bare.count("*") % 2 == 0
        assert bare.count("_") % 2 == 0
        for ch in ".!-()":
            assert ch not in bare, f"unescaped {ch!r}"

    def test_trailing_escape_not_split(self):
        line = "a\\." * 3000
        # room left after "*Dose*\n" is 4043, so a plain cut would end on the backslash
        text = style._truncate(["*Dose*", line])
        assert text.startswith("*Dose*\n")
        assert "\\" not in unescaped(text)
        assert len(text) <= style.MAX_MESSAGE + 6

    def test_overflowing_header_dropped(self):
        text = style._truncate(["x" * (style.MAX_MESSAGE - 5), "⚠️ *Warnings*", "more"])
        assert "*" not in text
        assert text.endswith("\\.\\.\\.")

    def test_short_card_untouched(self):
        assert style._truncate(["*a*", "b"]) == "*a*\nb"


class TestDrugCard:
    def test_contents(self):
        lookup = LookupResult.found(
            DrugRecord(
                brand_name="TYLENOL",
                generic_name="ACETAMINOPHEN",
                ndc="50580-488",
                dosage_form="TABLET",
                indications=["relieves minor aches"],
                warnings=["Liver warning"],
            ),
            [Source("openFDA", "https://api.fda.gov/drug/label.json?search=x&limit=1")],
        )
        text = style.drug_card(lookup)
        assert "TYLENOL" in text
        assert "ACETAMINOPHEN" in text
        assert "50580\\-488" in text
        assert "relieves minor aches" in text
        assert "openFDA" in text
        assert "https://api.fda.gov/drug/label.json?search=x&limit=1" in text


class TestNotIdentified:
    def test_with_guess(self):
        text = style.not_identified(IdentityRecord(fields={"name": "Maybe-Aspirin"}))
        assert "Maybe\\-Aspirin" in text

    def test_without_record(self):
        assert "not identified" in style.not_identified()

    def test_not_found_names_drug(self):
        text = style.not_found(IdentityRecord(fields={"brand_name": "Zyx"}))
        assert "Zyx" in text
        assert "openFDA" in text


# ── Settings / errors ─────────────────────────────────────────────────────────

class TestMisc:
    def test_settings_card(self):
        text = style.settings_card("✅ AIza****abcd", "google", "advice", 2, {"total_scans": 3})
        assert "google" in text
        assert "3 scans" in text

    def test_error_rate_limited(self):
        text = style.error_rate_limited(10, 60)
        assert "10" in text
        assert "60" in text

    def test_error_extraction_escapes(self):
        text = style.error_extraction("Analysis failed: 503 (overloaded).")
        assert "\\(overloaded\\)\\." in text

    def test_error_acquisition_reprompts_same_step(self):
        assert "Step 2/2" in style.error_acquisition(1, 2)

    @pytest.mark.parametrize("existed,expected", [(True, "deleted"), (False, "No saved key")])
    def test_key_deleted(self, existed, expected):
        assert expected in style.key_deleted(existed)
