# Copyright (c) Syntropy Systems
"""Tests for claim extraction and verification."""

from datetime import date

from journalbench.claims import (
    claim_core,
    extract_claims,
    infer_claim_type,
    is_factual,
    parse_referenced_date,
    split_sentences,
    verify_claim,
)
from journalbench.models.experiment import JournalEntry


class TestSentenceFiltering:
    """Tests for deciding which sentences are claims."""

    def test_split_strips_markdown(self) -> None:
        text = "## Summary\n- You ran **intervals**. Then you rested!\n1. Legs felt heavy"
        assert split_sentences(text) == [
            "Summary",
            "You ran intervals.",
            "Then you rested!",
            "Legs felt heavy",
        ]

    def test_claim_core_strips_attribution(self) -> None:
        assert claim_core("You mentioned that your legs felt heavy.") == "your legs felt heavy"
        assert claim_core("In your journal, you wrote: calm and rested.") == "calm and rested"
        assert claim_core("Legs felt heavy.") == "Legs felt heavy"

    def test_questions_are_not_claims(self) -> None:
        assert not is_factual("Who's gonna carry the boats?")

    def test_encouragement_is_not_a_claim(self) -> None:
        assert not is_factual("Keep pushing, you've got this!")
        assert not is_factual("I'm proud of you for the regional race.")

    def test_imperatives_are_not_claims(self) -> None:
        assert not is_factual("Focus on sleep before the regional race.")

    def test_attributed_statement_is_a_claim(self) -> None:
        assert is_factual("You wrote that you struggled with hill repeats.")

    def test_too_short_is_not_a_claim(self) -> None:
        assert not is_factual("Here is your weekly summary.")

    def test_infer_claim_type(self) -> None:
        assert infer_claim_type("Your shin splints are back") == "injury"
        assert infer_claim_type("You seemed anxious about racing") == "emotion"
        assert infer_claim_type("You skipped practice twice") == "skipped"
        assert infer_claim_type("Nothing to classify here") is None


class TestVerification:
    """Tests for matching claims to journal entries."""

    def test_verbatim_claim_is_supported(self, entries: list[JournalEntry]) -> None:
        claim = verify_claim("You wrote that Struggled with hill repeats in the cold rain.", entries)

        assert claim.is_supported
        assert claim.confidence == 1.0
        receipt = claim.receipts[0]
        assert receipt.journal_entry_id == 3
        assert receipt.entry_date == date(2024, 3, 13)
        assert receipt.field == "session_reflection"
        assert "hill repeats" in receipt.snippet
        assert claim.claim_type == "event"

    def test_fabricated_claim_is_unsupported(self, entries: list[JournalEntry]) -> None:
        claim = verify_claim("You mentioned that you broke your wrist skateboarding.", entries)

        assert not claim.is_supported
        assert claim.confidence == 0.0
        assert claim.receipts == []

    def test_weekday_claim_resolves_date(self, entries: list[JournalEntry]) -> None:
        claim = verify_claim("On Friday you completed the long run with the club.", entries)

        assert claim.is_supported
        assert claim.referenced_date == date(2024, 3, 15)
        assert claim.receipts[0].journal_entry_id == 5

    def test_receipts_are_capped_and_ordered(self) -> None:
        entries = [
            JournalEntry(
                id=i,
                entry_date=date(2024, 1, i),
                session_reflection="Heavy legs on the track intervals again",
            )
            for i in range(1, 6)
        ]
        claim = verify_claim("You wrote that heavy legs on the track intervals again.", entries)

        assert len(claim.receipts) == 3
        # Equal scores: newest entry first
        assert [r.journal_entry_id for r in claim.receipts] == [5, 4, 3]

    def test_no_entries_means_unsupported(self) -> None:
        claim = verify_claim("You wrote that you ran intervals on the track.", [])
        assert not claim.is_supported


class TestReferencedDates:
    """Tests for temporal language in claims."""

    def test_iso_date(self, entries: list[JournalEntry]) -> None:
        assert parse_referenced_date("On 2024-03-12 you rested", entries) == date(2024, 3, 12)

    def test_month_day_takes_newest_entry_year(self, entries: list[JournalEntry]) -> None:
        assert parse_referenced_date("Back on March 13th you struggled", entries) == date(2024, 3, 13)

    def test_weekday_picks_most_recent(self, entries: list[JournalEntry]) -> None:
        assert parse_referenced_date("Tuesday was calm", entries) == date(2024, 3, 12)

    def test_no_date(self, entries: list[JournalEntry]) -> None:
        assert parse_referenced_date("You ran intervals", entries) is None


class TestExtractClaims:
    """Tests for extract_claims over whole summaries."""

    def test_empty_text(self, entries: list[JournalEntry]) -> None:
        assert extract_claims("", entries) == []
        assert extract_claims("   \n", entries) == []

    def test_motivational_text_has_no_claims(self, entries: list[JournalEntry]) -> None:
        text = "Stay hard. Keep pushing, you've got this! Who's gonna carry the boats?"
        assert extract_claims(text, entries) == []

    def test_mixed_summary(self, entries: list[JournalEntry]) -> None:
        text = (
            "Here is your weekly summary.\n"
            "You wrote that Calm and rested.\n"
            "You mentioned that you broke your wrist skateboarding.\n"
            "Keep pushing, you've got this!"
        )
        claims = extract_claims(text, entries)

        assert [c.text for c in claims] == [
            "You wrote that Calm and rested.",
            "You mentioned that you broke your wrist skateboarding.",
        ]
        assert [c.is_supported for c in claims] == [True, False]
        assert claims[0].claim_type == "emotional-state"

    def test_duplicates_are_merged(self, entries: list[JournalEntry]) -> None:
        text = "You wrote that Calm and rested. You said that calm and rested."
        claims = extract_claims(text, entries)

        assert len(claims) == 1
        assert claims[0].is_supported

    def test_is_pure(self, entries: list[JournalEntry]) -> None:
        text = "You wrote that Sleep has been short all week."
        assert extract_claims(text, entries) == extract_claims(text, entries)
