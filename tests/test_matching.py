"""Tests for transaction matching."""

import pytest

from conftest import make_credit
from p2p_settlement.engine.matching import credit_transactions, find_match, transaction_matches


class TestTransactionMatches:
    def test_exact_amount_and_memo(self):
        tx = make_credit("CK 12345678 nap tien", 260_100)
        assert transaction_matches(tx, "12345678", 260_100)

    def test_memo_must_be_substring(self):
        tx = make_credit("CK 1234 5678", 260_100)
        assert not transaction_matches(tx, "12345678", 260_100)

    def test_exact_match_required_without_tolerance(self):
        tx = make_credit("12345678", 260_101)
        assert not transaction_matches(tx, "12345678", 260_100)

    def test_tolerance_band_is_inclusive(self):
        assert transaction_matches(make_credit("12345678", 259_100), "12345678", 260_100, tolerance=1000)
        assert transaction_matches(make_credit("12345678", 261_100), "12345678", 260_100, tolerance=1000)

    def test_outside_tolerance_band(self):
        assert not transaction_matches(make_credit("12345678", 258_900), "12345678", 260_100, tolerance=1000)
        assert not transaction_matches(make_credit("12345678", 261_101), "12345678", 260_100, tolerance=1000)

    def test_empty_memo_never_matches(self):
        assert not transaction_matches(make_credit("anything", 100), "", 100)

    def test_amounts_with_thousands_separators(self):
        tx = make_credit("12345678", "260,100")
        assert transaction_matches(tx, "12345678", 260_100)


class TestCreditFilter:
    def test_keeps_positive_credits_in_order(self):
        a = make_credit("a", 100, ref_no="A")
        zero = make_credit("zero", 0, ref_no="Z")
        b = make_credit("b", 200, ref_no="B")
        assert [tx.ref_no for tx in credit_transactions([a, zero, b])] == ["A", "B"]

    def test_unparseable_amount_is_not_a_credit(self):
        assert credit_transactions([make_credit("x", "n/a")]) == []


class TestFindMatch:
    def test_no_candidates(self):
        result = find_match("12345678", 260_100, [make_credit("other", 260_100)])
        assert not result.matched
        assert result.candidates == []

    def test_earliest_timestamp_wins(self):
        late = make_credit("12345678", 260_100, ref_no="LATE", transaction_date="10/03/2025 11:59:00")
        early = make_credit("12345678", 260_100, ref_no="EARLY", transaction_date="10/03/2025 09:15:00")

        result = find_match("12345678", 260_100, [late, early])

        assert result.transaction.ref_no == "EARLY"
        assert [tx.ref_no for tx in result.candidates] == ["EARLY", "LATE"]

    def test_dates_compare_chronologically_not_lexically(self):
        march = make_credit("12345678", 260_100, ref_no="MAR", transaction_date="01/03/2025 10:00:00")
        feb = make_credit("12345678", 260_100, ref_no="FEB", transaction_date="28/02/2025 10:00:00")
        assert find_match("12345678", 260_100, [march, feb]).transaction.ref_no == "FEB"

    def test_undated_candidates_rank_last(self):
        undated = make_credit("12345678", 260_100, ref_no="UNDATED", transaction_date="garbage")
        dated = make_credit("12345678", 260_100, ref_no="DATED", transaction_date="10/03/2025 11:59:00")
        assert find_match("12345678", 260_100, [undated, dated]).transaction.ref_no == "DATED"

    def test_ties_keep_fetch_order(self):
        first = make_credit("12345678", 260_100, ref_no="FIRST")
        second = make_credit("12345678", 260_100, ref_no="SECOND")
        assert find_match("12345678", 260_100, [first, second]).transaction.ref_no == "FIRST"

    def test_claimed_refs_are_skipped(self):
        claimed = make_credit("12345678", 260_100, ref_no="TAKEN", transaction_date="10/03/2025 09:00:00")
        free = make_credit("12345678", 260_100, ref_no="FREE", transaction_date="10/03/2025 10:00:00")

        result = find_match("12345678", 260_100, [claimed, free], claimed_refs={"TAKEN"})

        assert result.transaction.ref_no == "FREE"

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            find_match("12345678", 260_100, [], tolerance=-1)
