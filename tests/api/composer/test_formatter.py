"""Tests for splitting replies into channel-sized messages."""

from aida_api.composer.formatter import split_message


def test_short_text_single_message():
    assert split_message("  Hello there!  ", 50) == ["Hello there!"]


def test_empty_text():
    assert split_message("   ", 50) == []


def test_splits_on_paragraphs_first():
    text = "First paragraph here.\n\nSecond paragraph here."

    assert split_message(text, 30) == ["First paragraph here.", "Second paragraph here."]


def test_packs_sentences_within_limit():
    text = "One. Two. Three. Four."

    parts = split_message(text, 10)

    assert parts == ["One. Two.", "Three.", "Four."]
    assert all(len(p) <= 10 for p in parts)


def test_keeps_paragraph_break_when_packing():
    text = "Hi.\n\nYes.\n\nNo."

    assert split_message(text, 10) == ["Hi.\n\nYes.", "No."]


def test_long_sentence_split_on_words():
    text = "alpha beta gamma delta epsilon zeta eta theta"

    parts = split_message(text, 12)

    assert all(len(p) <= 12 for p in parts)
    assert " ".join(parts) == text


def test_overlong_word_is_cut():
    parts = split_message("a " + "x" * 25, 10)

    assert parts == ["a", "xxxxxxxxxx", "xxxxxxxxxx", "xxxxx"]
