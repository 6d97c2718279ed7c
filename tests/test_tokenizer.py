from classroom_engine.chat.tokenizer import MAX_DELAY_MS, delay_for, tokenize


def test_empty_text_has_no_units():
    assert tokenize("") == []


def test_two_words_reconstruct_input():
    units = tokenize("a b")
    assert units == ["a ", "b"]
    assert "".join(units) == "a b"


def test_leading_whitespace_rides_on_first_unit():
    text = "  hello   world \n"
    units = tokenize(text)
    assert len(units) == 2
    assert "".join(units) == text


def test_whitespace_only_text_is_one_unit():
    assert tokenize("   ") == ["   "]


def test_delay_is_capped():
    assert delay_for("x" * 500, 60) == MAX_DELAY_MS
    assert delay_for("x" * 500, 1000) <= MAX_DELAY_MS


def test_delay_grows_with_word_length():
    assert delay_for("hi ", 60) == 60 + 8 * 2
    assert delay_for("hello", 60) > delay_for("hi", 60)
