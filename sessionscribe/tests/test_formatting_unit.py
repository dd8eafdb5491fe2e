from sessionscribe.capture.formatting import format_voice_commands, reflow_paragraphs


def test_voice_commands_become_punctuation_and_sentences_are_capitalized() -> None:
    text = "the client arrived late comma seemed tired period she asked why question mark"
    assert format_voice_commands(text) == "The client arrived late, seemed tired. She asked why?"


def test_line_commands_insert_breaks() -> None:
    text = "first point new line second point new paragraph next topic full stop"
    assert format_voice_commands(text) == "First point\nsecond point\n\nnext topic."


def test_semicolon_is_not_read_as_colon() -> None:
    assert format_voice_commands("one semicolon two colon three") == "One; two: three"


def test_reflow_breaks_only_at_sentence_boundaries() -> None:
    text = "We met at 3 p.m. today. We spoke about www.example.com and e.g. sleep! \"Quoted\" start?  'Single' too."
    assert reflow_paragraphs(text) == (
        "We met at 3 p.m. today.\n\nWe spoke about www.example.com and e.g. sleep!\n\n"
        "\"Quoted\" start?\n\n'Single' too."
    )


def test_reflow_of_empty_text_is_empty() -> None:
    assert reflow_paragraphs("   ") == ""
    assert reflow_paragraphs("") == ""
