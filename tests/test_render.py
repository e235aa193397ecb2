from telegramcoder.telegram.render import (
    code_block,
    escape_markdown,
    inline_keyboard,
    limit_to_last_lines,
    render_markdown,
    shorten_path,
    split_into_chunks,
    trim_front,
)


def test_render_markdown_basic_entities() -> None:
    text, entities = render_markdown("**bold** and `code`")

    assert text == "bold and code\n\n"
    assert entities == [
        {"type": "bold", "offset": 0, "length": 4},
        {"type": "code", "offset": 9, "length": 4},
    ]


def test_render_markdown_bullets_use_dashes() -> None:
    text, _ = render_markdown("- one\n- two")

    assert "•" not in text
    assert "one" in text


def test_split_long_response_on_lines() -> None:
    lines = [f"{index:04d} " + "x" * 85 for index in range(100)]
    text = "\n".join(lines)
    assert len(text) > 9000

    chunks = split_into_chunks(text, 4000)

    assert len(chunks) == 3
    assert all(len(chunk) <= 4000 for chunk in chunks)
    assert "\n".join(chunks) == text


def test_split_cuts_single_long_line() -> None:
    chunks = split_into_chunks("y" * 9000, 4000)

    assert [len(chunk) for chunk in chunks] == [4000, 4000, 1000]
    assert "".join(chunks) == "y" * 9000


def test_split_short_and_empty() -> None:
    assert split_into_chunks("short") == ["short"]
    assert split_into_chunks("") == []


def test_trimming_helpers() -> None:
    assert trim_front("abcdef", 4) == "…def"
    assert trim_front("abc", 4) == "abc"
    assert limit_to_last_lines("a\nb\nc", 2) == "b\nc"


def test_code_block_fence_outgrows_content() -> None:
    assert code_block("x") == "```\nx\n```"
    assert code_block("a ``` b") == "````\na ``` b\n````"


def test_escape_markdown() -> None:
    assert escape_markdown("a_b*c") == "a\\_b\\*c"


def test_shorten_path() -> None:
    assert shorten_path("src/app.py") == "src/app.py"
    long_path = "src/" + "deep/" * 20 + "module.py"
    short = shorten_path(long_path)
    assert short == "src/…/module.py"
    assert len(short) <= 50


def test_inline_keyboard() -> None:
    assert inline_keyboard([[("Yes", "y"), ("No", "n")]]) == {
        "inline_keyboard": [
            [
                {"text": "Yes", "callback_data": "y"},
                {"text": "No", "callback_data": "n"},
            ]
        ]
    }
