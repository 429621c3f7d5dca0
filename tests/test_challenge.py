from __future__ import annotations

import re

from provider_checks.challenge import generate_challenge, validate_response


def test_generate_challenge_is_small_addition() -> None:
    for _ in range(200):
        c = generate_challenge()
        m = re.fullmatch(r"(\d+) \+ (\d+) = \?", c.prompt)
        assert m is not None, c.prompt
        a, b = int(m.group(1)), int(m.group(2))
        assert 1 <= a <= 50
        assert 1 <= b <= 50
        assert c.expected_answer == str(a + b)


def test_validate_accepts_answer_inside_reasoning() -> None:
    r = validate_response("3 + 5 is 8", "8")
    assert r.valid is True
    assert r.extracted_numbers == ["3", "5", "8"]


def test_validate_compares_numeric_value() -> None:
    assert validate_response("The answer is 8.0", "8").valid is True
    assert validate_response("+8", "8").valid is True


def test_validate_rejects_wrong_number() -> None:
    r = validate_response("I believe it is 9", "8")
    assert r.valid is False
    assert r.extracted_numbers == ["9"]


def test_validate_rejects_text_without_numbers() -> None:
    r = validate_response("eight", "8")
    assert r.valid is False
    assert r.extracted_numbers == []
    assert validate_response("", "8").valid is False


def test_validate_examples() -> None:
    r = validate_response("result: 8", "8")
    assert (r.valid, r.extracted_numbers) == (True, ["8"])
    r = validate_response("no numbers here", "8")
    assert (r.valid, r.extracted_numbers) == (False, [])
