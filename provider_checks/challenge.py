from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from provider_checks.common_check import Challenge


_NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")
_OPERAND_MIN = 1
_OPERAND_MAX = 50

_rng = random.SystemRandom()


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    extracted_numbers: list[str] = field(default_factory=list)


def generate_challenge() -> Challenge:
    a = _rng.randint(_OPERAND_MIN, _OPERAND_MAX)
    b = _rng.randint(_OPERAND_MIN, _OPERAND_MAX)
    prompt = f"{a} + {b} = ?"
    return Challenge(prompt=prompt, expected_answer=str(a + b))


def _to_decimal(value: str) -> Decimal | None:
    try:
        return Decimal(value)
    except (InvalidOperation, ValueError):
        return None


def validate_response(text: str, expected_answer: str) -> ValidationResult:
    """Pass when the expected value appears anywhere among the numbers in ``text``.

    Models often wrap the answer in reasoning ("3 + 5 is 8"), so every numeric
    substring is considered, compared by value rather than spelling.
    """
    extracted = _NUMBER_RE.findall(text or "")
    if not extracted:
        return ValidationResult(valid=False, extracted_numbers=[])

    expected = _to_decimal(str(expected_answer).strip())
    if expected is None:
        return ValidationResult(valid=False, extracted_numbers=extracted)

    valid = any(_to_decimal(n) == expected for n in extracted)
    return ValidationResult(valid=valid, extracted_numbers=extracted)
