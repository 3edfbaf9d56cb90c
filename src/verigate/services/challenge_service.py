from __future__ import annotations

import random

from verigate.models import Challenge

CHOICE_COUNT = 5
OPERAND_MAX = 10
MAX_VARIATION = 6


def generate_challenge(rng: random.Random | None = None) -> Challenge:
    """
    Build a small arithmetic question with five shuffled, distinct, positive
    choices. Wrong answers sit within MAX_VARIATION of the correct one so the
    right choice cannot be spotted by magnitude alone.
    """
    rng = rng or random.Random()
    a = rng.randint(1, OPERAND_MAX)
    b = rng.randint(1, OPERAND_MAX)
    op = rng.choice(("+", "-", "*"))
    if op == "+":
        correct = a + b
        question = f"{a} + {b}"
    elif op == "-":
        high, low = max(a, b), min(a, b)
        correct = high - low
        question = f"{high} - {low}"
    else:
        correct = a * b
        question = f"{a} × {b}"

    wrong: set[int] = set()
    while len(wrong) < CHOICE_COUNT - 1:
        variation = rng.randint(1, MAX_VARIATION)
        if rng.random() > 0.5:
            candidate = correct + variation
        else:
            candidate = max(1, correct - variation)
        if candidate != correct and candidate > 0:
            wrong.add(candidate)

    choices = [correct, *sorted(wrong)]
    rng.shuffle(choices)
    return Challenge(question=question, correct_answer=correct, choices=tuple(choices))


def parse_answer(raw: str | int | None) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text.lstrip("-").isdigit():
        return None
    return int(text)
