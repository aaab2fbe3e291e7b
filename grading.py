from __future__ import annotations
from dataclasses import dataclass

from models import CheckResult, Correct, Typos, WholeWrong
from text_normalizer import normalize_for_compare


@dataclass(frozen=True)
class GradingPolicy:
    """
    Typo tolerance is max(min_tolerance, len(answer) // divisor), measured on
    the normalized answer. Anything further away is a different sentence.
    """
    min_tolerance: int = 2
    divisor: int = 2

    def threshold(self, answer_length: int) -> int:
        return max(self.min_tolerance, answer_length // self.divisor)


DEFAULT_POLICY = GradingPolicy()


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance, unit costs, two-row table."""
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(b) > len(a):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[-1]


def grade(answer: str, user_input: str, policy: GradingPolicy = DEFAULT_POLICY) -> CheckResult:
    norm_answer = normalize_for_compare(answer)
    norm_user = normalize_for_compare(user_input)

    if not norm_answer or not norm_user:
        return WholeWrong()
    if norm_answer == norm_user:
        return Correct()

    dist = edit_distance(norm_answer, norm_user)
    if dist > policy.threshold(len(norm_answer)):
        return WholeWrong()
    return Typos(total=len(norm_answer), wrong_count=dist)
