"""Statistiques sur les votes (médiane, moyenne)."""

from typing import Iterable, Union

Number = Union[int, float]


def _numeric(votes: Iterable) -> list:
    return [v for v in votes if isinstance(v, (int, float)) and not isinstance(v, bool)]


def calculate_median(votes: Iterable) -> Number:
    numeric_votes = sorted(_numeric(votes))
    n = len(numeric_votes)
    if n == 0:
        return 0
    if n % 2 == 1:
        return numeric_votes[n // 2]
    return (numeric_votes[n // 2 - 1] + numeric_votes[n // 2]) / 2


def calculate_mean(votes: Iterable) -> Number:
    numeric_votes = _numeric(votes)
    if not numeric_votes:
        return 0
    return sum(numeric_votes) / len(numeric_votes)


def format_points(value) -> str:
    """3.0 -> '3', 0.5 -> '0.5'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
