"""
Model number allocation.

Assigns small positive integers to (provider, model) keys so users can pick a
model by number. Numbers stay stable while a key keeps appearing in the
catalog, and numbers freed by vanished keys are handed out again before any
fresh number.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field


@dataclass
class ModelAllocation:
    """Result of one allocation pass.

    Attributes:
        numbers: Resolved number for every available key
        removed: Previously known keys absent from the available set, sorted
        recycled: Numbers taken from vanished keys, in the order they were reused
    """

    numbers: dict[str, int] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    recycled: list[int] = field(default_factory=list)


def allocate_model_numbers(previous: Mapping[str, int], available: Sequence[str]) -> ModelAllocation:
    """Assign numbers to the available model keys.

    1. Retain: an available key keeps its previous number (> 0) unless an
       earlier available key already claimed that number.
    2. Recycle pool: distinct numbers of previous keys that are no longer
       available, ascending.
    3. Assign: every key still without a number takes the next pooled number
       that is not occupied, else the smallest unused integer >= 1.

    Args:
        previous: Number per previously known key (0 or less means unassigned)
        available: Currently available keys in processing order, no duplicates

    Returns:
        ModelAllocation with the numbers and the keys to delete
    """
    used: dict[int, str] = {}
    numbers: dict[str, int] = {}

    for key in available:
        number = previous.get(key, 0)
        if number <= 0:
            continue
        owner = used.get(number)
        if owner is not None and owner != key:
            continue
        used[number] = key
        numbers[key] = number

    available_set = set(available)
    removed = sorted(key for key in previous if key not in available_set)
    pool = sorted({previous[key] for key in removed if previous[key] > 0})

    pool_index = 0
    next_candidate = 1
    recycled: list[int] = []

    for key in available:
        if key in numbers:
            continue

        number = 0
        while pool_index < len(pool):
            candidate = pool[pool_index]
            pool_index += 1
            if candidate not in used:
                number = candidate
                recycled.append(candidate)
                break

        if not number:
            while next_candidate in used:
                next_candidate += 1
            number = next_candidate

        used[number] = key
        numbers[key] = number

    return ModelAllocation(numbers=numbers, removed=removed, recycled=recycled)
