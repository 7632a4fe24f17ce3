"""
Mercy Gate

The one place where a failed stake is randomly spared.

One draw, uniform over {0, 1, 2}, from a cryptographically strong source:
    0     -> EXECUTED
    1, 2  -> SPARED
Expected execution rate is 1/3. The randomness source is injectable so
tests can pin outcomes.
"""
import secrets
from typing import Callable, Optional, Tuple

from ...models.db_models import MercyOutcome

MERCY_SIDES = 3
EXECUTE_FACE = 0

RandBelow = Callable[[int], int]


def draw(randbelow: Optional[RandBelow] = None) -> int:
    """Draw one integer in [0, MERCY_SIDES)."""
    randbelow = randbelow or secrets.randbelow
    roll = randbelow(MERCY_SIDES)
    if not 0 <= roll < MERCY_SIDES:
        raise ValueError(f"Mercy roll out of range: {roll}")
    return roll


def outcome_for(roll: int) -> MercyOutcome:
    """Map a roll to its outcome."""
    return MercyOutcome.EXECUTED if roll == EXECUTE_FACE else MercyOutcome.SPARED


def roll_mercy(randbelow: Optional[RandBelow] = None) -> Tuple[int, MercyOutcome]:
    """Draw once and return (roll, outcome)."""
    roll = draw(randbelow)
    return roll, outcome_for(roll)
