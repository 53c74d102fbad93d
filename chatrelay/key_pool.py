from __future__ import annotations

import random
import re
from typing import List, Optional, Sequence

_KEY_SEPARATORS = re.compile(r"[\s,]+")


def split_keys(credentials: Optional[str]) -> List[str]:
    """Split a comma, whitespace or newline separated credential string."""
    if not credentials:
        return []
    return [key for key in _KEY_SEPARATORS.split(credentials) if key]


def pick_random(keys: Sequence[str], rng: Optional[random.Random] = None) -> Optional[str]:
    """Pick one key uniformly at random; ``None`` when there is nothing to pick."""
    if not keys:
        return None
    chooser = rng if rng is not None else random
    return chooser.choice(list(keys))


def mask_key(key: str) -> str:
    return f"{key[:8]}..." if len(key) > 8 else key


__all__ = ["split_keys", "pick_random", "mask_key"]
