# services/scoring.py

from __future__ import annotations

import math
from typing import Dict, Iterable

PRIORITY_WEIGHTS: Dict[str, int] = {
    "high": 3,
    "medium": 2,
    "low": 1,
}


def priority_weight(priority: str) -> int:
    return PRIORITY_WEIGHTS.get(priority, 1)


def calculate_seo_score(checks: Iterable) -> int:
    """
    優先度で重み付けした合格率（0〜100 の整数、四捨五入は .5 切り上げ）。
    チェックが 0 件なら 0。
    """
    total = 0
    earned = 0
    for check in checks:
        weight = priority_weight(check.priority)
        total += weight
        if check.passed:
            earned += weight

    if total == 0:
        return 0
    return int(math.floor(earned / total * 100 + 0.5))
