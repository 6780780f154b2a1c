"""
Link rotation strategies.

Given a product's active links (with a fresh analytics snapshot) and its
rotation config, pick the link a single redirect should go to. Everything in
here is pure: randomness comes from an injected ``rng`` (anything with a
``random()`` method), so tests can pin the draw.

Strategies:
  random             uniform over active links, weights ignored
  weighted           caller-supplied weights (normalised; equal if unusable)
  performance_based  weight = conversions / total conversions (equal on cold start)
  round_robin        links[cursor % N], cursor supplied by the caller
                     (defaults to the total clicks across the set)

``traffic_split`` sends ``1 - traffic_split`` of redirects to the baseline
(highest-priority) link before any strategy runs.

``device_targeting`` (link_id -> devices) narrows the candidates to links
that allow the visitor's device; links without an entry allow every device,
and an empty result falls back to the full set.
"""
from __future__ import annotations

import math
import random
from typing import Callable, Optional, Protocol, Sequence, TypeVar

from src.errors import ValidationError
from src.models.link import LinkSnapshot, RotationSettings, RotationStrategy

T = TypeVar("T")


class RandomSource(Protocol):
    def random(self) -> float: ...


_default_rng = random.Random()


def ordered(links: Sequence[LinkSnapshot]) -> list[LinkSnapshot]:
    """Fixed scan order: priority desc, then id. The first entry is the baseline."""
    return sorted(links, key=lambda link: (-link.priority, link.id))


def _usable_weight(value) -> Optional[float]:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(weight) or math.isinf(weight) or weight < 0:
        return None
    return weight


def weighted_choice(items: Sequence[T], weight_of: Callable[[T], object], rng: RandomSource) -> T:
    """Inverse-CDF sampling over ``items``.

    Draws ``r`` in [0, 1) and returns the first item whose cumulative
    normalised weight reaches ``r``. Unusable weights (missing, negative,
    non-numeric, or summing to zero) mean every item gets 1/N.
    A single missing weight is enough: a link added after a weighted config
    was saved puts the whole product back on an equal split until the
    weights are reconfigured.
    """
    if not items:
        raise ValidationError("No links available for rotation", field="links")

    weights = [_usable_weight(weight_of(item)) for item in items]
    if any(w is None for w in weights) or sum(weights) <= 0:
        weights = [1.0] * len(items)
    total = sum(weights)

    r = rng.random()
    cumulative = 0.0
    for item, weight in zip(items, weights):
        if weight == 0:
            continue
        cumulative += weight / total
        if cumulative >= r:
            return item
    # Float residue: r landed past the last boundary
    return next(item for item, weight in zip(reversed(items), reversed(weights)) if weight > 0)


def performance_weights(links: Sequence[LinkSnapshot]) -> dict[str, float]:
    """Conversion share per link; 1/N each when nothing has converted yet."""
    total = sum(max(link.total_conversions, 0) for link in links)
    if total == 0:
        equal = 1.0 / len(links) if links else 0.0
        return {link.id: equal for link in links}
    return {link.id: max(link.total_conversions, 0) / total for link in links}


def filter_by_device(
    links: Sequence[LinkSnapshot],
    targeting: dict[str, list[str]],
    device: Optional[str],
) -> list[LinkSnapshot]:
    """Links that may serve ``device``; all of ``links`` when none qualify."""
    if not device or not targeting:
        return list(links)
    eligible = [
        link for link in links
        if not targeting.get(link.id) or device in targeting[link.id]
    ]
    return eligible or list(links)


def round_robin_cursor(links: Sequence[LinkSnapshot]) -> int:
    """Shared rotation pointer: total clicks recorded across the link set."""
    return sum(max(link.total_clicks, 0) for link in links)


def select_link(
    links: Sequence[LinkSnapshot],
    config: Optional[RotationSettings] = None,
    rng: Optional[RandomSource] = None,
    cursor: Optional[int] = None,
    device: Optional[str] = None,
) -> LinkSnapshot:
    """Pick one link for a single redirect, honouring device targeting first."""
    if not links:
        raise ValidationError("No links available for rotation", field="links")
    config = config or RotationSettings()
    rng = rng or _default_rng

    candidates = ordered([link for link in links if link.is_active])
    if not candidates:
        raise ValidationError("No active links available for rotation", field="links")
    targeting = config.device_targeting if isinstance(config.device_targeting, dict) else {}
    candidates = filter_by_device(candidates, targeting, device)
    if len(candidates) == 1:
        return candidates[0]

    # Control traffic always gets the baseline link
    if config.traffic_split < 1.0 and rng.random() >= config.traffic_split:
        return candidates[0]

    strategy = config.strategy
    if strategy == RotationStrategy.RANDOM:
        return weighted_choice(candidates, lambda _link: 1.0, rng)

    if strategy == RotationStrategy.WEIGHTED:
        weights = config.weights if isinstance(config.weights, dict) else {}
        return weighted_choice(candidates, lambda link: weights.get(link.id), rng)

    if strategy == RotationStrategy.ROUND_ROBIN:
        position = round_robin_cursor(candidates) if cursor is None else cursor
        return candidates[position % len(candidates)]

    weights = performance_weights(candidates)
    return weighted_choice(candidates, lambda link: weights[link.id], rng)


def preview_weights(links: Sequence[LinkSnapshot], config: RotationSettings) -> dict[str, float]:
    """Effective share per link under ``config`` (before the traffic split)."""
    candidates = ordered([link for link in links if link.is_active])
    if not candidates:
        return {}
    if config.strategy == RotationStrategy.WEIGHTED:
        raw = [_usable_weight(config.weights.get(link.id)) for link in candidates]
        if all(w is not None for w in raw) and sum(raw) > 0:
            total = sum(raw)
            return {link.id: round(w / total, 4) for link, w in zip(candidates, raw)}
    elif config.strategy == RotationStrategy.PERFORMANCE_BASED:
        return {k: round(v, 4) for k, v in performance_weights(candidates).items()}
    equal = round(1.0 / len(candidates), 4)
    return {link.id: equal for link in candidates}
