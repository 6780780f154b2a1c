"""Tests for the link rotation selector."""
import random
from collections import Counter

import pytest

from src.errors import ValidationError
from src.models.link import LinkSnapshot, RotationSettings, RotationStrategy
from src.services.rotation import (
    filter_by_device,
    ordered,
    performance_weights,
    preview_weights,
    round_robin_cursor,
    select_link,
    weighted_choice,
)


class SequenceRng:
    """Deterministic random source: replays the given draws in order."""

    def __init__(self, *draws):
        self.draws = list(draws)

    def random(self):
        return self.draws.pop(0)


def _link(link_id, priority=0, conversions=0, clicks=0, active=True):
    return LinkSnapshot(
        id=link_id,
        product_id="prod-1",
        platform="amazon",
        original_url=f"https://merchant.example/{link_id}",
        shortened_url=f"https://linkvault.pro/l/{link_id}",
        priority=priority,
        is_active=active,
        total_clicks=clicks,
        total_conversions=conversions,
    )


# ── Inverse-CDF sampling ────────────────────────────────────────────────────

class TestWeightedChoice:
    def test_boundaries_follow_scan_order(self):
        items = ["a", "b", "c"]
        weights = {"a": 0.2, "b": 0.3, "c": 0.5}
        assert weighted_choice(items, weights.get, SequenceRng(0.1)) == "a"
        assert weighted_choice(items, weights.get, SequenceRng(0.2)) == "a"
        assert weighted_choice(items, weights.get, SequenceRng(0.25)) == "b"
        assert weighted_choice(items, weights.get, SequenceRng(0.9)) == "c"

    def test_weights_are_normalised(self):
        weights = {"a": 2.0, "b": 6.0}
        assert weighted_choice(["a", "b"], weights.get, SequenceRng(0.24)) == "a"
        assert weighted_choice(["a", "b"], weights.get, SequenceRng(0.26)) == "b"

    def test_zero_weight_never_selected(self):
        weights = {"a": 0.0, "b": 1.0}
        assert weighted_choice(["a", "b"], weights.get, SequenceRng(0.0)) == "b"

    def test_float_residue_returns_last_item(self):
        weights = {"a": 0.1, "b": 0.1, "c": 0.1}
        assert weighted_choice(["a", "b", "c"], weights.get, SequenceRng(0.9999999999999999)) == "c"

    @pytest.mark.parametrize("bad", [{"a": "heavy", "b": 1}, {"a": -1, "b": 2}, {"a": 0, "b": 0}, {}])
    def test_unusable_weights_fall_back_to_equal(self, bad):
        assert weighted_choice(["a", "b"], bad.get, SequenceRng(0.49)) == "a"
        assert weighted_choice(["a", "b"], bad.get, SequenceRng(0.51)) == "b"

    def test_empty_raises(self):
        with pytest.raises(ValidationError):
            weighted_choice([], lambda _: 1.0, SequenceRng(0.5))


# ── Strategies ──────────────────────────────────────────────────────────────

class TestSelectLink:
    def test_single_link_short_circuits(self):
        only = _link("a")
        assert select_link([only], RotationSettings(strategy=RotationStrategy.RANDOM)) == only

    def test_no_links_raises(self):
        with pytest.raises(ValidationError):
            select_link([])

    def test_only_inactive_links_raises(self):
        with pytest.raises(ValidationError):
            select_link([_link("a", active=False), _link("b", active=False)])

    def test_inactive_links_never_selected(self):
        links = [_link("a", active=False), _link("b"), _link("c")]
        rng = random.Random(3)
        picks = {select_link(links, RotationSettings(strategy=RotationStrategy.RANDOM), rng).id for _ in range(200)}
        assert picks == {"b", "c"}

    def test_ordering_is_priority_desc_then_id(self):
        links = [_link("b", priority=1), _link("c", priority=5), _link("a", priority=1)]
        assert [l.id for l in ordered(links)] == ["c", "a", "b"]

    def test_weighted_converges_to_configured_weights(self):
        links = [_link("a"), _link("b"), _link("c")]
        config = RotationSettings(
            strategy=RotationStrategy.WEIGHTED, weights={"a": 0.5, "b": 0.3, "c": 0.2}
        )
        rng = random.Random(20240501)
        m = 10_000
        counts = Counter(select_link(links, config, rng).id for _ in range(m))
        assert abs(counts["a"] / m - 0.5) <= 0.05
        assert abs(counts["b"] / m - 0.3) <= 0.05
        assert abs(counts["c"] / m - 0.2) <= 0.05

    def test_weighted_with_malformed_weights_is_uniform(self):
        links = [_link("a"), _link("b")]
        config = RotationSettings(strategy=RotationStrategy.WEIGHTED, weights={"a": "lots"})
        assert select_link(links, config, SequenceRng(0.4)).id == "a"
        assert select_link(links, config, SequenceRng(0.6)).id == "b"

    def test_performance_cold_start_is_exactly_uniform(self):
        links = [_link("a"), _link("b"), _link("c"), _link("d")]
        weights = performance_weights(links)
        assert set(weights.values()) == {0.25}

    def test_performance_follows_conversion_share(self):
        links = [_link("a", conversions=3), _link("b", conversions=1)]
        assert performance_weights(links) == {"a": 0.75, "b": 0.25}
        config = RotationSettings(strategy=RotationStrategy.PERFORMANCE_BASED)
        assert select_link(links, config, SequenceRng(0.74)).id == "a"
        assert select_link(links, config, SequenceRng(0.76)).id == "b"

    def test_scenario_cold_start_two_links_split_evenly(self):
        links = [_link("A", priority=10), _link("B", priority=5)]
        rng = random.Random(1234)
        counts = Counter(select_link(links, RotationSettings(), rng).id for _ in range(1000))
        assert abs(counts["A"] - 500) <= 50
        assert abs(counts["B"] - 500) <= 50

    def test_round_robin_uses_total_clicks_as_cursor(self):
        links = [_link("a", priority=2, clicks=2), _link("b", priority=1, clicks=3)]
        assert round_robin_cursor(links) == 5
        config = RotationSettings(strategy=RotationStrategy.ROUND_ROBIN)
        assert select_link(links, config).id == "b"

    def test_round_robin_cycles_with_explicit_cursor(self):
        links = [_link("a", priority=3), _link("b", priority=2), _link("c", priority=1)]
        config = RotationSettings(strategy=RotationStrategy.ROUND_ROBIN)
        picks = [select_link(links, config, cursor=i).id for i in range(6)]
        assert picks == ["a", "b", "c", "a", "b", "c"]

    def test_traffic_split_sends_control_to_baseline(self):
        links = [_link("base", priority=10), _link("other", priority=1)]
        config = RotationSettings(strategy=RotationStrategy.RANDOM, traffic_split=0.5)
        # First draw >= split: control group, baseline link, no second draw
        assert select_link(links, config, SequenceRng(0.7)).id == "base"
        # First draw < split: rotated, second draw picks
        assert select_link(links, config, SequenceRng(0.2, 0.9)).id == "other"

    def test_full_traffic_split_skips_the_gate(self):
        links = [_link("base", priority=10), _link("other", priority=1)]
        config = RotationSettings(strategy=RotationStrategy.RANDOM, traffic_split=1.0)
        assert select_link(links, config, SequenceRng(0.9)).id == "other"



# ── Device targeting ────────────────────────────────────────────────────────

class TestDeviceTargeting:
    targeting = {"app": ["mobile", "tablet"], "web": ["desktop"]}

    def test_untargeted_links_serve_every_device(self):
        links = [_link("app"), _link("web"), _link("any")]
        assert [l.id for l in filter_by_device(links, self.targeting, "mobile")] == ["app", "any"]
        assert [l.id for l in filter_by_device(links, self.targeting, "desktop")] == ["web", "any"]

    def test_no_match_falls_back_to_all_links(self):
        links = [_link("app"), _link("web")]
        assert filter_by_device(links, {"app": ["mobile"], "web": ["mobile"]}, "desktop") == links

    def test_unknown_device_or_empty_map_keeps_all(self):
        links = [_link("app"), _link("web")]
        assert filter_by_device(links, self.targeting, None) == links
        assert filter_by_device(links, {}, "mobile") == links

    def test_mobile_visitor_only_reaches_mobile_links(self):
        links = [_link("app", priority=1), _link("web", priority=9)]
        config = RotationSettings(strategy=RotationStrategy.RANDOM, device_targeting=self.targeting)
        rng = random.Random(7)
        picks = {select_link(links, config, rng, device="mobile").id for _ in range(50)}
        assert picks == {"app"}
        assert select_link(links, config, rng, device="desktop").id == "web"

    def test_targeting_fallback_still_rotates(self):
        links = [_link("app"), _link("web")]
        config = RotationSettings(
            strategy=RotationStrategy.RANDOM,
            device_targeting={"app": ["tablet"], "web": ["tablet"]},
        )
        assert select_link(links, config, SequenceRng(0.2), device="mobile").id == "app"
        assert select_link(links, config, SequenceRng(0.8), device="mobile").id == "web"

    def test_targeted_set_feeds_the_weights(self):
        links = [_link("app"), _link("tab"), _link("web")]
        config = RotationSettings(
            strategy=RotationStrategy.WEIGHTED,
            weights={"app": 0.1, "tab": 0.1, "web": 0.8},
            device_targeting={"web": ["desktop"]},
        )
        # web is filtered out, so app and tab split evenly
        assert select_link(links, config, SequenceRng(0.49), device="mobile").id == "app"
        assert select_link(links, config, SequenceRng(0.51), device="mobile").id == "tab"

class TestPreviewWeights:
    def test_weighted_normalises(self):
        links = [_link("a"), _link("b")]
        config = RotationSettings(strategy=RotationStrategy.WEIGHTED, weights={"a": 0.2, "b": 0.6})
        assert preview_weights(links, config) == {"a": 0.25, "b": 0.75}

    def test_round_robin_is_equal(self):
        links = [_link("a"), _link("b"), _link("c"), _link("d")]
        config = RotationSettings(strategy=RotationStrategy.ROUND_ROBIN)
        assert preview_weights(links, config) == {"a": 0.25, "b": 0.25, "c": 0.25, "d": 0.25}
