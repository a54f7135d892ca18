"""
tests/test_metric_resolver.py
=============================
Metric name normalization, the alias table, matching order and value coercion.

Run:  pytest tests/ -v
"""
import math

import pytest

from formula_platform.metric_patterns import (
    METRIC_ALIASES,
    aliases_for,
    build_reference,
    canonical_for,
    fallbacks_for,
    get_canonical_by_category,
    is_opm_metric,
    metric_key,
    normalize_metric_name,
    sanitize_metric_name,
)
from formula_platform.metric_resolver import (
    MetricResolver,
    find_metric_value,
    match_metric_name,
    to_numeric,
)
from formula_platform.types import Quarter


SCREENER_METRICS = [
    "Sales", "Expenses", "Operating Profit", "OPM %", "Net Profit",
    "EPS in Rs", "Sales Growth(YoY) %", "Sales Growth(QoQ) %",
]


# ═══════════════════════════════════════════════════════════════════════════════
# 1. NAME KEYS
# ═══════════════════════════════════════════════════════════════════════════════

class TestNormalizeMetricName:
    def test_lowercases_and_strips(self):
        assert normalize_metric_name("Sales Growth(YoY) %") == "salesgrowthyoy"

    def test_whitespace_removed(self):
        assert normalize_metric_name("  Net   Profit ") == "netprofit"

    @pytest.mark.parametrize("variant", ["OPM %", "opm%", " OPM % ", "(OPM)", "Opm", "O P M"])
    def test_variants_normalize_equal(self, variant):
        assert normalize_metric_name(variant) == "opm"

    @pytest.mark.parametrize("variant", ["OPM %", "opm%", " OPM % ", "(OPM)", "Opm"])
    def test_variants_resolve_to_same_metric(self, variant):
        m = match_metric_name(variant, SCREENER_METRICS)
        assert m is not None
        assert m.name == "OPM %"
        assert m.stage == "exact"


class TestSanitizeMetricName:
    def test_growth_metric(self):
        assert sanitize_metric_name("Sales Growth(YoY) %") == "Sales_Growth_YoY"

    def test_percent_suffix_dropped(self):
        assert sanitize_metric_name("OPM %") == "OPM"

    def test_spaces(self):
        assert sanitize_metric_name("EPS in Rs") == "EPS_in_Rs"

    def test_key_equal_for_sanitized_and_human(self):
        assert metric_key("Sales_Growth_YoY") == metric_key("Sales Growth(YoY) %")

    def test_build_absolute_reference(self):
        assert build_reference("Sales Growth(YoY) %", 12) == "Sales_Growth_YoY[Q12]"

    def test_build_relative_reference(self):
        assert build_reference("Net Profit", -1, relative=True) == "Net_Profit[-1]"


# ═══════════════════════════════════════════════════════════════════════════════
# 2. ALIAS TABLE
# ═══════════════════════════════════════════════════════════════════════════════

class TestAliasTable:
    def test_every_alias_maps_to_a_group(self):
        for canonical, defn in METRIC_ALIASES.items():
            for alias in defn.aliases:
                assert canonical_for(alias) is not None, alias

    def test_fallbacks_point_at_known_groups(self):
        for defn in METRIC_ALIASES.values():
            for target in defn.fallbacks:
                assert target in METRIC_ALIASES

    def test_requested_name_tried_first(self):
        assert aliases_for("Revenue")[0] == "Revenue"
        assert "Sales" in aliases_for("Revenue")

    def test_unknown_name_has_no_aliases(self):
        assert aliases_for("Dividend Payout %") == ["Dividend Payout %"]

    def test_opm_detection(self):
        assert is_opm_metric("OPM %")
        assert is_opm_metric("Operating Profit Margin")
        assert is_opm_metric("operating margin")
        assert not is_opm_metric("Operating Profit")
        assert not is_opm_metric("Sales")

    def test_opm_fallbacks_are_financing_margin(self):
        fb = fallbacks_for("OPM")
        assert fb[0] == "Financing Margin %"
        assert all("financing" in normalize_metric_name(n) for n in fb)

    def test_non_opm_has_no_fallback(self):
        assert fallbacks_for("Sales") == []

    def test_categories(self):
        cats = get_canonical_by_category()
        assert "Sales" in cats["income"]
        assert "OPM %" in cats["margin"]
        assert "Sales Growth(YoY) %" in cats["growth"]


# ═══════════════════════════════════════════════════════════════════════════════
# 3. MATCHING ORDER
# ═══════════════════════════════════════════════════════════════════════════════

class TestMatchMetricName:
    def test_exact(self):
        m = match_metric_name("Net Profit", SCREENER_METRICS)
        assert (m.name, m.stage, m.normalized) == ("Net Profit", "exact", False)

    def test_sanitized_token(self):
        assert match_metric_name("Sales_Growth_YoY", SCREENER_METRICS).name == "Sales Growth(YoY) %"

    def test_alias_exact(self):
        m = match_metric_name("Revenue", SCREENER_METRICS)
        assert m.name == "Sales"
        assert m.stage == "exact"

    def test_alias_pat(self):
        assert match_metric_name("PAT", SCREENER_METRICS).name == "Net Profit"

    def test_alias_eps(self):
        assert match_metric_name("EPS", SCREENER_METRICS).name == "EPS in Rs"

    def test_exact_beats_partial(self):
        # "Sales" is contained in both growth metrics but also present exactly
        assert match_metric_name("Sales", SCREENER_METRICS).name == "Sales"

    def test_partial_requested_inside_available(self):
        m = match_metric_name("Profit", ["Sales", "Net Profit"])
        assert m.name == "Net Profit"
        assert m.stage == "partial"

    def test_partial_available_inside_requested(self):
        m = match_metric_name("Expenses Total", ["Sales", "Expenses"])
        assert m.name == "Expenses"
        assert m.stage == "partial"

    def test_partial_prefers_closest_length(self):
        m = match_metric_name("Sales", ["Sales Growth(YoY) %", "Net Sales Value"])
        assert m.name == "Net Sales Value"

    def test_partial_tie_uses_dataset_order(self):
        m = match_metric_name("Growth", ["Sales Growth(YoY) %", "Sales Growth(QoQ) %"])
        assert m.name == "Sales Growth(YoY) %"

    def test_opm_falls_back_to_financing_margin(self):
        m = match_metric_name("OPM %", ["Revenue", "Financing Margin %", "Net Profit"])
        assert m.name == "Financing Margin %"
        assert m.normalized is True

    def test_opm_present_is_not_normalized(self):
        m = match_metric_name("OPM", SCREENER_METRICS + ["Financing Margin %"])
        assert m.name == "OPM %"
        assert m.normalized is False

    def test_long_opm_name_falls_back(self):
        m = match_metric_name("Operating Profit Margin %", ["Financing Margin"])
        assert m.name == "Financing Margin"
        assert m.normalized

    def test_unmatched(self):
        assert match_metric_name("Dividend Yield", SCREENER_METRICS) is None

    def test_empty_inputs(self):
        assert match_metric_name("", SCREENER_METRICS) is None
        assert match_metric_name("Sales", []) is None

    def test_single_character_names_never_partial_match(self):
        assert match_metric_name("S", ["Sales"]) is None


# ═══════════════════════════════════════════════════════════════════════════════
# 4. VALUE COERCION
# ═══════════════════════════════════════════════════════════════════════════════

class TestToNumeric:
    def test_percent_string(self):
        assert to_numeric("12.5%") == pytest.approx(12.5)

    def test_percent_as_fraction(self):
        assert to_numeric("12.5%", percent_as_fraction=True) == pytest.approx(0.125)

    def test_fraction_flag_ignores_plain_numbers(self):
        assert to_numeric("12.5", percent_as_fraction=True) == pytest.approx(12.5)

    def test_percent_with_spaces(self):
        assert to_numeric(" 7 % ") == pytest.approx(7.0)

    def test_thousands_separator(self):
        assert to_numeric("1,23,456") == 123456.0

    def test_parenthetical_negative(self):
        assert to_numeric("(500)") == -500.0

    def test_rupee_prefix(self):
        assert to_numeric("₹1,500") == 1500.0

    def test_plain_number(self):
        assert to_numeric(42) == 42.0

    def test_unparseable(self):
        assert to_numeric("abc") is None

    @pytest.mark.parametrize("raw", [None, "", "N/A", "-", "--", "nan"])
    def test_null_like(self, raw):
        assert to_numeric(raw) is None

    def test_nan_and_inf(self):
        assert to_numeric(float("nan")) is None
        assert to_numeric(float("inf")) is None
        assert to_numeric("inf") is None

    def test_bool_is_not_a_number(self):
        assert to_numeric(True) is None


class TestMetricResolver:
    def test_resolve_value(self):
        q = Quarter("Mar 2024", {"Sales": "1,234", "OPM %": "18%"})
        res = MetricResolver().resolve("Sales", q)
        assert res.value == 1234.0
        assert res.matched == "Sales"
        assert res.normalized is False

    def test_resolve_percent(self):
        q = Quarter("Mar 2024", {"OPM %": "18%"})
        assert MetricResolver().resolve("OPM", q).value == pytest.approx(18.0)

    def test_missing_quarter(self):
        res = MetricResolver().resolve("Sales", None)
        assert res.value is None
        assert res.matched is None
        assert res.canonical == "Sales"

    def test_missing_metric(self):
        res = MetricResolver().resolve("Dividend", Quarter("Mar 2024", {"Sales": 1}))
        assert res.value is None
        assert res.matched is None

    def test_unreadable_value_is_null(self):
        res = MetricResolver().resolve("Sales", Quarter("Mar 2024", {"Sales": "n.a."}))
        assert res.matched == "Sales"
        assert res.value is None

    def test_odd_raw_values_never_raise(self):
        q = Quarter("Mar 2024", {"Sales": [1, 2], "EPS": {"a": 1}})
        r = MetricResolver()
        assert r.resolve("Sales", q).value is None
        assert r.resolve("EPS", q).value is None

    def test_financing_margin_fallback(self):
        q = Quarter("Mar 2024", {"Revenue": 100, "Financing Margin %": "40%"})
        res = MetricResolver().resolve("OPM %", q)
        assert res.value == pytest.approx(40.0)
        assert res.canonical == "Financing Margin %"
        assert res.normalized is True

    def test_blank_opm_uses_financing_margin(self):
        q = Quarter("Mar 2024", {"OPM %": None, "Financing Margin %": "35%"})
        res = MetricResolver().resolve("OPM %", q)
        assert res.value == pytest.approx(35.0)
        assert res.normalized is True

    def test_blank_opm_without_fallback_stays_null(self):
        q = Quarter("Mar 2024", {"OPM %": None})
        res = MetricResolver().resolve("OPM %", q)
        assert res.value is None
        assert res.matched == "OPM %"
        assert res.normalized is False

    def test_match_cache_reused(self):
        r = MetricResolver()
        q1 = Quarter("Dec 2023", {"Sales": 1})
        q2 = Quarter("Mar 2024", {"Sales": 2})
        assert r.resolve("Revenue", q1).value == 1.0
        assert r.resolve("Revenue", q2).value == 2.0
        assert len(r._cache) == 1

    def test_find_metric_value(self):
        q = Quarter("Mar 2024", {"EPS in Rs": "5.2"})
        assert find_metric_value(q, "EPS") == pytest.approx(5.2)
        assert not math.isnan(find_metric_value(q, "EPS"))
