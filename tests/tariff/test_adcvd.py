from __future__ import annotations

from datetime import date

import pytest

from dutystack.errors import ADCVD_WARNING, InvalidCodeFormat
from dutystack.tariff.adcvd import AdcvdOrderTable, get_adcvd_table
from dutystack.tariff.stacking import EffectiveTariffResult, TariffResolver

JUNE_2025 = date(2025, 6, 10)


@pytest.fixture(scope="module")
def orders() -> AdcvdOrderTable:
    return get_adcvd_table()


def test_bundled_table_loads(orders):
    assert len(orders) >= 10
    assert orders.version == "2025-11-adcvd"
    assert all(len(prefix) % 2 == 0 for order in orders.orders for prefix in order.hts_prefixes)


def test_named_origin_is_affected(orders):
    warning = orders.check("7208.51.00", "cn")
    assert warning is not None
    assert warning.order_id == "hot-rolled-steel"
    assert warning.matched_prefix == "7208"
    assert warning.country_affected
    assert "A-570-865" in warning.message
    assert "China" in warning.message


def test_other_origin_gets_informational_warning(orders):
    warning = orders.check("72085100", "DE")
    assert warning is not None
    assert not warning.country_affected
    assert "China" in warning.message
    assert "Germany" not in warning.message


def test_uncovered_code_has_no_warning(orders):
    assert orders.check("69120044", "CN") is None


def test_longest_prefix_wins():
    table = AdcvdOrderTable.from_payload(
        {
            "orders": [
                {"order_id": "broad", "hts_prefixes": ["8541"], "origin_countries": ["KR"]},
                {"order_id": "solar", "hts_prefixes": ["854140"], "origin_countries": ["VN"]},
            ]
        }
    )
    assert table.check("8541400000", "VN").order_id == "solar"
    assert table.check("8541100000", "KR").order_id == "broad"
    assert table.orders_for_country("vn")[0].order_id == "solar"


def test_bad_prefix_in_table_is_rejected():
    with pytest.raises(InvalidCodeFormat):
        AdcvdOrderTable.from_payload({"orders": [{"order_id": "x", "hts_prefixes": ["72AB"]}]})


def test_missing_table_file_gives_empty_table(tmp_path):
    table = AdcvdOrderTable.load(tmp_path / "absent.json")
    assert len(table) == 0
    assert table.check("72085100", "CN") is None


# ---------------------------------------------------------------------------
# Resolver integration
# ---------------------------------------------------------------------------
def test_resolver_flags_affected_origin_without_changing_rate(hierarchy, registry, orders):
    plain = TariffResolver(hierarchy, registry).resolve("72085100", "CN", JUNE_2025)
    warned = TariffResolver(hierarchy, registry, orders).resolve("72085100", "CN", JUNE_2025)

    assert warned.effective_rate == plain.effective_rate == pytest.approx(95.0)
    assert ADCVD_WARNING in warned.flags
    assert ADCVD_WARNING not in plain.flags
    assert warned.adcvd_warning is not None and warned.adcvd_warning.country_affected
    assert plain.adcvd_warning is None


def test_resolver_warns_but_does_not_flag_unaffected_origin(hierarchy, registry, orders):
    result = TariffResolver(hierarchy, registry, orders).resolve("73181520", "DE", JUNE_2025)
    assert result.adcvd_warning is not None
    assert result.adcvd_warning.order_id == "steel-fasteners"
    assert ADCVD_WARNING not in result.flags


def test_warning_survives_dict_round_trip(hierarchy, registry, orders):
    result = TariffResolver(hierarchy, registry, orders).resolve("73181520", "TW", JUNE_2025)
    payload = result.to_dict()
    assert payload["adcvd_warning"]["country_affected"] is True
    assert EffectiveTariffResult.from_dict(payload) == result


def test_old_cached_payload_without_warning_still_loads(hierarchy, registry):
    payload = TariffResolver(hierarchy, registry).resolve("69120044", "CN", JUNE_2025).to_dict()
    del payload["adcvd_warning"]
    assert EffectiveTariffResult.from_dict(payload).adcvd_warning is None
