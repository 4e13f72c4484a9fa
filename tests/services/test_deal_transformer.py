"""Tests for deal normalization."""

import pytest

from hudlab.models.activecampaign import ActiveCampaignDeal, ContactFieldValue, DealCustomFieldDatum
from hudlab.models.database import DealStatus
from hudlab.services.deal_transformer import (
    build_deal_row,
    cents_to_display,
    convert_date_format,
    map_contact_fields,
    map_custom_fields,
    normalize_deal_status,
    parse_value_cents,
)


class TestConvertDateFormat:
    """CRM date strings to YYYY-MM-DD."""

    def test_us_format(self):
        assert convert_date_format("03/15/2025") == "2025-03-15"

    def test_single_digit_month_and_day(self):
        assert convert_date_format("3/5/2025") == "2025-03-05"

    def test_iso_date_passthrough(self):
        assert convert_date_format("2025-03-15") == "2025-03-15"

    def test_iso_datetime_with_offset_uses_utc_date(self):
        assert convert_date_format("2025-03-15T23:30:00-03:00") == "2025-03-16"

    def test_iso_datetime_zulu(self):
        assert convert_date_format("2025-03-15T10:00:00Z") == "2025-03-15"

    @pytest.mark.parametrize("value", ["not a date", "13/45/2025", "", None, "2025-02-30", "15/03"])
    def test_unparsable_returns_none(self, value):
        assert convert_date_format(value) is None


class TestNormalizeDealStatus:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (0, DealStatus.OPEN),
            (1, DealStatus.WON),
            (2, DealStatus.LOST),
            ("1", DealStatus.WON),
            ("Won", DealStatus.WON),
            ("lost", DealStatus.LOST),
        ],
    )
    def test_known_values(self, raw, expected):
        assert normalize_deal_status(raw) == expected

    @pytest.mark.parametrize("raw", [None, 7, "archived", True])
    def test_unknown_values(self, raw):
        assert normalize_deal_status(raw) is None

    def test_status_codes(self):
        assert [s.code for s in (DealStatus.OPEN, DealStatus.WON, DealStatus.LOST)] == [0, 1, 2]


class TestValueCents:
    def test_integer_string(self):
        assert parse_value_cents("150000") == 150000

    def test_fractional_cents_round_half_up(self):
        assert parse_value_cents("1999.5") == 2000

    def test_numeric_input(self):
        assert parse_value_cents(2500) == 2500

    @pytest.mark.parametrize("raw", [None, "", "abc", "NaN"])
    def test_invalid_is_zero(self, raw):
        assert parse_value_cents(raw) == 0

    def test_display(self):
        assert cents_to_display(150000) == "1500.00"
        assert cents_to_display(5) == "0.05"
        assert cents_to_display(None) == "0.00"


class TestFieldMaps:
    def test_custom_fields_grouped_by_deal_and_unknown_ids_dropped(self):
        items = [
            DealCustomFieldDatum(dealId=1, customFieldId=5, fieldValue="03/15/2025"),
            DealCustomFieldDatum(dealId="1", customFieldId=25, fieldValue="SP"),
            DealCustomFieldDatum(dealId="2", customFieldId=45, fieldValue="Ana"),
            DealCustomFieldDatum(dealId="2", customFieldId=999, fieldValue="ignored"),
        ]

        mapped = map_custom_fields(items)

        assert mapped == {"1": {5: "03/15/2025", 25: "SP"}, "2": {45: "Ana"}}

    def test_contact_fields(self):
        items = [
            ContactFieldValue(field=7, value="Varejo"),
            ContactFieldValue(field=50, value="Alta"),
            ContactFieldValue(field=3, value="other"),
        ]

        assert map_contact_fields(items) == {7: "Varejo", 50: "Alta"}


class TestBuildDealRow:
    def _deal(self, **overrides):
        data = {
            "id": "101",
            "title": "Pedido Loja Centro",
            "value": "150000",
            "currency": "brl",
            "status": "1",
            "stage": 3,
            "contact": 77,
            "cdate": "2025-03-01T10:00:00-03:00",
            "mdate": "2025-03-15T12:00:00-03:00",
        }
        data.update(overrides)
        return ActiveCampaignDeal(**data)

    def test_full_row(self):
        row = build_deal_row(
            self._deal(),
            {5: "03/15/2025", 25: "SP", 39: "120", 45: "Ana", 47: "Bia", 49: "google", 50: "cpc"},
            {7: "Varejo", 50: "Alta"},
            synced_at="2025-03-16T00:00:00+00:00",
        )

        assert row.deal_id == "101"
        assert row.value == 150000
        assert row.currency == "BRL"
        assert row.status == "won"
        assert row.closing_date == "2025-03-15"
        assert row.custom_field_value == "03/15/2025"
        assert row.contact_id == "77"
        assert row.segmento_de_negocio == "Varejo"
        assert row.last_synced_at == "2025-03-16T00:00:00+00:00"

    def test_row_uses_database_column_names(self):
        row = build_deal_row(self._deal(), {39: "120", 49: "google", 50: "cpc"})

        columns = row.to_row()

        assert columns["quantidade-de-pares"] == "120"
        assert columns["utm-source"] == "google"
        assert columns["utm-medium"] == "cpc"
        assert "quantidade_de_pares" not in columns

    def test_missing_closing_date(self):
        row = build_deal_row(self._deal(), {})

        assert row.closing_date is None
        assert row.custom_field_value is None

    def test_unparsable_closing_date_keeps_raw_value(self):
        row = build_deal_row(self._deal(), {5: "someday"})

        assert row.closing_date is None
        assert row.custom_field_value == "someday"

    def test_excluding_contact_columns(self):
        row = build_deal_row(self._deal(), {}, {7: "Varejo"})

        columns = row.to_row(exclude={"segmento_de_negocio", "intencao_de_compra"})

        assert "segmento_de_negocio" not in columns
        assert "intencao_de_compra" not in columns
