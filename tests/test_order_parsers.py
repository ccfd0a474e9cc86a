"""
Unit tests for the pure order-tracking helpers.

Tests cover:
- Quote number extraction from customer references
- Carrier order id formatting
- Event / order-status stage mapping
- Stuck-order detection
- Orders envelope normalization
- Grand total coercion
"""
from datetime import datetime, timedelta, timezone

from app.merchops.modules.order_tracking.orders import Order, parse_orders_envelope
from app.merchops.modules.order_tracking.parsers import (
    extract_quote_number,
    format_order_id,
    is_order_stuck,
    parse_grand_total,
    parse_status_date,
)
from app.merchops.modules.order_tracking.stages import (
    STAGE_ORDER,
    DeliveryStage,
    map_event_to_stage,
    map_order_status_to_stage,
)

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class TestExtractQuoteNumber:
    def test_known_prefixes(self):
        assert extract_quote_number("Q20251028-E66816") == "Q20251028-E66816"
        assert extract_quote_number("ML-AB123") == "ML-AB123"

    def test_unrecognized_reference(self):
        assert extract_quote_number("random text") is None
        assert extract_quote_number("") is None
        assert extract_quote_number(None) is None

    def test_strips_decoration(self):
        assert extract_quote_number("  **Q001-ABCDE:: ") == "Q001-ABCDE"
        assert extract_quote_number(":ML-XY9Z1*") == "ML-XY9Z1"

    def test_trailing_text_ignored(self):
        assert extract_quote_number("Q123-ABC please rush") == "Q123-ABC"
        assert extract_quote_number("ML-ABCDE / PO 77") == "ML-ABCDE"

    def test_prefix_without_pattern(self):
        assert extract_quote_number("Quote 123") is None
        assert extract_quote_number("ML-abc") is None


class TestFormatOrderId:
    def test_already_formatted(self):
        assert format_order_id("BAR-SO12345") == "BAR-SO12345"

    def test_so_prefix(self):
        assert format_order_id("SO12345") == "BAR-SO12345"

    def test_bare_number(self):
        assert format_order_id("12345") == "BAR-SO12345"
        assert format_order_id(" 12345 ") == "BAR-SO12345"


class TestStageMapping:
    def test_event_rules(self):
        assert map_event_to_stage("OUT ON DELIVERY") == DeliveryStage.OUT_FOR_DELIVERY
        assert map_event_to_stage("Scan at In-House facility") == DeliveryStage.ACCEPTED
        assert map_event_to_stage("Created waybill 123") == DeliveryStage.TRACKING_CREATED
        assert map_event_to_stage("Out on line haul to JHB") == DeliveryStage.LINE_HAUL
        assert map_event_to_stage("Received in branch CPT") == DeliveryStage.AT_HUB
        assert map_event_to_stage("Delivered to reception") == DeliveryStage.DELIVERED

    def test_unknown_event(self):
        assert map_event_to_stage("unknown event xyz") is None
        assert map_event_to_stage("") is None
        assert map_event_to_stage(None) is None

    def test_first_rule_wins(self):
        # both "scan into branch" and "received in branch" could match loosely; order decides
        assert map_event_to_stage("scan into branch after received in branch") == DeliveryStage.AT_ORIGIN_BRANCH

    def test_order_status_fallback(self):
        assert map_order_status_to_stage("Order Received") == DeliveryStage.ACCEPTED
        assert map_order_status_to_stage("pending") == DeliveryStage.ACCEPTED
        assert map_order_status_to_stage("Placing") == DeliveryStage.ACCEPTED
        assert map_order_status_to_stage("Confirmed") == DeliveryStage.TRACKING_CREATED
        assert map_order_status_to_stage("In Production") == DeliveryStage.LOADED
        assert map_order_status_to_stage("Ready for Collection") == DeliveryStage.OUT_FOR_DELIVERY
        assert map_order_status_to_stage("In Transit") == DeliveryStage.LINE_HAUL
        assert map_order_status_to_stage("Collected") == DeliveryStage.DELIVERED

    def test_order_status_exact_values_only(self):
        # "pending" matches only as the whole status
        assert map_order_status_to_stage("pending approval") is None
        assert map_order_status_to_stage("Invoiced") is None

    def test_stage_order(self):
        assert len(STAGE_ORDER) == 8
        assert STAGE_ORDER[0] == DeliveryStage.ACCEPTED
        assert STAGE_ORDER[-1] == DeliveryStage.DELIVERED
        assert DeliveryStage.DELIVERED.is_terminal
        assert not DeliveryStage.OUT_FOR_DELIVERY.is_terminal


class TestIsOrderStuck:
    def test_far_past_is_stuck(self):
        assert is_order_stuck("01/01/2020 10:00:00") is True

    def test_future_is_not_stuck(self):
        future = (datetime.now(timezone.utc) + timedelta(days=2)).strftime("%d/%m/%Y %H:%M:%S")
        assert is_order_stuck(future) is False

    def test_bad_dates_never_stuck(self):
        assert is_order_stuck("not a date") is False
        assert is_order_stuck("") is False
        assert is_order_stuck(None) is False
        assert is_order_stuck("31/02/2026 10:00:00") is False

    def test_threshold_boundary(self):
        just_over = (NOW - timedelta(days=3, minutes=1)).strftime("%d/%m/%Y %H:%M:%S")
        just_under = (NOW - timedelta(days=2, hours=23)).strftime("%d/%m/%Y %H:%M:%S")
        assert is_order_stuck(just_over, now=NOW) is True
        assert is_order_stuck(just_under, now=NOW) is False

    def test_date_only_and_iso(self):
        assert is_order_stuck("01/03/2026", now=NOW) is True
        assert is_order_stuck("2026-03-01", now=NOW) is True
        assert is_order_stuck("2026-03-09T12:00:00Z", now=NOW) is False

    def test_configurable_threshold(self):
        assert is_order_stuck("09/03/2026 00:00:00", now=NOW, threshold_days=1) is True
        assert is_order_stuck("09/03/2026 00:00:00", now=NOW, threshold_days=3) is False

    def test_naive_iso_is_utc(self):
        dt = parse_status_date("2026-03-01T08:30:00")
        assert dt == datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

    def test_seven_digit_fraction(self):
        dt = parse_status_date("2026-03-01T08:30:00.1234567Z")
        assert dt == datetime(2026, 3, 1, 8, 30, 0, 123456, tzinfo=timezone.utc)

    def test_one_digit_fraction(self):
        dt = parse_status_date("2026-03-01T08:30:00.5+02:00")
        assert dt == datetime(2026, 3, 1, 6, 30, 0, 500000, tzinfo=timezone.utc)


class TestOrdersEnvelope:
    def test_array_wrapped(self):
        page = parse_orders_envelope([{"results": [{"orderId": "1"}], "total_pages": 3}])
        assert page.shape == "array"
        assert page.total_pages == 3
        assert page.results == [{"orderId": "1"}]

    def test_object_wrapped(self):
        page = parse_orders_envelope({"results": [{"orderId": "1"}, {"orderId": "2"}], "total_pages": "2"})
        assert page.shape == "object"
        assert page.total_pages == 2
        assert len(page.results) == 2

    def test_unknown_shapes_are_empty(self):
        for data in ([], {}, None, "x", [{"no": "results"}], {"results": "nope"}):
            page = parse_orders_envelope(data)
            assert page.shape == "empty"
            assert page.results == []
            assert page.total_pages == 1

    def test_missing_total_pages_means_one(self):
        assert parse_orders_envelope({"results": []}).total_pages == 1
        assert parse_orders_envelope({"results": [], "total_pages": 0}).total_pages == 1


class TestOrderFromApi:
    def test_camel_case_round_trip(self):
        row = {
            "orderId": "SO1",
            "customerReference": "Q1-A",
            "orderDate": "2026-01-01",
            "totalIncVat": "1200.50",
            "branded": True,
            "status": "Confirmed",
            "isDelivery": False,
        }
        o = Order.from_api(row)
        assert o.total_inc_vat == 1200.5
        d = o.to_dict()
        assert d["orderId"] == "SO1"
        assert d["customerReference"] == "Q1-A"
        assert d["isDelivery"] is False


class TestParseGrandTotal:
    def test_number_and_string(self):
        assert parse_grand_total({"totals": {"grand_total": 1500}}) == 1500.0
        assert parse_grand_total({"totals": {"grand_total": "1499.99"}}) == 1499.99
        assert parse_grand_total('{"totals": {"grand_total": 10}}') == 10.0

    def test_defaults_to_zero(self):
        assert parse_grand_total({}) == 0.0
        assert parse_grand_total({"totals": {"grand_total": "abc"}}) == 0.0
        assert parse_grand_total("not json") == 0.0
        assert parse_grand_total({"totals": {"grand_total": None}}) == 0.0
