"""Tests for W3C trace context management."""

import re
from unittest.mock import patch

import pytest

from nadi_telemetry.tracing import TraceContext, TracingConfig, TracingManager

TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
SPAN_ID = "b7ad6b7169203331"


@pytest.fixture
def tracing():
    return TracingManager(
        TracingConfig(
            enabled=True,
            propagate_trace_urls=["https://api.example.com", "internal.example.com"],
            origin="https://app.example.com",
        )
    )


class TestIdGeneration:
    """Tests for trace and span ID generation."""

    def test_trace_id_format(self):
        """Trace IDs are 32 lowercase hex characters."""
        trace_id = TracingManager.generate_trace_id()
        assert re.fullmatch(r"[0-9a-f]{32}", trace_id)

    def test_span_id_format(self):
        """Span IDs are 16 lowercase hex characters."""
        span_id = TracingManager.generate_span_id()
        assert re.fullmatch(r"[0-9a-f]{16}", span_id)

    def test_ids_are_unique(self):
        ids = {TracingManager.generate_trace_id() for _ in range(50)}
        assert len(ids) == 50

    def test_all_zero_id_regenerated(self):
        """An all-zero ID is never returned."""
        with patch(
            "nadi_telemetry.tracing.secrets.token_hex",
            side_effect=["0" * 32, "ab" * 16],
        ):
            assert TracingManager.generate_trace_id() == "ab" * 16

    def test_fallback_without_os_entropy(self):
        """Falls back to the pseudo-random generator when OS entropy is unavailable."""
        with patch(
            "nadi_telemetry.tracing.secrets.token_hex",
            side_effect=NotImplementedError,
        ):
            span_id = TracingManager.generate_span_id()
        assert re.fullmatch(r"[0-9a-f]{16}", span_id)
        assert span_id != "0" * 16

    def test_child_span_keeps_trace(self, tracing):
        trace_id = tracing.trace_id
        child = tracing.create_child_span()
        assert child != tracing.span_id
        assert tracing.trace_id == trace_id


class TestHeaders:
    """Tests for traceparent and tracestate formatting."""

    def test_create_header_sampled(self, tracing):
        header = tracing.create_header()
        assert header == f"00-{tracing.trace_id}-{tracing.span_id}-01"

    def test_create_header_unsampled(self, tracing):
        tracing.set_sampled(False)
        assert tracing.create_header().endswith("-00")

    def test_create_header_span_override(self, tracing):
        assert tracing.create_header(SPAN_ID) == f"00-{tracing.trace_id}-{SPAN_ID}-01"

    def test_state_header_vendor_first(self, tracing):
        tracing.set_trace_state("congo=t61rcWkgMzE,rojo=00f067aa0ba902b7")
        assert tracing.create_state_header() == (
            f"nadi={tracing.span_id},congo=t61rcWkgMzE,rojo=00f067aa0ba902b7"
        )

    def test_state_header_without_trace_state(self, tracing):
        assert tracing.create_state_header() == f"nadi={tracing.span_id}"

    def test_state_header_drops_stale_vendor_entry(self, tracing):
        tracing.set_trace_state("nadi=1111111111111111,rojo=1")
        assert tracing.create_state_header() == f"nadi={tracing.span_id},rojo=1"

    def test_state_header_capped(self, tracing):
        tracing.set_trace_state(",".join(f"v{i}=x" for i in range(40)))
        assert len(tracing.create_state_header().split(",")) == 32


class TestParseHeader:
    """Tests for traceparent parsing."""

    def test_valid_header(self, tracing):
        context = tracing.parse_header(f"00-{TRACE_ID}-{SPAN_ID}-01")
        assert context == TraceContext(trace_id=TRACE_ID, span_id=SPAN_ID, sampled=True)

    def test_unsampled_flag(self, tracing):
        context = tracing.parse_header(f"00-{TRACE_ID}-{SPAN_ID}-00")
        assert context is not None
        assert context.sampled is False

    def test_sampled_is_bit_zero(self, tracing):
        context = tracing.parse_header(f"00-{TRACE_ID}-{SPAN_ID}-03")
        assert context.sampled is True
        assert tracing.parse_header(f"00-{TRACE_ID}-{SPAN_ID}-02").sampled is False

    def test_round_trip(self, tracing):
        tracing.set_sampled(False)
        context = tracing.parse_header(tracing.create_header())
        assert context.trace_id == tracing.trace_id
        assert context.span_id == tracing.span_id
        assert context.sampled is False

    @pytest.mark.parametrize(
        "header",
        [
            "",
            None,
            "00-short-id-01",
            f"01-{TRACE_ID}-{SPAN_ID}-01",
            f"00-{TRACE_ID}-{SPAN_ID}",
            f"00-{TRACE_ID}-{SPAN_ID}-01-extra",
            f"00-{'0' * 32}-{SPAN_ID}-01",
            f"00-{TRACE_ID}-{'0' * 16}-01",
            f"00-{TRACE_ID.upper()}-{SPAN_ID}-01",
            f"00-{TRACE_ID}-{SPAN_ID}-zz",
            f"00-{TRACE_ID}-{SPAN_ID}-1",
        ],
    )
    def test_malformed_headers(self, tracing, header):
        """Malformed headers yield no context instead of raising."""
        assert tracing.parse_header(header) is None

    def test_parse_state_header(self, tracing):
        assert tracing.parse_state_header("congo=t61, rojo=00f0,bad,=x") == {
            "congo": "t61",
            "rojo": "00f0",
        }

    def test_parse_empty_state_header(self, tracing):
        assert tracing.parse_state_header("") == {}


class TestPropagation:
    """Tests for propagation eligibility."""

    def test_disabled_never_propagates(self):
        tracing = TracingManager(
            TracingConfig(enabled=False, propagate_trace_urls=["https://api.example.com"])
        )
        assert tracing.should_propagate("https://api.example.com/x") is False

    def test_no_targets_never_propagates(self):
        tracing = TracingManager(TracingConfig(enabled=True))
        assert tracing.should_propagate("https://api.example.com/x") is False

    def test_prefix_match(self, tracing):
        assert tracing.should_propagate("https://api.example.com/orders") is True

    def test_hostname_match(self, tracing):
        assert tracing.should_propagate("http://internal.example.com/v1") is True

    def test_third_party_not_propagated(self, tracing):
        assert tracing.should_propagate("https://cdn.thirdparty.com/lib.js") is False

    def test_relative_url_resolved_against_origin(self):
        tracing = TracingManager(
            TracingConfig(
                enabled=True,
                propagate_trace_urls=["https://app.example.com/api"],
                origin="https://app.example.com",
            )
        )
        assert tracing.should_propagate("/api/users") is True
        assert tracing.should_propagate("/static/app.js") is False

    def test_pattern_match(self):
        tracing = TracingManager(
            TracingConfig(
                enabled=True,
                propagate_trace_urls=[re.compile(r"^https://[a-z]+\.example\.org/")],
            )
        )
        assert tracing.should_propagate("https://eu.example.org/v1") is True
        assert tracing.should_propagate("https://example.net/v1") is False

    def test_unparseable_url(self, tracing):
        assert tracing.should_propagate("http://[::1") is False
        assert tracing.should_propagate("https://api.example.com:99999/x") is False
        assert tracing.should_propagate("https://api.example.com:port/x") is False

    def test_get_headers_allowed(self, tracing):
        headers = tracing.get_headers("https://api.example.com/orders")
        assert headers == {
            "traceparent": tracing.create_header(),
            "tracestate": tracing.create_state_header(),
        }

    def test_get_headers_not_allowed(self, tracing):
        assert tracing.get_headers("https://other.com/") == {}


class TestLifecycle:
    """Tests for adopt and reset."""

    def test_adopt_replaces_everything(self, tracing):
        tracing.set_trace_state("old=1")
        tracing.adopt(TraceContext(trace_id=TRACE_ID, span_id=SPAN_ID, sampled=False))

        assert tracing.get_context() == TraceContext(
            trace_id=TRACE_ID, span_id=SPAN_ID, sampled=False, trace_state=None
        )
        assert tracing.create_header() == f"00-{TRACE_ID}-{SPAN_ID}-00"

    def test_adopt_parsed_server_context(self, tracing):
        tracing.adopt(tracing.parse_header(f"00-{TRACE_ID}-{SPAN_ID}-01"))
        assert tracing.trace_id == TRACE_ID

    @pytest.mark.parametrize(
        "trace_id,span_id",
        [
            ("0" * 32, SPAN_ID),
            (TRACE_ID, "0" * 16),
            ("not-hex", SPAN_ID),
            (TRACE_ID.upper(), SPAN_ID),
        ],
    )
    def test_adopt_ignores_invalid_context(self, tracing, trace_id, span_id):
        before = tracing.get_context()

        tracing.adopt(TraceContext(trace_id=trace_id, span_id=span_id, sampled=False))

        assert tracing.get_context() == before
        assert tracing.parse_header(tracing.create_header()) is not None

    def test_reset_regenerates_ids(self, tracing):
        tracing.set_sampled(False)
        tracing.set_trace_state("rojo=1")
        trace_id, span_id = tracing.trace_id, tracing.span_id

        tracing.reset()

        assert tracing.trace_id != trace_id
        assert tracing.span_id != span_id
        assert tracing.sampled is False
        assert tracing.trace_state == "rojo=1"

    def test_configured_trace_state(self):
        tracing = TracingManager(TracingConfig(trace_state="rojo=1"))
        assert tracing.trace_state == "rojo=1"
        assert tracing.get_context().is_valid()
