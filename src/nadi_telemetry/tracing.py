"""W3C Trace Context management for correlating client telemetry with backend traces.

This module owns the current trace/span identifier pair and provides:
- Trace and span ID generation
- traceparent / tracestate header formatting and parsing
- Propagation checks so trace headers only go to allowed destinations

See https://www.w3.org/TR/trace-context/ for the wire format.
"""

from __future__ import annotations

import logging
import random
import re
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Union
from urllib.parse import urljoin, urlsplit

logger = logging.getLogger(__name__)

TRACE_VERSION = "00"
VENDOR_KEY = "nadi"
MAX_TRACESTATE_MEMBERS = 32

_TRACE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-f]{16}$")
_FLAGS_RE = re.compile(r"^[0-9a-f]{2}$")

PropagationTarget = Union[str, Pattern[str]]


@dataclass(frozen=True)
class TraceContext:
    """Immutable trace identifiers following the W3C Trace Context format."""

    trace_id: str
    span_id: str
    sampled: bool = True
    trace_state: Optional[str] = None

    def is_valid(self) -> bool:
        return _is_valid_trace_id(self.trace_id) and _is_valid_span_id(self.span_id)


@dataclass
class TracingConfig:
    """Configuration for distributed tracing."""

    enabled: bool = False
    propagate_trace_urls: List[PropagationTarget] = field(default_factory=list)
    include_in_payloads: bool = True
    trace_state: Optional[str] = None
    # Base URL used to resolve relative request URLs.
    origin: Optional[str] = None


def _is_valid_trace_id(value: str) -> bool:
    return bool(_TRACE_ID_RE.match(value)) and value != "0" * 32


def _is_valid_span_id(value: str) -> bool:
    return bool(_SPAN_ID_RE.match(value)) and value != "0" * 16


def _random_hex(num_bytes: int) -> str:
    """Generate a non-zero lowercase hex string of ``num_bytes`` bytes."""
    while True:
        try:
            value = secrets.token_hex(num_bytes)
        except NotImplementedError:
            # No OS entropy source available
            value = "%0*x" % (num_bytes * 2, random.getrandbits(num_bytes * 8))
        if value.strip("0"):
            return value


class TracingManager:
    """Trace context manager for W3C Trace Context propagation.

    Holds the current trace ID, span ID, sampled flag and vendor trace state.
    Instances are not thread-safe; hosts sharing one across threads must
    serialize access.
    """

    def __init__(self, config: Optional[TracingConfig] = None) -> None:
        """Initialize the manager with a fresh random trace.

        Args:
            config: Tracing configuration. Defaults to a disabled config.
        """
        self._config = config or TracingConfig()
        self._trace_id = self.generate_trace_id()
        self._span_id = self.generate_span_id()
        self._sampled = True
        self._trace_state = self._config.trace_state

    @property
    def config(self) -> TracingConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        """Whether tracing is enabled."""
        return self._config.enabled

    @property
    def trace_id(self) -> str:
        return self._trace_id

    @property
    def span_id(self) -> str:
        return self._span_id

    @property
    def sampled(self) -> bool:
        return self._sampled

    @property
    def trace_state(self) -> Optional[str]:
        return self._trace_state

    @staticmethod
    def generate_trace_id() -> str:
        """Generate a new 32-character hex trace ID."""
        return _random_hex(16)

    @staticmethod
    def generate_span_id() -> str:
        """Generate a new 16-character hex span ID."""
        return _random_hex(8)

    def create_child_span(self) -> str:
        """Generate a span ID for a child span of the current trace."""
        return self.generate_span_id()

    def create_header(self, span_id: Optional[str] = None) -> str:
        """Create a traceparent header value.

        Format: ``{version}-{trace-id}-{parent-id}-{trace-flags}``, e.g.
        ``00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01``.

        Args:
            span_id: Span ID to use as the parent ID instead of the current one.

        Returns:
            The traceparent header value.
        """
        flags = "01" if self._sampled else "00"
        return f"{TRACE_VERSION}-{self._trace_id}-{span_id or self._span_id}-{flags}"

    def create_state_header(self) -> str:
        """Create a tracestate header value.

        Our own vendor entry always comes first, followed by any configured or
        adopted vendor entries.
        """
        members = [f"{VENDOR_KEY}={self._span_id}"]
        if self._trace_state:
            for member in self._trace_state.split(","):
                member = member.strip()
                if not member or member.split("=", 1)[0].strip() == VENDOR_KEY:
                    continue
                members.append(member)
        return ",".join(members[:MAX_TRACESTATE_MEMBERS])

    def parse_header(self, value: Optional[str]) -> Optional[TraceContext]:
        """Parse a traceparent header value.

        Args:
            value: The traceparent header value.

        Returns:
            The parsed trace context, or None if the value is malformed or uses
            an unsupported version.
        """
        if not value or not isinstance(value, str):
            return None

        parts = value.strip().split("-")
        if len(parts) != 4:
            return None

        version, trace_id, span_id, flags = parts
        if version != TRACE_VERSION:
            return None
        if not _is_valid_trace_id(trace_id):
            return None
        if not _is_valid_span_id(span_id):
            return None
        if not _FLAGS_RE.match(flags):
            return None

        return TraceContext(
            trace_id=trace_id,
            span_id=span_id,
            sampled=bool(int(flags, 16) & 0x01),
        )

    def parse_state_header(self, value: Optional[str]) -> Dict[str, str]:
        """Parse a tracestate header into an ordered vendor -> value mapping."""
        result: Dict[str, str] = {}
        if not value or not isinstance(value, str):
            return result

        for member in value.split(","):
            if "=" not in member:
                continue
            key, _, member_value = member.partition("=")
            key = key.strip()
            member_value = member_value.strip()
            if key and member_value:
                result[key] = member_value
        return result

    def should_propagate(self, url: str) -> bool:
        """Check whether trace headers may be attached to a request to ``url``.

        Only explicitly allowed destinations receive trace headers so trace
        identifiers do not leak to third parties.
        """
        if not self._config.enabled:
            return False

        targets = self._config.propagate_trace_urls or []
        if not targets or not url or not isinstance(url, str):
            return False

        try:
            full_url = urljoin(self._config.origin, url) if self._config.origin else url
            parts = urlsplit(full_url)
            # Reading the port validates it
            parts.port
            hostname = parts.hostname
        except (TypeError, ValueError, AttributeError):
            logger.debug("Not propagating trace headers to unparseable URL %r", url)
            return False

        for target in targets:
            if isinstance(target, str):
                if full_url.startswith(target) or hostname == target:
                    return True
            elif target.search(full_url):
                return True

        return False

    def get_headers(self, url: str) -> Dict[str, str]:
        """Get trace headers for an outgoing request.

        Args:
            url: The request URL.

        Returns:
            ``traceparent`` and ``tracestate`` headers, or an empty dict when
            propagation to ``url`` is not allowed.
        """
        if not self.should_propagate(url):
            return {}

        headers = {"traceparent": self.create_header()}
        tracestate = self.create_state_header()
        if tracestate:
            headers["tracestate"] = tracestate
        return headers

    def get_context(self) -> TraceContext:
        """Get a snapshot of the current trace context."""
        return TraceContext(
            trace_id=self._trace_id,
            span_id=self._span_id,
            sampled=self._sampled,
            trace_state=self._trace_state,
        )

    def set_sampled(self, sampled: bool) -> None:
        self._sampled = sampled

    def set_trace_state(self, trace_state: Optional[str]) -> None:
        self._trace_state = trace_state

    def adopt(self, context: TraceContext) -> None:
        """Adopt an existing trace context, e.g. one rendered by the server.

        Replaces the trace ID, span ID, sampled flag and trace state together.
        An invalid context is ignored.
        """
        if not context.is_valid():
            logger.debug("Not adopting invalid trace context %r", context)
            return
        self._trace_id = context.trace_id
        self._span_id = context.span_id
        self._sampled = context.sampled
        self._trace_state = context.trace_state
        logger.debug("Adopted trace %s", context.trace_id)

    def reset(self) -> None:
        """Start a new trace at a session or page boundary.

        The sampled flag and trace state are kept.
        """
        self._trace_id = self.generate_trace_id()
        self._span_id = self.generate_span_id()
