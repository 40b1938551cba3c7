"""Nadi Telemetry - Governance layer for client-side monitoring telemetry.

This package decides whether collected telemetry is transmitted, how
outbound requests correlate with backend traces, and what is stripped from
data before it leaves the process. It uses the Sentry SDK as transport.

Features:
- Rule-based, session-consistent sampling with error/slow-session overrides
  and an adaptive rate
- W3C Trace Context generation, parsing and allow-listed propagation
- PII detection and masking in text, nested objects and URLs
- Configurable opt-out (DO_NOT_TRACK, NADI_TELEMETRY_ENABLED)

Quick Start:
    from nadi_telemetry import TelemetryClient

    telemetry = TelemetryClient()
    telemetry.initialize(
        dsn="https://xxx@sentry.example.com/1",
        package_name="my-app",
        package_version="0.1.0",
    )

    context = telemetry.build_sampling_context(
        url="https://app.example.com/checkout",
        route="/checkout",
        load_time_ms=6200,
    )
    if telemetry.should_sample_session(context):
        ...

    headers = telemetry.get_trace_headers("https://api.example.com/orders")

Privacy:
    from nadi_telemetry import PrivacyConfig, PrivacyManager

    privacy = PrivacyManager(PrivacyConfig(masking_strategy="partial"))
    privacy.mask_text("Contact john@example.com")
    privacy.scrub_url("https://example.com/reset?token=abc")

Opt-out:
    # Environment variable opt-out
    export DO_NOT_TRACK=1
    # Or
    export NADI_TELEMETRY_ENABLED=false
"""

from nadi_telemetry.client import TelemetryClient
from nadi_telemetry.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULTS,
    TelemetryConfig,
    load_config,
    save_config,
)
from nadi_telemetry.privacy import (
    DEFAULT_SENSITIVE_FIELDS,
    DEFAULT_SENSITIVE_URL_PARAMS,
    PII_PATTERNS,
    REDACTED,
    MaskingStrategy,
    PIIDetectionResult,
    PrivacyConfig,
    PrivacyManager,
    create_before_breadcrumb_filter,
    create_before_send_filter,
    is_valid_card_number,
    sanitize_path,
)
from nadi_telemetry.sampling import (
    ADAPTIVE_MIN_EVENTS,
    DeviceType,
    RuleConditions,
    SamplingConfig,
    SamplingContext,
    SamplingDecision,
    SamplingManager,
    SamplingReason,
    SamplingRule,
    create_connection_type_rule,
    create_device_type_rule,
    create_route_rule,
    rule_from_dict,
)
from nadi_telemetry.tracing import TraceContext, TracingConfig, TracingManager

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Client
    "TelemetryClient",
    # Config
    "TelemetryConfig",
    "load_config",
    "save_config",
    "CONFIG_DIR",
    "CONFIG_FILE",
    "DEFAULTS",
    # Tracing
    "TraceContext",
    "TracingConfig",
    "TracingManager",
    # Sampling
    "ADAPTIVE_MIN_EVENTS",
    "DeviceType",
    "RuleConditions",
    "SamplingConfig",
    "SamplingContext",
    "SamplingDecision",
    "SamplingManager",
    "SamplingReason",
    "SamplingRule",
    "create_route_rule",
    "create_device_type_rule",
    "create_connection_type_rule",
    "rule_from_dict",
    # Privacy
    "DEFAULT_SENSITIVE_FIELDS",
    "DEFAULT_SENSITIVE_URL_PARAMS",
    "PII_PATTERNS",
    "REDACTED",
    "MaskingStrategy",
    "PIIDetectionResult",
    "PrivacyConfig",
    "PrivacyManager",
    "create_before_send_filter",
    "create_before_breadcrumb_filter",
    "is_valid_card_number",
    "sanitize_path",
]
