"""Telemetry client wiring the governance engines into the Sentry SDK.

The client owns one tracing, sampling and privacy engine per process or
session and exposes the operations collectors need: session sampling, trace
headers for outgoing requests, and privacy-filtered event capture. It is
constructed explicitly and passed to collaborators; there is no global
instance.
"""

from __future__ import annotations

import logging
import platform
from typing import Any, Dict, Mapping, Optional, Union

import sentry_sdk
from sentry_sdk.types import Event, Hint

from .config import TelemetryConfig, load_config
from .privacy import PrivacyManager, create_before_breadcrumb_filter, create_before_send_filter
from .sampling import DeviceType, SamplingContext, SamplingDecision, SamplingManager, describe_decision
from .tracing import TracingManager

logger = logging.getLogger(__name__)

_ERROR_LEVELS = ("error", "fatal")


class TelemetryClient:
    """Telemetry client for a single running instance.

    This client wraps the Sentry SDK and provides:
    - Session-level sampling with forced sampling on errors
    - W3C trace headers for allowed outgoing requests
    - Privacy filtering of every event and breadcrumb
    """

    def __init__(
        self,
        config: Optional[TelemetryConfig] = None,
        tracing: Optional[TracingManager] = None,
        sampling: Optional[SamplingManager] = None,
        privacy: Optional[PrivacyManager] = None,
    ) -> None:
        """Initialize telemetry client.

        Args:
            config: Telemetry configuration. Loaded from the environment and
                config file if not provided.
            tracing: Tracing engine. Built from ``config.tracing`` if not provided.
            sampling: Sampling engine. Built from ``config.sampling`` if not provided.
            privacy: Privacy engine. Built from ``config.privacy`` if not provided.
        """
        self._config = config or load_config()
        self._tracing = tracing or TracingManager(self._config.tracing)
        self._sampling = sampling or SamplingManager(self._config.sampling)
        self._privacy = privacy or PrivacyManager(self._config.privacy)
        self._initialized = False

    @property
    def enabled(self) -> bool:
        """Whether telemetry is enabled."""
        return self._config.enabled

    @property
    def initialized(self) -> bool:
        """Whether the client has been initialized."""
        return self._initialized

    @property
    def config(self) -> TelemetryConfig:
        """The current telemetry configuration."""
        return self._config

    @property
    def tracing(self) -> TracingManager:
        return self._tracing

    @property
    def sampling(self) -> SamplingManager:
        return self._sampling

    @property
    def privacy(self) -> PrivacyManager:
        return self._privacy

    def initialize(
        self,
        dsn: Optional[str] = None,
        package_name: str = "nadi",
        package_version: str = "unknown",
        environment: Optional[str] = None,
        **kwargs: Any,
    ) -> bool:
        """Initialize the Sentry SDK with the governance filters installed.

        Subsequent calls are ignored unless force=True is passed.

        Args:
            dsn: The Sentry DSN. If not provided, uses environment variable or
                config file.
            package_name: Name of the package initializing telemetry.
            package_version: Version of the package.
            environment: Environment name (production, staging, development).
            **kwargs: Additional arguments passed to sentry_sdk.init().

        Returns:
            True if initialization succeeded, False if disabled or no DSN.
        """
        if not self._config.enabled:
            return False

        force = kwargs.pop("force", False)
        if self._initialized and not force:
            return True

        if dsn:
            self._config.dsn = dsn
        if environment:
            self._config.environment = environment

        if not self._config.dsn:
            logger.debug("Telemetry not initialized: no DSN configured")
            return False

        sentry_kwargs = {
            "dsn": self._config.dsn,
            "environment": self._config.environment,
            "send_default_pii": self._config.send_default_pii,
            "before_send": self._create_before_send(),
            "before_breadcrumb": create_before_breadcrumb_filter(self._privacy),
            "traces_sampler": self._traces_sampler,
        }
        sentry_kwargs.update(kwargs)

        sentry_sdk.init(**sentry_kwargs)

        sentry_sdk.set_tag("package", package_name)
        sentry_sdk.set_tag("package_version", package_version)
        sentry_sdk.set_tag("python_version", platform.python_version())
        sentry_sdk.set_tag("os", platform.system())

        self._initialized = True
        return True

    def build_sampling_context(
        self,
        url: str,
        route: Optional[str] = None,
        has_error: bool = False,
        device_type: Optional[Union[DeviceType, str]] = None,
        load_time_ms: Optional[float] = None,
        connection_type: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
    ) -> SamplingContext:
        """Build a sampling context from raw collector facts.

        The slow-session flag is derived from ``load_time_ms`` and the
        configured threshold.
        """
        return SamplingContext(
            url=url,
            route=route,
            has_error=has_error,
            device_type=device_type,
            is_slow_session=(
                load_time_ms is not None and self._sampling.is_slow_session(load_time_ms)
            ),
            connection_type=connection_type,
            tags=dict(tags or {}),
        )

    def should_sample_session(self, context: SamplingContext) -> bool:
        """Decide (once) whether this session's telemetry is transmitted.

        The trace's sampled flag follows the session decision.
        """
        sampled = self._sampling.should_sample_session(context)
        self._tracing.set_sampled(sampled)
        return sampled

    def get_sampling_decision(self) -> Optional[SamplingDecision]:
        return self._sampling.get_sampling_decision()

    def get_trace_headers(self, url: str) -> Dict[str, str]:
        """Trace headers to attach to an outgoing request to ``url``."""
        return self._tracing.get_headers(url)

    def start_session(self) -> None:
        """Begin a new session: forget the sampling decision and start a new trace.

        Trace headers are marked sampled until the new session is decided.
        """
        self._sampling.reset_session()
        self._tracing.reset()
        self._tracing.set_sampled(True)

    def record_event(self, has_error: bool = False) -> None:
        """Record an event for adaptive sampling."""
        self._sampling.record_event(has_error)

    def capture_exception(
        self,
        exception: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> Optional[str]:
        """Capture an exception and send to telemetry backend.

        An error always forces the session to be sampled.

        Args:
            exception: The exception to capture. If None, captures the
                current exception from sys.exc_info().
            **kwargs: Additional context passed to Sentry.

        Returns:
            The event ID if sent, None if telemetry is disabled.
        """
        if not self._config.enabled or not self._initialized:
            return None

        self._sampling.record_event(True)
        self._sampling.force_sample_session()
        self._tracing.set_sampled(True)
        return sentry_sdk.capture_exception(exception, **kwargs)

    def capture_message(
        self,
        message: str,
        level: str = "info",
        **kwargs: Any,
    ) -> Optional[str]:
        """Capture a message and send to telemetry backend.

        Args:
            message: The message to capture.
            level: Log level (debug, info, warning, error, fatal).
            **kwargs: Additional context passed to Sentry.

        Returns:
            The event ID if sent, None if telemetry is disabled.
        """
        if not self._config.enabled or not self._initialized:
            return None

        self._sampling.record_event(level in _ERROR_LEVELS)
        return sentry_sdk.capture_message(message, level=level, **kwargs)

    def add_breadcrumb(
        self,
        message: str,
        category: str = "default",
        level: str = "info",
        **kwargs: Any,
    ) -> None:
        """Add a breadcrumb for debugging context."""
        if not self._config.enabled or not self._initialized:
            return
        sentry_sdk.add_breadcrumb(message=message, category=category, level=level, **kwargs)

    def set_tag(self, key: str, value: str) -> None:
        if not self._config.enabled or not self._initialized:
            return
        sentry_sdk.set_tag(key, value)

    def flush(self, timeout: float = 2.0) -> None:
        """Flush pending events to the backend.

        Args:
            timeout: Maximum time to wait in seconds.
        """
        if not self._config.enabled or not self._initialized:
            return
        sentry_sdk.flush(timeout=timeout)

    def _is_session_unsampled(self) -> bool:
        decision = self._sampling.get_sampling_decision()
        return decision is not None and not decision.sampled

    def _create_before_send(self):
        scrub = create_before_send_filter(self._privacy)

        def before_send(event: Event, hint: Hint) -> Optional[Event]:
            """Drop unsampled sessions' non-error events, then scrub."""
            is_error = "exception" in event or event.get("level") in _ERROR_LEVELS
            if not is_error and self._is_session_unsampled():
                return None

            event = scrub(event, hint)
            if event is None:
                return None

            # Added after scrubbing; hex IDs can look like phone numbers
            if self._tracing.config.include_in_payloads:
                tags = event.setdefault("tags", {})
                tags["nadi.trace_id"] = self._tracing.trace_id
                tags["nadi.span_id"] = self._tracing.span_id

            decision = describe_decision(self._sampling.get_sampling_decision())
            if decision:
                event.setdefault("contexts", {})["sampling"] = decision

            return event

        return before_send

    def _traces_sampler(self, sampling_context: Dict[str, Any]) -> float:
        if self._is_session_unsampled():
            return 0.0
        return self._config.traces_sample_rate
