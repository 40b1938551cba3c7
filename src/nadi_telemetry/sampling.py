"""Sampling decisions for telemetry sessions and events.

This module decides whether collected telemetry should be transmitted. It
supports:
- Per-route, per-device and per-connection sampling rules with priorities
- Always sampling sessions with errors or slow page loads
- Consistent session-level sampling (a session is never partially sampled)
- Adaptive sampling driven by the observed error rate
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

# Below this many recorded events the adaptive rate equals the global rate
ADAPTIVE_MIN_EVENTS = 100

DEFAULT_SLOW_SESSION_THRESHOLD_MS = 5000


class DeviceType(str, Enum):
    """Device classes used for sampling rules."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class SamplingReason(str, Enum):
    """Why a sampling decision was made."""

    RULE = "rule"
    GLOBAL = "global"
    ERROR = "error"
    SLOW_SESSION = "slow_session"
    FORCED = "forced"


def clamp_rate(rate: float, name: str = "rate") -> float:
    """Clamp a sample rate into [0, 1], logging when it was out of range."""
    clamped = max(0.0, min(1.0, float(rate)))
    if clamped != rate:
        logger.warning("%s must be between 0.0 and 1.0, got %s; using %s", name, rate, clamped)
    return clamped


@dataclass(frozen=True)
class SamplingContext:
    """Read-only description of the current session/page for one evaluation."""

    url: str = ""
    route: Optional[str] = None
    has_error: bool = False
    device_type: Optional[Union[DeviceType, str]] = None
    is_slow_session: bool = False
    connection_type: Optional[str] = None
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass
class SamplingRule:
    """A named sampling rule.

    Rules are evaluated in descending priority; ties keep insertion order.
    """

    name: str
    match: Callable[[SamplingContext], bool]
    rate: float
    priority: int = 0

    def __post_init__(self) -> None:
        self.rate = clamp_rate(self.rate, f"rate of rule {self.name!r}")


@dataclass(frozen=True)
class SamplingDecision:
    """Result of a sampling evaluation."""

    sampled: bool
    applied_rate: float
    reason: SamplingReason
    matched_rule: Optional[str] = None


@dataclass
class RuleConditions:
    """Declarative rule conditions combined with AND semantics.

    An empty condition category matches any context.
    """

    routes: Sequence[str] = ()
    device_types: Sequence[str] = ()
    connection_types: Sequence[str] = ()

    def matches(self, context: SamplingContext) -> bool:
        if self.routes:
            if not context.route or not any(context.route.startswith(r) for r in self.routes):
                return False

        if self.device_types:
            if not context.device_type or _value(context.device_type) not in {
                _value(d) for d in self.device_types
            }:
                return False

        if self.connection_types:
            if not context.connection_type or context.connection_type not in self.connection_types:
                return False

        return True


@dataclass
class SamplingConfig:
    """Configuration for the sampling engine."""

    global_rate: float = 1.0
    rules: List[SamplingRule] = field(default_factory=list)
    always_sample_errors: bool = True
    always_sample_slow_sessions: bool = True
    slow_session_threshold_ms: float = DEFAULT_SLOW_SESSION_THRESHOLD_MS
    adaptive_sampling: bool = False

    def __post_init__(self) -> None:
        self.global_rate = clamp_rate(self.global_rate, "global_rate")


def _value(device_type: Union[DeviceType, str]) -> str:
    return device_type.value if isinstance(device_type, DeviceType) else str(device_type)


def create_route_rule(
    name: str,
    route_pattern: Union[str, Pattern[str]],
    rate: float,
    priority: int = 50,
) -> SamplingRule:
    """Create a rule matching routes by prefix (str) or regular expression."""
    if isinstance(route_pattern, str):

        def matcher(route: str) -> bool:
            return route.startswith(route_pattern)

    else:

        def matcher(route: str) -> bool:
            return route_pattern.search(route) is not None

    return SamplingRule(
        name=name,
        match=lambda ctx: bool(ctx.route) and matcher(ctx.route),
        rate=rate,
        priority=priority,
    )


def create_device_type_rule(
    name: str,
    device_type: Union[DeviceType, str],
    rate: float,
    priority: int = 40,
) -> SamplingRule:
    """Create a rule matching a single device type."""
    return SamplingRule(
        name=name,
        match=RuleConditions(device_types=[device_type]).matches,
        rate=rate,
        priority=priority,
    )


def create_connection_type_rule(
    name: str,
    connection_type: str,
    rate: float,
    priority: int = 30,
) -> SamplingRule:
    """Create a rule matching a single connection type (e.g. "4g")."""
    return SamplingRule(
        name=name,
        match=RuleConditions(connection_types=[connection_type]).matches,
        rate=rate,
        priority=priority,
    )


def rule_from_dict(data: Mapping[str, Any]) -> SamplingRule:
    """Build a rule from a plain mapping, e.g. server-provided configuration.

    Expected shape::

        {
            "name": "checkout",
            "rate": 1.0,
            "priority": 100,
            "conditions": {
                "routes": ["/checkout"],
                "device_types": ["mobile"],
                "connection_types": ["4g"],
            },
        }

    A rule without conditions matches every context.
    """
    conditions = data.get("conditions") or {}
    return SamplingRule(
        name=data["name"],
        match=RuleConditions(
            routes=tuple(conditions.get("routes") or ()),
            device_types=tuple(conditions.get("device_types") or ()),
            connection_types=tuple(conditions.get("connection_types") or ()),
        ).matches,
        rate=data.get("rate", 1.0),
        priority=int(data.get("priority", 0)),
    )


class SamplingManager:
    """Sampling decision engine.

    A session moves from undecided to decided (sampled or not) on its first
    evaluation, and may be forced to sampled at any point. A forced session
    stays sampled until ``reset_session()``.

    Instances are not thread-safe; hosts sharing one across threads must
    serialize access.
    """

    def __init__(
        self,
        config: Optional[SamplingConfig] = None,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the sampling engine.

        Args:
            config: Sampling configuration. Defaults to sampling everything.
            random_source: Callable returning a uniform float in [0, 1).
        """
        self._config = config or SamplingConfig()
        self._random = random_source
        self._rules: List[SamplingRule] = []
        self._session_decision: Optional[SamplingDecision] = None

        # Adaptive sampling state
        self._total_events = 0
        self._error_count = 0

        for rule in self._config.rules:
            self._rules.append(rule)
        self._sort_rules()

    @property
    def rules(self) -> List[SamplingRule]:
        """Rules in evaluation order."""
        return list(self._rules)

    @property
    def global_rate(self) -> float:
        return self._config.global_rate

    @property
    def event_counts(self) -> Tuple[int, int]:
        """Recorded (total events, error events)."""
        return self._total_events, self._error_count

    @property
    def adaptive_rate(self) -> float:
        """Sample rate derived from the observed error rate.

        Higher error rates sample more to capture failures; the rate never
        drops below the configured global rate.
        """
        global_rate = self._config.global_rate
        if self._total_events < ADAPTIVE_MIN_EVENTS:
            return global_rate

        error_rate = self._error_count / self._total_events
        if error_rate > 0.05:
            rate = 1.0
        elif error_rate > 0.01:
            rate = 0.5
        elif error_rate > 0.001:
            rate = 0.25
        else:
            rate = 0.1

        return max(rate, global_rate)

    @property
    def effective_rate(self) -> float:
        """The rate applied when no rule matches."""
        if self._config.adaptive_sampling:
            return self.adaptive_rate
        return self._config.global_rate

    def evaluate(self, context: SamplingContext) -> SamplingDecision:
        """Decide whether an event with this context should be sampled.

        Precedence: forced session, errors, slow sessions, rules by priority,
        then the effective global rate.

        Args:
            context: The sampling context.

        Returns:
            The sampling decision.
        """
        if self._session_decision is not None and self._session_decision.reason is SamplingReason.FORCED:
            return self._session_decision

        if self._config.always_sample_errors and context.has_error:
            return SamplingDecision(sampled=True, applied_rate=1.0, reason=SamplingReason.ERROR)

        if self._config.always_sample_slow_sessions and context.is_slow_session:
            return SamplingDecision(
                sampled=True, applied_rate=1.0, reason=SamplingReason.SLOW_SESSION
            )

        for rule in self._rules:
            if rule.match(context):
                return SamplingDecision(
                    sampled=self._sample(rule.rate),
                    applied_rate=rule.rate,
                    reason=SamplingReason.RULE,
                    matched_rule=rule.name,
                )

        rate = self.effective_rate
        return SamplingDecision(
            sampled=self._sample(rate),
            applied_rate=rate,
            reason=SamplingReason.GLOBAL,
        )

    def should_sample_session(self, context: SamplingContext) -> bool:
        """Decide once per session whether it should be sampled.

        The first decision is cached and returned for the rest of the session
        so derived metrics are never computed from a partial session.
        """
        if self._session_decision is None:
            self._session_decision = self.evaluate(context)
            logger.debug(
                "Session sampling decided: sampled=%s reason=%s rate=%s",
                self._session_decision.sampled,
                self._session_decision.reason.value,
                self._session_decision.applied_rate,
            )
        return self._session_decision.sampled

    def get_sampling_decision(self) -> Optional[SamplingDecision]:
        """The cached session decision, or None if not yet decided."""
        return self._session_decision

    def force_sample_session(self) -> None:
        """Force the session to be sampled, e.g. after a late error."""
        self._session_decision = SamplingDecision(
            sampled=True, applied_rate=1.0, reason=SamplingReason.FORCED
        )

    def reset_session(self) -> None:
        """Forget the session decision at a new session boundary."""
        self._session_decision = None

    def add_rule(self, rule: SamplingRule) -> None:
        self._rules.append(rule)
        self._sort_rules()

    def remove_rule(self, name: str) -> None:
        """Remove all rules with the given name."""
        self._rules = [rule for rule in self._rules if rule.name != name]

    def load_rules(self, rules: Iterable[Mapping[str, Any]]) -> None:
        """Add rules from plain mappings (see ``rule_from_dict``)."""
        for data in rules:
            self.add_rule(rule_from_dict(data))

    def set_global_rate(self, rate: float) -> None:
        self._config.global_rate = clamp_rate(rate, "global_rate")

    def set_always_sample_errors(self, enabled: bool) -> None:
        self._config.always_sample_errors = enabled

    def set_always_sample_slow_sessions(self, enabled: bool) -> None:
        self._config.always_sample_slow_sessions = enabled

    def record_event(self, has_error: bool) -> None:
        """Record an event for adaptive sampling."""
        self._total_events += 1
        if has_error:
            self._error_count += 1

    def is_slow_session(self, load_time_ms: float) -> bool:
        """Whether a page load time exceeds the slow session threshold."""
        return load_time_ms > self._config.slow_session_threshold_ms

    def get_config(self) -> SamplingConfig:
        """A copy of the current configuration."""
        return replace(self._config, rules=list(self._rules))

    def _sort_rules(self) -> None:
        # list.sort is stable, so equal priorities keep insertion order
        self._rules.sort(key=lambda rule: rule.priority, reverse=True)

    def _sample(self, rate: float) -> bool:
        if rate >= 1:
            return True
        if rate <= 0:
            return False
        return self._random() < rate


def describe_decision(decision: Optional[SamplingDecision]) -> Dict[str, Any]:
    """Flatten a decision into a JSON-friendly mapping for payload context."""
    if decision is None:
        return {}
    result: Dict[str, Any] = {
        "sampled": decision.sampled,
        "applied_rate": decision.applied_rate,
        "reason": decision.reason.value,
    }
    if decision.matched_rule is not None:
        result["matched_rule"] = decision.matched_rule
    return result
