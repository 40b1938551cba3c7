"""Privacy filtering and PII masking for telemetry data.

This module strips sensitive information before telemetry leaves the
process. It includes:
- PII detection and masking in free text (redact, partial or hash strategy)
- Field-based redaction of nested objects
- URL scrubbing (sensitive query parameters, PII in paths and fragments)
- Path sanitization (remove usernames from file paths)
- Sentry ``before_send`` / ``before_breadcrumb`` filters built on the above

Masking is a best-effort heuristic, not an anonymization guarantee.
"""

from __future__ import annotations

import logging
import re
import zlib
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Union
from urllib.parse import quote, unquote_plus, urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
MASK_CHAR = "*"

# Query parameters whose values are always masked in URLs
DEFAULT_SENSITIVE_URL_PARAMS: List[str] = [
    "password",
    "pwd",
    "pass",
    "secret",
    "token",
    "api_key",
    "apikey",
    "api-key",
    "auth",
    "authorization",
    "access_token",
    "refresh_token",
    "session",
    "sessionid",
    "session_id",
    "credit_card",
    "creditcard",
    "cc",
    "cvv",
    "ssn",
    "social_security",
    "email",
    "phone",
    "mobile",
]

# Field names whose values are always fully redacted in objects
DEFAULT_SENSITIVE_FIELDS: List[str] = [
    "password",
    "pwd",
    "pass",
    "secret",
    "token",
    "apiKey",
    "api_key",
    "authorization",
    "auth",
    "accessToken",
    "access_token",
    "refreshToken",
    "refresh_token",
    "creditCard",
    "credit_card",
    "cardNumber",
    "card_number",
    "cvv",
    "cvc",
    "ssn",
    "socialSecurity",
    "social_security",
]

# Built-in PII detectors, applied in this order
PII_PATTERNS: Dict[str, Pattern[str]] = {
    "email": re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    # 13-19 digit sequences with optional separators
    "credit_card": re.compile(r"\b(?:\d[ -]*?){13,19}\b"),
    "us_phone": re.compile(r"(?:\+1[-.\s]?)?\(?[2-9]\d{2}\)?[-.\s]?\d{3}[-.\s]?\d{4}"),
    "ssn": re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),
    "api_key": re.compile(
        r"\b(?:sk|pk|api|key|token|secret|auth|bearer)[-_]?[a-zA-Z0-9]{20,}\b",
        re.IGNORECASE,
    ),
    "ipv4": re.compile(
        r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
        r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
    ),
    "ipv6": re.compile(r"\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b"),
    "bearer_token": re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    "jwt": re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"),
    "uuid": re.compile(
        r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
        re.IGNORECASE,
    ),
}

CARD_PATTERN_NAME = "credit_card"


class MaskingStrategy(str, Enum):
    """How matched PII is replaced."""

    REDACT = "redact"
    PARTIAL = "partial"
    HASH = "hash"


@dataclass
class PrivacyConfig:
    """Configuration for the privacy engine."""

    enabled: bool = True
    sensitive_url_params: List[str] = field(
        default_factory=lambda: list(DEFAULT_SENSITIVE_URL_PARAMS)
    )
    masking_strategy: MaskingStrategy = MaskingStrategy.REDACT
    custom_pii_patterns: Dict[str, Union[str, Pattern[str]]] = field(default_factory=dict)
    sensitive_fields: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE_FIELDS))
    # Only mask card-like digit runs that pass the Luhn checksum
    validate_card_numbers: bool = False
    # Base URL used to resolve relative URLs
    origin: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        try:
            self.masking_strategy = MaskingStrategy(self.masking_strategy)
        except ValueError:
            raise ValueError(
                f"masking_strategy must be one of "
                f"{[s.value for s in MaskingStrategy]}, got {self.masking_strategy!r}"
            ) from None


@dataclass(frozen=True)
class PIIDetectionResult:
    """Result of PII detection."""

    has_pii: bool
    types: List[str]
    count: int


def is_valid_card_number(candidate: str) -> bool:
    """Check a card-like number with the Luhn checksum.

    Spaces and dashes are ignored; 13 to 19 digits are required.

    Examples:
        >>> is_valid_card_number("4111 1111 1111 1111")
        True
        >>> is_valid_card_number("4111 1111 1111 1112")
        False
    """
    digits = re.sub(r"[\s-]", "", candidate)
    if not re.fullmatch(r"\d{13,19}", digits):
        return False

    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def sanitize_path(path: str) -> str:
    """Remove username from file paths.

    Replaces platform-specific user directory patterns with <user> placeholder.

    Args:
        path: The file path to sanitize.

    Returns:
        The sanitized path with username replaced.

    Examples:
        >>> sanitize_path("/Users/john/code/file.py")
        '/Users/<user>/code/file.py'
        >>> sanitize_path("/home/alice/app/main.py")
        '/home/<user>/app/main.py'
    """
    # macOS
    path = re.sub(r"/Users/[^/]+/", "/Users/<user>/", path)
    # Linux
    path = re.sub(r"/home/[^/]+/", "/home/<user>/", path)
    # Windows, both raw and escaped backslashes
    path = re.sub(r"C:\\Users\\[^\\]+\\", r"C:\\Users\\<user>\\", path)
    path = re.sub(r"C:\\\\Users\\\\[^\\\\]+\\\\", r"C:\\\\Users\\\\<user>\\\\", path)
    # Windows with forward slashes (git bash, etc.)
    path = re.sub(r"C:/Users/[^/]+/", "C:/Users/<user>/", path)
    return path


def hash_tag(value: str) -> str:
    """Short, non-cryptographic tag for correlating masked values.

    Deterministic for equal input across calls and processes.
    """
    return f"[HASH:{zlib.crc32(value.encode('utf-8')):08x}]"


class PrivacyManager:
    """Privacy redaction engine for PII detection and masking.

    Instances are not thread-safe; hosts sharing one across threads must
    serialize access.
    """

    def __init__(self, config: Optional[PrivacyConfig] = None) -> None:
        """Initialize the engine with built-in and custom PII patterns.

        Args:
            config: Privacy configuration. Defaults to redacting everything
                the built-in patterns detect.
        """
        self._config = config or PrivacyConfig()
        self._patterns: Dict[str, Pattern[str]] = dict(PII_PATTERNS)
        for name, pattern in self._config.custom_pii_patterns.items():
            self.add_pattern(name, pattern)

    @property
    def config(self) -> PrivacyConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        """Whether masking is enabled."""
        return self._config.enabled

    @property
    def pattern_names(self) -> List[str]:
        """Registered pattern names in application order."""
        return list(self._patterns)

    def add_pattern(self, name: str, pattern: Union[str, Pattern[str]]) -> None:
        """Register a named PII pattern, replacing any pattern with that name.

        Invalid regular expressions are logged and skipped.
        """
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error as e:
                logger.warning("Ignoring invalid PII pattern %r: %s", name, e)
                return
        self._patterns[name] = pattern

    def remove_pattern(self, name: str) -> None:
        self._patterns.pop(name, None)

    def update_config(self, **changes: Any) -> None:
        """Update configuration fields.

        ``custom_pii_patterns`` are merged into the pattern registry.
        """
        known = {f.name for f in fields(PrivacyConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown privacy config fields: {sorted(unknown)}")

        values = {f.name: getattr(self._config, f.name) for f in fields(PrivacyConfig)}
        values.update(changes)
        self._config = PrivacyConfig(**values)

        for name, pattern in changes.get("custom_pii_patterns", {}).items():
            self.add_pattern(name, pattern)

    def mask_text(self, text: str) -> str:
        """Mask PII in a text string using the configured strategy.

        If a pattern fails while matching, the remaining patterns still run
        but the whole text is redacted rather than risk leaking it.

        Args:
            text: The text to mask.

        Returns:
            The text with PII masked.
        """
        if not self._config.enabled or not text or not isinstance(text, str):
            return text

        result = text
        failed = False
        for name, pattern in self._patterns.items():
            try:
                result = pattern.sub(self._replacer(name), result)
            except Exception:
                logger.warning("PII pattern %r failed while masking", name, exc_info=True)
                failed = True

        return REDACTED if failed else result

    def mask_object(self, value: Any, extra_fields: Iterable[str] = ()) -> Any:
        """Mask sensitive fields in a nested structure.

        Values under a sensitive key are fully redacted regardless of the
        masking strategy. Other strings are passed through ``mask_text``.
        Input must be acyclic.

        Args:
            value: Mapping, list, tuple or scalar to mask.
            extra_fields: Additional sensitive field names for this call.

        Returns:
            A masked copy. Mappings become dicts; lists and tuples keep their type.
        """
        if not self._config.enabled:
            return value

        sensitive = [f.lower() for f in self._config.sensitive_fields]
        sensitive.extend(f.lower() for f in extra_fields)
        return self._mask_value(value, sensitive)

    def is_sensitive_field(self, key: Any, extra_fields: Iterable[str] = ()) -> bool:
        """Whether a key equals or contains a sensitive field name (case-insensitive)."""
        sensitive = [f.lower() for f in self._config.sensitive_fields]
        sensitive.extend(f.lower() for f in extra_fields)
        return self._is_sensitive(key, sensitive)

    def scrub_url(self, url: str) -> str:
        """Scrub sensitive data from a URL.

        Sensitive query parameter values are replaced by the placeholder, an
        embedded password is removed, and PII in the path and fragment is
        masked. Unparseable URLs are masked as plain text.

        Args:
            url: The URL to scrub.

        Returns:
            The scrubbed URL; the original string if nothing changed.
        """
        if not self._config.enabled or not url or not isinstance(url, str):
            return url

        try:
            full_url = urljoin(self._config.origin, url) if self._config.origin else url
            parts = urlsplit(full_url)
            # Accessing port validates the netloc
            parts.port
        except ValueError:
            return self.mask_text(url)

        netloc = parts.netloc
        if parts.password:
            userinfo, _, host = netloc.rpartition("@")
            netloc = f"{userinfo.split(':', 1)[0]}:{quote(REDACTED, safe='')}@{host}"

        query = self.scrub_query_string(parts.query)
        path = self.mask_text(parts.path)
        fragment = self.mask_text(parts.fragment)

        scrubbed = (parts.scheme, netloc, path, query, fragment)
        if scrubbed == tuple(parts):
            return url
        return urlunsplit(scrubbed)

    def scrub_query_string(self, query: str) -> str:
        """Replace the values of sensitive parameters in a query string."""
        if not self._config.enabled or not query:
            return query

        sensitive = {p.lower() for p in self._config.sensitive_url_params}
        pairs = []
        for pair in query.split("&"):
            key, sep, _ = pair.partition("=")
            if unquote_plus(key).lower() in sensitive:
                pair = f"{key}={quote(REDACTED, safe='')}"
            pairs.append(pair)
        return "&".join(pairs)

    def detect_pii(self, text: str) -> PIIDetectionResult:
        """Detect PII in a text string without modifying it.

        Args:
            text: The text to analyze.

        Returns:
            Which pattern names matched and the total number of matches.
        """
        if not text or not isinstance(text, str):
            return PIIDetectionResult(has_pii=False, types=[], count=0)

        types: List[str] = []
        total = 0
        for name, pattern in self._patterns.items():
            try:
                matches = [m.group(0) for m in pattern.finditer(text)]
            except Exception:
                logger.warning("PII pattern %r failed during detection", name, exc_info=True)
                continue
            if name == CARD_PATTERN_NAME and self._config.validate_card_numbers:
                matches = [m for m in matches if is_valid_card_number(m)]
            if matches:
                types.append(name)
                total += len(matches)

        return PIIDetectionResult(has_pii=bool(types), types=types, count=total)

    @staticmethod
    def is_valid_card_number(candidate: str) -> bool:
        return is_valid_card_number(candidate)

    def mask_breadcrumb(self, breadcrumb: Mapping[str, Any]) -> Dict[str, Any]:
        """Mask the message and data of a breadcrumb."""
        result = dict(breadcrumb)
        if not self._config.enabled:
            return result

        if isinstance(result.get("message"), str):
            result["message"] = self.mask_text(result["message"])
        if isinstance(result.get("data"), Mapping):
            result["data"] = self.mask_object(result["data"])
        return result

    def mask_error(self, message: str, stack: Optional[str] = None) -> Dict[str, Optional[str]]:
        """Mask an error message and stack trace.

        Stack file paths also have usernames removed.
        """
        return {
            "message": self.mask_text(message),
            "stack": self.mask_text(sanitize_path(stack)) if stack else None,
        }

    def _replacer(self, name: str) -> Callable[["re.Match[str]"], str]:
        validate_cards = name == CARD_PATTERN_NAME and self._config.validate_card_numbers

        def replace(match: "re.Match[str]") -> str:
            value = match.group(0)
            if validate_cards and not is_valid_card_number(value):
                return value
            return self._apply_strategy(value)

        return replace

    def _apply_strategy(self, value: str) -> str:
        strategy = self._config.masking_strategy
        if strategy is MaskingStrategy.PARTIAL:
            # Too short to reveal anything safely
            if len(value) <= 4:
                return REDACTED
            return f"{value[0]}{MASK_CHAR * (len(value) - 2)}{value[-1]}"
        if strategy is MaskingStrategy.HASH:
            return hash_tag(value)
        return REDACTED

    def _is_sensitive(self, key: Any, sensitive: List[str]) -> bool:
        key_lower = str(key).lower()
        return any(name == key_lower or name in key_lower for name in sensitive)

    def _mask_value(self, value: Any, sensitive: List[str]) -> Any:
        if isinstance(value, str):
            return self.mask_text(value)
        if isinstance(value, Mapping):
            return {
                k: REDACTED if self._is_sensitive(k, sensitive) else self._mask_value(v, sensitive)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self._mask_value(item, sensitive) for item in value]
        if isinstance(value, tuple):
            return tuple(self._mask_value(item, sensitive) for item in value)
        return value


def scrub_exception_data(privacy: PrivacyManager, exception_data: Dict[str, Any]) -> None:
    """Scrub PII from Sentry exception data in place.

    Sanitizes stack trace file paths, masks local variables and masks the
    exception message.

    Args:
        privacy: The privacy engine to apply.
        exception_data: The Sentry exception data dictionary.
    """
    if "values" not in exception_data:
        return

    for value in exception_data["values"]:
        if "stacktrace" in value and "frames" in value["stacktrace"]:
            for frame in value["stacktrace"]["frames"]:
                if "filename" in frame:
                    frame["filename"] = sanitize_path(frame["filename"])
                if "abs_path" in frame:
                    frame["abs_path"] = sanitize_path(frame["abs_path"])
                if "vars" in frame and isinstance(frame["vars"], dict):
                    frame["vars"] = privacy.mask_object(frame["vars"])

        if "value" in value and isinstance(value["value"], str):
            value["value"] = privacy.mask_text(value["value"])


def create_before_send_filter(privacy: PrivacyManager):
    """Create a before_send filter function for Sentry.

    Args:
        privacy: The privacy engine to apply to every event.

    Returns:
        A function suitable for use as Sentry's before_send callback.
    """
    from sentry_sdk.types import Event, Hint

    def before_send(event: Event, hint: Hint) -> Optional[Event]:
        """Mask sensitive data in events before sending them."""
        if not privacy.enabled:
            return event

        if "exception" in event:
            scrub_exception_data(privacy, event["exception"])

        if isinstance(event.get("message"), str):
            event["message"] = privacy.mask_text(event["message"])

        if "breadcrumbs" in event and "values" in event["breadcrumbs"]:
            event["breadcrumbs"]["values"] = [
                privacy.mask_breadcrumb(crumb) for crumb in event["breadcrumbs"]["values"]
            ]

        for key in ("extra", "tags"):
            if isinstance(event.get(key), dict):
                event[key] = privacy.mask_object(event[key])

        # The trace context carries hex IDs that must reach the backend intact
        if isinstance(event.get("contexts"), dict):
            event["contexts"] = {
                name: context if name == "trace" else privacy.mask_object(context)
                for name, context in event["contexts"].items()
            }

        if "request" in event:
            request = event["request"]
            if isinstance(request.get("url"), str):
                request["url"] = privacy.scrub_url(request["url"])
            if isinstance(request.get("query_string"), str):
                request["query_string"] = privacy.scrub_query_string(request["query_string"])
            if "headers" in request:
                request["headers"] = privacy.mask_object(request["headers"])
            if "data" in request:
                request["data"] = privacy.mask_object(request["data"])

        return event

    return before_send


def create_before_breadcrumb_filter(privacy: PrivacyManager):
    """Create a before_breadcrumb filter function for Sentry."""

    def before_breadcrumb(crumb: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return privacy.mask_breadcrumb(crumb)

    return before_breadcrumb
