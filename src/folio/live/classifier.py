"""Classification of free-text broker messages into ignorable/warning/rejection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
import re

from .contracts import OrderRejection, OrderWarning, RejectionKind, WarningKind

# Market data farm notices, delayed data and read-only API notices.
INFORMATIONAL_CODES = frozenset({2104, 2106, 2107, 2108, 2119, 2158, 2176, 10167, 10168})
# Duplicate-ticker and subscription noise that never concerns an order.
IGNORED_CODES = frozenset({300, 354})

_MARKUP_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)


def is_informational_code(code: int | None) -> bool:
    """Return True when the broker code is never an error, whatever the text."""
    if code is None:
        return False
    return code in INFORMATIONAL_CODES or code in IGNORED_CODES


class MessageCategory(StrEnum):
    IGNORABLE = "ignorable"
    WARNING = "warning"
    REJECTION = "rejection"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True, slots=True)
class Classification:
    category: MessageCategory
    warning: OrderWarning | None = None
    rejection: OrderRejection | None = None

    @property
    def is_fatal(self) -> bool:
        return self.category == MessageCategory.UNCLASSIFIED


IGNORABLE = Classification(MessageCategory.IGNORABLE)
UNCLASSIFIED = Classification(MessageCategory.UNCLASSIFIED)


@dataclass(frozen=True, slots=True)
class MessagePattern:
    """One locale-tagged regex; group 1, when present, is the payload."""

    locale: str
    regex: re.Pattern[str]
    kind: str | None = None

    def search(self, message: str) -> re.Match[str] | None:
        return self.regex.search(message)


def _p(locale: str, pattern: str, kind: str | None = None) -> MessagePattern:
    return MessagePattern(locale=locale, regex=re.compile(pattern), kind=kind)


@dataclass(frozen=True, slots=True)
class PatternTable:
    ignorable: tuple[MessagePattern, ...] = ()
    warnings: tuple[MessagePattern, ...] = ()
    rejections: tuple[MessagePattern, ...] = ()

    @property
    def locales(self) -> set[str]:
        rows = (*self.ignorable, *self.warnings, *self.rejections)
        return {row.locale for row in rows}

    def for_locales(self, locales: set[str] | frozenset[str]) -> "PatternTable":
        return PatternTable(
            ignorable=tuple(p for p in self.ignorable if p.locale in locales),
            warnings=tuple(p for p in self.warnings if p.locale in locales),
            rejections=tuple(p for p in self.rejections if p.locale in locales),
        )


DEFAULT_PATTERNS = PatternTable(
    ignorable=(
        _p("en", re.escape("Order TIF was set to DAY based on order preset")),
    ),
    warnings=(
        _p("es", r"no se enviará al mercado hasta el (\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})", WarningKind.MARKET_CLOSED),
        _p("en", r"will not be sent to the market until (\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})", WarningKind.MARKET_CLOSED),
        _p("en", r"order will not be active until", WarningKind.MARKET_CLOSED),
        _p("en", r"order is being held", WarningKind.ORDER_HELD),
    ),
    rejections=(
        _p("es", r"Orden rechazada\. Motivo:(.+)", RejectionKind.REJECTED),
        _p("en", r"Order rejected\. Reason:(.+)", RejectionKind.REJECTED),
        _p("es", r"Efectivo liquidado disponible", RejectionKind.INSUFFICIENT_FUNDS),
        _p("en", r"Insufficient funds", RejectionKind.INSUFFICIENT_FUNDS),
    ),
)


def _clean_reason(text: str) -> str:
    return _MARKUP_BREAK.sub(" ", text).strip()


@dataclass(slots=True)
class MessageClassifier:
    """
    Pure message classifier over a locale-tagged pattern table.

    Order of checks: informational code, ignorable text, rejection,
    warning. Anything left is unclassified and must be treated as fatal.
    """

    patterns: PatternTable = field(default_factory=lambda: DEFAULT_PATTERNS)
    locales: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.locales is not None:
            self.patterns = self.patterns.for_locales(self.locales)

    def classify(self, message: str | None, code: int | None = None) -> Classification:
        if is_informational_code(code):
            return IGNORABLE
        if not message:
            return UNCLASSIFIED
        if any(p.search(message) for p in self.patterns.ignorable):
            return IGNORABLE
        rejection = self.extract_rejection(message)
        if rejection is not None:
            return Classification(MessageCategory.REJECTION, rejection=rejection)
        warning = self.extract_warning(message)
        if warning is not None:
            return Classification(MessageCategory.WARNING, warning=warning)
        return UNCLASSIFIED

    def extract_rejection(self, message: str) -> OrderRejection | None:
        for pattern in self.patterns.rejections:
            match = pattern.search(message)
            if match is None:
                continue
            captured = match.group(1) if match.re.groups else None
            return OrderRejection(
                kind=RejectionKind(pattern.kind),
                reason=_clean_reason(captured or message),
                message=message,
            )
        return None

    def extract_warning(self, message: str) -> OrderWarning | None:
        for pattern in self.patterns.warnings:
            match = pattern.search(message)
            if match is None:
                continue
            until = match.group(1) if match.re.groups else None
            return OrderWarning(kind=WarningKind(pattern.kind), message=message, until=until)
        return None


_DEFAULT_CLASSIFIER = MessageClassifier()


def classify_message(message: str | None, code: int | None = None) -> Classification:
    """Classify with the default (all locales) pattern table."""
    return _DEFAULT_CLASSIFIER.classify(message, code)


_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def humanize_warning(warning: OrderWarning | None, now: datetime | None = None) -> str | None:
    """Short user-facing text for an order warning."""
    if warning is None:
        return None
    if warning.kind == WarningKind.ORDER_HELD:
        return "Order held"
    if warning.kind != WarningKind.MARKET_CLOSED:
        return None
    if not warning.until:
        return "Executes when the market opens"
    try:
        when = datetime.strptime(warning.until, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return "Executes when the market opens"
    today = (now or datetime.now()).date()
    clock = f"{when.hour}:{when.minute:02d}"
    if when.date() == today:
        return f"Executes today {clock} (market closed)"
    if when.date() == today + timedelta(days=1):
        return f"Executes tomorrow {clock} (market closed)"
    return f"Executes {_DAY_NAMES[when.weekday()]} {clock}"
