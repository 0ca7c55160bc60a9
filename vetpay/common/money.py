"""Money and metadata value objects.

Amounts are integer minor units (cents). Conversion to and from the decimal
major units some providers speak happens only through `Money.from_major` and
`Money.to_major`, at the provider boundary.
"""

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from vetpay.common.errors import ValidationError


CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
MINOR_UNITS_PER_MAJOR = 100


def normalize_currency(currency: str | None) -> str:
    """Upper-case a 3-letter ISO code or raise `ValidationError`."""

    if not isinstance(currency, str):
        raise ValidationError("currency must be a 3-letter code")
    code = currency.strip().upper()
    if not CURRENCY_RE.match(code):
        raise ValidationError(f"invalid currency: {currency!r}")
    return code


@dataclass(frozen=True)
class Money:
    """Non-negative integer amount of minor units in one currency."""

    amount: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValidationError("amount must be an integer number of minor units")
        if self.amount < 0:
            raise ValidationError("amount must not be negative")
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    @classmethod
    def positive(cls, amount: int, currency: str) -> "Money":
        money = cls(amount, currency)
        if money.amount < 1:
            raise ValidationError("amount must be at least 1")
        return money

    @classmethod
    def from_major(cls, value: Any, currency: str) -> "Money":
        """Convert a decimal major-unit amount (e.g. `125.5`) into minor units."""

        try:
            major = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"invalid amount: {value!r}") from exc
        if not major.is_finite():
            raise ValidationError(f"invalid amount: {value!r}")
        minor = (major * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(int(minor), currency)

    def to_major(self) -> Decimal:
        return (Decimal(self.amount) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class Metadata:
    """Free-form annotations; merging keeps prior keys unless overwritten."""

    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, values: dict[str, Any] | None) -> "Metadata":
        if values is None:
            return cls()
        if not isinstance(values, dict):
            raise ValidationError("metadata must be an object")
        return cls({str(key): value for key, value in values.items()})

    def merged(self, other: "Metadata | dict[str, Any] | None") -> "Metadata":
        updates = other.values if isinstance(other, Metadata) else Metadata.of(other).values
        if not updates:
            return self
        return Metadata({**self.values, **updates})

    def as_dict(self) -> dict[str, Any]:
        return dict(self.values)
