"""Validate and normalize one mapped spreadsheet row into a ``ProductRow``.

Each field is checked by a short list of rules. A rule is a pure function
``(value) -> Ok | Invalid | Dropped``; ``chain`` feeds the output of one rule
into the next and stops at the first failure. After the per-field pass a list
of cross-field checks runs over the parsed values.

Nothing in this module performs I/O.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Sequence
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

RawRow = dict[str, Any]

STATUSES = ("published", "draft")
UNITS_OF_MEASURE = ("yard", "meter", "metre", "yd", "m")
BACKORDER_POLICIES = ("deny", "allow_date", "allow_any")
TRUTHY_TOKENS = ("true", "1", "yes", "y")
FALSY_TOKENS = ("false", "0", "no", "n")
MULTIPLE_TOLERANCE = 1e-8
MAX_OPTIONS = 3

PRODUCT_PRICE_COLUMN = re.compile(r"^price_([a-z]{3})$", re.IGNORECASE)
VARIANT_PRICE_COLUMN = re.compile(r"^variant_price_([a-z]{3})$", re.IGNORECASE)
CURRENCY_CODE = re.compile(r"^[a-z]{3}$")


@dataclass(frozen=True)
class ValidationIssue:
    row_index: int
    message: str
    field: str | None = None
    severity: str = "error"
    code: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "code": self.code,
        }


@dataclass(frozen=True)
class Price:
    amount: int
    currency_code: str

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "currency_code": self.currency_code}


@dataclass(frozen=True)
class ProductRow:
    """Canonical, fully validated product row."""

    row_index: int
    title: str
    status: str = "published"
    handle: str | None = None
    external_id: str | None = None
    description: str | None = None

    currency_code: str | None = None
    product_prices: tuple[Price, ...] = ()
    variant_prices: tuple[Price, ...] = ()
    swatch_price: int | None = None

    option_titles: tuple[str, ...] = ()
    sku: str | None = None
    option_values: tuple[str, ...] = ()

    thumbnail_url: str | None = None
    image_urls: tuple[str, ...] = ()

    manage_inventory: bool | None = None
    allow_backorder: bool | None = None
    is_discountable: bool | None = None
    is_giftcard: bool | None = None
    inventory_quantity: int | None = None
    weight: float | None = None
    length: float | None = None
    width: float | None = None
    height: float | None = None

    uom: str | None = None
    min_increment: float | None = None
    min_cut: float | None = None
    reorder_point: float | None = None
    safety_stock: float | None = None
    low_stock_threshold: float | None = None
    backorder_policy: str | None = None

    tags: tuple[str, ...] = ()
    collection_handles: tuple[str, ...] = ()
    category_handles: tuple[str, ...] = ()
    sales_channel_handles: tuple[str, ...] = ()

    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RowValidation:
    row_index: int
    row: ProductRow | None
    issues: list[ValidationIssue]

    @property
    def is_valid(self) -> bool:
        return self.row is not None

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.is_error]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if not issue.is_error]


# ---------------------------------------------------------------------------
# Rule primitives
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Invalid:
    message: str
    code: str = "invalid_value"


@dataclass(frozen=True)
class Dropped:
    """Value could not be used but the row stays valid (warning only)."""

    message: str
    code: str = "value_dropped"


RuleResult = Ok | Invalid | Dropped
Rule = Callable[[Any], RuleResult]


def chain(*rules: Rule) -> Rule:
    def run(value: Any) -> RuleResult:
        result: RuleResult = Ok(value)
        for rule in rules:
            result = rule(result.value)
            if not isinstance(result, Ok):
                return result
        return result

    return run


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def text(value: Any) -> RuleResult:
    if isinstance(value, bool):
        return Ok(str(value).lower())
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet cells hand back 1042.0 for an SKU typed as 1042
        return Ok(str(int(value)))
    if isinstance(value, (str, int, float, Decimal)):
        return Ok(str(value).strip())
    return Invalid(f"expected text, got {type(value).__name__}", "invalid_type")


def lowercase(value: str) -> RuleResult:
    return Ok(value.lower())


def one_of(choices: Sequence[str], field_name: str) -> Rule:
    def rule(value: str) -> RuleResult:
        if value in choices:
            return Ok(value)
        return Invalid(f"{field_name} must be one of {'|'.join(choices)}", "invalid_enum")

    return rule


def matches(pattern: re.Pattern, message: str, code: str) -> Rule:
    def rule(value: str) -> RuleResult:
        if pattern.match(value):
            return Ok(value)
        return Invalid(message, code)

    return rule


def number(value: Any) -> RuleResult:
    if isinstance(value, bool):
        return Invalid("expected a number", "invalid_number")
    if isinstance(value, (int, float, Decimal)):
        return Ok(float(value))
    try:
        return Ok(float(str(value).strip()))
    except ValueError:
        return Invalid(f"'{value}' is not a number", "invalid_number")


def positive(value: float) -> RuleResult:
    if value > 0:
        return Ok(value)
    return Invalid("must be greater than 0", "not_positive")


def non_negative(value: float) -> RuleResult:
    if value >= 0:
        return Ok(value)
    return Invalid("must be 0 or greater", "negative_value")


def integer(value: float) -> RuleResult:
    if float(value).is_integer():
        return Ok(int(value))
    return Invalid("must be a whole number", "not_integer")


def boolean_like(value: Any) -> RuleResult:
    if isinstance(value, bool):
        return Ok(value)
    if isinstance(value, (int, float)):
        return Ok(value != 0)
    token = str(value).strip().lower()
    if token in TRUTHY_TOKENS:
        return Ok(True)
    if token in FALSY_TOKENS:
        return Ok(False)
    return Invalid(
        f"'{value}' is not a boolean (use true/false/1/0/yes/no/y/n)", "invalid_boolean"
    )


def parse_money(value: Any) -> int | None:
    """Convert a decimal amount to integer minor units, or None when unparsable."""
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(repr(value))
    else:
        cleaned = str(value).replace(",", "").strip()
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money(value: Any) -> RuleResult:
    cents = parse_money(value)
    if cents is None:
        return Dropped(f"'{value}' is not a valid amount and was ignored", "unparsable_amount")
    return Ok(cents)


def http_url(value: str) -> RuleResult:
    parsed = urlparse(value)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return Ok(value)
    return Invalid(f"'{value}' is not an absolute http(s) URL", "invalid_url")


def split_list(value: Any, separators: str = ",;") -> tuple[str, ...]:
    """Split a delimited cell, trimming entries and dropping blanks and repeats."""
    if is_blank(value):
        return ()
    if isinstance(value, (list, tuple)):
        parts: Iterable[Any] = value
    else:
        parts = re.split(f"[{re.escape(separators)}]", str(value))
    seen: dict[str, None] = {}
    for part in parts:
        entry = str(part).strip()
        if entry:
            seen.setdefault(entry, None)
    return tuple(seen)


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

TEXT = text
ENUM_TEXT = chain(text, lowercase)

FIELD_RULES: dict[str, Rule] = {
    "handle": TEXT,
    "external_id": TEXT,
    "description": TEXT,
    "sku": TEXT,
    "currency_code": chain(
        text,
        lowercase,
        matches(CURRENCY_CODE, "currency_code must be a 3-letter currency code", "invalid_currency"),
    ),
    "retail_price": money,
    "swatch_price": money,
    "variant_price": money,
    "thumbnail_url": chain(text, http_url),
    "manage_inventory": boolean_like,
    "allow_backorder": boolean_like,
    "is_discountable": boolean_like,
    "is_giftcard": boolean_like,
    "inventory_quantity": chain(number, non_negative, integer),
    "weight": chain(number, non_negative),
    "length": chain(number, non_negative),
    "width": chain(number, non_negative),
    "height": chain(number, non_negative),
    "uom": chain(text, lowercase, one_of(UNITS_OF_MEASURE, "uom")),
    "min_increment": chain(number, positive),
    "min_cut": chain(number, positive),
    "reorder_point": chain(number, non_negative),
    "safety_stock": chain(number, non_negative),
    "low_stock_threshold": chain(number, non_negative),
    "backorder_policy": chain(text, lowercase, one_of(BACKORDER_POLICIES, "backorder_policy")),
}

for _position in range(1, MAX_OPTIONS + 1):
    FIELD_RULES[f"option_{_position}_title"] = TEXT
    FIELD_RULES[f"option_{_position}_value"] = TEXT

INVENTORY_POLICY_FIELDS = (
    "uom",
    "min_increment",
    "min_cut",
    "reorder_point",
    "safety_stock",
    "low_stock_threshold",
    "backorder_policy",
)


def check_min_cut_multiple(values: dict[str, Any]) -> list[tuple[str, str, str]]:
    min_increment = values.get("min_increment")
    min_cut = values.get("min_cut")
    if min_increment is None or min_cut is None:
        return []
    if min_increment <= 0:
        return [("min_increment", "min_increment must be > 0", "not_positive")]
    quotient = min_cut / min_increment
    if abs(quotient - round(quotient)) >= MULTIPLE_TOLERANCE:
        return [("min_cut", "min_cut must be a multiple of min_increment", "min_cut_not_multiple")]
    return []


CrossFieldCheck = Callable[[dict[str, Any]], list[tuple[str, str, str]]]

CROSS_FIELD_CHECKS: list[CrossFieldCheck] = [check_min_cut_multiple]


# ---------------------------------------------------------------------------
# Row assembly
# ---------------------------------------------------------------------------


def merge_mapped_row(
    headers: Sequence[str],
    cells: Sequence[Any],
    mapping: dict[str, str],
) -> RawRow:
    """Build a row object keyed by canonical field.

    Headers absent from ``mapping`` are dropped. When two headers map to the
    same field the later column wins.
    """
    raw: RawRow = {}
    for position, header in enumerate(headers):
        target = mapping.get(header)
        if not target:
            continue
        raw[target] = cells[position] if position < len(cells) else None
    return raw


def parse_metadata(
    metadata_json: Any, shorthand: Any
) -> tuple[dict[str, Any], str | None]:
    """Merge a JSON blob with ``key=value;key=value`` pairs (pairs win).

    Returns the merged dict and a warning message when the JSON was unusable.
    """
    merged: dict[str, Any] = {}
    warning = None
    if not is_blank(metadata_json):
        if isinstance(metadata_json, dict):
            merged.update(metadata_json)
        else:
            try:
                parsed = json.loads(str(metadata_json))
            except (TypeError, ValueError):
                parsed = None
            if isinstance(parsed, dict):
                merged.update(parsed)
            else:
                warning = "metadata_json is not a JSON object and was ignored"
    if not is_blank(shorthand):
        for pair in str(shorthand).split(";"):
            key, sep, value = pair.partition("=")
            if sep and key.strip():
                merged[key.strip()] = value.strip()
    return merged, warning


def validate_row(
    raw: RawRow,
    row_index: int,
    *,
    validate_images: bool = True,
) -> RowValidation:
    """Turn a mapped raw row into a ``ProductRow`` or a list of issues."""
    issues: list[ValidationIssue] = []

    def error(field_name: str | None, message: str, code: str) -> None:
        issues.append(ValidationIssue(row_index, message, field_name, "error", code))

    def warn(field_name: str | None, message: str, code: str) -> None:
        issues.append(ValidationIssue(row_index, message, field_name, "warning", code))

    title_value = raw.get("title")
    title_result = text(title_value) if not is_blank(title_value) else None
    if not isinstance(title_result, Ok) or not title_result.value:
        error("title", "title is required", "required")
        return RowValidation(row_index, None, issues)

    values: dict[str, Any] = {"title": title_result.value}

    status_value = raw.get("status")
    if is_blank(status_value):
        values["status"] = "published"
    else:
        result = chain(text, lowercase, one_of(STATUSES, "status"))(status_value)
        if isinstance(result, Ok):
            values["status"] = result.value
        else:
            error("status", "status must be published or draft", "invalid_status")

    for field_name, rule in FIELD_RULES.items():
        value = raw.get(field_name)
        if is_blank(value):
            continue
        result = rule(value)
        if isinstance(result, Ok):
            values[field_name] = result.value
        elif isinstance(result, Dropped):
            warn(field_name, result.message, result.code)
        else:
            error(field_name, f"{field_name}: {result.message}", result.code)

    product_prices: dict[str, int] = {}
    variant_prices: dict[str, int] = {}
    currency = values.get("currency_code")
    if currency:
        if values.get("retail_price") is not None:
            product_prices[currency] = values["retail_price"]
        if values.get("variant_price") is not None:
            variant_prices[currency] = values["variant_price"]
    elif values.get("retail_price") is not None or values.get("variant_price") is not None:
        warn("currency_code", "prices without currency_code were ignored", "missing_currency")

    for column, value in raw.items():
        target = None
        product_match = PRODUCT_PRICE_COLUMN.match(column)
        variant_match = VARIANT_PRICE_COLUMN.match(column)
        if product_match:
            target, code = product_prices, product_match.group(1).lower()
        elif variant_match:
            target, code = variant_prices, variant_match.group(1).lower()
        if target is None or is_blank(value):
            continue
        result = money(value)
        if isinstance(result, Ok):
            target[code] = result.value
        else:
            warn(column, result.message, result.code)

    failed_fields = {issue.field for issue in issues if issue.is_error}
    parsed_for_checks = {
        key: value for key, value in values.items() if key not in failed_fields
    }
    for check in CROSS_FIELD_CHECKS:
        for field_name, message, code in check(parsed_for_checks):
            error(field_name, message, code)

    image_urls: list[str] = []
    for url in split_list(raw.get("image_urls"), ","):
        if validate_images and not isinstance(http_url(url), Ok):
            warn("image_urls", f"'{url}' is not an absolute http(s) URL and was skipped", "invalid_url")
            continue
        image_urls.append(url)

    metadata, metadata_warning = parse_metadata(raw.get("metadata_json"), raw.get("meta"))
    if metadata_warning:
        warn("metadata_json", metadata_warning, "invalid_metadata")

    if any(issue.is_error for issue in issues):
        return RowValidation(row_index, None, issues)

    inventory = {
        name: values[name] for name in INVENTORY_POLICY_FIELDS if values.get(name) is not None
    }
    if inventory:
        metadata = {**metadata, "inventory": inventory}

    option_titles = tuple(
        values[f"option_{n}_title"] for n in range(1, MAX_OPTIONS + 1) if values.get(f"option_{n}_title")
    )
    option_values = tuple(
        values[f"option_{n}_value"] for n in range(1, MAX_OPTIONS + 1) if values.get(f"option_{n}_value")
    )

    row = ProductRow(
        row_index=row_index,
        title=values["title"],
        status=values["status"],
        handle=values.get("handle") or None,
        external_id=values.get("external_id") or None,
        description=values.get("description") or None,
        currency_code=currency,
        product_prices=tuple(Price(amount, code) for code, amount in product_prices.items()),
        variant_prices=tuple(Price(amount, code) for code, amount in variant_prices.items()),
        swatch_price=values.get("swatch_price"),
        option_titles=option_titles,
        sku=values.get("sku") or None,
        option_values=option_values,
        thumbnail_url=values.get("thumbnail_url"),
        image_urls=tuple(image_urls),
        manage_inventory=values.get("manage_inventory"),
        allow_backorder=values.get("allow_backorder"),
        is_discountable=values.get("is_discountable"),
        is_giftcard=values.get("is_giftcard"),
        inventory_quantity=values.get("inventory_quantity"),
        weight=values.get("weight"),
        length=values.get("length"),
        width=values.get("width"),
        height=values.get("height"),
        uom=values.get("uom"),
        min_increment=values.get("min_increment"),
        min_cut=values.get("min_cut"),
        reorder_point=values.get("reorder_point"),
        safety_stock=values.get("safety_stock"),
        low_stock_threshold=values.get("low_stock_threshold"),
        backorder_policy=values.get("backorder_policy"),
        tags=split_list(raw.get("tags")),
        collection_handles=split_list(raw.get("collection_handles")),
        category_handles=split_list(raw.get("category_handles")),
        sales_channel_handles=split_list(raw.get("sales_channel_handles"), ";"),
        metadata=metadata,
    )
    return RowValidation(row_index, row, issues)
