"""
Supplier record normalization.

Turns heterogeneous supplier payloads (field names, units, number formats)
into one canonical shape. Only a missing SKU is fatal for a record; every
other field degrades to None / 0 / empty when it cannot be parsed.
"""
from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_IMAGES = 10
MAX_NAME = 500
MAX_DESCRIPTION = 5000
BARCODE_LENGTHS = {8, 12, 13, 14}

BRAND_ALIASES: dict[str, tuple[str, ...]] = {
    "SAMSUNG": ("samsung", "самсунг"),
    "APPLE": ("apple", "эппл", "эпл"),
    "XIAOMI": ("xiaomi", "сяоми", "mi"),
    "LG": ("lg", "лджи"),
}

# kilograms per unit
WEIGHT_UNITS = {
    "kg": Decimal(1), "кг": Decimal(1),
    "g": Decimal("0.001"), "gram": Decimal("0.001"), "grams": Decimal("0.001"), "г": Decimal("0.001"),
    "mg": Decimal("0.000001"),
    "lb": Decimal("0.453592"), "pound": Decimal("0.453592"), "pounds": Decimal("0.453592"),
}

# cubic metres per unit
VOLUME_UNITS = {
    "m3": Decimal(1), "м3": Decimal(1),
    "l": Decimal("0.001"), "liter": Decimal("0.001"), "liters": Decimal("0.001"), "л": Decimal("0.001"),
    "cm3": Decimal("0.000001"), "cc": Decimal("0.000001"), "ml": Decimal("0.000001"), "мл": Decimal("0.000001"),
}

DIVISIBLE_UNITS = {"кг", "г", "л", "мл", "м", "см", "kg", "g", "l", "ml", "m", "cm"}

_url_adapter = TypeAdapter(AnyHttpUrl)
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


@dataclass
class NormalizedProduct:
    external_id: str
    sku: str
    name: str | None = None
    description: str | None = None
    brand: str | None = None
    category: str | None = None
    barcode: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    mrc_price: Decimal | None = None
    enforce_mrc: bool = False
    quantity: Decimal = Decimal(0)
    is_available: bool = False
    images: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    weight_kg: Decimal | None = None
    volume_m3: Decimal | None = None
    length: Decimal | None = None
    width: Decimal | None = None
    height: Decimal | None = None
    is_divisible: bool = False
    supplier_sku: str | None = None


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "да", "+"}
    return bool(value)


# ---------- field normalizers ----------
def normalize_sku(value: Any) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError("SKU is required")
    sku = _WS_RE.sub("-", str(value).strip().upper())
    sku = re.sub(r"[^\w\-]", "", sku)
    if not sku:
        raise ValidationError(f"SKU {value!r} has no usable characters")
    return sku


def normalize_name(value: Any) -> str | None:
    if not value:
        return None
    return _WS_RE.sub(" ", str(value).strip())[:MAX_NAME] or None


def normalize_description(value: Any) -> str | None:
    if not value:
        return None
    text = html.unescape(_TAG_RE.sub(" ", str(value)))
    return _WS_RE.sub(" ", text).strip()[:MAX_DESCRIPTION] or None


def normalize_brand(value: Any) -> str | None:
    if not value:
        return None
    brand = _WS_RE.sub(" ", str(value).strip())
    lowered = brand.lower()
    for canonical, aliases in BRAND_ALIASES.items():
        if lowered in aliases:
            return canonical
    return " ".join(word[:1].upper() + word[1:].lower() for word in brand.split(" "))


def normalize_category(value: Any) -> str | None:
    if not value:
        return None
    if isinstance(value, (list, tuple)):
        parts = [str(p).strip() for p in value if str(p).strip()]
    else:
        parts = [p.strip() for p in re.split(r"[>/]", str(value)) if p.strip()]
    return "/".join(parts) or None


def normalize_barcode(value: Any) -> str | None:
    if not value:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits if len(digits) in BARCODE_LENGTHS else None


def normalize_price(value: Any) -> Decimal | None:
    """
    Parse a price written with either decimal separator.

    "1 234,50", "1.234,50" and "1,234.50" all parse to 1234.50. The
    right-most separator is the decimal one when both appear.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        price = _decimal(value)
        return price if price is not None and price >= 0 else None

    cleaned = re.sub(r"[^\d.,\-]", "", str(value))
    if not cleaned or cleaned.startswith("-"):
        return None
    has_dot, has_comma = "." in cleaned, "," in cleaned
    if has_dot and has_comma:
        decimal_sep = "." if cleaned.rfind(".") > cleaned.rfind(",") else ","
        thousands = "," if decimal_sep == "." else "."
        cleaned = cleaned.replace(thousands, "").replace(decimal_sep, ".")
    elif has_comma:
        cleaned = cleaned.replace(",", ".") if cleaned.count(",") == 1 else cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    price = _decimal(cleaned)
    return price if price is not None and price >= 0 else None


def normalize_currency(value: Any) -> str | None:
    if not value:
        return None
    code = str(value).strip().upper()
    if code in {"РУБ", "RUR", "₽"}:
        return "RUB"
    return code if re.fullmatch(r"[A-Z]{3}", code) else None


def normalize_quantity(value: Any, *, divisible: bool = True) -> Decimal:
    qty = normalize_price(value) if isinstance(value, str) else _decimal(value)
    if qty is None or qty < 0:
        return Decimal(0)
    if not divisible:
        qty = Decimal(int(qty))
    return qty


def normalize_availability(raw: Mapping[str, Any], quantity: Decimal) -> bool:
    for key in ("is_available", "isAvailable", "available", "in_stock", "inStock"):
        if raw.get(key) not in (None, ""):
            return _bool(raw[key])
    return quantity > 0


def normalize_image_url(value: Any) -> str | None:
    if not value:
        return None
    url = str(value).strip()
    if url.startswith("//"):
        url = f"https:{url}"
    try:
        return str(_url_adapter.validate_python(url))
    except PydanticValidationError:
        return None


def normalize_images(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        items: list[Any] = [v.strip() for v in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]

    urls: list[str] = []
    for item in items:
        if isinstance(item, Mapping):
            item = item.get("url") or item.get("src") or item.get("image")
        url = normalize_image_url(item)
        if url and url not in urls:
            urls.append(url)
        if len(urls) == MAX_IMAGES:
            break
    return urls


def normalize_attribute_key(key: Any) -> str | None:
    if key is None:
        return None
    words = re.sub(r"[^\w\s]", "", str(key)).split()
    if not words:
        return None
    return words[0][:1].lower() + words[0][1:] + "".join(w[:1].upper() + w[1:] for w in words[1:])


def normalize_attributes(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    out: dict[str, Any] = {}
    for key, raw in value.items():
        norm_key = normalize_attribute_key(key)
        if not norm_key or raw is None:
            continue
        if isinstance(raw, (list, tuple)):
            out[norm_key] = [str(v).strip() for v in raw if str(v).strip()]
        elif isinstance(raw, Mapping):
            out[norm_key] = {str(k): str(v) for k, v in raw.items()}
        else:
            out[norm_key] = str(raw).strip()
    return out


def _with_unit(value: Any, units: Mapping[str, Decimal], default_unit: str) -> Decimal | None:
    if not value:
        return None
    if isinstance(value, Mapping):
        amount = _decimal(value.get("value"))
        unit = str(value.get("unit") or default_unit).strip().lower()
    else:
        match = re.fullmatch(r"\s*([\d.,]+)\s*([^\d\s]*)\s*", str(value))
        if not match:
            return None
        amount = normalize_price(match.group(1))
        unit = (match.group(2) or default_unit).lower()
    if amount is None or amount <= 0:
        return None
    factor = units.get(unit)
    if factor is None:
        logger.debug("Unknown unit %r, value kept as %s", unit, default_unit)
        factor = Decimal(1)
    return amount * factor


def normalize_weight(value: Any) -> Decimal | None:
    return _with_unit(value, WEIGHT_UNITS, "kg")


def normalize_volume(value: Any) -> Decimal | None:
    return _with_unit(value, VOLUME_UNITS, "m3")


def normalize_dimensions(value: Any) -> tuple[Decimal, Decimal, Decimal] | None:
    if not value:
        return None
    if isinstance(value, Mapping):
        parts = [
            _decimal(value.get("length") or value.get("l")),
            _decimal(value.get("width") or value.get("w")),
            _decimal(value.get("height") or value.get("h")),
        ]
    else:
        parts = [normalize_price(p) for p in re.split(r"[xх×*]", str(value), flags=re.IGNORECASE)]
    if len(parts) != 3 or any(p is None or p <= 0 for p in parts):
        return None
    return parts[0], parts[1], parts[2]


def normalize_divisibility(raw: Mapping[str, Any]) -> bool:
    for key in ("is_divisible", "isDivisible", "divisible"):
        if raw.get(key) not in (None, ""):
            return _bool(raw[key])
    unit = str(raw.get("unit") or raw.get("measure_unit") or "").strip().lower().rstrip(".")
    return unit in DIVISIBLE_UNITS


# ---------- record ----------
def external_id_of(raw: Mapping[str, Any]) -> str | None:
    """Supplier's own id of a raw record, before any other field is parsed."""
    external_id = _first(raw, "id", "external_id", "product_id")
    return str(external_id) if external_id is not None else None


def normalize_product(raw: Mapping[str, Any]) -> NormalizedProduct:
    """Canonical product from one supplier record. Raises ValidationError without a SKU."""
    sku = normalize_sku(_first(raw, "sku", "article", "vendor_code", "id"))
    external_id = external_id_of(raw)
    divisible = normalize_divisibility(raw)
    quantity = normalize_quantity(_first(raw, "quantity", "stock", "available_quantity"), divisible=divisible)

    dims = normalize_dimensions(_first(raw, "dimensions", "size"))
    if dims is None:
        length, width, height = (_decimal(raw.get(k)) for k in ("length", "width", "height"))
    else:
        length, width, height = dims

    return NormalizedProduct(
        external_id=external_id or sku,
        sku=sku,
        name=normalize_name(_first(raw, "name", "title")),
        description=normalize_description(raw.get("description")),
        brand=normalize_brand(_first(raw, "brand", "manufacturer")),
        category=normalize_category(_first(raw, "category", "category_path")),
        barcode=normalize_barcode(_first(raw, "barcode", "ean", "gtin")),
        price=normalize_price(_first(raw, "price", "cost_price")),
        currency=normalize_currency(raw.get("currency")),
        mrc_price=normalize_price(_first(raw, "mrc_price", "mrc", "min_price")),
        enforce_mrc=_bool(_first(raw, "enforce_mrc", "enforce_min_price") or False),
        quantity=quantity,
        is_available=normalize_availability(raw, quantity),
        images=normalize_images(_first(raw, "images", "photos", "image")),
        attributes=normalize_attributes(_first(raw, "attributes", "properties") or {}),
        weight_kg=normalize_weight(raw.get("weight")),
        volume_m3=normalize_volume(raw.get("volume")),
        length=length,
        width=width,
        height=height,
        is_divisible=divisible,
        supplier_sku=_str_or_none(_first(raw, "supplier_sku", "vendor_code", "article")),
    )
