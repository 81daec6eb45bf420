from decimal import Decimal

import pytest

from backend.app.core.errors import ValidationError
from backend.services.normalization import (
    normalize_attributes,
    normalize_barcode,
    normalize_brand,
    normalize_category,
    normalize_currency,
    normalize_description,
    normalize_dimensions,
    normalize_images,
    normalize_price,
    normalize_product,
    normalize_quantity,
    normalize_sku,
    normalize_volume,
    normalize_weight,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1 234,50", Decimal("1234.50")),
        ("1.234,50", Decimal("1234.50")),
        ("1,234.50", Decimal("1234.50")),
        ("99,9", Decimal("99.9")),
        ("1,234,567", Decimal("1234567")),
        ("2.500.000", Decimal("2500000")),
        ("$12.00", Decimal("12.00")),
        (15, Decimal(15)),
        (None, None),
        ("n/a", None),
        ("-5", None),
    ],
)
def test_normalize_price(raw, expected):
    assert normalize_price(raw) == expected


def test_normalize_sku():
    assert normalize_sku("  ab 12/x ") == "AB-12X"
    with pytest.raises(ValidationError):
        normalize_sku("   ")
    with pytest.raises(ValidationError):
        normalize_sku(None)


def test_normalize_brand_aliases_and_title_case():
    assert normalize_brand("самсунг") == "SAMSUNG"
    assert normalize_brand("  hewlett   PACKARD ") == "Hewlett Packard"
    assert normalize_brand("") is None


def test_normalize_currency():
    assert normalize_currency("руб") == "RUB"
    assert normalize_currency(" usd ") == "USD"
    assert normalize_currency("dollars") is None


def test_normalize_units():
    assert normalize_weight("500 g") == Decimal("0.500")
    assert normalize_weight({"value": "2", "unit": "lb"}) == Decimal("0.907184")
    assert normalize_weight("1,5") == Decimal("1.5")
    assert normalize_volume("2 l") == Decimal("0.002")
    assert normalize_dimensions("10x20x30") == (Decimal(10), Decimal(20), Decimal(30))
    assert normalize_dimensions("10x20") is None


def test_normalize_text_fields():
    assert normalize_description("<p>Fast &amp; <b>quiet</b></p>") == "Fast & quiet"
    assert normalize_category("Electronics > Phones > ") == "Electronics/Phones"
    assert normalize_category(["Home", " Kitchen "]) == "Home/Kitchen"
    assert normalize_barcode("4 600000 000001") == "4600000000001"
    assert normalize_barcode("12345") is None


def test_normalize_images_dedupes_and_fixes_scheme():
    images = normalize_images(["//cdn.test/a.jpg", {"url": "https://cdn.test/a.jpg"}, "not a url", "https://cdn.test/b.jpg"])

    assert images == ["https://cdn.test/a.jpg", "https://cdn.test/b.jpg"]


def test_normalize_attributes_camel_cases_keys():
    assert normalize_attributes({"Screen size": "6.1", "colors": ["red", " "], "empty": None}) == {
        "screenSize": "6.1",
        "colors": ["red"],
    }
    assert normalize_attributes("junk") == {}


def test_normalize_quantity():
    assert normalize_quantity("12,5", divisible=False) == Decimal(12)
    assert normalize_quantity("-3") == Decimal(0)
    assert normalize_quantity(None) == Decimal(0)


def test_normalize_product_full_record():
    raw = {
        "id": 501,
        "article": "tv-55 pro",
        "title": "  Smart   TV 55 ",
        "brand": "lg",
        "price": "45 990,00",
        "currency": "RUR",
        "stock": "7",
        "weight": "12 kg",
        "dimensions": {"length": 120, "width": 10, "height": 75},
        "photos": "https://cdn.test/1.jpg, https://cdn.test/2.jpg",
        "properties": {"Screen size": "55"},
    }

    item = normalize_product(raw)

    assert item.external_id == "501"
    assert item.sku == "TV-55-PRO"
    assert item.name == "Smart TV 55"
    assert item.brand == "LG"
    assert item.price == Decimal("45990.00")
    assert item.currency == "RUB"
    assert item.quantity == Decimal(7)
    assert item.is_available is True
    assert item.weight_kg == Decimal(12)
    assert (item.length, item.width, item.height) == (Decimal(120), Decimal(10), Decimal(75))
    assert item.images == ["https://cdn.test/1.jpg", "https://cdn.test/2.jpg"]
    assert item.attributes == {"screenSize": "55"}
    assert item.is_divisible is False
    assert item.supplier_sku == "tv-55 pro"


def test_normalize_product_degrades_gracefully():
    item = normalize_product({"sku": "X1", "price": "call us", "is_available": "no", "unit": "кг", "quantity": "2,5"})

    assert item.price is None
    assert item.is_available is False
    assert item.is_divisible is True
    assert item.quantity == Decimal("2.5")
    assert item.external_id == "X1"


def test_normalize_product_requires_sku():
    with pytest.raises(ValidationError):
        normalize_product({"name": "No identity"})
