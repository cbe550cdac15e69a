import pytest

from product_importer.services.row_schema import (
    Price,
    merge_mapped_row,
    parse_metadata,
    parse_money,
    split_list,
    validate_row,
)


def _codes(result, severity="error"):
    return [issue.code for issue in result.issues if issue.severity == severity]


def test_title_is_required_and_stops_validation():
    result = validate_row({"title": "  ", "currency_code": "nope"}, 4)
    assert not result.is_valid
    assert [(issue.field, issue.code) for issue in result.issues] == [("title", "required")]
    assert result.issues[0].row_index == 4


def test_minimal_row_defaults_to_published():
    result = validate_row({"title": "Linen Natural"}, 1)
    assert result.is_valid
    assert result.row.status == "published"
    assert result.row.product_prices == ()


def test_status_is_normalized_and_enumerated():
    assert validate_row({"title": "A", "status": " Draft "}, 1).row.status == "draft"
    result = validate_row({"title": "A", "status": "archived"}, 1)
    assert not result.is_valid
    assert _codes(result) == ["invalid_status"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1,234.50", 123450),
        ("1234.50", 123450),
        (12, 1200),
        (19.99, 1999),
        ("0.125", 13),
        ("abc", None),
        ("", None),
    ],
)
def test_parse_money(raw, expected):
    assert parse_money(raw) == expected


def test_thousands_separator_matches_plain_amount():
    separated = validate_row({"title": "A", "currency_code": "USD", "retail_price": "1,234.50"}, 1)
    plain = validate_row({"title": "A", "currency_code": "usd", "retail_price": "1234.50"}, 1)
    assert separated.row.product_prices == plain.row.product_prices == (Price(123450, "usd"),)


def test_unparsable_price_is_dropped_with_warning():
    result = validate_row({"title": "A", "currency_code": "usd", "retail_price": "twelve"}, 1)
    assert result.is_valid
    assert result.row.product_prices == ()
    assert _codes(result, "warning") == ["unparsable_amount"]


def test_currency_code_must_be_three_letters():
    result = validate_row({"title": "A", "currency_code": "dollars"}, 1)
    assert _codes(result) == ["invalid_currency"]


def test_currency_price_columns_feed_product_and_variant_prices():
    result = validate_row(
        {"title": "A", "price_EUR": "10", "variant_price_gbp": "8.5", "currency_code": "usd", "variant_price": "9"},
        1,
    )
    assert set(result.row.product_prices) == {Price(1000, "eur")}
    assert set(result.row.variant_prices) == {Price(900, "usd"), Price(850, "gbp")}


@pytest.mark.parametrize(
    ("token", "expected"),
    [("TRUE", True), ("yes", True), ("Y", True), ("1", True), ("no", False), ("0", False), (0, False), (2, True)],
)
def test_boolean_tokens(token, expected):
    result = validate_row({"title": "A", "manage_inventory": token}, 1)
    assert result.row.manage_inventory is expected


def test_unknown_boolean_token_is_an_error():
    result = validate_row({"title": "A", "allow_backorder": "maybe"}, 1)
    assert _codes(result) == ["invalid_boolean"]


def test_min_cut_multiple_of_min_increment():
    assert validate_row({"title": "A", "min_increment": "0.25", "min_cut": "1"}, 1).is_valid

    result = validate_row({"title": "A", "min_increment": "0.3", "min_cut": "1"}, 1)
    assert not result.is_valid
    assert [(issue.field, issue.code) for issue in result.errors] == [("min_cut", "min_cut_not_multiple")]


def test_numeric_bounds():
    result = validate_row(
        {"title": "A", "min_increment": "0", "weight": "-1", "inventory_quantity": "2.5"},
        1,
    )
    assert set(_codes(result)) == {"not_positive", "negative_value", "not_integer"}


def test_enumerated_inventory_fields_land_in_metadata():
    result = validate_row(
        {"title": "A", "uom": "Yard", "backorder_policy": "allow_any", "reorder_point": "5"},
        1,
    )
    assert result.row.metadata["inventory"] == {
        "uom": "yard",
        "reorder_point": 5.0,
        "backorder_policy": "allow_any",
    }
    assert _codes(validate_row({"title": "A", "uom": "furlong"}, 1)) == ["invalid_enum"]


def test_thumbnail_must_be_absolute_url():
    result = validate_row({"title": "A", "thumbnail_url": "/img/a.png"}, 1)
    assert _codes(result) == ["invalid_url"]


def test_invalid_image_urls_are_dropped_unless_validation_skipped():
    raw = {"title": "A", "image_urls": "https://cdn.test/a.jpg, ftp://x/b.jpg, https://cdn.test/a.jpg"}

    checked = validate_row(raw, 1)
    assert checked.row.image_urls == ("https://cdn.test/a.jpg",)
    assert _codes(checked, "warning") == ["invalid_url"]

    unchecked = validate_row(raw, 1, validate_images=False)
    assert unchecked.row.image_urls == ("https://cdn.test/a.jpg", "ftp://x/b.jpg")


def test_list_fields_split_and_deduplicate():
    result = validate_row(
        {
            "title": "A",
            "tags": "linen, natural;linen,,",
            "sales_channel_handles": "web; store, outlet",
        },
        1,
    )
    assert result.row.tags == ("linen", "natural")
    assert result.row.sales_channel_handles == ("web", "store, outlet")
    assert split_list(None) == ()


def test_metadata_shorthand_wins_over_json():
    merged, warning = parse_metadata('{"origin": "IT", "care": "dry"}', "care=wash;weave=plain")
    assert merged == {"origin": "IT", "care": "wash", "weave": "plain"}
    assert warning is None


def test_invalid_metadata_json_is_a_warning():
    result = validate_row({"title": "A", "metadata_json": "{broken", "meta": "k=v"}, 1)
    assert result.is_valid
    assert result.row.metadata == {"k": "v"}
    assert _codes(result, "warning") == ["invalid_metadata"]


def test_options_and_numeric_sku():
    result = validate_row(
        {"title": "A", "sku": 1042.0, "option_1_title": "Color", "option_1_value": "Blue"},
        1,
    )
    assert result.row.sku == "1042"
    assert result.row.option_titles == ("Color",)
    assert result.row.option_values == ("Blue",)


def test_merge_mapped_row_last_write_wins():
    headers = ["Name", "Product Title", "Ignored"]
    raw = merge_mapped_row(headers, ["first", "second", "x"], {"Name": "title", "Product Title": "title"})
    assert raw == {"title": "second"}


def test_merge_mapped_row_tolerates_short_rows():
    raw = merge_mapped_row(["title", "sku"], ["Only title"], {"title": "title", "sku": "sku"})
    assert raw == {"title": "Only title", "sku": None}
