"""Turn a validated ``ProductRow`` into a catalog create/update payload."""

from __future__ import annotations

import re
from typing import Any, Sequence

from product_importer.services.row_schema import Price, ProductRow

VARIANT_STRATEGIES = ("explicit", "default_type")
_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    return _SLUG_INVALID.sub("-", value.lower()).strip("-")


def _prices(prices: Sequence[Price]) -> list[dict[str, Any]]:
    return [price.to_dict() for price in prices]


def _variant(
    row: ProductRow,
    *,
    sku: str | None,
    options: Sequence[str],
    prices: list[dict[str, Any]],
    title: str | None = None,
) -> dict[str, Any]:
    return {
        "sku": sku,
        "title": title or (" / ".join(options) if options else row.title),
        "options": list(options),
        "prices": prices,
        "manage_inventory": row.manage_inventory,
        "allow_backorder": row.allow_backorder,
        "inventory_quantity": row.inventory_quantity,
    }


def build_product_payload(
    row: ProductRow,
    *,
    variant_strategy: str = "explicit",
    default_sales_channels: Sequence[str] = (),
) -> dict[str, Any]:
    """Build the dict consumed by ``CatalogService.create_product``/``update_product``.

    Variants follow the row: an explicit SKU, option values or variant prices
    produce one variant. A row with only product prices gets a single default
    variant, or a Swatch/Fabric pair when ``variant_strategy`` is
    ``default_type``.
    """
    handle = row.handle or slugify(row.title)
    product_prices = _prices(row.product_prices)
    variant_prices = _prices(row.variant_prices)

    options = [{"title": title} for title in row.option_titles]
    variants: list[dict[str, Any]] = []

    if row.sku or row.option_values or variant_prices:
        variants.append(
            _variant(
                row,
                sku=row.sku,
                options=row.option_values,
                prices=variant_prices or product_prices,
            )
        )
    elif product_prices and variant_strategy == "default_type":
        if not options:
            options = [{"title": "Type"}]
        base_sku = row.handle or row.external_id
        swatch_prices = product_prices
        if row.swatch_price is not None and row.currency_code:
            swatch_prices = [{"amount": row.swatch_price, "currency_code": row.currency_code}]
        variants.append(
            _variant(
                row,
                sku=f"{base_sku}-SWATCH" if base_sku else None,
                options=["Swatch"],
                prices=swatch_prices,
            )
        )
        variants.append(
            _variant(
                row,
                sku=f"{base_sku}-YARD" if base_sku else None,
                options=["Fabric"],
                prices=product_prices,
            )
        )
    elif product_prices:
        variants.append(
            _variant(
                row,
                sku=row.handle or f"{slugify(row.title)}-default",
                options=(),
                prices=product_prices,
                title="Default",
            )
        )

    attributes = {
        name: getattr(row, name)
        for name in ("is_discountable", "is_giftcard", "weight", "length", "width", "height")
        if getattr(row, name) is not None
    }

    return {
        "title": row.title,
        "handle": handle,
        "external_id": row.external_id,
        "status": row.status,
        "description": row.description,
        "thumbnail": row.thumbnail_url,
        "images": list(row.image_urls),
        "options": options,
        "variants": variants,
        "prices": product_prices,
        "tags": list(row.tags),
        "collections": list(row.collection_handles),
        "categories": list(row.category_handles),
        "sales_channels": list(row.sales_channel_handles or default_sales_channels),
        "attributes": attributes,
        "metadata": dict(row.metadata),
    }


def variant_skus(payload: dict[str, Any]) -> list[str]:
    return [variant["sku"] for variant in payload.get("variants", []) if variant.get("sku")]
