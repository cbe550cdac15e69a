"""Resolve spreadsheet headers to canonical product fields."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from product_importer.core.errors import NotFound

logger = logging.getLogger(__name__)

BUILTIN_PREFIX = "builtin-"

DEFAULT_PROFILE_SETTINGS: Mapping[str, bool] = MappingProxyType(
    {
        "skip_unmapped": False,
        "auto_detect": True,
        "case_sensitive": False,
        "trim_values": True,
    }
)


@dataclass(frozen=True)
class ResolvedProfile:
    """The parts of a mapping profile the resolver needs."""

    id: str
    name: str
    mapping: Mapping[str, str]
    settings: Mapping[str, bool] = field(default_factory=lambda: DEFAULT_PROFILE_SETTINGS)
    description: str | None = None

    def setting(self, name: str) -> bool:
        if name in self.settings:
            return bool(self.settings[name])
        return DEFAULT_PROFILE_SETTINGS[name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": None,
            "mapping": dict(self.mapping),
            "settings": {**DEFAULT_PROFILE_SETTINGS, **self.settings},
            "is_default": False,
            "is_shared": True,
            "is_builtin": True,
            "metadata": None,
            "created_at": None,
            "updated_at": None,
        }


def _builtin(profile_id: str, name: str, description: str, mapping: dict[str, str], auto_detect: bool) -> ResolvedProfile:
    return ResolvedProfile(
        id=profile_id,
        name=name,
        description=description,
        mapping=MappingProxyType(mapping),
        settings=MappingProxyType(
            {
                "skip_unmapped": False,
                "auto_detect": auto_detect,
                "case_sensitive": False,
                "trim_values": True,
            }
        ),
    )


BUILTIN_PROFILES: Mapping[str, ResolvedProfile] = MappingProxyType(
    {
        profile.id: profile
        for profile in (
            _builtin(
                "builtin-shopify",
                "Shopify Export Format",
                "Standard Shopify product export mapping",
                {
                    "Handle": "handle",
                    "Title": "title",
                    "Body (HTML)": "description",
                    "Tags": "tags",
                    "Published": "status",
                    "Option1 Name": "option_1_title",
                    "Option1 Value": "option_1_value",
                    "Option2 Name": "option_2_title",
                    "Option2 Value": "option_2_value",
                    "Option3 Name": "option_3_title",
                    "Option3 Value": "option_3_value",
                    "Variant SKU": "sku",
                    "Variant Grams": "weight",
                    "Variant Inventory Qty": "inventory_quantity",
                    "Variant Price": "retail_price",
                    "Image Src": "image_urls",
                },
                auto_detect=False,
            ),
            _builtin(
                "builtin-woocommerce",
                "WooCommerce Export Format",
                "Standard WooCommerce CSV export mapping",
                {
                    "SKU": "sku",
                    "Name": "title",
                    "Published": "status",
                    "Description": "description",
                    "Categories": "category_handles",
                    "Tags": "tags",
                    "Regular price": "retail_price",
                    "Weight (kg)": "weight",
                    "Length (cm)": "length",
                    "Width (cm)": "width",
                    "Height (cm)": "height",
                    "Stock": "inventory_quantity",
                    "Backorders allowed?": "allow_backorder",
                    "Images": "image_urls",
                },
                auto_detect=False,
            ),
            _builtin(
                "builtin-fabric",
                "Fabric Product Format",
                "Optimized for fabric and textile products",
                {
                    "SKU": "sku",
                    "Product Name": "title",
                    "Product Handle": "handle",
                    "Width": "width",
                    "Weight": "weight",
                    "Price per Yard": "retail_price",
                    "Swatch Price": "swatch_price",
                    "Currency": "currency_code",
                    "Unit": "uom",
                    "Minimum Increment": "min_increment",
                    "Minimum Cut": "min_cut",
                    "Collection": "collection_handles",
                    "Tags": "tags",
                    "Images": "image_urls",
                    "In Stock": "inventory_quantity",
                },
                auto_detect=True,
            ),
        )
    }
)

ProfileLookup = Callable[[str, str], ResolvedProfile | None]


def is_builtin(profile_id: str | None) -> bool:
    return bool(profile_id) and profile_id.startswith(BUILTIN_PREFIX)


def get_builtin(profile_id: str) -> ResolvedProfile | None:
    return BUILTIN_PROFILES.get(profile_id)


def load_profile(
    profile_id: str,
    owner_id: str,
    profile_lookup: ProfileLookup | None,
) -> ResolvedProfile:
    """Find a built-in or user profile visible to ``owner_id``."""
    if is_builtin(profile_id):
        profile = get_builtin(profile_id)
    elif profile_lookup is not None:
        profile = profile_lookup(profile_id, owner_id)
    else:
        profile = None
    if profile is None:
        raise NotFound(
            f"Mapping profile {profile_id} not found",
            code="mapping_profile_not_found",
            details={"mapping_profile_id": profile_id},
        )
    return profile


def apply_profile(headers: Sequence[str], profile: ResolvedProfile) -> dict[str, str]:
    """Map each header through the profile's normalized source columns.

    Unmatched headers pass through unless ``skip_unmapped`` is set. Matching is
    exact after normalization; ``auto_detect`` does not widen it.
    """
    case_sensitive = profile.setting("case_sensitive")
    trim_values = profile.setting("trim_values")
    keep_unmatched = not profile.setting("skip_unmapped")

    def normalize(value: str) -> str:
        value = value if case_sensitive else value.lower()
        return value.strip() if trim_values else value

    entries = [(normalize(source), target) for source, target in profile.mapping.items()]
    applied: dict[str, str] = {}
    for header in headers:
        key = normalize(header)
        for source, target in entries:
            if source == key:
                applied[header] = target
                break
        else:
            if keep_unmatched:
                applied[header] = header
    return applied


def resolve_mapping(
    headers: Sequence[str],
    *,
    owner_id: str,
    explicit_mapping: Mapping[str, str] | None = None,
    profile_id: str | None = None,
    profile_lookup: ProfileLookup | None = None,
) -> dict[str, str]:
    """Produce a header -> canonical field mapping.

    An explicit mapping wins outright; otherwise a profile is applied; with
    neither, headers pass through unchanged.
    """
    if explicit_mapping:
        return dict(explicit_mapping)
    if profile_id:
        profile = load_profile(profile_id, owner_id, profile_lookup)
        mapping = apply_profile(headers, profile)
        logger.info(f"Applied mapping profile {profile.id} to {len(headers)} headers")
        return mapping
    return {header: header for header in headers}
