"""Catalog write service backed by the ``products``/``product_variants`` tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from product_importer.core.errors import CatalogUnavailable, CatalogWriteError, InvalidRequest
from product_importer.db.models.product import Product, ProductVariant

logger = logging.getLogger(__name__)

LOOKUP_KEYS = ("handle", "sku", "external_id")
IMAGE_STRATEGIES = ("merge", "replace", "append")


@dataclass(frozen=True)
class CatalogVariant:
    id: int
    sku: str | None
    title: str | None


@dataclass(frozen=True)
class CatalogProduct:
    id: int
    handle: str | None
    status: str
    variant_skus: tuple[str, ...] = ()


class CatalogService(Protocol):
    def find_product(self, key: str, value: str) -> CatalogProduct | None: ...

    def create_product(self, payload: dict[str, Any]) -> CatalogProduct: ...

    def update_product(
        self,
        product_id: int,
        payload: dict[str, Any],
        *,
        image_strategy: str = "replace",
        unarchive: bool = False,
    ) -> CatalogProduct: ...

    def list_variants(self, product_id: int) -> list[CatalogVariant]: ...

    def delete_variants(self, product_id: int, variant_ids: Sequence[int]) -> int: ...


def merge_images(existing: Sequence[str], incoming: Sequence[str], strategy: str) -> list[str]:
    if strategy == "replace":
        return list(incoming)
    if strategy == "append":
        return [*existing, *incoming]
    merged: dict[str, None] = dict.fromkeys(existing)
    merged.update(dict.fromkeys(incoming))
    return list(merged)


def _snapshot(product: Product) -> CatalogProduct:
    return CatalogProduct(
        id=product.id,
        handle=product.handle,
        status=product.status,
        variant_skus=tuple(variant.sku for variant in product.variants if variant.sku),
    )


class SqlCatalogService:
    """Each mutating call commits on its own; a failed call rolls back only itself."""

    def __init__(self, session: Session):
        self.session = session

    def _fail(self, action: str, exc: SQLAlchemyError) -> None:
        self.session.rollback()
        if isinstance(exc, OperationalError):
            logger.error(f"Catalog unavailable during {action}: {exc}", exc_info=True)
            raise CatalogUnavailable(f"Catalog unavailable: {exc.orig or exc}") from exc
        if isinstance(exc, IntegrityError):
            raise CatalogWriteError(
                f"Catalog rejected {action}: duplicate handle or SKU",
                details={"reason": str(exc.orig or exc)},
            ) from exc
        logger.error(f"Catalog error during {action}: {exc}", exc_info=True)
        raise CatalogWriteError(f"Catalog rejected {action}: {exc}") from exc

    def find_product(self, key: str, value: str) -> CatalogProduct | None:
        if key not in LOOKUP_KEYS:
            raise InvalidRequest(f"Unsupported lookup key '{key}'", details={"allowed": list(LOOKUP_KEYS)})
        if key == "sku":
            query = (
                select(Product)
                .join(ProductVariant, ProductVariant.product_id == Product.id)
                .where(func.lower(ProductVariant.sku) == value.lower())
            )
        elif key == "handle":
            query = select(Product).where(func.lower(Product.handle) == value.lower())
        else:
            query = select(Product).where(Product.external_id == value)
        try:
            product = self.session.scalars(query.limit(1)).first()
        except OperationalError as exc:
            self._fail("lookup", exc)
        return _snapshot(product) if product is not None else None

    def create_product(self, payload: dict[str, Any]) -> CatalogProduct:
        product = Product(
            title=payload["title"],
            handle=payload.get("handle"),
            external_id=payload.get("external_id"),
            status=payload.get("status") or "published",
            description=payload.get("description"),
            thumbnail=payload.get("thumbnail"),
            images=list(payload.get("images") or []),
            options=list(payload.get("options") or []),
            tags=list(payload.get("tags") or []),
            collections=list(payload.get("collections") or []),
            categories=list(payload.get("categories") or []),
            sales_channels=list(payload.get("sales_channels") or []),
            prices=list(payload.get("prices") or []),
            attributes=dict(payload.get("attributes") or {}),
            meta=payload.get("metadata") or None,
        )
        product.variants = [self._new_variant(variant) for variant in payload.get("variants") or []]
        try:
            self.session.add(product)
            self.session.commit()
        except SQLAlchemyError as exc:
            self._fail("create", exc)
        self.session.refresh(product)
        return _snapshot(product)

    def update_product(
        self,
        product_id: int,
        payload: dict[str, Any],
        *,
        image_strategy: str = "replace",
        unarchive: bool = False,
    ) -> CatalogProduct:
        product = self.session.get(Product, product_id)
        if product is None:
            raise CatalogWriteError(f"Product {product_id} no longer exists", code="catalog_product_missing")

        for name in ("title", "handle", "description", "thumbnail", "external_id"):
            if payload.get(name) is not None:
                setattr(product, name, payload[name])
        if product.status != "archived" or unarchive:
            product.status = payload.get("status") or product.status
        product.images = merge_images(product.images or [], payload.get("images") or [], image_strategy)
        for name in ("options", "tags", "collections", "categories", "sales_channels", "prices"):
            if payload.get(name):
                setattr(product, name, list(payload[name]))
        if payload.get("attributes"):
            product.attributes = {**(product.attributes or {}), **payload["attributes"]}
        if payload.get("metadata"):
            product.meta = {**(product.meta or {}), **payload["metadata"]}

        existing = {(variant.sku or "").lower(): variant for variant in product.variants if variant.sku}
        for incoming in payload.get("variants") or []:
            sku = (incoming.get("sku") or "").lower()
            if sku and sku in existing:
                variant = existing[sku]
                variant.title = incoming.get("title") or variant.title
                variant.options = list(incoming.get("options") or variant.options or [])
                if incoming.get("prices"):
                    variant.prices = list(incoming["prices"])
                for name in ("manage_inventory", "allow_backorder", "inventory_quantity"):
                    if incoming.get(name) is not None:
                        setattr(variant, name, incoming[name])
            elif sku or not product.variants:
                product.variants.append(self._new_variant(incoming))

        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self._fail("update", exc)
        self.session.refresh(product)
        return _snapshot(product)

    def list_variants(self, product_id: int) -> list[CatalogVariant]:
        try:
            variants = self.session.scalars(
                select(ProductVariant)
                .where(ProductVariant.product_id == product_id)
                .order_by(ProductVariant.id)
            ).all()
        except OperationalError as exc:
            self._fail("variant lookup", exc)
        return [CatalogVariant(id=v.id, sku=v.sku, title=v.title) for v in variants]

    def delete_variants(self, product_id: int, variant_ids: Sequence[int]) -> int:
        if not variant_ids:
            return 0
        try:
            result = self.session.execute(
                delete(ProductVariant).where(
                    ProductVariant.product_id == product_id,
                    ProductVariant.id.in_(list(variant_ids)),
                )
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self._fail("variant delete", exc)
        self.session.expire_all()
        return result.rowcount

    @staticmethod
    def _new_variant(data: dict[str, Any]) -> ProductVariant:
        return ProductVariant(
            sku=data.get("sku"),
            title=data.get("title"),
            options=list(data.get("options") or []),
            prices=list(data.get("prices") or []),
            manage_inventory=data.get("manage_inventory"),
            allow_backorder=data.get("allow_backorder"),
            inventory_quantity=data.get("inventory_quantity"),
        )
