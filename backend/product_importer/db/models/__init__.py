"""Database models package."""
from product_importer.db.models.import_job import ImportJob
from product_importer.db.models.mapping_profile import MappingProfile
from product_importer.db.models.product import Product, ProductVariant

__all__ = ["ImportJob", "MappingProfile", "Product", "ProductVariant"]
