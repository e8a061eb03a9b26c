"""Products, categories and banners. Plain lookups, no cross-document work."""

import math
from typing import Any, Dict, Iterable, List

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING

from database import EntityStore, to_object_ids
from errors import InvalidArgumentError, NotFoundError
from schemas import Banner, Category, Product

SHOWCASE_LIMIT = 20


class Catalog:
    def __init__(self, store: EntityStore):
        self.store = store

    # Products
    def create_product(self, product: Product) -> Dict[str, Any]:
        return self.store.create("product", product)

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``changes`` only if the merged product is still a valid ``Product``."""
        current = self.get_product(product_id)
        updates = {k: v for k, v in changes.items() if k in Product.model_fields}
        try:
            Product.model_validate({**current, **updates})
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise InvalidArgumentError(f"Invalid product fields: {', '.join(fields)}", {"fields": fields}) from e
        return self.store.update_by_id("product", product_id, updates)

    def get_product(self, product_id: str) -> Dict[str, Any]:
        product = self.store.find_by_id("product", product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def list_products(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        if page < 1 or limit < 1:
            raise InvalidArgumentError("page and limit must be >= 1")
        total = self.store.count_documents("product")
        products = self.store.find(
            "product", sort=[("created_at", DESCENDING), ("_id", DESCENDING)], skip=(page - 1) * limit, limit=limit
        )
        return {"page": page, "pages": math.ceil(total / limit), "total": total, "products": products}

    def hot_products(self) -> List[Dict[str, Any]]:
        return self.store.find("product", {"hot": True}, limit=SHOWCASE_LIMIT)

    def new_products(self) -> List[Dict[str, Any]]:
        return self.store.find("product", sort=[("created_at", DESCENDING), ("_id", DESCENDING)], limit=SHOWCASE_LIMIT)

    def delete_products(self, ids: Iterable[str]) -> int:
        return self.store.delete_many("product", {"_id": {"$in": to_object_ids(ids)}})

    # Categories
    def create_category(self, category: Category) -> Dict[str, Any]:
        return self.store.create("category", category)

    def list_categories(self) -> List[Dict[str, Any]]:
        return self.store.find("category", sort=[("name", ASCENDING)])

    # Banners
    def create_banner(self, banner: Banner) -> Dict[str, Any]:
        return self.store.create("banner", banner)

    def list_banners(self) -> List[Dict[str, Any]]:
        return self.store.find("banner", {"status": True}, sort=[("rank", ASCENDING), ("_id", ASCENDING)])
