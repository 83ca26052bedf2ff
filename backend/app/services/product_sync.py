"""
Item Processor

Maps one Square catalog item (with its variations) onto a local Product and its
Variants. Every storage step runs in its own short session through the storage
retry; a failing item comes back as an ItemError instead of raising.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse
import asyncio
import logging
import re
import time
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.models.product import Product, Variant
from app.services.catalog_snapshot import CatalogSnapshot, item_category_id
from app.services.category_service import CategoryRemap, get_or_create_category, mapped_category_name
from app.services.image_resolver import ImageResolver, is_stored_file_url
from app.services.retry import ItemError, Ok, with_storage_retry
from app.utils.text import sanitize_description, slugify

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Images served from here were uploaded by hand and are never replaced by a smaller synced set
CURATED_IMAGE_HOSTS = ("cdn.sanity.io",)
SQUARE_IMAGE_HOST_SUFFIXES = ("squarecdn.com", "squareup.com", "squareupsandbox.com")

ALLERGEN_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "milk": ("milk", "butter", "cream", "cheese", "dulce de leche", "yogurt", "whey", "lactose"),
    "eggs": ("egg",),
    "wheat": ("wheat", "flour", "gluten"),
    "soy": ("soy", "soybean"),
    "peanuts": ("peanut",),
    "tree_nuts": ("tree nut", "almond", "walnut", "pecan", "cashew", "hazelnut", "pistachio", "coconut"),
    "fish": ("fish", "anchovy", "tuna", "salmon"),
    "shellfish": ("shellfish", "shrimp", "crab", "lobster", "crustacean", "mollusc"),
    "sesame": ("sesame",),
}


@dataclass(frozen=True)
class ItemResult:
    square_id: str
    product_id: uuid.UUID
    created: bool
    image_count: int


# Image precedence

def is_square_image_url(url: str) -> bool:
    if is_stored_file_url(url):
        return True
    host = (urlparse(url).hostname or "").lower()
    return any(host == suffix or host.endswith("." + suffix) for suffix in SQUARE_IMAGE_HOST_SUFFIXES)


def looks_manual(url: str) -> bool:
    """Local path, curated host, or anything that did not come from Square"""
    if url.startswith("/"):
        return True
    host = (urlparse(url).hostname or "").lower()
    if host in CURATED_IMAGE_HOSTS:
        return True
    return not is_square_image_url(url)


ImageRule = Callable[[Optional[List[str]], List[str]], Optional[List[str]]]


def _new_product(existing, synced):
    return list(synced) if existing is None else None


def _keep_manual(existing, synced):
    if any(looks_manual(url) for url in existing) and len(synced) <= len(existing):
        return list(existing)
    return None


def _no_images(existing, synced):
    return [] if not synced else None


def _prefer_synced(existing, synced):
    return list(synced)


IMAGE_PRECEDENCE: Tuple[Tuple[str, ImageRule], ...] = (
    ("new_product", _new_product),
    ("keep_manual", _keep_manual),
    ("no_images", _no_images),
    ("prefer_synced", _prefer_synced),
)


def choose_images(existing: Optional[List[str]], synced: List[str]) -> Tuple[str, List[str]]:
    """
    Decide which image list a product keeps

    Args:
        existing: Current product images, or None for a new product
        synced: Reachable URLs resolved from Square

    Returns:
        (name of the rule that decided, image list)
    """
    for name, rule in IMAGE_PRECEDENCE:
        images = rule(existing, synced)
        if images is not None:
            return name, images
    return "prefer_synced", list(synced)


# Variations

def _is_valid_variation(variation: Dict[str, Any]) -> bool:
    return (
        variation.get("type") == "ITEM_VARIATION"
        and bool(variation.get("id"))
        and bool(variation.get("item_variation_data"))
    )


def money_to_decimal(money: Optional[Dict[str, Any]]) -> Optional[Decimal]:
    if not money or money.get("amount") is None:
        return None
    return (Decimal(int(money["amount"])) / 100).quantize(CENTS)


def map_variations(variations: Sequence[Dict[str, Any]]) -> Tuple[Decimal, List[Dict[str, Any]]]:
    """
    Base price and variant rows for an item

    Returns:
        (base price from the first valid variation, list of variant field dicts)
    """
    base_price: Optional[Decimal] = None
    variants = []

    for variation in variations:
        if not _is_valid_variation(variation):
            logger.warning("Skipping malformed variation %s", variation.get("id"))
            continue

        data = variation["item_variation_data"]
        price = money_to_decimal(data.get("price_money"))
        if base_price is None:
            base_price = price if price is not None else Decimal("0.00")

        variants.append({
            "square_variant_id": variation["id"],
            "name": (data.get("name") or "").strip() or "Default",
            "price": price,
        })

    return (base_price if base_price is not None else Decimal("0.00")), variants


# Nutrition

def _detail_name(entry: Dict[str, Any]) -> Optional[str]:
    name = entry.get("custom_name") or entry.get("standard_name")
    if not name:
        return None
    return name.replace("_", " ").lower() if entry.get("standard_name") == name else name.strip()


def detect_allergens(ingredients: Optional[str]) -> List[str]:
    if not ingredients:
        return []
    text = ingredients.lower()
    found = []
    for allergen, keywords in ALLERGEN_KEYWORDS.items():
        if any(re.search(rf"\b{re.escape(keyword)}(?:s|es)?\b", text) for keyword in keywords):
            found.append(allergen)
    return found


def extract_nutrition(item_data: Dict[str, Any]) -> Dict[str, Any]:
    details = item_data.get("food_and_beverage_details")
    if not details:
        return {
            "calories": None,
            "dietary_preferences": None,
            "ingredients": None,
            "allergens": None,
            "nutrition_raw": None,
        }

    preferences = [n for n in (_detail_name(p) for p in details.get("dietary_preferences") or []) if n]
    ingredient_names = [n for n in (_detail_name(i) for i in details.get("ingredients") or []) if n]
    ingredients = ", ".join(ingredient_names) or None

    return {
        "calories": details.get("calorie_count"),
        "dietary_preferences": preferences,
        "ingredients": ingredients,
        "allergens": detect_allergens(ingredients),
        "nutrition_raw": details,
    }


# Availability

def evaluate_availability(item: Dict[str, Any]) -> Dict[str, Any]:
    """Active iff not deleted, available online, present at all locations and not private"""
    item_data = item.get("item_data") or {}
    square_id = item.get("id")

    deleted = bool(item.get("is_deleted"))
    available_online = item_data.get("available_online", True) is not False
    present_everywhere = item.get("present_at_all_locations", item_data.get("present_at_all_locations", True)) is not False
    visibility = item_data.get("visibility") or "PUBLIC"

    if deleted:
        logger.info("Item %s is deleted in Square", square_id)
    if not available_online:
        logger.info("Item %s is not available online", square_id)
    if not present_everywhere:
        logger.info("Item %s is not present at all locations", square_id)
    if visibility == "PRIVATE":
        logger.info("Item %s has private visibility", square_id)

    active = not deleted and available_online and present_everywhere and visibility != "PRIVATE"
    return {
        "active": active,
        "is_available": active,
        "visibility": "PRIVATE" if not present_everywhere else visibility,
        "item_state": "ARCHIVED" if deleted else ("ACTIVE" if present_everywhere else "INACTIVE"),
    }


def violated_field(error: IntegrityError) -> Optional[str]:
    """Which unique column an IntegrityError is about"""
    message = str(error.orig).lower()
    if "square_variant_id" in message:
        return "square_variant_id"
    if "square_id" in message:
        return "square_id"
    if "slug" in message:
        return "slug"
    return None


class ItemProcessor:
    """Sync one Square item into the local store"""

    def __init__(
        self,
        session_factory: sessionmaker,
        image_resolver: ImageResolver,
        remap: CategoryRemap,
        default_category_id: uuid.UUID,
        max_retries: Optional[int] = None,
        retry_sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.image_resolver = image_resolver
        self.remap = remap
        self.default_category_id = default_category_id
        self.max_retries = max_retries
        self.retry_sleep = retry_sleep

    async def _storage(self, operation, label: str):
        return await with_storage_retry(operation, max_attempts=self.max_retries, sleep=self.retry_sleep, label=label)

    async def process(self, item: Dict[str, Any], snapshot: CatalogSnapshot) -> Union[Ok, ItemError]:
        item_data = item.get("item_data") or {}
        context = {
            "square_id": item.get("id"),
            "name": item_data.get("name"),
            "category_id": item_category_id(item),
            "has_nutrition": bool(item_data.get("food_and_beverage_details")),
        }
        try:
            return Ok(await self._process(item, snapshot))
        except Exception as e:
            logger.error(
                "Failed to sync item %s (%s), category=%s, nutrition=%s: %s",
                context["square_id"], context["name"], context["category_id"], context["has_nutrition"], e,
                exc_info=True,
            )
            return ItemError(context, e)

    async def _process(self, item: Dict[str, Any], snapshot: CatalogSnapshot) -> ItemResult:
        square_id = item.get("id")
        item_data = item.get("item_data")
        if not square_id:
            raise ValueError("Catalog item has no id")
        if not item_data:
            raise ValueError(f"Catalog item {square_id} has no item_data")

        name = (item_data.get("name") or "").strip()
        if not name:
            raise ValueError(f"Catalog item {square_id} has no name")

        existing_images = await self._storage(lambda: self._existing_images(square_id), "load product")
        synced_images = await self.image_resolver.resolve(item_data.get("image_ids") or [], snapshot)
        rule, images = choose_images(existing_images, synced_images)
        logger.debug("Item %s images decided by %s (%d)", square_id, rule, len(images))

        base_price, variants = map_variations(item_data.get("variations") or [])
        category_id = await self.resolve_category(item, snapshot)

        categories = item_data.get("categories") or []
        fields = {
            "name": name,
            "description": sanitize_description(item_data.get("description_html") or item_data.get("description") or ""),
            "price": base_price,
            "images": images,
            "ordinal": categories[0].get("ordinal") if categories else None,
            "category_id": category_id,
            **evaluate_availability(item),
            **extract_nutrition(item_data),
        }

        result = await self._storage(lambda: self._save(square_id, fields, variants), "save product")
        if result.created and not images:
            logger.warning("New product %s (%s) created without images", square_id, name)
        return result

    async def resolve_category(self, item: Dict[str, Any], snapshot: CatalogSnapshot) -> uuid.UUID:
        """Local category ID for an item, falling back to the default category on any problem"""
        raw_id = item_category_id(item)
        if not raw_id:
            return self.default_category_id

        square_category_id = self.remap.resolve(raw_id)
        if square_category_id != raw_id:
            logger.debug("Item %s category %s remapped to %s", item.get("id"), raw_id, square_category_id)

        name = mapped_category_name(square_category_id, snapshot)
        if not name:
            logger.warning("No name for category %s, using default category", square_category_id)
            return self.default_category_id

        try:
            return await self._storage(
                lambda: self._category_id(name, square_category_id), "resolve category"
            )
        except Exception as e:
            logger.warning("Category '%s' could not be resolved, using default: %s", name, e)
            return self.default_category_id

    def _category_id(self, name: str, square_category_id: str) -> uuid.UUID:
        with self.session_factory() as db:
            return get_or_create_category(db, name, square_category_id).id

    def _existing_images(self, square_id: str) -> Optional[List[str]]:
        with self.session_factory() as db:
            product = db.query(Product).filter(Product.square_id == square_id).first()
            if product is None:
                return None
            return list(product.images or [])

    def _save(self, square_id: str, fields: Dict[str, Any], variants: List[Dict[str, Any]]) -> ItemResult:
        with self.session_factory() as db:
            product = db.query(Product).filter(Product.square_id == square_id).first()
            if product is not None:
                self._update(db, product, fields, variants)
                return ItemResult(square_id, product.id, False, len(fields["images"]))

            try:
                product = self._create(db, square_id, fields, variants, self._unique_slug(db, fields["name"], square_id))
                return ItemResult(square_id, product.id, True, len(fields["images"]))
            except IntegrityError as e:
                db.rollback()
                field = violated_field(e)
                logger.warning("Create of product %s hit unique constraint on %s", square_id, field)

            if field == "square_variant_id":
                variant_ids = [v["square_variant_id"] for v in variants]
                owner = (
                    db.query(Product)
                    .join(Variant, Variant.product_id == Product.id)
                    .filter(Variant.square_variant_id.in_(variant_ids))
                    .first()
                )
                if owner is None:
                    raise ValueError(f"Variant conflict for {square_id} but no owning product found")
                logger.info("Recovering product %s through existing variant owner %s", square_id, owner.id)
                owner.square_id = square_id
                self._update(db, owner, fields, variants)
                return ItemResult(square_id, owner.id, False, len(fields["images"]))

            if field == "square_id":
                product = db.query(Product).filter(Product.square_id == square_id).one()
                self._update(db, product, fields, variants)
                return ItemResult(square_id, product.id, False, len(fields["images"]))

            slug = f"{slugify(fields['name']) or 'product'}-{int(time.time() * 1000)}"
            product = self._create(db, square_id, fields, variants, slug)
            return ItemResult(square_id, product.id, True, len(fields["images"]))

    @staticmethod
    def _unique_slug(db: Session, name: str, square_id: str) -> str:
        base = slugify(name) or slugify(square_id)
        if db.query(Product.id).filter(Product.slug == base).first() is None:
            return base
        return f"{base}-{slugify(square_id)[-8:]}"

    @staticmethod
    def _create(db: Session, square_id: str, fields: Dict[str, Any], variants: List[Dict[str, Any]], slug: str) -> Product:
        product = Product(square_id=square_id, slug=slug, **fields)
        product.variants = [Variant(**variant) for variant in variants]
        db.add(product)
        db.commit()
        db.refresh(product)
        logger.info("Created product %s (%s)", product.name, square_id)
        return product

    @staticmethod
    def _update(db: Session, product: Product, fields: Dict[str, Any], variants: List[Dict[str, Any]]) -> None:
        for key, value in fields.items():
            setattr(product, key, value)

        # Replace variants wholesale inside the same transaction
        db.query(Variant).filter(Variant.product_id == product.id).delete(synchronize_session=False)
        db.flush()
        db.expire(product, ["variants"])
        for variant in variants:
            db.add(Variant(product_id=product.id, **variant))

        db.commit()
        db.refresh(product)
        logger.debug("Updated product %s (%s)", product.name, product.square_id)
