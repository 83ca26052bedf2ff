"""
Category Reconciliation

Square lets a merchant create several categories with the same name. Every sync
we pick one survivor per name (the one most items point at) and remap the rest
onto it, so the local store only ever holds one row per name.
"""
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging
import time

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.category import Category
from app.services.catalog_snapshot import CatalogSnapshot, item_category_ids
from app.utils.text import slugify

logger = logging.getLogger(__name__)


# Square category ID -> local category name
CATEGORY_MAPPINGS: Dict[str, str] = {
    "UF2WY4B4635ZDAH4TCJVDQAN": "CATERING-APPETIZERS",
    "UOWY2ZPV24Q6K6BBD5CZRM4B": "CATERING-BUFFET-STARTERS",
    "HKLMA3HI34UUW6OCDMEKE224": "CATERING-BUFFET-ENTREES",
    "ZOWZ26OBOK3KUCT4ZBE6AV26": "CATERING-BUFFET-SIDES",
    "4YZ7LW7PRJRDICUM76U3FTGU": "CATERING-SHARE-PLATTERS",
    "5ZH6ON3LTLXC2775JLBI3T3V": "CATERING-DESSERTS",
    "B527RVCSLNZ5XR3OZR76VNIH": "CATERING-LUNCH-STARTERS",
    "K2O3B7JUWT7QD7HGQ5AL2R2N": "CATERING-LUNCH-ENTREES",
    "HVWMJHLJ4Q2GHHT3COZLDYNP": "CATERING-BOXED-LUNCH-ENTREES",
    "7F45BAY6KVJOBF4YXYBSL4JH": "CATERING-LUNCH-SIDES",
    "C6GLNU7ZTUEKFZSMMOUISX7B": "ALFAJORES",
    "CBCQ73NCXQKUAFWGP2KQFOJN": "EMPANADAS",
    "SDGSB4F4YOUFY3UFJF2KWXUB": "EMPANADAS",
    "UMIXXK727MROE7CKS6OVTWZE": "SAUCES",
}

# Names as they were stored before category names were normalized; checked first
LEGACY_CATEGORY_MAPPINGS: Dict[str, str] = {
    "UF2WY4B4635ZDAH4TCJVDQAN": "CATERING- APPETIZERS",
    "UOWY2ZPV24Q6K6BBD5CZRM4B": "CATERING- BUFFET, STARTERS",
    "HKLMA3HI34UUW6OCDMEKE224": "CATERING- BUFFET, ENTREES",
    "ZOWZ26OBOK3KUCT4ZBE6AV26": "CATERING- BUFFET, SIDES",
    "4YZ7LW7PRJRDICUM76U3FTGU": "CATERING- SHARE PLATTERS",
    "5ZH6ON3LTLXC2775JLBI3T3V": "CATERING- DESSERTS",
    "B527RVCSLNZ5XR3OZR76VNIH": "CATERING- LUNCH, STARTERS",
    "K2O3B7JUWT7QD7HGQ5AL2R2N": "CATERING- LUNCH, ENTREES",
    "JMUA2KUSHYLXVDAIBTW23JJ4": "CATERING- BOXED LUNCHES",
    "HVWMJHLJ4Q2GHHT3COZLDYNP": "CATERING- BOXED LUNCH ENTREES",
    "7F45BAY6KVJOBF4YXYBSL4JH": "CATERING- LUNCH, SIDES",
    "C6GLNU7ZTUEKFZSMMOUISX7B": "ALFAJORES",
    "CBCQ73NCXQKUAFWGP2KQFOJN": "EMPANADAS",
    "SDGSB4F4YOUFY3UFJF2KWXUB": "EMPANADAS",
    "UMIXXK727MROE7CKS6OVTWZE": "SAUCES",
    "CISOGPONZYWZNS4QIZILKRRN": "EMPANADAS- OTHER",
}


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().upper()


@dataclass(frozen=True)
class DuplicateGroup:
    """Square categories sharing one normalized name"""
    name: str
    winner_id: str
    duplicate_ids: Tuple[str, ...]
    item_counts: Tuple[Tuple[str, int], ...]


def detect_duplicate_categories(snapshot: CatalogSnapshot) -> List[DuplicateGroup]:
    """
    Group snapshot categories by normalized name and rank each group by item count.
    Every category an item lists counts, not only its first one.

    Ties keep snapshot order, so the first category seen wins.
    """
    counts = Counter(category_id for item in snapshot.items for category_id in item_category_ids(item))

    groups: Dict[str, List[str]] = {}
    for category in snapshot.categories:
        name = normalize_name((category.get("category_data") or {}).get("name"))
        if not name or not category.get("id"):
            continue
        groups.setdefault(name, []).append(category["id"])

    duplicates = []
    for name, category_ids in groups.items():
        if len(category_ids) < 2:
            continue
        ranked = sorted(category_ids, key=lambda cid: counts.get(cid, 0), reverse=True)
        group = DuplicateGroup(
            name=name,
            winner_id=ranked[0],
            duplicate_ids=tuple(ranked[1:]),
            item_counts=tuple((cid, counts.get(cid, 0)) for cid in ranked),
        )
        logger.warning(
            "Duplicate category '%s': keeping %s, remapping %s (counts %s)",
            name, group.winner_id, ", ".join(group.duplicate_ids), dict(group.item_counts),
        )
        duplicates.append(group)

    return duplicates


class CategoryRemap:
    """Duplicate Square category ID -> surviving Square category ID"""

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self._mapping = dict(mapping or {})

    @classmethod
    def from_duplicates(cls, groups: List[DuplicateGroup]) -> "CategoryRemap":
        mapping = {}
        for group in groups:
            for duplicate_id in group.duplicate_ids:
                mapping[duplicate_id] = group.winner_id
        return cls(mapping)

    def resolve(self, category_id: Optional[str]) -> Optional[str]:
        if category_id is None:
            return None
        return self._mapping.get(category_id, category_id)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._mapping)

    def __contains__(self, category_id: str) -> bool:
        return category_id in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)


def mapped_category_name(category_id: str, snapshot: CatalogSnapshot) -> Optional[str]:
    """Local name for a Square category: legacy table, current table, then the Square name"""
    name = LEGACY_CATEGORY_MAPPINGS.get(category_id) or CATEGORY_MAPPINGS.get(category_id)
    if name:
        return name
    name = snapshot.category_name(category_id)
    return name.strip() if name else None


# Lookup strategies, tried in order

CategoryLookup = Callable[[Session, Optional[str], str, str], Optional[Category]]


def _by_square_id(db: Session, square_id: Optional[str], name: str, slug: str) -> Optional[Category]:
    if not square_id:
        return None
    return db.query(Category).filter(Category.square_id == square_id).first()


def _by_name(db: Session, square_id: Optional[str], name: str, slug: str) -> Optional[Category]:
    return db.query(Category).filter(func.lower(Category.name) == name.lower()).first()


def _by_slug(db: Session, square_id: Optional[str], name: str, slug: str) -> Optional[Category]:
    return db.query(Category).filter(Category.slug == slug).first()


CATEGORY_LOOKUPS: Tuple[Tuple[str, CategoryLookup], ...] = (
    ("square_id", _by_square_id),
    ("name", _by_name),
    ("slug", _by_slug),
)


def _backfill_square_id(db: Session, category: Category, square_id: Optional[str]) -> None:
    if square_id and not category.square_id:
        category.square_id = square_id
        db.commit()
        db.refresh(category)


def _insert(db: Session, name: str, slug: str, square_id: Optional[str]) -> Category:
    category = Category(name=name, slug=slug, square_id=square_id)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def get_or_create_category(db: Session, name: str, square_id: Optional[str] = None) -> Category:
    """
    Find or create the local category for a Square category

    Args:
        db: Database session
        name: Category name (already mapped)
        square_id: Surviving Square category ID, if known

    Returns:
        Category row, committed
    """
    name = name.strip()
    slug = slugify(name) or "category"

    for label, lookup in CATEGORY_LOOKUPS:
        category = lookup(db, square_id, name, slug)
        if category is not None:
            logger.debug("Matched category '%s' by %s", name, label)
            _backfill_square_id(db, category, square_id)
            return category

    try:
        category = _insert(db, name, slug, square_id)
        logger.info("Created category '%s' (%s)", name, slug)
        return category
    except IntegrityError:
        db.rollback()
        logger.warning("Category '%s' created concurrently, re-reading", name)

    category = db.query(Category).filter(
        or_(func.lower(Category.name) == name.lower(), Category.slug == slug)
    ).first()
    if category is not None:
        _backfill_square_id(db, category, square_id)
        return category

    fallback_slug = f"{slug}-{int(time.time() * 1000)}"
    logger.warning("Creating category '%s' with fallback slug %s", name, fallback_slug)
    return _insert(db, name, fallback_slug, square_id)
