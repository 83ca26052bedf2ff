"""
Catalog Snapshot - one point-in-time read of the Square catalog
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _dedupe(objects: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for obj in objects:
        object_id = obj.get("id")
        if object_id in seen:
            continue
        seen.add(object_id)
        unique.append(obj)
    return unique


def item_category_id(item: Dict[str, Any]) -> Optional[str]:
    """Category reference of an item: first of the ordered list, else the legacy single ID"""
    item_data = item.get("item_data") or {}
    categories = item_data.get("categories") or []
    if categories and categories[0].get("id"):
        return categories[0]["id"]
    return item_data.get("category_id")


def item_category_ids(item: Dict[str, Any]) -> List[str]:
    """Every category an item references, in order, without repeats"""
    item_data = item.get("item_data") or {}
    ids = [category.get("id") for category in item_data.get("categories") or []]
    ids.append(item_data.get("category_id"))
    return list(dict.fromkeys(cid for cid in ids if cid))


@dataclass(frozen=True)
class CatalogSnapshot:
    items: Tuple[Dict[str, Any], ...]
    categories: Tuple[Dict[str, Any], ...]
    images: Tuple[Dict[str, Any], ...]

    @classmethod
    def from_objects(cls, objects: Iterable[Dict[str, Any]], related_objects: Iterable[Dict[str, Any]] = ()) -> "CatalogSnapshot":
        """Split search results (objects plus related objects) by type"""
        everything = _dedupe(list(objects) + list(related_objects))
        items = [obj for obj in everything if obj.get("type") == "ITEM"]
        categories = [obj for obj in everything if obj.get("type") == "CATEGORY"]
        images = [obj for obj in everything if obj.get("type") == "IMAGE"]
        return cls(items=tuple(items), categories=tuple(categories), images=tuple(images))

    def image_url(self, image_id: str) -> Optional[str]:
        for image in self.images:
            if image.get("id") == image_id:
                return (image.get("image_data") or {}).get("url")
        return None

    def category_name(self, category_id: str) -> Optional[str]:
        for category in self.categories:
            if category.get("id") == category_id:
                return (category.get("category_data") or {}).get("name")
        return None

    @property
    def item_ids(self) -> List[str]:
        return [item["id"] for item in self.items if item.get("id")]
