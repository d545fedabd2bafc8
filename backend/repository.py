import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, TEXT, ReturnDocument
from pymongo.errors import PyMongoError

from .errors import PersistenceError

PUBLIC_FIELDS = {
    "name": 1,
    "description": 1,
    "productType": 1,
    "baseImageURL": 1,
    "additionalImageURLs": 1,
    "dimensions": 1,
    "gstRate": 1,
}

TEXT_INDEX_NAME = "product_text_search"


def normalize_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class ProductRepository:
    def __init__(self, collection, logger: Optional[logging.Logger] = None):
        self.collection = collection
        self.logger = logger or logging.getLogger(__name__)

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except PyMongoError as exc:
            self.logger.error("Product %s failed: %s", action, exc)
            raise PersistenceError(f"Error {action} product data.") from exc

    def ensure_indexes(self) -> None:
        try:
            self.collection.create_index([("name", ASCENDING)])
            self.collection.create_index([("productType", ASCENDING)])
            self.collection.create_index([("isActive", ASCENDING)])
            self.collection.create_index([("createdAt", DESCENDING)])
            self.collection.create_index(
                [("name", TEXT), ("description", TEXT), ("productType", TEXT)],
                name=TEXT_INDEX_NAME,
            )
        except Exception as exc:
            self.logger.warning("Unable to ensure indexes for products: %s", exc)

    def insert(self, document: Dict) -> Dict:
        timestamp = datetime.utcnow()
        stored = dict(document)
        stored["createdAt"] = timestamp
        stored["updatedAt"] = timestamp
        with self._guard("saving"):
            result = self.collection.insert_one(stored)
        stored["_id"] = result.inserted_id
        return stored

    def get(self, product_id) -> Optional[Dict]:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None
        with self._guard("fetching"):
            return self.collection.find_one({"_id": object_id})

    def list_all(self) -> List[Dict]:
        with self._guard("fetching"):
            return list(self.collection.find().sort("createdAt", DESCENDING))

    def list_active(self) -> List[Dict]:
        with self._guard("fetching"):
            return list(
                self.collection.find({"isActive": True}, PUBLIC_FIELDS).sort(
                    "name", ASCENDING
                )
            )

    def update(self, product_id, changes: Dict) -> Optional[Dict]:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None
        updates = dict(changes)
        updates["updatedAt"] = datetime.utcnow()
        with self._guard("updating"):
            return self.collection.find_one_and_update(
                {"_id": object_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )

    def delete(self, product_id) -> bool:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return False
        with self._guard("deleting"):
            result = self.collection.delete_one({"_id": object_id})
        return result.deleted_count > 0

    def search(self, term: str, active_only: bool = False) -> List[Dict]:
        query: Dict = {"$text": {"$search": term}}
        projection: Dict = {"score": {"$meta": "textScore"}}
        if active_only:
            query["isActive"] = True
            projection.update(PUBLIC_FIELDS)
        with self._guard("searching"):
            cursor = self.collection.find(query, projection).sort(
                [("score", {"$meta": "textScore"})]
            )
            return list(cursor)

    def product_types(self) -> List[str]:
        with self._guard("fetching"):
            values = self.collection.distinct("productType")
        return [str(value) for value in values if value]
