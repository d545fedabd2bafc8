import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .dimensions import is_blank, parse_dimensions, parse_flag
from .errors import (
    NotFound,
    PersistenceError,
    StorageError,
    StorageOperationFailed,
    StorageUnavailable,
    ValidationError,
)
from .fanout import Outcome, failures, settle_all
from .repository import ProductRepository
from .storage import StorageGateway

KNOWN_PRODUCT_TYPES = (
    "wire-pin",
    "ao-fixator",
    "jess-fixator",
    "ring-fixator",
    "rail-fixator",
    "other",
)
OTHER_PRODUCT_TYPE = "other"
DEFAULT_GST_RATE = 0.12
DEFAULT_IMAGE_FOLDER = "gamma_ortho_products"
MAX_ADDITIONAL_IMAGES = 5


@dataclass
class UploadedImage:
    data: bytes
    filename: str
    content_type: str = "application/octet-stream"


@dataclass
class ProductDraft:
    name: Optional[str] = None
    product_type: Optional[str] = None
    new_product_type: Optional[str] = None
    description: Optional[str] = None
    gst_rate: Optional[object] = None
    is_active: Optional[object] = None
    dimensions: Sequence[Mapping] = field(default_factory=list)
    base_image: Optional[UploadedImage] = None
    additional_images: List[UploadedImage] = field(default_factory=list)


@dataclass
class ProductUpdate:
    """Fields left as None are not part of the update."""

    name: Optional[str] = None
    product_type: Optional[str] = None
    new_product_type: Optional[str] = None
    description: Optional[str] = None
    gst_rate: Optional[object] = None
    is_active: Optional[object] = None
    dimensions: Optional[Sequence[Mapping]] = None
    base_image: Optional[UploadedImage] = None
    additional_images: List[UploadedImage] = field(default_factory=list)
    clear_base_image: bool = False
    clear_additional_images: bool = False
    retained_additional_image_urls: Optional[List[str]] = None


def resolve_product_type(selected: Optional[str], new_type_text: Optional[str] = None) -> str:
    selected_value = str(selected or "").strip().lower()
    if not selected_value:
        raise ValidationError(
            "Product type selection is required.",
            {"productType": "Product type selection is required."},
        )

    if selected_value == OTHER_PRODUCT_TYPE:
        custom_value = str(new_type_text or "").strip().lower()
        if not custom_value:
            raise ValidationError(
                'Please specify the new product type when "Other" is selected.',
                {"newProductType": "A new product type is required."},
            )
        return re.sub(r"\s+", "-", custom_value)

    return selected_value


def parse_gst_rate(value, default: Optional[float] = None) -> float:
    if is_blank(value):
        if default is None:
            raise ValidationError("GST rate is required.", {"gstRate": "GST rate is required."})
        return default

    try:
        rate = float(value) if not isinstance(value, bool) else math.nan
    except (TypeError, ValueError):
        rate = math.nan

    if not math.isfinite(rate):
        raise ValidationError("GST rate must be a valid number.", {"gstRate": "GST rate must be a number."})
    if rate < 0 or rate > 1:
        raise ValidationError(
            "GST rate must be between 0 and 1.",
            {"gstRate": "GST rate must be between 0 (0%) and 1 (100%)."},
        )
    return rate


def parse_is_active(value) -> bool:
    return parse_flag(value)


def format_timestamp(value) -> Optional[str]:
    return value.isoformat() + "Z" if isinstance(value, datetime) else None


def serialize_product(document: Dict) -> Dict[str, object]:
    dimensions = [
        {
            "dimensionName": entry.get("dimensionName", ""),
            "basePrice": entry.get("basePrice"),
        }
        for entry in document.get("dimensions") or []
        if isinstance(entry, dict)
    ]
    return {
        "id": str(document.get("_id")),
        "name": document.get("name", ""),
        "description": document.get("description", "") or "",
        "productType": document.get("productType", ""),
        "baseImageURL": document.get("baseImageURL"),
        "additionalImageURLs": list(document.get("additionalImageURLs") or []),
        "dimensions": dimensions,
        "gstRate": document.get("gstRate", DEFAULT_GST_RATE),
        "isActive": bool(document.get("isActive", True)),
        "createdAt": format_timestamp(document.get("createdAt")),
        "updatedAt": format_timestamp(document.get("updatedAt")),
    }


def _unique(urls: Sequence[Optional[str]]) -> List[str]:
    seen = set()
    result: List[str] = []
    for url in urls:
        if not url or url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


class ProductWriteCoordinator:
    """Creates, updates and deletes products along with their stored images.

    Validation always runs before any remote call. Uploads are all-or-nothing
    for the request; deletions of images a product no longer references are
    best-effort and only ever logged.
    """

    def __init__(
        self,
        repository: ProductRepository,
        storage: StorageGateway,
        logger: Optional[logging.Logger] = None,
        image_folder: str = DEFAULT_IMAGE_FOLDER,
    ):
        self.repository = repository
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)
        folder = (image_folder or DEFAULT_IMAGE_FOLDER).strip("/")
        self.base_image_folder = f"{folder}/base_images/"
        self.additional_image_folder = f"{folder}/additional_images/"

    # Reads

    def get(self, product_id) -> Dict:
        document = self.repository.get(product_id)
        if not document:
            raise NotFound("Product not found")
        return document

    def list_all(self) -> List[Dict]:
        return self.repository.list_all()

    def search(self, term: str) -> List[Dict]:
        return self.repository.search(term)

    def product_types(self) -> List[str]:
        return sorted(set(KNOWN_PRODUCT_TYPES) | set(self.repository.product_types()))

    # Writes

    def create(self, draft: ProductDraft) -> Dict:
        name = str(draft.name or "").strip()
        if not name:
            raise ValidationError("Product name is required.", {"name": "Product name is required."})

        product_type = resolve_product_type(draft.product_type, draft.new_product_type)
        dimensions = parse_dimensions(draft.dimensions)
        gst_rate = parse_gst_rate(draft.gst_rate, default=DEFAULT_GST_RATE)
        is_active = True if draft.is_active is None else parse_is_active(draft.is_active)
        self._check_image_count(draft.additional_images)

        if draft.base_image is not None or draft.additional_images:
            self._require_storage()

        base_image_url, additional_image_urls = self._upload_images(
            draft.base_image, draft.additional_images
        )

        document = {
            "name": name,
            "description": str(draft.description or "").strip(),
            "productType": product_type,
            "baseImageURL": base_image_url,
            "additionalImageURLs": additional_image_urls,
            "dimensions": dimensions,
            "gstRate": gst_rate,
            "isActive": is_active,
        }

        try:
            stored = self.repository.insert(document)
        except PersistenceError:
            self._discard_images(
                [base_image_url] + additional_image_urls, "uploads of a product that was not saved"
            )
            raise

        self.logger.info("Product saved successfully: %s", stored.get("_id"))
        return stored

    def update(self, product_id, changes: ProductUpdate) -> Dict:
        updates: Dict[str, object] = {}

        if changes.name is not None and changes.name.strip():
            updates["name"] = changes.name.strip()
        if changes.description is not None:
            updates["description"] = changes.description.strip()
        if not is_blank(changes.product_type):
            updates["productType"] = resolve_product_type(
                changes.product_type, changes.new_product_type
            )
        if not is_blank(changes.gst_rate):
            updates["gstRate"] = parse_gst_rate(changes.gst_rate)
        if changes.is_active is not None:
            updates["isActive"] = parse_is_active(changes.is_active)
        if changes.dimensions is not None:
            updates["dimensions"] = parse_dimensions(changes.dimensions)
        self._check_image_count(changes.additional_images)

        has_base_file = changes.base_image is not None
        has_additional_files = bool(changes.additional_images)
        clear_base = changes.clear_base_image and not has_base_file
        clear_additional = changes.clear_additional_images and not has_additional_files
        retained_urls = None
        if not has_additional_files and not clear_additional:
            retained_urls = changes.retained_additional_image_urls

        if not (
            updates
            or has_base_file
            or has_additional_files
            or clear_base
            or clear_additional
            or retained_urls is not None
        ):
            raise ValidationError("No update data provided.")

        if has_base_file or has_additional_files:
            self._require_storage()

        existing = self.get(product_id)
        existing_base = existing.get("baseImageURL")
        existing_additional = list(existing.get("additionalImageURLs") or [])
        replaced: List[Optional[str]] = []

        if clear_base:
            updates["baseImageURL"] = None
            replaced.append(existing_base)
        if clear_additional:
            updates["additionalImageURLs"] = []
            replaced.extend(existing_additional)
        elif retained_urls is not None:
            kept = [url for url in retained_urls if url in existing_additional]
            updates["additionalImageURLs"] = kept
            replaced.extend(url for url in existing_additional if url not in kept)

        base_image_url, additional_image_urls = self._upload_images(
            changes.base_image, changes.additional_images
        )
        fresh_urls = [base_image_url] + additional_image_urls
        if has_base_file:
            updates["baseImageURL"] = base_image_url
            replaced.append(existing_base)
        if has_additional_files:
            updates["additionalImageURLs"] = additional_image_urls
            replaced.extend(existing_additional)

        try:
            updated = self.repository.update(product_id, updates)
        except PersistenceError:
            self._discard_images(fresh_urls, "uploads of a failed update")
            raise

        if updated is None:
            self._discard_images(fresh_urls, "uploads for a product that no longer exists")
            raise NotFound("Product not found")

        still_referenced = {updated.get("baseImageURL")}
        still_referenced.update(updated.get("additionalImageURLs") or [])
        self._discard_images(
            [url for url in replaced if url not in still_referenced], "replaced images"
        )

        self.logger.info("Product updated successfully: %s", updated.get("_id"))
        return updated

    def delete(self, product_id) -> Dict[str, object]:
        existing = self.get(product_id)

        image_urls = [existing.get("baseImageURL")] + list(existing.get("additionalImageURLs") or [])
        outcomes = self._discard_images(image_urls, "deleted product")

        if not self.repository.delete(product_id):
            self.logger.warning("Product %s was already removed before delete completed", product_id)

        failed_count = len(failures(outcomes))
        self.logger.info(
            "Product deleted successfully: %s (%d image deletion(s) failed)",
            existing.get("_id"),
            failed_count,
        )
        return {"message": "Product deleted successfully", "failedImageDeletes": failed_count}

    # Image helpers

    def _check_image_count(self, images: Sequence[UploadedImage]) -> None:
        if len(images or []) > MAX_ADDITIONAL_IMAGES:
            raise ValidationError(
                f"You can upload up to {MAX_ADDITIONAL_IMAGES} additional images.",
                {"additionalImages": f"At most {MAX_ADDITIONAL_IMAGES} files are allowed."},
            )

    def _require_storage(self) -> None:
        if not self.storage.is_available():
            self.logger.error("Attempted image upload, but storage is not initialized.")
            raise StorageUnavailable(
                "Image Storage Service is not properly initialized on the server. "
                "Please check backend logs and configuration."
            )

    def _upload_images(
        self,
        base_image: Optional[UploadedImage],
        additional_images: Sequence[UploadedImage],
    ) -> Tuple[Optional[str], List[str]]:
        tasks = []
        if base_image is not None:
            tasks.append(("baseImage", self._upload_task(base_image, self.base_image_folder)))
        for index, image in enumerate(additional_images or []):
            tasks.append(
                (f"additionalImages[{index}]", self._upload_task(image, self.additional_image_folder))
            )
        if not tasks:
            return None, []

        outcomes = settle_all(tasks)
        failed = failures(outcomes)
        if failed:
            for outcome in failed:
                self.logger.error("Image upload %s failed: %s", outcome.label, outcome.error)
            self._discard_images(
                [outcome.value for outcome in outcomes if outcome.ok],
                "sibling uploads of a failed request",
            )
            error = failed[0].error
            if isinstance(error, StorageError):
                raise error
            raise StorageOperationFailed(f"Image upload failed: {error}") from error

        values = [outcome.value for outcome in outcomes]
        if base_image is not None:
            return values[0], values[1:]
        return None, values

    def _upload_task(self, image: UploadedImage, folder: str):
        return partial(self.storage.put, image.data, image.filename, folder, image.content_type)

    def _discard_images(self, urls: Sequence[Optional[str]], reason: str) -> List[Outcome]:
        targets = _unique(urls)
        if not targets:
            return []

        outcomes = settle_all([(url, partial(self.storage.delete, url)) for url in targets])
        for outcome in failures(outcomes):
            self.logger.warning(
                "Could not delete image %s (%s): %s", outcome.label, reason, outcome.error
            )
        return outcomes
