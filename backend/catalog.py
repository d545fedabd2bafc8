from typing import Dict, List

from .products import DEFAULT_GST_RATE
from .repository import ProductRepository


def to_public_product(document: Dict) -> Dict[str, object]:
    """Reduce a stored product to what the storefront may see.

    Prices stay tax-exclusive. Clients compute ``basePrice * (1 + gstRate)``
    themselves, so ``gstRate`` always travels with the dimensions.
    """
    dimensions = [
        {"dimensionName": entry.get("dimensionName", ""), "basePrice": entry.get("basePrice")}
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
    }


def list_public_products(repository: ProductRepository) -> List[Dict[str, object]]:
    return [to_public_product(document) for document in repository.list_active()]


def search_public_products(repository: ProductRepository, term: str) -> List[Dict[str, object]]:
    return [
        to_public_product(document)
        for document in repository.search(term, active_only=True)
    ]
