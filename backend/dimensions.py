import math
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError

MISSING_DIMENSIONS_MESSAGE = (
    "At least one complete and valid dimension (name and price) is required."
)

TRUTHY_FLAGS = {"true", "1", "on", "yes"}


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def parse_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUTHY_FLAGS


def parse_price(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def parse_dimensions(entries: Sequence[Mapping]) -> List[Dict[str, object]]:
    """Turn submitted dimension rows into an ordered list of priced dimensions.

    Rows with neither a name nor a price are blank form rows and are skipped.
    A row carrying only one of the two, or a price that is not a finite
    number, fails the whole submission.
    """
    parsed: List[Dict[str, object]] = []

    for index, entry in enumerate(entries or []):
        if not isinstance(entry, Mapping):
            raise ValidationError(
                f"Invalid data for dimension at index {index}.",
                {f"dimensions[{index}]": "Expected a dimension name and price."},
            )

        raw_name = entry.get("dimensionName")
        raw_price = entry.get("basePrice")

        if is_blank(raw_name) and is_blank(raw_price):
            continue

        price_value = parse_price(raw_price) if not is_blank(raw_price) else None
        if is_blank(raw_name) or price_value is None:
            raise ValidationError(
                f"Incomplete or invalid data for dimension at index {index}. "
                "Both name and a valid price are required.",
                {f"dimensions[{index}]": "Both name and a valid price are required."},
            )

        if price_value < 0:
            raise ValidationError(
                f"Price for dimension at index {index} cannot be negative.",
                {f"dimensions[{index}][basePrice]": "Price cannot be negative."},
            )

        parsed.append(
            {"dimensionName": str(raw_name).strip(), "basePrice": price_value}
        )

    if not parsed:
        raise ValidationError(
            MISSING_DIMENSIONS_MESSAGE,
            {"dimensions": MISSING_DIMENSIONS_MESSAGE},
        )

    return parsed
