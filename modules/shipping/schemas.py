"""
Shipping Module - Types
========================
Canonical internal types for areas, parcels and rates. Whatever shape the
carrier API answers with, the rest of the app only ever sees these.
"""

import re
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

# Floors applied per item before aggregation
MIN_ITEM_WEIGHT = 100       # grams
MIN_ITEM_VALUE = 10000      # rupiah
MIN_DIMENSION = 1           # cm

# Used when a product has no stored dimensions
DEFAULT_PRODUCT_DIMENSIONS = {"weight": 100, "height": 5, "length": 10, "width": 10}

# Used by the quote endpoint when the caller sends no items
DEFAULT_PARCEL = {"weight": 500, "height": 10, "length": 15, "width": 15, "value": 50000, "quantity": 1}

_POSTAL_RE = re.compile(r"^\d{5}$")
_POSTAL_IN_TEXT_RE = re.compile(r"\b(\d{5})\b")


def is_valid_postal_code(value: Optional[str]) -> bool:
    return bool(value) and bool(_POSTAL_RE.match(str(value)))


@dataclass
class Area:
    id: str
    name: str
    postal_code: str = ""
    country_code: str = "ID"
    country_name: str = "Indonesia"
    administrative_division_level_1_name: str = ""
    administrative_division_level_1_type: str = "province"
    administrative_division_level_2_name: str = ""
    administrative_division_level_2_type: str = "city"
    administrative_division_level_3_name: str = ""
    administrative_division_level_3_type: str = "district"
    administrative_division_level_4_name: str = ""
    administrative_division_level_4_type: str = "village"

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Area":
        return cls(
            id=str(raw.get("id") or ""),
            name=raw.get("name") or "",
            postal_code=extract_postal_code(raw),
            country_code=raw.get("country_code") or "ID",
            country_name=raw.get("country_name") or "Indonesia",
            administrative_division_level_1_name=raw.get("administrative_division_level_1_name") or "",
            administrative_division_level_1_type=raw.get("administrative_division_level_1_type") or "province",
            administrative_division_level_2_name=raw.get("administrative_division_level_2_name") or "",
            administrative_division_level_2_type=raw.get("administrative_division_level_2_type") or "city",
            administrative_division_level_3_name=raw.get("administrative_division_level_3_name") or "",
            administrative_division_level_3_type=raw.get("administrative_division_level_3_type") or "district",
            administrative_division_level_4_name=raw.get("administrative_division_level_4_name") or "",
            administrative_division_level_4_type=raw.get("administrative_division_level_4_type") or "village",
        )

    @property
    def formatted_name(self) -> str:
        """'village, district, city, province (postal)'"""
        parts = [
            self.administrative_division_level_4_name,
            self.administrative_division_level_3_name,
            self.administrative_division_level_2_name,
            self.administrative_division_level_1_name,
        ]
        label = ", ".join(p for p in parts if p) or self.name
        if self.postal_code:
            label = f"{label} ({self.postal_code})"
        return label

    def to_dict(self) -> dict:
        data = asdict(self)
        data["formatted_name"] = self.formatted_name
        return data


def extract_postal_code(raw: Dict[str, Any]) -> str:
    for key in ("postal_code", "postalCode", "zip_code"):
        value = raw.get(key)
        if value:
            return str(value)
    match = _POSTAL_IN_TEXT_RE.search(str(raw.get("name") or ""))
    return match.group(1) if match else ""


@dataclass
class PackageItem:
    """One line going into a parcel. None means 'unknown'."""
    quantity: int = 1
    weight: Optional[float] = None
    height: Optional[float] = None
    length: Optional[float] = None
    width: Optional[float] = None
    value: Optional[float] = None
    name: str = ""


@dataclass(frozen=True)
class PackageDimensions:
    weight: int
    height: int
    length: int
    width: int
    value: int

    def to_dict(self) -> dict:
        return asdict(self)


def calculate_package_dimensions(items: List[PackageItem]) -> PackageDimensions:
    """
    Aggregate items into one parcel:
    weight and value sum (per-item floors x quantity), the other
    dimensions take the max across items. Totals keep the same floors.
    """
    total_weight = 0
    total_value = 0
    max_height = max_length = max_width = MIN_DIMENSION

    for item in items:
        qty = max(int(item.quantity or 1), 1)
        total_weight += max(int(round(item.weight or MIN_ITEM_WEIGHT)), MIN_ITEM_WEIGHT) * qty
        total_value += max(int(round(item.value or MIN_ITEM_VALUE)), MIN_ITEM_VALUE) * qty
        max_height = max(max_height, int(round(item.height or MIN_DIMENSION)))
        max_length = max(max_length, int(round(item.length or MIN_DIMENSION)))
        max_width = max(max_width, int(round(item.width or MIN_DIMENSION)))

    return PackageDimensions(
        weight=max(total_weight, MIN_ITEM_WEIGHT),
        height=max_height,
        length=max_length,
        width=max_width,
        value=max(total_value, MIN_ITEM_VALUE),
    )


@dataclass
class ShippingRate:
    courier_name: str
    courier_code: str
    courier_service_name: str
    courier_service_code: str
    price: int
    duration: str
    description: str
    insurance_fee: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShippingRate":
        return cls(
            courier_name=data["courier_name"],
            courier_code=data["courier_code"],
            courier_service_name=data["courier_service_name"],
            courier_service_code=data["courier_service_code"],
            price=int(data["price"]),
            duration=data.get("duration") or "",
            description=data.get("description") or "",
            insurance_fee=int(data.get("insurance_fee") or 0),
        )


@dataclass
class QuoteContext:
    """Everything a request shape may need to build its body."""
    origin_postal: str
    destination_postal: str
    origin_area: Area
    destination_area: Area
    package: PackageDimensions
    couriers: str


@dataclass
class RequestShape:
    """
    One known variant of the /rates/couriers request body.
    Disabled shapes stay in the list so the reason is kept next to the code.
    """
    name: str
    enabled: bool
    build: Callable[[QuoteContext], Dict[str, Any]]
    notes: str = ""
