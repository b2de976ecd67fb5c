from __future__ import annotations

import re
from typing import Any, Optional

from auction_intel.data_models import Site, VehicleIdentifier
from auction_intel.errors import InvalidInput

_VIN_RE = re.compile(r"^[A-Z0-9]{17}$")

_YEAR_CODE_MAP = {
    "Y": 2000,
    "1": 2001,
    "2": 2002,
    "3": 2003,
    "4": 2004,
    "5": 2005,
    "6": 2006,
    "7": 2007,
    "8": 2008,
    "9": 2009,
    "A": 2010,
    "B": 2011,
    "C": 2012,
    "D": 2013,
    "E": 2014,
    "F": 2015,
    "G": 2016,
    "H": 2017,
    "J": 2018,
    "K": 2019,
    "L": 2020,
    "M": 2021,
    "N": 2022,
    "P": 2023,
    "R": 2024,
    "S": 2025,
    "T": 2026,
}


def normalize_vin(raw: Any) -> str:
    if not isinstance(raw, str):
        raise InvalidInput("VIN must be a string")
    vin = raw.strip().upper()
    if not _VIN_RE.match(vin):
        raise InvalidInput("VIN must be exactly 17 alphanumeric characters")
    return vin


def parse_site(raw: Any) -> Site:
    try:
        return Site(int(raw))
    except (TypeError, ValueError):
        raise InvalidInput("Site must be 1 (Copart) or 2 (IAAI)") from None


def parse_lot_id(raw: Any) -> int:
    if isinstance(raw, bool):
        raise InvalidInput("Lot ID must be a positive integer")
    try:
        lot_id = int(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidInput("Lot ID must be a positive integer") from None
    if lot_id <= 0:
        raise InvalidInput("Lot ID must be a positive integer")
    return lot_id


def vin_identifier(raw: Any) -> VehicleIdentifier:
    return VehicleIdentifier(vin=normalize_vin(raw))


def lot_identifier(lot_id: Any, site: Any) -> VehicleIdentifier:
    return VehicleIdentifier(lot_id=parse_lot_id(lot_id), site=parse_site(site))


def model_year_from_vin(vin: str) -> Optional[int]:
    """Best-effort model year from the 10th VIN character."""
    if len(vin) < 10:
        return None
    return _YEAR_CODE_MAP.get(vin[9])
