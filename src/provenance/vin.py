from __future__ import annotations

import re

from provenance.errors import InvalidInputError

# 17 characters, letters I, O and Q are never used.
_VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")


def normalize_vin(vin: str) -> str:
    return vin.strip().upper()


def is_valid_vin(vin: str) -> bool:
    return bool(_VIN_PATTERN.match(normalize_vin(vin)))


def require_valid_vin(vin: str) -> str:
    normalized = normalize_vin(vin)
    if not _VIN_PATTERN.match(normalized):
        raise InvalidInputError("Invalid VIN format", {"vin": vin})
    return normalized
