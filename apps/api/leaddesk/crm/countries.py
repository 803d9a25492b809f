from __future__ import annotations

COUNTRY_NAME_TO_CODE: dict[str, str] = {
    "italy": "IT",
    "france": "FR",
    "germany": "DE",
    "spain": "ES",
    "portugal": "PT",
    "greece": "GR",
    "netherlands": "NL",
    "belgium": "BE",
    "austria": "AT",
    "poland": "PL",
    "romania": "RO",
    "czech republic": "CZ",
    "hungary": "HU",
    "sweden": "SE",
    "denmark": "DK",
    "finland": "FI",
    "norway": "NO",
    "switzerland": "CH",
    "ireland": "IE",
    "united kingdom": "GB",
    "uk": "GB",
    "united states": "US",
    "usa": "US",
    "canada": "CA",
    "australia": "AU",
    "new zealand": "NZ",
}


def normalize_country(value: str) -> str:
    """Map a free-form country to the code assignment rules are keyed by.

    Two-letter inputs are taken as codes. Longer inputs are looked up by name;
    names outside the table are returned trimmed and uppercased.
    """
    normalized = value.strip().upper()
    if len(normalized) > 2:
        return COUNTRY_NAME_TO_CODE.get(normalized.lower(), normalized)
    return normalized
