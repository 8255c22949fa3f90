"""ISO-3166 alpha-2 names for countries that commonly appear as origins."""

from __future__ import annotations

from typing import Dict

COUNTRY_NAMES: Dict[str, str] = {
    "AR": "Argentina",
    "AU": "Australia",
    "BD": "Bangladesh",
    "BH": "Bahrain",
    "BR": "Brazil",
    "BY": "Belarus",
    "CA": "Canada",
    "CH": "Switzerland",
    "CL": "Chile",
    "CN": "China",
    "CO": "Colombia",
    "CR": "Costa Rica",
    "DE": "Germany",
    "DO": "Dominican Republic",
    "EG": "Egypt",
    "ES": "Spain",
    "FR": "France",
    "GB": "United Kingdom",
    "GT": "Guatemala",
    "HK": "Hong Kong",
    "HN": "Honduras",
    "ID": "Indonesia",
    "IL": "Israel",
    "IN": "India",
    "IT": "Italy",
    "JO": "Jordan",
    "JP": "Japan",
    "KH": "Cambodia",
    "KR": "South Korea",
    "LK": "Sri Lanka",
    "MA": "Morocco",
    "MD": "Moldova",
    "MX": "Mexico",
    "MY": "Malaysia",
    "NI": "Nicaragua",
    "NL": "Netherlands",
    "OM": "Oman",
    "PA": "Panama",
    "PE": "Peru",
    "PH": "Philippines",
    "PK": "Pakistan",
    "PL": "Poland",
    "RU": "Russia",
    "SG": "Singapore",
    "SV": "El Salvador",
    "TH": "Thailand",
    "TR": "Turkey",
    "TW": "Taiwan",
    "UA": "Ukraine",
    "US": "United States",
    "VN": "Vietnam",
    "ZA": "South Africa",
}


def country_name(code: str) -> str:
    return COUNTRY_NAMES.get(code.upper(), code.upper())
