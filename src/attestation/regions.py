"""Static country code to region lookup."""
from typing import Optional

EUROPE = frozenset({
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR", "DE", "GR",
    "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL", "PL", "PT", "RO", "SK",
    "SI", "ES", "SE", "IS", "LI", "NO",
})
AMERICAS = frozenset({
    "US", "CA", "MX", "BR", "AR", "CL", "CO", "PE", "VE", "UY", "EC", "BO",
    "PY", "SR", "GY", "GF", "BZ", "CR", "CU", "DO", "GT", "HN", "JM", "NI",
    "PA", "PR", "SV", "TT",
})
ASIA = frozenset({
    "CN", "JP", "KR", "TW", "SG", "HK", "MY", "TH", "VN", "PH", "ID", "IN",
    "PK", "BD", "LK", "NP", "AE", "SA", "QA", "KW", "OM", "BH", "IL", "TR",
    "KZ",
})
AFRICA = frozenset({
    "ZA", "NG", "EG", "KE", "MA", "DZ", "TN", "GH", "ET", "UG", "TZ", "SD",
    "SN", "CI", "CM", "AO", "ZM", "ZW", "MZ",
})
OCEANIA = frozenset({"AU", "NZ", "FJ", "PG"})

OTHER = "Other"

COUNTRY_REGION = {
    **{cc: "Europe" for cc in EUROPE},
    **{cc: "Americas" for cc in AMERICAS},
    **{cc: "Asia" for cc in ASIA},
    **{cc: "Africa" for cc in AFRICA},
    **{cc: "Oceania" for cc in OCEANIA},
}


def normalize_country(code) -> Optional[str]:
    """Upper-cased ISO alpha-2 code, or None if ``code`` is not one."""
    cc = str(code or "").strip().upper()
    if len(cc) != 2 or not cc.isalpha():
        return None
    return cc


def region_for(code: str) -> str:
    return COUNTRY_REGION.get(str(code or "").upper(), OTHER)
