"""
ProductSheetPro - Vendor Parser Profiles
Layout rules for the record parser, one profile per vendor document format.
Tune these when a vendor changes its quote/order layout.

field_window counts every non-blank line after the code line, description
lines included. A vendor whose descriptions wrap past the window gets its
codes reported as "no price within N lines"; raise the window for it.
"""

import re

from models import ParserProfile

# Builder Warehouse AU quotes/orders:
#   BW-001  Porcelain tile 600x600 matt
#           grey, R10 slip rating          $45.00
#           Note: pallet lots only
BWA_PROFILE = ParserProfile(
    name="bwa",
    code_pattern=r"[A-Z]{1,4}-?\d{3,6}[A-Z]?",
    field_window=8,
    stop_patterns=[
        r"^sub\s*-?\s*total\b",
        r"^total\b",
        r"^gst\b",
        r"^freight\b",
        r"^delivery\s+charge\b",
        r"^amount\s+due\b",
        r"^thank\s+you\b",
    ],
    ignore_patterns=[
        r"^page\s+\d+(\s+of\s+\d+)?$",
        r"^abn\b",
        r"^(quote|order|invoice)\s*(no\b|number\b|#)",
        r"^product\s+code\b",
        r"^builders?\s+warehouse\b",
    ],
)

# Catch-all for documents from other suppliers. Looser code grammar
# (must contain a digit) and bare decimal prices.
GENERIC_PROFILE = ParserProfile(
    name="generic",
    code_pattern=r"[A-Z]{1,6}[-/]?\d{2,8}[A-Z0-9\-]{0,4}",
    price_pattern=(
        r"(?:AUD\s*|A?\$\s*)\d[\d,.]*"
        r"|(?<![\w.,])\d{1,3}(?:,\d{3})*\.\d{2}(?![\w.])"
        r"|(?<![\w.,])\d+\.\d{2}(?![\w.])"
    ),
    field_window=6,
    stop_patterns=[r"^sub\s*-?\s*total\b", r"^total\b", r"^tax\b", r"^gst\b"],
    ignore_patterns=[r"^page\s+\d+(\s+of\s+\d+)?$"],
)

PROFILES = {p.name: p for p in (BWA_PROFILE, GENERIC_PROFILE)}

DEFAULT_PROFILE = BWA_PROFILE

_VENDOR_MARKERS = {
    "bwa": [r"builders?\s+warehouse", r"\bBWA\b"],
}


def get_profile(name: str | None) -> ParserProfile:
    """Look up a profile by name. Unknown or empty names give the default."""
    if not name:
        return DEFAULT_PROFILE
    return PROFILES.get(name.strip().lower(), DEFAULT_PROFILE)


def detect_profile(first_page_text: str) -> ParserProfile:
    """Pick a profile from vendor markers on the first page."""
    for name, markers in _VENDOR_MARKERS.items():
        for marker in markers:
            if re.search(marker, first_page_text, re.IGNORECASE):
                return PROFILES[name]
    return DEFAULT_PROFILE
