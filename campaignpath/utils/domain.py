"""
Sender domain and subject normalization.

Merchants are identified by the registrable domain of the sender address
(mail.shop.example.co.uk -> example.co.uk); campaigns by a hash of the
normalized subject line.
"""

from __future__ import annotations

import hashlib
import re

# Public suffixes with two labels where the registrable domain needs three
SECOND_LEVEL_TLDS: frozenset[str] = frozenset(
    {
        # United Kingdom
        "co.uk", "org.uk", "me.uk", "net.uk", "ac.uk", "gov.uk", "ltd.uk", "plc.uk",
        # China
        "com.cn", "net.cn", "org.cn", "gov.cn", "edu.cn", "ac.cn",
        # Australia
        "com.au", "net.au", "org.au", "edu.au", "gov.au", "asn.au", "id.au",
        # Japan
        "co.jp", "or.jp", "ne.jp", "ac.jp", "ad.jp", "ed.jp", "go.jp", "gr.jp",
        # Brazil
        "com.br", "net.br", "org.br", "gov.br", "edu.br",
        # India
        "co.in", "net.in", "org.in", "gen.in", "firm.in", "ind.in",
        # New Zealand
        "co.nz", "net.nz", "org.nz", "govt.nz", "ac.nz", "school.nz",
        # South Africa
        "co.za", "net.za", "org.za", "gov.za", "edu.za",
        # Hong Kong
        "com.hk", "net.hk", "org.hk", "gov.hk", "edu.hk", "idv.hk",
        # Taiwan
        "com.tw", "net.tw", "org.tw", "gov.tw", "edu.tw", "idv.tw",
        # Singapore
        "com.sg", "net.sg", "org.sg", "gov.sg", "edu.sg",
        # South Korea
        "co.kr", "ne.kr", "or.kr", "go.kr", "ac.kr", "re.kr",
        # Russia
        "com.ru", "net.ru", "org.ru",
        # Mexico
        "com.mx", "net.mx", "org.mx", "gob.mx", "edu.mx",
        # Israel
        "co.il", "org.il", "net.il", "ac.il", "gov.il",
        # Turkey
        "com.tr", "net.tr", "org.tr", "gov.tr", "edu.tr",
        # Malaysia
        "com.my", "net.my", "org.my", "gov.my", "edu.my",
        # Philippines
        "com.ph", "net.ph", "org.ph", "gov.ph", "edu.ph",
        # Thailand
        "co.th", "in.th", "ac.th", "go.th", "or.th", "net.th",
        # Vietnam
        "com.vn", "net.vn", "org.vn", "gov.vn", "edu.vn",
        # Indonesia
        "co.id", "or.id", "ac.id", "go.id", "web.id",
    }
)  # fmt: skip

_WHITESPACE_RE = re.compile(r"\s+")


def extract_root_domain(full_domain: str) -> str:
    """
    Reduce a host name to its registrable domain.

    Examples:
        >>> extract_root_domain("mail.example.com")
        'example.com'
        >>> extract_root_domain("shop.amazon.co.uk")
        'amazon.co.uk'
    """
    parts = full_domain.split(".")
    if len(parts) <= 2:
        return full_domain

    if ".".join(parts[-2:]) in SECOND_LEVEL_TLDS:
        return ".".join(parts[-3:])

    return ".".join(parts[-2:])


def extract_domain(email: str | None) -> str | None:
    """
    Extract the registrable domain from a sender address.

    Handles display-name forms ("Shop <promo@shop.com>") and multiple '@'
    by splitting on the last one.

    Returns:
        Lowercase root domain, or None when the address has no usable domain
    """
    if not email or not isinstance(email, str):
        return None

    trimmed = email.strip()
    if trimmed.endswith(">") and "<" in trimmed:
        trimmed = trimmed[trimmed.rindex("<") + 1 : -1].strip()
    if not trimmed:
        return None

    at_index = trimmed.rfind("@")
    if at_index <= 0 or at_index == len(trimmed) - 1:
        return None

    full_domain = trimmed[at_index + 1 :].lower().rstrip(".")
    if not full_domain or " " in full_domain or "." not in full_domain:
        return None
    if any(not label for label in full_domain.split(".")):
        return None

    return extract_root_domain(full_domain)


def normalize_subject(subject: str | None) -> str:
    """Trim and collapse internal whitespace; case is preserved."""
    if not subject:
        return ""
    return _WHITESPACE_RE.sub(" ", subject).strip()


def calculate_subject_hash(subject: str | None) -> str:
    """SHA-256 hex digest of the normalized subject (campaign grouping key)."""
    return hashlib.sha256(normalize_subject(subject).encode("utf-8")).hexdigest()
