"""
PHI Masker -- role-aware redaction of sensitive values.

``mask()`` is a pure function of ``(value, category, role)``: it consults
the permission matrix and either returns the value unchanged or applies a
category-specific redaction.  It performs no I/O and does not write audit
entries; callers report the access to the audit logger themselves.

Redaction strategies:

* Structured identifiers (SSN, MRN) keep their last four characters.
* Names keep the first character of each token followed by a fixed-width
  mask, so the output length does not reveal the original length.
* Contact fields keep their structural delimiters (phone dashes, the
  e-mail domain) so a UI can still tell what kind of field it shows.
* DOB and address are de-identified for research roles and fully masked
  for everyone else.
* Unstructured clinical categories never leak partial content.

Every strategy is idempotent: masking an already-masked value with the
same role yields the same string.
"""

from __future__ import annotations

import re
from typing import Mapping, Union

from phiguard.models import PHICategory, Role
from phiguard.rbac import RESEARCH_ROLES, allowed_categories, coerce_role


GENERIC_MASK = "[PROTECTED]"

_FULL_MASKS: dict[PHICategory, str] = {
    category: f"[{category.value.upper()} PROTECTED]" for category in PHICategory
}

_VISIBLE_SUFFIX = 4
_NAME_MASK = "***"
_STREET_MASK = "*** STREET ADDRESS ***"
_AREA_CODE_DIGITS = 3

_YEAR_PATTERN = re.compile(r"(?<!\d)(\d{4})(?!\d)")


def mask(
    value: str,
    category: Union[PHICategory, str],
    role: Union[Role, str, None],
) -> str:
    """Return ``value`` as the given role is allowed to see it.

    Args:
        value: The raw (or already-masked) value.  May be empty.
        category: PHI category of the value.  Unknown categories get the
            generic ``[PROTECTED]`` placeholder.
        role: The caller's role.  Unknown roles are treated as ``GUEST``.

    Returns:
        The original value if the role may view the category, otherwise a
        redacted rendering.
    """
    try:
        category = PHICategory(category)
    except ValueError:
        return GENERIC_MASK

    role = coerce_role(role)
    if category in allowed_categories(role):
        return value

    value = value or ""
    strategy = _STRATEGIES.get(category)
    if strategy is None:
        return full_mask(category)
    return strategy(value, role)


def mask_fields(
    fields: Mapping[str, tuple[str, Union[PHICategory, str]]],
    role: Union[Role, str, None],
) -> dict[str, str]:
    """Mask several fields of a record in one call.

    Args:
        fields: Mapping of field name to ``(value, category)``.
        role: The caller's role.

    Returns:
        Mapping of field name to masked value, in input order.
    """
    return {
        name: mask(value, category, role)
        for name, (value, category) in fields.items()
    }


def full_mask(category: Union[PHICategory, str]) -> str:
    """Return the fixed placeholder for a category."""
    try:
        return _FULL_MASKS[PHICategory(category)]
    except ValueError:
        return GENERIC_MASK


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _mask_ssn(value: str, role: Role) -> str:
    positions = [i for i, ch in enumerate(value) if ch.isalnum()]
    # Too short to keep a suffix without revealing the whole identifier.
    if len(positions) <= _VISIBLE_SUFFIX:
        hidden = set(positions)
    else:
        hidden = set(positions[:-_VISIBLE_SUFFIX])
    return "".join("X" if i in hidden else ch for i, ch in enumerate(value))


def _mask_mrn(value: str, role: Role) -> str:
    if len(value) <= _VISIBLE_SUFFIX:
        return "*" * len(value)
    return "*" * (len(value) - _VISIBLE_SUFFIX) + value[-_VISIBLE_SUFFIX:]


def _mask_name(value: str, role: Role) -> str:
    return " ".join(token[0] + _NAME_MASK for token in value.split())


def _mask_dob(value: str, role: Role) -> str:
    if role in RESEARCH_ROLES:
        match = _YEAR_PATTERN.search(value)
        if match:
            return f"{match.group(1)}-XX-XX"
    return full_mask(PHICategory.DOB)


def _mask_address(value: str, role: Role) -> str:
    if role in RESEARCH_ROLES and "," in value:
        _, rest = value.split(",", 1)
        return f"{_STREET_MASK},{rest}"
    return full_mask(PHICategory.ADDRESS)


def _mask_phone(value: str, role: Role) -> str:
    seen = 0
    out = []
    for ch in value:
        if ch.isdigit():
            seen += 1
            out.append(ch if seen <= _AREA_CODE_DIGITS else "X")
        else:
            out.append(ch)
    return "".join(out)


def _mask_email(value: str, role: Role) -> str:
    if not value:
        return value
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return full_mask(PHICategory.EMAIL)
    return f"{local[0]}{_NAME_MASK}@{domain}"


_STRATEGIES = {
    PHICategory.SSN: _mask_ssn,
    PHICategory.MRN: _mask_mrn,
    PHICategory.NAME: _mask_name,
    PHICategory.DOB: _mask_dob,
    PHICategory.ADDRESS: _mask_address,
    PHICategory.PHONE: _mask_phone,
    PHICategory.EMAIL: _mask_email,
}
