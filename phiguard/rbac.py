"""
Role-Based Access Control (RBAC) for PHI categories.

Defines which PHI categories each role may view unmasked.  The matrix is
static: it is built once at import time and never mutated.  Lookups are
total -- unknown roles get the empty set rather than an error, so callers
always receive a well-defined answer and fall through to masking.

**Roles:**

* PATIENT    -- their own demographics, contact details and clinical data.
* PROVIDER   -- every category.
* NURSE      -- demographics, contact, MRN and clinical data.
* ADMIN      -- demographics, contact, MRN and insurance.
* TECHNICIAN -- name, MRN, vitals and images.
* BILLING    -- demographics, contact and insurance.
* RESEARCHER -- nothing raw; de-identified renderings only.
* GUEST      -- nothing.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Union

from phiguard.models import PHICategory, Role


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

_C = PHICategory

_PERMISSIONS: Mapping[Role, frozenset[PHICategory]] = MappingProxyType({
    Role.PATIENT: frozenset({
        _C.NAME, _C.DOB, _C.ADDRESS, _C.PHONE, _C.EMAIL,
        _C.DIAGNOSIS, _C.MEDICATION, _C.VITALS,
    }),
    Role.PROVIDER: frozenset(PHICategory),
    Role.NURSE: frozenset({
        _C.NAME, _C.DOB, _C.PHONE, _C.EMAIL, _C.MRN,
        _C.DIAGNOSIS, _C.MEDICATION, _C.VITALS,
    }),
    Role.ADMIN: frozenset({
        _C.NAME, _C.DOB, _C.ADDRESS, _C.PHONE, _C.EMAIL, _C.MRN, _C.INSURANCE,
    }),
    Role.TECHNICIAN: frozenset({_C.NAME, _C.MRN, _C.VITALS, _C.IMAGE}),
    Role.BILLING: frozenset({_C.NAME, _C.DOB, _C.ADDRESS, _C.PHONE, _C.INSURANCE}),
    Role.RESEARCHER: frozenset(),
    Role.GUEST: frozenset(),
})

# Roles whose masked output uses reduced-precision (de-identified) values
# for DOB and address instead of the full placeholder.
RESEARCH_ROLES = frozenset({Role.RESEARCHER})


def coerce_role(role: Union[Role, str, None]) -> Role:
    """Normalize a role value; anything unrecognized becomes ``GUEST``."""
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).lower())
    except ValueError:
        return Role.GUEST


def allowed_categories(role: Union[Role, str, None]) -> frozenset[PHICategory]:
    """Return the PHI categories a role may view unmasked.

    Args:
        role: The caller's role.  Unknown values are treated as ``GUEST``.

    Returns:
        A frozen set of categories (possibly empty).
    """
    return _PERMISSIONS.get(coerce_role(role), frozenset())


def check_permission(role: Union[Role, str, None], category: PHICategory) -> bool:
    """Check whether a role may view a PHI category unmasked.

    Args:
        role: The caller's role.
        category: The PHI category being requested.

    Returns:
        True if the category is in the role's allowed set, False otherwise.
    """
    return category in allowed_categories(role)


def get_permissions_for_role(role: Union[Role, str, None]) -> dict[PHICategory, bool]:
    """Return every PHI category with its allow flag for a role.

    Args:
        role: The role to query.

    Returns:
        Dictionary mapping each ``PHICategory`` to a permission boolean,
        in enum declaration order.
    """
    allowed = allowed_categories(role)
    return {category: category in allowed for category in PHICategory}
