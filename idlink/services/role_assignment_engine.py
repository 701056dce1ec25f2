"""
Role Assignment Engine.

Pure decision functions: given a guild's role configuration, the attributes
the identity provider vouches for and the member's current roles, work out
which roles to add and which to remove. No I/O happens here.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from idlink.models.domain.verification_domain import GuildConfig, RoleDiff, RoleMode

LEVEL_ATTRIBUTE = "level"
CLASS_ATTRIBUTE = "class"


def attribute_value(attributes: Mapping[str, Any] | None, name: str) -> str | None:
    """
    First non-empty value of an attribute.

    Keycloak returns attributes as lists of strings; plain strings are
    accepted too.
    """
    if not attributes:
        return None
    raw = attributes.get(name)
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, Iterable):
        for item in raw:
            if isinstance(item, str) and item.strip():
                return item.strip()
    return None


def _attribute_role(
    roles: Mapping[str, str], value: str | None, enabled: set[str] | None = None
) -> str | None:
    if value is None:
        return None
    if enabled is not None and value not in enabled:
        return None
    return roles.get(value)


def desired_roles(config: GuildConfig, attributes: Mapping[str, Any] | None) -> set[str]:
    """Roles the member should hold in the guild given its configuration."""
    desired: set[str] = set()
    if config.verified_role:
        desired.add(config.verified_role)

    level = attribute_value(attributes, LEVEL_ATTRIBUTE)
    klass = attribute_value(attributes, CLASS_ATTRIBUTE)

    # custom mode only honours explicitly enabled values
    custom = config.role_mode == RoleMode.CUSTOM
    level_enabled = config.custom_levels if custom else None
    class_enabled = config.custom_classes if custom else None

    if config.assigns_level_roles():
        role = _attribute_role(config.level_roles, level, level_enabled)
        if role:
            desired.add(role)

    if config.assigns_class_roles():
        role = _attribute_role(config.class_roles, klass, class_enabled)
        if role:
            desired.add(role)

    return desired


def compute_role_diff(
    config: GuildConfig,
    attributes: Mapping[str, Any] | None,
    current_roles: Iterable[str],
) -> RoleDiff:
    """
    Diff between the member's current roles and the roles it should hold.

    Only roles managed by this guild's configuration are ever removed.
    """
    current = set(current_roles)
    desired = desired_roles(config, attributes)
    managed = config.managed_roles()

    return RoleDiff(
        to_add=frozenset(desired - current),
        to_remove=frozenset((managed & current) - desired),
    )


def compute_removal_diff(config: GuildConfig, current_roles: Iterable[str]) -> RoleDiff:
    """Diff that strips every managed role the member currently holds."""
    return RoleDiff(to_remove=frozenset(config.managed_roles() & set(current_roles)))
