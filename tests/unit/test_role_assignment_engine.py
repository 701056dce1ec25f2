from idlink.models.domain.verification_domain import GuildConfig, RoleMode
from idlink.services.role_assignment_engine import (
    attribute_value,
    compute_removal_diff,
    compute_role_diff,
    desired_roles,
)


def _config(mode: RoleMode, **overrides) -> GuildConfig:
    values = {
        "guild_id": "guild-1",
        "role_mode": mode,
        "verified_role": "role_verified",
        "level_roles": {"Undergrad": "role_ug", "Graduate": "role_777"},
        "class_roles": {"Junior": "role_junior", "Masters": "role_masters"},
    }
    values.update(overrides)
    return GuildConfig(**values)


GRAD_MASTERS = {"level": ["Graduate"], "class": ["Masters"]}


def test_attribute_value_accepts_lists_and_strings():
    assert attribute_value({"level": ["", " Graduate "]}, "level") == "Graduate"
    assert attribute_value({"level": "Undergrad"}, "level") == "Undergrad"
    assert attribute_value({"level": []}, "level") is None
    assert attribute_value({}, "level") is None
    assert attribute_value(None, "level") is None


def test_none_mode_assigns_only_verified_role():
    diff = compute_role_diff(_config(RoleMode.NONE), GRAD_MASTERS, set())

    assert diff.to_add == {"role_verified"}
    assert diff.to_remove == set()


def test_levels_mode_assigns_level_role():
    diff = compute_role_diff(_config(RoleMode.LEVELS), {"level": ["Graduate"]}, set())

    assert diff.to_add == {"role_verified", "role_777"}


def test_classes_mode_ignores_levels():
    diff = compute_role_diff(_config(RoleMode.CLASSES), GRAD_MASTERS, set())

    assert diff.to_add == {"role_verified", "role_masters"}


def test_custom_mode_only_honours_enabled_values():
    config = _config(RoleMode.CUSTOM, custom_levels={"Graduate"}, custom_classes={"Junior"})

    assert desired_roles(config, GRAD_MASTERS) == {"role_verified", "role_777"}
    assert desired_roles(config, {"level": ["Undergrad"], "class": ["Junior"]}) == {
        "role_verified",
        "role_junior",
    }


def test_unmapped_attribute_value_yields_no_role():
    diff = compute_role_diff(_config(RoleMode.LEVELS), {"level": ["Postdoc"]}, set())

    assert diff.to_add == {"role_verified"}


def test_stale_managed_role_is_removed():
    diff = compute_role_diff(
        _config(RoleMode.LEVELS), {"level": ["Graduate"]}, {"role_verified", "role_ug"}
    )

    assert diff.to_add == {"role_777"}
    assert diff.to_remove == {"role_ug"}


def test_unmanaged_roles_are_never_removed():
    current = {"role_verified", "role_777", "role_moderator", "role_other"}

    diff = compute_role_diff(_config(RoleMode.LEVELS), {"level": ["Graduate"]}, current)

    assert diff.is_empty


def test_applying_diff_twice_is_a_noop():
    config = _config(RoleMode.CUSTOM, custom_levels={"Graduate"}, custom_classes={"Masters"})
    current = {"role_ug", "role_member"}

    first = compute_role_diff(config, GRAD_MASTERS, current)
    after = (current | first.to_add) - first.to_remove
    second = compute_role_diff(config, GRAD_MASTERS, after)

    assert after == {"role_member", "role_verified", "role_777", "role_masters"}
    assert second.is_empty


def test_no_verified_role_configured():
    config = _config(RoleMode.LEVELS, verified_role=None)

    assert desired_roles(config, {"level": ["Undergrad"]}) == {"role_ug"}


def test_removal_diff_strips_only_managed_roles():
    config = _config(RoleMode.LEVELS)

    diff = compute_removal_diff(config, {"role_verified", "role_777", "role_moderator"})

    assert diff.to_add == set()
    assert diff.to_remove == {"role_verified", "role_777"}
