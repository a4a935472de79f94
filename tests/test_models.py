import dataclasses

import pytest

from karpazure.models import (
    ALLOW_UNDEFINED_LABELS,
    ARCH_AMD64,
    ARCH_ARM64,
    CAPACITY_TYPE_ON_DEMAND,
    CAPACITY_TYPE_SPOT,
    HYPERV_GENERATION_V2,
    LABEL_ARCH,
    LABEL_CAPACITY_TYPE,
    LABEL_SKU_HYPERV_GENERATION,
    LABEL_ZONE,
    Bootstrapper,
    ExpiringCache,
    IncompatibleRequirementsError,
    InstanceType,
    NodeClass,
    Offering,
    Operator,
    Requirement,
    Requirements,
    Taint,
)


def test_in_requirement_has_only_listed_values():
    req = Requirement(LABEL_ARCH, Operator.IN, [ARCH_AMD64])
    assert req.has(ARCH_AMD64)
    assert not req.has(ARCH_ARM64)
    assert req.operator is Operator.IN
    assert req.values == [ARCH_AMD64]


def test_not_in_requirement_excludes_values():
    req = Requirement(LABEL_ARCH, "NotIn", [ARCH_AMD64])
    assert req.has(ARCH_ARM64)
    assert not req.has(ARCH_AMD64)
    assert req.operator is Operator.NOT_IN


def test_exists_and_does_not_exist():
    exists = Requirement(LABEL_ARCH, Operator.EXISTS)
    absent = Requirement(LABEL_ARCH, Operator.DOES_NOT_EXIST)
    assert exists.has(ARCH_ARM64)
    assert not absent.has(ARCH_ARM64)
    assert exists.size == float("inf")
    assert absent.size == 0


def test_exists_with_values_is_rejected():
    with pytest.raises(ValueError):
        Requirement(LABEL_ARCH, Operator.EXISTS, [ARCH_AMD64])


def test_intersects():
    amd = Requirement(LABEL_ARCH, Operator.IN, [ARCH_AMD64])
    arm = Requirement(LABEL_ARCH, Operator.IN, [ARCH_ARM64])
    not_arm = Requirement(LABEL_ARCH, Operator.NOT_IN, [ARCH_ARM64])
    assert not amd.intersects(arm)
    assert amd.intersects(not_arm)
    assert not Requirement(LABEL_ARCH, Operator.EXISTS).intersects(Requirement(LABEL_ARCH, Operator.DOES_NOT_EXIST))


def test_get_missing_key_is_unconstrained():
    got = Requirements().get(LABEL_ZONE)
    assert got.key == LABEL_ZONE
    assert got.operator is Operator.EXISTS


def test_repeated_keys_are_intersected():
    reqs = Requirements(
        Requirement(LABEL_ARCH, Operator.IN, [ARCH_AMD64, ARCH_ARM64]),
        Requirement(LABEL_ARCH, Operator.NOT_IN, [ARCH_AMD64]),
    )
    assert reqs.get(LABEL_ARCH).values == [ARCH_ARM64]
    assert len(reqs) == 1


def test_from_node_selector_matches_constructor():
    items = [Requirement(LABEL_ARCH, Operator.IN, [ARCH_AMD64]), Requirement(LABEL_ZONE, Operator.EXISTS)]
    assert Requirements.from_node_selector(items) == Requirements(*items)


def test_compatible_conflicting_well_known_label():
    amd = Requirements(Requirement(LABEL_ARCH, Operator.IN, [ARCH_AMD64]))
    arm = Requirements(Requirement(LABEL_ARCH, Operator.IN, [ARCH_ARM64]))
    assert amd.compatible(amd) is None
    with pytest.raises(IncompatibleRequirementsError):
        amd.compatible(arm)


def test_undefined_custom_label_needs_allowance():
    gen2 = Requirements(Requirement(LABEL_SKU_HYPERV_GENERATION, Operator.IN, [HYPERV_GENERATION_V2]))
    with pytest.raises(IncompatibleRequirementsError):
        Requirements().compatible(gen2)
    assert Requirements().compatible(gen2, ALLOW_UNDEFINED_LABELS) is None


def test_negative_undefined_custom_label_is_compatible():
    reqs = Requirements(Requirement("example.com/custom", Operator.NOT_IN, ["a"]))
    assert Requirements().compatible(reqs) is None
    with pytest.raises(IncompatibleRequirementsError):
        Requirements().compatible(Requirements(Requirement("example.com/custom", Operator.IN, ["a"])))


def test_undefined_well_known_label_is_compatible():
    arm = Requirements(Requirement(LABEL_ARCH, Operator.IN, [ARCH_ARM64]))
    assert Requirements().compatible(arm) is None


def test_both_does_not_exist_are_compatible():
    absent = Requirements(Requirement(LABEL_ARCH, Operator.DOES_NOT_EXIST))
    assert absent.compatible(absent) is None


def test_available_offerings_and_cheapest_price():
    it = InstanceType(
        name="Standard_D2s_v3",
        offerings=[
            Offering(CAPACITY_TYPE_ON_DEMAND, "westus-1", 0.3),
            Offering(CAPACITY_TYPE_SPOT, "westus-2", 0.1, available=False),
            Offering(CAPACITY_TYPE_ON_DEMAND, "westus-2", 0.2),
        ],
    )
    assert [o.zone for o in it.available_offerings()] == ["westus-1", "westus-2"]
    assert it.cheapest_price(Requirements()) == 0.2
    zone1 = Requirements(Requirement(LABEL_ZONE, Operator.IN, ["westus-1"]))
    assert it.cheapest_price(zone1) == 0.3
    spot = Requirements(Requirement(LABEL_CAPACITY_TYPE, Operator.IN, [CAPACITY_TYPE_SPOT]))
    assert it.cheapest_price(spot) is None


@pytest.mark.parametrize("image_id, expected", [(None, True), ("", True), ("/some/image", False)])
def test_is_empty_image_id(image_id, expected):
    assert NodeClass(image_id=image_id).is_empty_image_id() is expected


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_expiring_cache_expires_after_ttl():
    clock = _Clock()
    cache = ExpiringCache(default_ttl=10, clock=clock)
    cache.set("k", "v")
    cache.set("short", "s", ttl=1)
    clock.now = 5
    assert cache.get("k") == "v"
    assert cache.get("short") is None
    assert "short" not in cache
    clock.now = 11
    assert cache.get("k") is None


def test_expiring_cache_without_ttl_keeps_entries():
    clock = _Clock()
    cache = ExpiringCache(clock=clock)
    cache.set("k", "v")
    clock.now = 1e9
    assert cache.get("k") == "v"
    assert "k" in cache
    assert cache.get("missing") is None


def test_bootstrapper_is_abstract():
    with pytest.raises(TypeError):
        Bootstrapper()

    class Echo(Bootstrapper):
        def script(self):
            return "#!/bin/sh"

    assert Echo().script() == "#!/bin/sh"


def test_taint_is_immutable():
    taint = Taint("custom-taint", "NoSchedule", "custom-value")
    with pytest.raises(dataclasses.FrozenInstanceError):
        taint.key = "other"
    assert taint == Taint("custom-taint", "NoSchedule", "custom-value")