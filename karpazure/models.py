"""Scheduling requirements, instance types and node data shared by the providers."""

from __future__ import annotations

import enum
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

LABEL_ARCH = "kubernetes.io/arch"
LABEL_OS = "kubernetes.io/os"
LABEL_ZONE = "topology.kubernetes.io/zone"
LABEL_REGION = "topology.kubernetes.io/region"
LABEL_INSTANCE_TYPE = "node.kubernetes.io/instance-type"
LABEL_WINDOWS_BUILD = "node.kubernetes.io/windows-build"
LABEL_CAPACITY_TYPE = "karpenter.sh/capacity-type"
LABEL_NODEPOOL = "karpenter.sh/nodepool"

ARCH_AMD64 = "amd64"
ARCH_ARM64 = "arm64"

CAPACITY_TYPE_SPOT = "spot"
CAPACITY_TYPE_ON_DEMAND = "on-demand"

LABEL_SKU_FAMILY = "karpenter.azure.com/sku-family"
LABEL_SKU_HYPERV_GENERATION = "karpenter.azure.com/sku-hyperv-generation"
LABEL_SKU_ACCELERATED_NETWORKING = "karpenter.azure.com/sku-networking-accelerated"
LABEL_SKU_STORAGE_EPHEMERAL_OS_MAX_SIZE = "karpenter.azure.com/sku-storage-ephemeralos-maxsize"

HYPERV_GENERATION_V1 = "1"
HYPERV_GENERATION_V2 = "2"

WELL_KNOWN_LABELS = frozenset(
    {
        LABEL_ARCH,
        LABEL_OS,
        LABEL_ZONE,
        LABEL_REGION,
        LABEL_INSTANCE_TYPE,
        LABEL_WINDOWS_BUILD,
        LABEL_CAPACITY_TYPE,
        LABEL_NODEPOOL,
    }
)

# Provider labels that may be left undefined on one side of a compatibility check.
ALLOW_UNDEFINED_LABELS = frozenset(
    {
        LABEL_SKU_FAMILY,
        LABEL_SKU_HYPERV_GENERATION,
        LABEL_SKU_ACCELERATED_NETWORKING,
        LABEL_SKU_STORAGE_EPHEMERAL_OS_MAX_SIZE,
    }
)


class Operator(str, enum.Enum):
    """Node selector operators."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


_NEGATIVE_OPERATORS = (Operator.NOT_IN, Operator.DOES_NOT_EXIST)


class IncompatibleRequirementsError(ValueError):
    """Raised when two sets of requirements cannot be satisfied together."""


class Requirement:
    """A constraint on the values of one label key."""

    __slots__ = ("key", "_complement", "_values")

    def __init__(self, key: str, operator: Operator | str, values: Iterable[str] = ()) -> None:
        operator = Operator(operator)
        values = frozenset(values)
        if operator in (Operator.EXISTS, Operator.DOES_NOT_EXIST) and values:
            raise ValueError(f"operator {operator.value} takes no values")
        self.key = key
        self._complement = operator in (Operator.NOT_IN, Operator.EXISTS)
        self._values = values

    @classmethod
    def _from_parts(cls, key: str, complement: bool, values: frozenset[str]) -> Requirement:
        req = cls.__new__(cls)
        req.key = key
        req._complement = complement
        req._values = values
        return req

    @property
    def operator(self) -> Operator:
        if self._complement:
            return Operator.NOT_IN if self._values else Operator.EXISTS
        return Operator.IN if self._values else Operator.DOES_NOT_EXIST

    @property
    def values(self) -> list[str]:
        """The listed values, sorted; for negative operators, the excluded ones."""
        return sorted(self._values)

    @property
    def size(self) -> float:
        """How many values satisfy the requirement; infinite for complements."""
        return math.inf if self._complement else len(self._values)

    def has(self, value: str) -> bool:
        return (value in self._values) != self._complement

    def intersection(self, other: Requirement) -> Requirement:
        if self._complement and other._complement:
            return self._from_parts(self.key, True, self._values | other._values)
        if self._complement:
            return self._from_parts(self.key, False, other._values - self._values)
        if other._complement:
            return self._from_parts(self.key, False, self._values - other._values)
        return self._from_parts(self.key, False, self._values & other._values)

    def intersects(self, other: Requirement) -> bool:
        return self.intersection(other).size > 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Requirement):
            return NotImplemented
        return (self.key, self._complement, self._values) == (other.key, other._complement, other._values)

    def __hash__(self) -> int:
        return hash((self.key, self._complement, self._values))

    def __repr__(self) -> str:
        return f"Requirement({self.key!r}, {self.operator.value}, {self.values!r})"


class Requirements:
    """Requirements keyed by label; repeated keys are intersected."""

    def __init__(self, *requirements: Requirement) -> None:
        self._items: dict[str, Requirement] = {}
        for requirement in requirements:
            self.add(requirement)

    @classmethod
    def from_node_selector(cls, requirements: Iterable[Requirement]) -> Requirements:
        return cls(*requirements)

    def add(self, requirement: Requirement) -> None:
        existing = self._items.get(requirement.key)
        self._items[requirement.key] = existing.intersection(requirement) if existing else requirement

    def get(self, key: str) -> Requirement:
        """The requirement for key; an unconstrained one when none is set."""
        return self._items.get(key) or Requirement(key, Operator.EXISTS)

    def items(self) -> Iterator[tuple[str, Requirement]]:
        return iter(self._items.items())

    def keys(self) -> set[str]:
        return set(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[Requirement]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Requirements):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"Requirements({', '.join(map(repr, self._items.values()))})"

    def compatible(self, other: Requirements, allow_undefined: Iterable[str] = frozenset()) -> None:
        """Raise IncompatibleRequirementsError unless other can be met alongside these."""
        known = WELL_KNOWN_LABELS | frozenset(allow_undefined)
        errors = []
        for key in sorted(other.keys() - known):
            if key in self._items or other.get(key).operator in _NEGATIVE_OPERATORS:
                continue
            errors.append(f'label "{key}" does not have known values')
        for key in sorted(self.keys() & other.keys()):
            existing, incoming = self._items[key], other._items[key]
            if existing.intersects(incoming):
                continue
            if incoming.operator in _NEGATIVE_OPERATORS and existing.operator in _NEGATIVE_OPERATORS:
                continue
            errors.append(f"key {key}, {incoming!r} not in {existing!r}")
        if errors:
            raise IncompatibleRequirementsError("; ".join(errors))


@dataclass
class Offering:
    capacity_type: str
    zone: str
    price: float
    available: bool = True


@dataclass
class InstanceType:
    name: str
    requirements: Requirements = field(default_factory=Requirements)
    offerings: list[Offering] = field(default_factory=list)

    def available_offerings(self) -> list[Offering]:
        return [offering for offering in self.offerings if offering.available]

    def cheapest_price(self, requirements: Requirements) -> float | None:
        """Lowest price among available offerings that meet the requirements, if any."""
        capacity = requirements.get(LABEL_CAPACITY_TYPE)
        zones = requirements.get(LABEL_ZONE)
        prices = [
            offering.price
            for offering in self.available_offerings()
            if capacity.has(offering.capacity_type) and zones.has(offering.zone)
        ]
        return min(prices, default=None)


@dataclass
class NodeClass:
    name: str = "default"
    image_id: str | None = None
    image_version: str | None = None
    image_family: str | None = None
    os_disk_size_gb: int = 128
    tags: dict[str, str] = field(default_factory=dict)

    def is_empty_image_id(self) -> bool:
        return not self.image_id


@dataclass(frozen=True)
class Taint:
    key: str
    effect: str
    value: str = ""


@dataclass
class KubeletConfiguration:
    max_pods: int | None = None
    kube_reserved: dict[str, str] = field(default_factory=dict)
    system_reserved: dict[str, str] = field(default_factory=dict)
    eviction_hard: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeClaim:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    requirements: list[Requirement] = field(default_factory=list)
    taints: list[Taint] = field(default_factory=list)
    startup_taints: list[Taint] = field(default_factory=list)
    kubelet: KubeletConfiguration | None = None


@dataclass
class BootstrapOptions:
    """Node bootstrapping parameters handed to the provisioned node."""

    cluster_name: str = ""
    cluster_endpoint: str = ""
    kubelet_config: KubeletConfiguration | None = None
    taints: list[Taint] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    ca_bundle: str | None = None
    gpu_node: bool = False
    gpu_driver_version: str = ""


class Bootstrapper(ABC):
    """Produces a bootstrap script for a node."""

    @abstractmethod
    def script(self) -> str:
        """Return the bootstrap script."""


class ExpiringCache:
    """A key/value cache whose entries expire after a time to live in seconds."""

    def __init__(self, default_ttl: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Any, tuple[Any, float | None]] = {}

    def get(self, key: Any) -> Any:
        """The cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and self._clock() > expires:
            del self._entries[key]
            return None
        return value

    def set(self, key: Any, value: Any, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires = None if ttl is None else self._clock() + ttl
        self._entries[key] = (value, expires)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None