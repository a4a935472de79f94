"""Building, reading and ordering virtual machine descriptions."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from .models import (
    CAPACITY_TYPE_ON_DEMAND,
    CAPACITY_TYPE_SPOT,
    LABEL_NODEPOOL,
    LABEL_SKU_STORAGE_EPHEMERAL_OS_MAX_SIZE,
    InstanceType,
    NodeClaim,
    NodeClass,
    Requirements,
)

NODEPOOL_TAG_KEY = LABEL_NODEPOOL.replace("/", "_")

PRIORITY_SPOT = "Spot"
PRIORITY_REGULAR = "Regular"

CAPACITY_TYPE_TO_PRIORITY = {
    CAPACITY_TYPE_SPOT: PRIORITY_SPOT,
    CAPACITY_TYPE_ON_DEMAND: PRIORITY_REGULAR,
}
PRIORITY_TO_CAPACITY_TYPE = {
    PRIORITY_SPOT: CAPACITY_TYPE_SPOT,
    PRIORITY_REGULAR: CAPACITY_TYPE_ON_DEMAND,
}

ADMIN_USERNAME = "azureuser"

VirtualMachine = dict[str, Any]

_COMPUTE_GALLERY_IMAGE_ID_RE = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/[^/]+/providers/Microsoft\.Compute/galleries/",
    re.IGNORECASE,
)


class _LaunchTemplate(Protocol):
    image_id: str
    user_data: str
    tags: dict[str, str]


def generate_vm_name(node_claim_name: str) -> str:
    return f"aks-{node_claim_name}"


def get_zone_id(vm: Mapping[str, Any] | None) -> str:
    """The VM's zone, or an empty string when it has none."""
    if vm is None:
        raise ValueError("cannot pass in a nil virtual machine")
    name = vm.get("name")
    if name is None:
        raise ValueError("virtual machine is missing name")
    zones = vm.get("zones")
    if not zones:
        return ""
    if len(zones) > 1:
        raise ValueError(f"virtual machine {name} has multiple zones")
    return zones[0]


def create_vm_from_query_response_data(data: Mapping[str, Any]) -> VirtualMachine:
    """A VM description from one resource graph row, with its ID's last segment lowercased."""
    vm: VirtualMachine = json.loads(json.dumps(data))
    if vm.get("id") is None:
        raise ValueError("virtual machine is missing id")
    if vm.get("name") is None:
        raise ValueError("virtual machine is missing name")
    if vm.get("tags") is None:
        raise ValueError("virtual machine is missing tags")
    if not isinstance(vm["id"], str):
        raise ValueError("virtual machine id is not a string")
    if not isinstance(vm["name"], str):
        raise ValueError("virtual machine name is not a string")
    if not isinstance(vm["tags"], dict):
        raise ValueError("virtual machine tags are not an object")
    head, sep, last = vm["id"].rpartition("/")
    vm["id"] = f"{head}{sep}{last.lower()}"
    return vm


def convert_to_virtual_machine_identity(node_identities: Iterable[str] | None) -> dict[str, Any] | None:
    """A user-assigned identity block for the given identities, or None when there are none."""
    identities = {identity: {} for identity in node_identities or ()}
    if not identities:
        return None
    return {"type": "UserAssigned", "userAssignedIdentities": identities}


def get_capacity_type(vm: Mapping[str, Any] | None) -> str:
    if not vm:
        return ""
    priority = (vm.get("properties") or {}).get("priority")
    if priority is None:
        return ""
    return PRIORITY_TO_CAPACITY_TYPE.get(priority, "")


def get_ephemeral_max_size_gb(instance_type: InstanceType) -> int:
    """The largest ephemeral OS disk the SKU supports, rounded down; 0 when unknown."""
    values = instance_type.requirements.get(LABEL_SKU_STORAGE_EPHEMERAL_OS_MAX_SIZE).values
    if len(values) != 1:
        return 0
    try:
        return int(float(values[0]))
    except (ValueError, OverflowError):
        return 0


def cpu_limit_is_zero(err: BaseException | str) -> bool:
    return "Current Limit: 0" in str(err)


def order_instance_types_by_price(
    instance_types: Iterable[InstanceType], requirements: Requirements
) -> list[InstanceType]:
    """Instance types by cheapest matching available offering, then by name."""

    def key(instance_type: InstanceType) -> tuple[float, str]:
        price = instance_type.cheapest_price(requirements)
        return (math.inf if price is None else price, instance_type.name)

    return sorted(instance_types, key=key)


def get_all_single_valued_requirement_labels(instance_type: InstanceType | None) -> dict[str, str]:
    """Labels for every requirement that allows exactly one value, restricted labels included."""
    if instance_type is None:
        return {}
    return {
        key: requirement.values[0]
        for key, requirement in instance_type.requirements.items()
        if requirement.size == 1
    }


def _kql_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def get_list_query(resource_group: str) -> str:
    """The resource graph query listing node pool VMs in a resource group."""
    # Resource graph reports VM resource groups in lower case.
    return (
        "Resources"
        ' | where type == "microsoft.compute/virtualmachines"'
        f" | where resourceGroup == {_kql_string(resource_group.lower())}"
        f" | where tags has_cs {_kql_string(NODEPOOL_TAG_KEY)}"
    )


def _is_compute_gallery_image_id(image_id: str) -> bool:
    return bool(_COMPUTE_GALLERY_IMAGE_ID_RE.match(image_id))


def new_vm_object(
    vm_name: str,
    nic_reference: str,
    zone: str,
    capacity_type: str,
    location: str,
    ssh_public_key: str,
    node_identities: Iterable[str] | None,
    node_class: NodeClass,
    node_claim: NodeClaim,
    launch_template: _LaunchTemplate,
    instance_type: InstanceType,
) -> VirtualMachine:
    """The VM description to submit for creation."""
    if _is_compute_gallery_image_id(launch_template.image_id):
        image_reference = {"id": launch_template.image_id}
    else:
        image_reference = {"communityGalleryImageId": launch_template.image_id}

    os_disk: dict[str, Any] = {
        "name": vm_name,
        "diskSizeGB": node_class.os_disk_size_gb,
        "createOption": "FromImage",
        "deleteOption": "Delete",
    }
    if node_class.os_disk_size_gb <= get_ephemeral_max_size_gb(instance_type):
        # Placement (cache or resource disk) is left to the platform.
        os_disk["diffDiskSettings"] = {"option": "Local"}
        os_disk["caching"] = "ReadOnly"

    properties: dict[str, Any] = {
        "hardwareProfile": {"vmSize": instance_type.name},
        "storageProfile": {"osDisk": os_disk, "imageReference": image_reference},
        "networkProfile": {
            "networkInterfaces": [
                {"id": nic_reference, "properties": {"primary": True, "deleteOption": "Delete"}}
            ]
        },
        "osProfile": {
            "adminUsername": ADMIN_USERNAME,
            "computerName": vm_name,
            "linuxConfiguration": {
                "disablePasswordAuthentication": True,
                "ssh": {
                    "publicKeys": [
                        {
                            "keyData": ssh_public_key,
                            "path": f"/home/{ADMIN_USERNAME}/.ssh/authorized_keys",
                        }
                    ]
                },
            },
            "customData": launch_template.user_data,
        },
        "priority": CAPACITY_TYPE_TO_PRIORITY.get(capacity_type, ""),
    }
    if capacity_type == CAPACITY_TYPE_SPOT:
        properties["evictionPolicy"] = "Delete"
        properties["billingProfile"] = {"maxPrice": -1.0}

    tags = dict(launch_template.tags or {})
    if LABEL_NODEPOOL in node_claim.labels:
        tags[NODEPOOL_TAG_KEY] = node_claim.labels[LABEL_NODEPOOL]

    vm: VirtualMachine = {
        "location": location,
        "properties": properties,
        "zones": [zone] if zone else [],
        "tags": tags,
    }
    identity = convert_to_virtual_machine_identity(node_identities)
    if identity is not None:
        vm["identity"] = identity
    return vm