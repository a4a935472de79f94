# karpazure

Building blocks for provisioning Kubernetes nodes as Azure virtual machines.
The package has no runtime dependencies. Every Azure client it works through
is an object you pass in, so it can be driven by wrappers around a real SDK or
by in-memory fakes.

## Modules

- `karpazure.models`: the scheduling model. `Requirement` and `Requirements`
  are label constraints built with `Operator` (`IN`, `NOT_IN`, `EXISTS`,
  `DOES_NOT_EXIST`). `Requirements.compatible` raises
  `IncompatibleRequirementsError` when two sets cannot both be met. The module
  also holds `Offering` and `InstanceType` (with `available_offerings` and
  `cheapest_price`), `NodeClass`, `NodeClaim`, `Taint`,
  `KubeletConfiguration`, `BootstrapOptions`, the abstract `Bootstrapper`, and
  `ExpiringCache`, a key/value cache whose entries carry a time to live.
- `karpazure.imagefamily`: image selection. `Ubuntu2204` is the image family
  and lists its default community images from most to least preferred: gen2
  amd64, then gen1 amd64, then gen2 arm64. `ImageProvider.get` returns the
  node class's own image ID when one is set. Otherwise it takes the first
  default image whose requirements the instance type meets. With no pinned
  version, `ImageProvider.get_image_id` asks the versions client for every
  version and picks the most recently published one. Results are cached for
  three days. `build_image_id` and `parse_community_image_id_info` convert
  between image IDs and their parts. `get_image_family` always returns
  `Ubuntu2204`. `get_max_pods` gives the per-node pod limit for a network
  plugin.
- `karpazure.armutils`: helpers over the compute, network and resource graph
  clients. `create_virtual_machine`, `update_virtual_machine`,
  `delete_virtual_machine`, `delete_virtual_machine_if_exists`,
  `create_virtual_machine_extension`, `create_nic`, `delete_nic` and
  `delete_nic_if_exists` start the operation and wait on the poller's
  `result()`. The delete helpers treat a not-found error (`AzureResponseError`
  with status 404, see `is_not_found_error`) as success. `new_query_request`
  and `get_resource_data` run a resource graph query and follow skip tokens
  across pages. `AZClient` bundles the clients.
- `karpazure.vmutils`: VM descriptions as plain dictionaries. The module covers
  `generate_vm_name`, `get_zone_id`, `create_vm_from_query_response_data`,
  `convert_to_virtual_machine_identity`, `get_capacity_type`,
  `get_ephemeral_max_size_gb` and `cpu_limit_is_zero`. It also has
  `order_instance_types_by_price`, which sorts by cheapest matching offering
  and then by name, and `get_all_single_valued_requirement_labels`.
  `get_list_query` builds the resource graph query for node pool VMs, and
  `new_vm_object` assembles a complete VM definition. That definition uses an
  ephemeral OS disk when the SKU allows one and a spot billing profile for
  spot capacity.
- `karpazure.instance`: `InstanceProvider` orders the instance types and
  picks a SKU, capacity type and zone. It then creates the network interface,
  the VM and the AKS identifying extension, cleaning up after failures. It
  also offers `get`, `list`, `link`, `update` and `delete`.
  `handle_response_errors` maps quota, SKU-unavailable and zonal allocation
  failures onto unavailable-offering marks. The errors it raises include
  `InsufficientCapacityError` and `NodeClaimNotFoundError`. `LaunchTemplate`
  carries the image ID, user data and tags for a launch.

## Installing

```
pip install karpazure
```

To run the tests:

```
pip install "karpazure[test]"
pytest
```

## Examples

```python
from karpazure.imagefamily import build_image_id, parse_community_image_id_info, get_max_pods

image_id = build_image_id("MyGallery-00000000", "2204gen2containerd", "1.0.0")
# "/CommunityGalleries/MyGallery-00000000/images/2204gen2containerd/versions/1.0.0"

gallery, image, version = parse_community_image_id_info(image_id)

get_max_pods("overlay")   # 250
get_max_pods("kubenet")   # 100
get_max_pods("azure")     # 110
```

Resolving an image for an instance type, with an in-memory versions client:

```python
from datetime import datetime, timezone

from karpazure.imagefamily import CommunityImageVersion, ImageProvider, Ubuntu2204
from karpazure.models import (
    LABEL_SKU_HYPERV_GENERATION,
    InstanceType,
    NodeClass,
    Operator,
    Requirement,
    Requirements,
)


class Versions:
    def list_versions(self, location, public_gallery_name, gallery_image_name):
        return [
            CommunityImageVersion("1.0.0", datetime(2024, 1, 1, tzinfo=timezone.utc)),
            CommunityImageVersion("1.0.1", datetime(2024, 1, 2, tzinfo=timezone.utc)),
        ]


provider = ImageProvider(Versions(), "westus2")
gen1 = InstanceType(
    "Standard_D2s_v3",
    Requirements(Requirement(LABEL_SKU_HYPERV_GENERATION, Operator.IN, ["1"])),
)
provider.get(NodeClass(), gen1, Ubuntu2204())
# ".../images/2204containerd/versions/1.0.1"
```

Invalid input raises exceptions rather than returning status values. For
example, `parse_community_image_id_info("")` raises `ValueError`, and
`ImageProvider.get` raises `LookupError` when no default image fits.

## What it does not do

- It ships no Azure clients. The compute, network, resource graph and
  community image version clients, the load balancer provider, the launch
  template provider and the unavailable-offerings store are all supplied by
  the caller.
- It does not generate node bootstrap scripts. `Bootstrapper` is only an
  abstract base class.
- It has no command line, controller loop or Kubernetes API access.
  `ImageProvider.kube_server_version` reads the version from a callable you
  pass in.