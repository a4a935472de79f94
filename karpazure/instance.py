"""Launching, finding and removing the virtual machines that back node claims."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .armutils import (
    AZClient,
    AzureResponseError,
    create_nic,
    create_virtual_machine,
    create_virtual_machine_extension,
    delete_nic_if_exists,
    delete_virtual_machine,
    delete_virtual_machine_if_exists,
    get_resource_data,
    is_not_found_error,
    new_query_request,
    update_virtual_machine,
)
from .models import (
    CAPACITY_TYPE_ON_DEMAND,
    CAPACITY_TYPE_SPOT,
    LABEL_CAPACITY_TYPE,
    LABEL_SKU_ACCELERATED_NETWORKING,
    LABEL_ZONE,
    IncompatibleRequirementsError,
    InstanceType,
    NodeClaim,
    NodeClass,
    Operator,
    Requirement,
    Requirements,
)
from .vmutils import (
    NODEPOOL_TAG_KEY,
    VirtualMachine,
    cpu_limit_is_zero,
    create_vm_from_query_response_data,
    generate_vm_name,
    get_all_single_valued_requirement_labels,
    get_list_query,
    get_zone_id,
    new_vm_object,
    order_instance_types_by_price,
)

log = logging.getLogger(__name__)

SUBSCRIPTION_QUOTA_REACHED_REASON = "SubscriptionQuotaReached"
ZONAL_ALLOCATION_FAILURE_REASON = "ZonalAllocationFailure"
SKU_NOT_AVAILABLE_REASON = "SKUNotAvailable"

SKU_NOT_AVAILABLE_ERROR_CODE = "SkuNotAvailable"
OPERATION_NOT_ALLOWED_ERROR_CODE = "OperationNotAllowed"
ZONAL_ALLOCATION_FAILED_ERROR_CODE = "ZonalAllocationFailed"
SKU_FAMILY_QUOTA_EXCEEDED_TERM = "Family Cores quota"
REGIONAL_QUOTA_EXCEEDED_TERM = "exceeding approved Total Regional Cores quota"

SUBSCRIPTION_QUOTA_REACHED_TTL = 60 * 60
SKU_NOT_AVAILABLE_SPOT_TTL = 60 * 60
SKU_NOT_AVAILABLE_ON_DEMAND_TTL = 23 * 60 * 60

AKS_IDENTIFYING_EXTENSION_NAME = "computeAksLinuxBilling"
_VM_EXTENSION_TYPE = "Microsoft.Compute/virtualMachines/extensions"
_AKS_IDENTIFYING_EXTENSION_PUBLISHER = "Microsoft.AKS"
_AKS_IDENTIFYING_EXTENSION_TYPE_LINUX = "Compute.AKS.Linux.Billing"


class InsufficientCapacityError(Exception):
    """No capacity is left for the request; other instance types will not help."""


class NodeClaimNotFoundError(LookupError):
    """The virtual machine behind a node claim does not exist."""


@dataclass
class LaunchTemplate:
    image_id: str
    user_data: str
    tags: dict[str, str] = field(default_factory=dict)


class _LaunchTemplateProvider(Protocol):
    def get_template(
        self,
        node_class: NodeClass,
        node_claim: NodeClaim,
        instance_type: InstanceType,
        additional_labels: Mapping[str, str],
    ) -> LaunchTemplate: ...


class _LoadBalancerProvider(Protocol):
    def load_balancer_backend_pools(self) -> Any: ...


class _UnavailableOfferings(Protocol):
    def mark_unavailable(self, reason: str, instance_type: str, zone: str, capacity_type: str) -> None: ...

    def mark_unavailable_with_ttl(
        self, reason: str, instance_type: str, zone: str, capacity_type: str, ttl: float
    ) -> None: ...


def _find_response_error(err: BaseException | None) -> AzureResponseError | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, AzureResponseError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def _has_error_code(err: BaseException, code: str) -> bool:
    response = _find_response_error(err)
    return response is not None and response.error_code == code


def _sku_family_quota_reached(err: BaseException) -> bool:
    response = _find_response_error(err)
    return (
        response is not None
        and response.error_code == OPERATION_NOT_ALLOWED_ERROR_CODE
        and SKU_FAMILY_QUOTA_EXCEEDED_TERM in str(response)
    )


def _regional_quota_reached(err: BaseException) -> bool:
    response = _find_response_error(err)
    return (
        response is not None
        and response.error_code == OPERATION_NOT_ALLOWED_ERROR_CODE
        and REGIONAL_QUOTA_EXCEEDED_TERM in str(response)
    )


def _resource_id(resource: Any) -> str:
    if isinstance(resource, Mapping):
        return resource["id"]
    return resource.id


class InstanceProvider:
    """Creates and manages the virtual machines that back node claims."""

    def __init__(
        self,
        az_client: AZClient | None,
        launch_template_provider: _LaunchTemplateProvider | None,
        load_balancer_provider: _LoadBalancerProvider | None,
        unavailable_offerings: _UnavailableOfferings | None,
        location: str,
        resource_group: str,
        subnet_id: str,
        subscription_id: str,
        *,
        instance_type_provider: Any = None,
        ssh_public_key: str = "",
        node_identities: Iterable[str] = (),
    ) -> None:
        self._az_client = az_client
        self._launch_template_provider = launch_template_provider
        self._load_balancer_provider = load_balancer_provider
        self._unavailable_offerings = unavailable_offerings
        self._instance_type_provider = instance_type_provider
        self._location = location
        self._resource_group = resource_group
        self._subnet_id = subnet_id
        self._subscription_id = subscription_id
        self._ssh_public_key = ssh_public_key
        self._node_identities = list(node_identities)
        self._list_query = get_list_query(resource_group)

    def create(
        self, node_class: NodeClass, node_claim: NodeClaim, instance_types: Iterable[InstanceType]
    ) -> VirtualMachine:
        """Launch a VM for the node claim on the cheapest suitable instance type."""
        ordered = order_instance_types_by_price(
            instance_types, Requirements.from_node_selector(node_claim.requirements)
        )
        vm, instance_type = self._launch_instance(node_class, node_claim, ordered)
        try:
            zone = get_zone_id(vm)
        except ValueError as err:
            log.error("%s", err)
            zone = ""
        size = ((vm.get("properties") or {}).get("hardwareProfile") or {}).get("vmSize")
        log.info(
            "launched new instance %s (hostname=%s type=%s zone=%s capacity-type=%s)",
            vm.get("id"),
            vm.get("name"),
            size,
            zone,
            self.get_priority_for_instance_type(node_claim, instance_type),
        )
        return vm

    def link(self, vm_name: str, provisioner_name: str) -> None:
        """Tag the VM as belonging to the given node pool."""
        try:
            vm = self.get(vm_name)
            tags = {**(vm.get("tags") or {}), NODEPOOL_TAG_KEY: provisioner_name}
            update_virtual_machine(self._vms, self._resource_group, vm_name, {"tags": tags})
        except Exception as err:
            raise RuntimeError(f"linking tags, {err}") from err

    def update(self, vm_name: str, update: Any) -> None:
        update_virtual_machine(self._vms, self._resource_group, vm_name, update)

    def get(self, vm_name: str) -> VirtualMachine:
        try:
            return self._vms.get(self._resource_group, vm_name)
        except Exception as err:
            if is_not_found_error(err):
                raise NodeClaimNotFoundError(str(err)) from err
            raise RuntimeError(f"failed to get VM instance, {err}") from err

    def list(self) -> list[VirtualMachine]:
        """All node pool VMs in the resource group, as reported by resource graph."""
        request = new_query_request(self._subscription_id, self._list_query)
        try:
            data = get_resource_data(self._az_client.azure_resource_graph_client, request)
        except Exception as err:
            raise RuntimeError(f"querying azure resource graph, {err}") from err
        vms = []
        for row in data:
            try:
                vms.append(create_vm_from_query_response_data(row))
            except ValueError as err:
                raise ValueError(f"creating VM object from query response data, {err}") from err
        return vms

    def delete(self, vm_name: str) -> None:
        log.debug("Deleting virtual machine %s", vm_name)
        delete_virtual_machine(self._vms, self._resource_group, vm_name)

    def pick_sku_size_priority_and_zone(
        self, node_claim: NodeClaim, instance_types: list[InstanceType]
    ) -> tuple[InstanceType | None, str, str]:
        """The instance type, priority and zone to launch with, or (None, "", "")."""
        if not instance_types:
            return None, "", ""
        # Instance types come presorted by their cheapest matching offering.
        instance_type = instance_types[0]
        log.info("Selected instance type %s", instance_type.name)
        priority = self.get_priority_for_instance_type(node_claim, instance_type)
        requested_zones = Requirements.from_node_selector(node_claim.requirements).get(LABEL_ZONE)
        zones = {
            offering.zone
            for offering in instance_type.available_offerings()
            if offering.capacity_type == priority and requested_zones.has(offering.zone)
        }
        if not zones:
            return None, "", ""
        zone = min(zones)
        if zone:
            # Offerings name zones "<region>-<number>"; VM creation wants only the number.
            zone = zone[-1]
        return instance_type, priority, zone

    def get_priority_for_instance_type(self, node_claim: NodeClaim, instance_type: InstanceType) -> str:
        """Spot when requested and offered in a requested zone; on-demand otherwise."""
        requirements = Requirements.from_node_selector(node_claim.requirements)
        if requirements.get(LABEL_CAPACITY_TYPE).has(CAPACITY_TYPE_SPOT):
            zones = requirements.get(LABEL_ZONE)
            for offering in instance_type.available_offerings():
                if zones.has(offering.zone) and offering.capacity_type == CAPACITY_TYPE_SPOT:
                    return CAPACITY_TYPE_SPOT
        return CAPACITY_TYPE_ON_DEMAND

    def handle_response_errors(
        self, instance_type: InstanceType, zone: str, capacity_type: str, err: BaseException
    ) -> BaseException:
        """Record unavailable offerings for a failed launch and return the error to raise."""
        if _sku_family_quota_reached(err):
            log.error("%s", err)
            for offering in instance_type.offerings:
                if offering.capacity_type != capacity_type:
                    continue
                # A zero limit usually means no quota at all for this SKU on the subscription.
                if cpu_limit_is_zero(err):
                    self._unavailable_offerings.mark_unavailable_with_ttl(
                        SUBSCRIPTION_QUOTA_REACHED_REASON,
                        instance_type.name,
                        offering.zone,
                        capacity_type,
                        SUBSCRIPTION_QUOTA_REACHED_TTL,
                    )
                else:
                    self._unavailable_offerings.mark_unavailable(
                        SUBSCRIPTION_QUOTA_REACHED_REASON, instance_type.name, offering.zone, capacity_type
                    )
            return RuntimeError(
                f"subscription level {capacity_type} vCPU quota for {instance_type.name} has been reached "
                "(may try provision an alternative instance type)"
            )
        if _has_error_code(err, SKU_NOT_AVAILABLE_ERROR_CODE):
            ttl = SKU_NOT_AVAILABLE_SPOT_TTL
            detail = f"out of spot capacity for {instance_type.name}: {err}"
            if capacity_type == CAPACITY_TYPE_ON_DEMAND:
                detail = f"unexpected SkuNotAvailable error for {instance_type.name} (on-demand): {detail}"
                ttl = SKU_NOT_AVAILABLE_ON_DEMAND_TTL
            for offering in instance_type.offerings:
                if offering.capacity_type != capacity_type:
                    continue
                self._unavailable_offerings.mark_unavailable_with_ttl(
                    SKU_NOT_AVAILABLE_REASON, instance_type.name, offering.zone, capacity_type, ttl
                )
            log.error("%s", detail)
            return RuntimeError(
                f"the requested SKU is unavailable for instance type {instance_type.name} in zone {zone} "
                f"with capacity type {capacity_type}, for more details please visit: "
                "https://aka.ms/azureskunotavailable"
            )
        if _has_error_code(err, ZONAL_ALLOCATION_FAILED_ERROR_CODE):
            log.error("zone %s: %s", zone, err)
            for capacity in (CAPACITY_TYPE_ON_DEMAND, CAPACITY_TYPE_SPOT):
                self._unavailable_offerings.mark_unavailable(
                    ZONAL_ALLOCATION_FAILURE_REASON, instance_type.name, zone, capacity
                )
            return RuntimeError(
                f"unable to allocate resources in the selected zone ({zone}). "
                "(will try a different zone to fulfill your request)"
            )
        if _regional_quota_reached(err):
            log.error("%s", err)
            return InsufficientCapacityError(
                f"regional {capacity_type} vCPU quota limit for subscription has been reached. "
                "To scale beyond this limit, please review the quota increase process here: "
                "https://learn.microsoft.com/en-us/azure/quotas/regional-quota-requests"
            )
        return err

    @property
    def _vms(self) -> Any:
        return self._az_client.virtual_machines_client

    def _launch_instance(
        self, node_class: NodeClass, node_claim: NodeClaim, instance_types: list[InstanceType]
    ) -> tuple[VirtualMachine, InstanceType]:
        instance_type, capacity_type, zone = self.pick_sku_size_priority_and_zone(node_claim, instance_types)
        if instance_type is None:
            raise InsufficientCapacityError("no instance types available")
        try:
            launch_template = self._get_launch_template(node_class, node_claim, instance_type, capacity_type)
        except Exception as err:
            raise RuntimeError(f"getting launch template: {err}") from err

        vm_name = generate_vm_name(node_claim.name)
        nic_reference = self._create_network_interface(vm_name, launch_template, instance_type)
        vm = new_vm_object(
            vm_name,
            nic_reference,
            zone,
            capacity_type,
            self._location,
            self._ssh_public_key,
            self._node_identities,
            node_class,
            node_claim,
            launch_template,
            instance_type,
        )
        log.debug("Creating virtual machine %s (%s)", vm_name, instance_type.name)
        try:
            result = self._create_virtual_machine(vm, vm_name)
        except Exception as err:
            raise self.handle_response_errors(instance_type, zone, capacity_type, err) from err
        self._create_aks_identifying_extension(vm_name)
        return result, instance_type

    def _get_launch_template(
        self, node_class: NodeClass, node_claim: NodeClaim, instance_type: InstanceType, capacity_type: str
    ) -> LaunchTemplate:
        labels = {**get_all_single_valued_requirement_labels(instance_type), LABEL_CAPACITY_TYPE: capacity_type}
        try:
            return self._launch_template_provider.get_template(node_class, node_claim, instance_type, labels)
        except Exception as err:
            raise RuntimeError(f"getting launch templates, {err}") from err

    def _new_network_interface(self, vm_name: str, backend_pools: Any, instance_type: InstanceType) -> dict[str, Any]:
        pool_ids = list(getattr(backend_pools, "ipv4_pool_ids", None) or [])
        accelerated = Requirements(Requirement(LABEL_SKU_ACCELERATED_NETWORKING, Operator.IN, ["true"]))
        try:
            instance_type.requirements.compatible(accelerated)
            enable_accelerated_networking = True
        except IncompatibleRequirementsError:
            enable_accelerated_networking = False
        return {
            "location": self._location,
            "properties": {
                "ipConfigurations": [
                    {
                        "name": vm_name,
                        "properties": {
                            "primary": True,
                            "privateIPAllocationMethod": "Dynamic",
                            "subnet": {"id": self._subnet_id},
                            "loadBalancerBackendAddressPools": [{"id": pool_id} for pool_id in pool_ids],
                        },
                    }
                ],
                "enableAcceleratedNetworking": enable_accelerated_networking,
                "enableIPForwarding": True,
            },
        }

    def _create_network_interface(
        self, nic_name: str, launch_template: LaunchTemplate, instance_type: InstanceType
    ) -> str:
        backend_pools = self._load_balancer_provider.load_balancer_backend_pools()
        nic = self._new_network_interface(nic_name, backend_pools, instance_type)
        nic["tags"] = launch_template.tags
        client = self._az_client.network_interfaces_client
        log.debug("Creating network interface %s", nic_name)
        try:
            result = create_nic(client, self._resource_group, nic_name, nic)
        except Exception:
            try:
                delete_nic_if_exists(client, self._resource_group, nic_name)
            except Exception as nic_err:
                log.error("networkInterface.Delete for %s failed: %s", nic_name, nic_err)
            raise
        nic_id = _resource_id(result)
        log.debug("Successfully created network interface: %s", nic_id)
        return nic_id

    def _create_virtual_machine(self, vm: VirtualMachine, vm_name: str) -> VirtualMachine:
        try:
            result = create_virtual_machine(self._vms, self._resource_group, vm_name, vm)
        except Exception as err:
            log.error("Creating virtual machine %r failed: %s", vm_name, err)
            try:
                delete_virtual_machine_if_exists(self._vms, self._resource_group, vm_name)
            except Exception as vm_err:
                log.error("virtualMachine.Delete for %s failed: %s", vm_name, vm_err)
            raise RuntimeError(f"virtualMachine.BeginCreateOrUpdate for VM {vm_name!r} failed: {err}") from err
        log.debug("Created virtual machine %s", _resource_id(result))
        return result

    def _aks_identifying_extension(self) -> dict[str, Any]:
        return {
            "location": self._location,
            "name": AKS_IDENTIFYING_EXTENSION_NAME,
            "properties": {
                "publisher": _AKS_IDENTIFYING_EXTENSION_PUBLISHER,
                "typeHandlerVersion": "1.0",
                "autoUpgradeMinorVersion": True,
                "settings": {},
                "type": _AKS_IDENTIFYING_EXTENSION_TYPE_LINUX,
            },
            "type": _VM_EXTENSION_TYPE,
        }

    def _create_aks_identifying_extension(self, vm_name: str) -> None:
        """Attach the extension that marks the VM as part of an AKS cluster."""
        extension = self._aks_identifying_extension()
        log.debug("Creating virtual machine AKS identifying extension for %s", vm_name)
        try:
            result = create_virtual_machine_extension(
                self._az_client.virtual_machine_extensions_client,
                self._resource_group,
                vm_name,
                extension["name"],
                extension,
            )
        except Exception as err:
            log.error("Creating VM AKS identifying extension for VM %r failed, %s", vm_name, err)
            try:
                delete_virtual_machine(self._vms, self._resource_group, vm_name)
            except Exception as vm_err:
                log.error("virtualMachine.Delete for %s failed: %s", vm_name, vm_err)
            raise RuntimeError(f"creating VM AKS identifying extension for VM {vm_name!r}, {err} failed") from err
        log.debug("Created virtual machine AKS identifying extension for %s, with an id of %s", vm_name, _resource_id(result))