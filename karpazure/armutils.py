"""Thin helpers over the compute, network and resource graph clients."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Protocol

RESULT_FORMAT_OBJECT_ARRAY = "objectArray"

Resource = dict[str, Any]


class AzureResponseError(Exception):
    """An error response returned by the Azure API."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


def is_not_found_error(err: BaseException | None) -> bool:
    """Whether err is an API response reporting that the resource does not exist."""
    return err is not None and getattr(err, "status_code", None) == 404


class _Poller(Protocol):
    def result(self) -> Any: ...


class _VirtualMachinesClient(Protocol):
    def begin_create_or_update(self, resource_group: str, vm_name: str, vm: Any) -> _Poller: ...

    def begin_update(self, resource_group: str, vm_name: str, updates: Any) -> _Poller: ...

    def begin_delete(self, resource_group: str, vm_name: str) -> _Poller: ...

    def get(self, resource_group: str, vm_name: str) -> Any: ...


class _VirtualMachineExtensionsClient(Protocol):
    def begin_create_or_update(
        self, resource_group: str, vm_name: str, extension_name: str, extension: Any
    ) -> _Poller: ...


class _NetworkInterfacesClient(Protocol):
    def begin_create_or_update(self, resource_group: str, nic_name: str, nic: Any) -> _Poller: ...

    def begin_delete(self, resource_group: str, nic_name: str) -> _Poller: ...

    def get(self, resource_group: str, nic_name: str) -> Any: ...


class _ResourceGraphClient(Protocol):
    def resources(self, request: QueryRequest) -> Any: ...


@dataclass
class QueryRequest:
    """A resource graph query over a set of subscriptions."""

    query: str
    subscriptions: list[str] = field(default_factory=list)
    result_format: str = RESULT_FORMAT_OBJECT_ARRAY
    skip_token: str | None = None


@dataclass
class AZClient:
    """The set of API clients the providers work through."""

    virtual_machines_client: Any
    azure_resource_graph_client: Any
    virtual_machine_extensions_client: Any
    network_interfaces_client: Any
    load_balancers_client: Any = None
    image_versions_client: Any = None
    sku_client: Any = None


def new_query_request(subscription_id: str, query: str) -> QueryRequest:
    return QueryRequest(query=query, subscriptions=[subscription_id])


def get_resource_data(client: _ResourceGraphClient, request: QueryRequest) -> list[Resource]:
    """Run the query and gather the object rows of every result page."""
    request = dataclasses.replace(request, subscriptions=list(request.subscriptions))
    data: list[Resource] = []
    while True:
        response = client.resources(request)
        rows = response.data
        if not isinstance(rows, list):
            raise TypeError("type casting query response as interface array failed")
        data.extend(row for row in rows if isinstance(row, dict))
        if response.skip_token is None:
            return data
        request.skip_token = response.skip_token


def create_virtual_machine(client: _VirtualMachinesClient, resource_group: str, vm_name: str, vm: Any) -> Any:
    return client.begin_create_or_update(resource_group, vm_name, vm).result()


def update_virtual_machine(client: _VirtualMachinesClient, resource_group: str, vm_name: str, updates: Any) -> None:
    client.begin_update(resource_group, vm_name, updates).result()


def delete_virtual_machine(client: _VirtualMachinesClient, resource_group: str, vm_name: str) -> None:
    """Delete a VM; a VM that vanishes while the delete runs counts as deleted."""
    poller = client.begin_delete(resource_group, vm_name)
    try:
        poller.result()
    except Exception as err:
        if not is_not_found_error(err):
            raise


def delete_virtual_machine_if_exists(client: _VirtualMachinesClient, resource_group: str, vm_name: str) -> None:
    try:
        client.get(resource_group, vm_name)
    except Exception as err:
        if is_not_found_error(err):
            return
        raise
    delete_virtual_machine(client, resource_group, vm_name)


def create_virtual_machine_extension(
    client: _VirtualMachineExtensionsClient,
    resource_group: str,
    vm_name: str,
    extension_name: str,
    extension: Any,
) -> Any:
    return client.begin_create_or_update(resource_group, vm_name, extension_name, extension).result()


def create_nic(client: _NetworkInterfacesClient, resource_group: str, nic_name: str, nic: Any) -> Any:
    return client.begin_create_or_update(resource_group, nic_name, nic).result()


def delete_nic(client: _NetworkInterfacesClient, resource_group: str, nic_name: str) -> None:
    """Delete a network interface; one that vanishes while the delete runs counts as deleted."""
    poller = client.begin_delete(resource_group, nic_name)
    try:
        poller.result()
    except Exception as err:
        if not is_not_found_error(err):
            raise


def delete_nic_if_exists(client: _NetworkInterfacesClient, resource_group: str, nic_name: str) -> None:
    try:
        client.get(resource_group, nic_name)
    except Exception as err:
        if is_not_found_error(err):
            return
        raise
    delete_nic(client, resource_group, nic_name)