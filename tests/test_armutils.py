from dataclasses import dataclass

import pytest

from karpazure.armutils import (
    AZClient,
    AzureResponseError,
    QueryRequest,
    create_nic,
    create_virtual_machine,
    create_virtual_machine_extension,
    delete_nic,
    delete_nic_if_exists,
    delete_virtual_machine,
    delete_virtual_machine_if_exists,
    get_resource_data,
    is_not_found_error,
    new_query_request,
    update_virtual_machine,
)


def _not_found():
    return AzureResponseError("not found", status_code=404, error_code="ResourceNotFound")


class _Poller:
    def __init__(self, value=None, error=None):
        self._value = value
        self._error = error

    def result(self):
        if self._error is not None:
            raise self._error
        return self._value


class _FakeStore:
    """Backs both the VM and NIC fakes: resources keyed by (group, name)."""

    def __init__(self):
        self.items = {}
        self.calls = []
        self.delete_poll_error = None
        self.begin_delete_error = None
        self.get_error = None

    def begin_create_or_update(self, resource_group, name, body):
        self.calls.append(("create", resource_group, name))
        self.items[(resource_group, name)] = body
        return _Poller(value=body)

    def begin_update(self, resource_group, name, updates):
        self.calls.append(("update", resource_group, name))
        if (resource_group, name) not in self.items:
            return _Poller(error=_not_found())
        self.items[(resource_group, name)] = {**self.items[(resource_group, name)], **updates}
        return _Poller()

    def begin_delete(self, resource_group, name):
        self.calls.append(("delete", resource_group, name))
        if self.begin_delete_error is not None:
            raise self.begin_delete_error
        self.items.pop((resource_group, name), None)
        return _Poller(error=self.delete_poll_error)

    def get(self, resource_group, name):
        self.calls.append(("get", resource_group, name))
        if self.get_error is not None:
            raise self.get_error
        try:
            return self.items[(resource_group, name)]
        except KeyError:
            raise _not_found() from None


class _FakeExtensions:
    def __init__(self):
        self.created = {}

    def begin_create_or_update(self, resource_group, vm_name, extension_name, extension):
        self.created[(resource_group, vm_name, extension_name)] = extension
        return _Poller(value={"id": f"{vm_name}/{extension_name}", **extension})


@dataclass
class _Page:
    data: object
    skip_token: str | None = None


class _FakeGraph:
    def __init__(self, pages):
        self._pages = pages
        self.seen_tokens = []

    def resources(self, request):
        self.seen_tokens.append(request.skip_token)
        return self._pages[request.skip_token]


def test_is_not_found_error():
    assert is_not_found_error(_not_found())
    assert not is_not_found_error(AzureResponseError("boom", status_code=500))
    assert not is_not_found_error(ValueError("x"))
    assert not is_not_found_error(None)


def test_new_query_request_fields():
    request = new_query_request("sub-id", "Resources")
    assert request == QueryRequest(query="Resources", subscriptions=["sub-id"])
    assert request.result_format == "objectArray"
    assert request.skip_token is None


def test_get_resource_data_follows_pages_and_keeps_objects():
    graph = _FakeGraph(
        {
            None: _Page(data=[{"id": "a"}, "junk", {"id": "b"}], skip_token="next"),
            "next": _Page(data=[{"id": "c"}, 3]),
        }
    )
    request = new_query_request("sub-id", "Resources")
    rows = get_resource_data(graph, request)
    assert rows == [{"id": "a"}, {"id": "b"}, {"id": "c"}]
    assert graph.seen_tokens == [None, "next"]
    assert request.skip_token is None


def test_get_resource_data_empty():
    graph = _FakeGraph({None: _Page(data=[])})
    assert get_resource_data(graph, new_query_request("s", "q")) == []


def test_get_resource_data_rejects_non_list():
    graph = _FakeGraph({None: _Page(data={"id": "a"})})
    with pytest.raises(TypeError, match="interface array failed"):
        get_resource_data(graph, new_query_request("s", "q"))


def test_create_and_update_virtual_machine():
    store = _FakeStore()
    vm = {"name": "vm1", "tags": {}}
    assert create_virtual_machine(store, "rg", "vm1", vm) == vm
    update_virtual_machine(store, "rg", "vm1", {"tags": {"k": "v"}})
    assert store.items[("rg", "vm1")]["tags"] == {"k": "v"}


def test_update_missing_vm_raises():
    store = _FakeStore()
    with pytest.raises(AzureResponseError) as info:
        update_virtual_machine(store, "rg", "nope", {})
    assert info.value.status_code == 404


def test_delete_virtual_machine_ignores_not_found_while_polling():
    store = _FakeStore()
    store.delete_poll_error = _not_found()
    delete_virtual_machine(store, "rg", "vm1")
    assert store.calls == [("delete", "rg", "vm1")]


def test_delete_virtual_machine_propagates_other_poll_errors():
    store = _FakeStore()
    store.delete_poll_error = AzureResponseError("conflict", status_code=409)
    with pytest.raises(AzureResponseError, match="conflict"):
        delete_virtual_machine(store, "rg", "vm1")


def test_delete_virtual_machine_begin_error_propagates():
    store = _FakeStore()
    store.begin_delete_error = _not_found()
    with pytest.raises(AzureResponseError):
        delete_virtual_machine(store, "rg", "vm1")


def test_delete_virtual_machine_if_exists_missing_skips_delete():
    store = _FakeStore()
    delete_virtual_machine_if_exists(store, "rg", "vm1")
    assert store.calls == [("get", "rg", "vm1")]


def test_delete_virtual_machine_if_exists_deletes():
    store = _FakeStore()
    create_virtual_machine(store, "rg", "vm1", {"name": "vm1"})
    delete_virtual_machine_if_exists(store, "rg", "vm1")
    assert ("rg", "vm1") not in store.items


def test_delete_virtual_machine_if_exists_get_error_propagates():
    store = _FakeStore()
    store.get_error = AzureResponseError("throttled", status_code=429)
    with pytest.raises(AzureResponseError, match="throttled"):
        delete_virtual_machine_if_exists(store, "rg", "vm1")
    assert ("delete", "rg", "vm1") not in store.calls


def test_create_virtual_machine_extension():
    extensions = _FakeExtensions()
    result = create_virtual_machine_extension(extensions, "rg", "vm1", "ext", {"publisher": "p"})
    assert result["id"] == "vm1/ext"
    assert extensions.created[("rg", "vm1", "ext")] == {"publisher": "p"}


def test_nic_lifecycle():
    store = _FakeStore()
    nic = {"location": "westus2"}
    assert create_nic(store, "rg", "nic1", nic) == nic
    delete_nic_if_exists(store, "rg", "nic1")
    assert ("rg", "nic1") not in store.items
    delete_nic_if_exists(store, "rg", "nic1")
    assert store.calls[-1] == ("get", "rg", "nic1")


def test_delete_nic_poll_errors():
    store = _FakeStore()
    store.delete_poll_error = _not_found()
    delete_nic(store, "rg", "nic1")
    assert store.calls == [("delete", "rg", "nic1")]
    store.delete_poll_error = AzureResponseError("boom", status_code=500)
    with pytest.raises(AzureResponseError, match="boom"):
        delete_nic(store, "rg", "nic1")


def test_azclient_holds_clients():
    store = _FakeStore()
    graph = _FakeGraph({None: _Page(data=[])})
    client = AZClient(store, graph, _FakeExtensions(), store)
    assert client.virtual_machines_client is store
    assert client.azure_resource_graph_client is graph
    assert client.sku_client is None
    assert client.image_versions_client is None