from __future__ import annotations

import httpx
import pytest
import respx

from assets_resolver.client import ASSETS_API_BASE, AssetsClient, AssetsCollaborator
from assets_resolver.context import RequestContext
from assets_resolver.errors import CANCELLED, NOT_FOUND, UPSTREAM_ERROR, AssetsResolverError

SITE = "https://example.atlassian.net"
API = f"{ASSETS_API_BASE}/ws-1/v1"


@pytest.fixture
def client():
    with AssetsClient(SITE, "bot@example.com", "token", workspace_id="ws-1", page_size=2) as api_client:
        yield api_client


def test_client_satisfies_collaborator_protocol(client: AssetsClient) -> None:
    assert isinstance(client, AssetsCollaborator)


@respx.mock
def test_list_schemas_follows_pagination(client: AssetsClient) -> None:
    route = respx.get(f"{API}/objectschema/list")
    route.side_effect = [
        httpx.Response(200, json={"values": [{"id": "6", "name": "Facilities"}, {"id": "7", "name": "IT"}], "isLast": False}),
        httpx.Response(200, json={"values": [{"id": "8", "name": "HR"}], "isLast": True}),
    ]

    schemas = client.list_schemas(RequestContext())

    assert [schema.name for schema in schemas] == ["Facilities", "IT", "HR"]
    assert route.call_count == 2
    assert route.calls[1].request.url.params["startAt"] == "2"
    assert route.calls[0].request.headers["Authorization"].startswith("Basic ")


@respx.mock
def test_list_object_types_uses_flat_endpoint(client: AssetsClient) -> None:
    respx.get(f"{API}/objectschema/6/objecttypes/flat").mock(
        return_value=httpx.Response(200, json=[{"id": "52", "name": "Bicycles"}, {"id": "60", "name": "Servers"}])
    )

    object_types = client.list_object_types(RequestContext(), "6")

    assert [(item.id, item.name) for item in object_types] == [("52", "Bicycles"), ("60", "Servers")]


@respx.mock
def test_get_object_parses_type_and_schema(client: AssetsClient) -> None:
    respx.get(f"{API}/object/384").mock(
        return_value=httpx.Response(
            200,
            json={
                "id": "384",
                "objectKey": "FAC-384",
                "label": "Blue bike",
                "objectType": {"id": "52", "name": "Bicycles", "objectSchemaId": "6"},
            },
        )
    )

    record = client.get_object(RequestContext(), "384")

    assert (record.key, record.label, record.object_type_id, record.schema_id) == ("FAC-384", "Blue bike", "52", "6")


@respx.mock
def test_http_errors_map_to_error_codes(client: AssetsClient) -> None:
    respx.get(f"{API}/object/999").mock(return_value=httpx.Response(404))
    respx.get(f"{API}/object/500").mock(return_value=httpx.Response(500))
    respx.get(f"{API}/object/501").mock(side_effect=httpx.ConnectError("boom"))

    with pytest.raises(AssetsResolverError) as excinfo:
        client.get_object(RequestContext(), "999")
    assert excinfo.value.code == NOT_FOUND

    with pytest.raises(AssetsResolverError) as excinfo:
        client.get_object(RequestContext(), "500")
    assert excinfo.value.code == UPSTREAM_ERROR
    assert excinfo.value.details["status_code"] == 500

    with pytest.raises(AssetsResolverError) as excinfo:
        client.get_object(RequestContext(), "501")
    assert excinfo.value.code == UPSTREAM_ERROR


@respx.mock
def test_cancelled_context_skips_the_request(client: AssetsClient) -> None:
    route = respx.get(f"{API}/object/384").mock(return_value=httpx.Response(200, json={"id": "384"}))
    ctx = RequestContext()
    ctx.cancel()

    with pytest.raises(AssetsResolverError) as excinfo:
        client.get_object(ctx, "384")

    assert excinfo.value.code == CANCELLED
    assert not route.called


@respx.mock
def test_workspace_id_is_discovered_once() -> None:
    route = respx.get(f"{SITE}/rest/servicedeskapi/insight/workspace").mock(
        return_value=httpx.Response(200, json={"values": [{"workspaceId": "ws-discovered"}]})
    )

    with AssetsClient(SITE + "/", "bot@example.com", "token") as api_client:
        assert api_client.workspace_id == "ws-discovered"
        assert api_client.workspace_id == "ws-discovered"
        assert api_client.site_url == SITE

    assert route.call_count == 1


@respx.mock
def test_workspace_discovery_without_values_fails() -> None:
    respx.get(f"{SITE}/rest/servicedeskapi/insight/workspace").mock(return_value=httpx.Response(200, json={"values": []}))

    with AssetsClient(SITE, "bot@example.com", "token") as api_client:
        with pytest.raises(AssetsResolverError) as excinfo:
            api_client.workspace_id
    assert excinfo.value.code == UPSTREAM_ERROR


@respx.mock
def test_workspace_discovery_honours_cancelled_context() -> None:
    route = respx.get(f"{SITE}/rest/servicedeskapi/insight/workspace").mock(
        return_value=httpx.Response(200, json={"values": [{"workspaceId": "ws-discovered"}]})
    )
    ctx = RequestContext()
    ctx.cancel()

    with AssetsClient(SITE, "bot@example.com", "token") as api_client:
        with pytest.raises(AssetsResolverError) as excinfo:
            api_client.resolve_workspace_id(ctx)
        with pytest.raises(AssetsResolverError) as listing:
            api_client.list_schemas(ctx)

    assert excinfo.value.code == CANCELLED
    assert listing.value.code == CANCELLED
    assert not route.called


@respx.mock
def test_first_listing_discovers_workspace_under_caller_context() -> None:
    discovery = respx.get(f"{SITE}/rest/servicedeskapi/insight/workspace").mock(
        return_value=httpx.Response(200, json={"values": [{"workspaceId": "ws-9"}]})
    )
    listing = respx.get(f"{ASSETS_API_BASE}/ws-9/v1/objectschema/list").mock(
        return_value=httpx.Response(200, json={"values": [{"id": "6", "name": "Facilities"}], "isLast": True})
    )

    with AssetsClient(SITE, "bot@example.com", "token") as api_client:
        schemas = api_client.list_schemas(RequestContext())
        assert api_client.resolve_workspace_id(RequestContext()) == "ws-9"

    assert [schema.name for schema in schemas] == ["Facilities"]
    assert discovery.call_count == 1
    assert listing.call_count == 1
