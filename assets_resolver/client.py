"""Read-only Atlassian Assets API client used to populate the resolver."""

from __future__ import annotations

import threading
from typing import Any, Protocol, runtime_checkable

import httpx

from .context import RequestContext
from .errors import NOT_FOUND, UPSTREAM_ERROR, AssetsResolverError
from .logging import get_logger
from .models import ObjectRecord, ObjectTypeRecord, SchemaRecord

logger = get_logger(__name__)

ASSETS_API_BASE = "https://api.atlassian.com/jsm/assets/workspace"
WORKSPACE_DISCOVERY_PATH = "/rest/servicedeskapi/insight/workspace"
DEFAULT_PAGE_SIZE = 50
DEFAULT_REQUEST_TIMEOUT = 30.0


class UpstreamError(AssetsResolverError):
    """Raised when the Assets API cannot satisfy a request."""


@runtime_checkable
class AssetsCollaborator(Protocol):
    """The API operations the resolver depends on."""

    @property
    def workspace_id(self) -> str: ...

    @property
    def site_url(self) -> str: ...

    def resolve_workspace_id(self, ctx: RequestContext) -> str: ...

    def list_schemas(self, ctx: RequestContext) -> list[SchemaRecord]: ...

    def list_object_types(self, ctx: RequestContext, schema_id: str) -> list[ObjectTypeRecord]: ...

    def get_object(self, ctx: RequestContext, object_id: str) -> ObjectRecord: ...


class AssetsClient:
    """``httpx`` implementation of :class:`AssetsCollaborator`.

    Authenticates with basic auth (account email and API token). When no
    workspace id is supplied it is discovered from the site on first use.
    """

    def __init__(
        self,
        site_url: str,
        email: str,
        api_token: str,
        *,
        workspace_id: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        api_base: str = ASSETS_API_BASE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._site_url = site_url.rstrip("/")
        self._workspace_id = workspace_id or None
        self._workspace_lock = threading.Lock()
        self._timeout = timeout
        self._page_size = page_size
        self._api_base = api_base.rstrip("/")
        self._http = httpx.Client(
            auth=httpx.BasicAuth(email, api_token),
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def site_url(self) -> str:
        return self._site_url

    @property
    def workspace_id(self) -> str:
        return self.resolve_workspace_id(RequestContext.background())

    def resolve_workspace_id(self, ctx: RequestContext) -> str:
        """Return the workspace id, discovering it under *ctx* on first use."""

        with self._workspace_lock:
            if self._workspace_id is None:
                self._workspace_id = self.discover_workspace_id(ctx)
            return self._workspace_id

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "AssetsClient":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    def discover_workspace_id(self, ctx: RequestContext) -> str:
        """Look up the Assets workspace id behind the configured site."""

        payload = self._get_json(ctx, f"{self._site_url}{WORKSPACE_DISCOVERY_PATH}")
        values = payload.get("values") if isinstance(payload, dict) else None
        if not values:
            raise UpstreamError(UPSTREAM_ERROR, "No Assets workspace found for site", details={"site_url": self._site_url})
        workspace_id = values[0].get("workspaceId") if isinstance(values[0], dict) else None
        if not workspace_id:
            raise UpstreamError(UPSTREAM_ERROR, "Workspace discovery response is missing 'workspaceId'")
        logger.info("client.workspace.discovered", extra={"context": {"site_url": self._site_url, "workspace_id": workspace_id}})
        return str(workspace_id)

    def list_schemas(self, ctx: RequestContext) -> list[SchemaRecord]:
        schemas: list[SchemaRecord] = []
        start_at = 0
        while True:
            payload = self._get_json(
                ctx,
                self._api_url(ctx, "/objectschema/list"),
                params={"startAt": start_at, "maxResults": self._page_size},
            )
            if not isinstance(payload, dict):
                raise UpstreamError(UPSTREAM_ERROR, "Unexpected schema list payload: expected an object")
            values = payload.get("values") or []
            schemas.extend(SchemaRecord.from_payload(item) for item in values)
            if payload.get("isLast", True) or not values:
                return schemas
            start_at += len(values)

    def list_object_types(self, ctx: RequestContext, schema_id: str) -> list[ObjectTypeRecord]:
        payload = self._get_json(ctx, self._api_url(ctx, f"/objectschema/{schema_id}/objecttypes/flat"))
        if not isinstance(payload, list):
            raise UpstreamError(
                UPSTREAM_ERROR,
                "Unexpected object type payload: expected an array",
                details={"schema_id": schema_id},
            )
        return [ObjectTypeRecord.from_payload(item) for item in payload]

    def get_object(self, ctx: RequestContext, object_id: str) -> ObjectRecord:
        payload = self._get_json(ctx, self._api_url(ctx, f"/object/{object_id}"))
        return ObjectRecord.from_payload(payload)

    def _api_url(self, ctx: RequestContext, path: str) -> str:
        return f"{self._api_base}/{self.resolve_workspace_id(ctx)}/v1{path}"

    def _get_json(self, ctx: RequestContext, url: str, *, params: dict[str, Any] | None = None) -> Any:
        ctx.check()
        timeout = self._timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        try:
            response = self._http.get(url, params=params, timeout=timeout)
        except httpx.TimeoutException as exc:
            ctx.check()
            raise UpstreamError(UPSTREAM_ERROR, "Assets API request timed out", details={"url": url}) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(UPSTREAM_ERROR, f"Assets API request failed: {exc}", details={"url": url}) from exc

        if response.status_code == 404:
            raise UpstreamError(NOT_FOUND, "Assets API resource not found", details={"url": url, "status_code": 404})
        if response.is_error:
            raise UpstreamError(
                UPSTREAM_ERROR,
                f"Assets API returned HTTP {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(UPSTREAM_ERROR, "Assets API returned a non-JSON response", details={"url": url}) from exc
