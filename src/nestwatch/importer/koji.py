"""Clients for the koji geofence server."""

import logging
from typing import Any

import httpx

from nestwatch.config.models import KojiConfig
from nestwatch.errors import FeatureSourceError, ImportDestinationError
from nestwatch.processor.models import utcnow

logger = logging.getLogger(__name__)

FEATURE_COLLECTION_PATH = "/api/v1/geofence/feature-collection/{project}"


class KojiClient:
    """Fetches geofences for a koji project."""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_config(cls, config: KojiConfig) -> "KojiClient":
        return cls(config.url, config.token)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get_feature_collection(self, project: str) -> dict[str, Any]:
        """Return the project's geofences as a GeoJSON FeatureCollection.

        Raises:
            FeatureSourceError: On transport errors, non-2xx responses or a bad body
        """
        url = self.url + FEATURE_COLLECTION_PATH.format(project=project)
        logger.info("Fetching geofences for koji project '%s'", project)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, headers=self._headers())
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise FeatureSourceError(
                f"koji returned status {e.response.status_code} for project '{project}'"
            ) from e
        except httpx.HTTPError as e:
            raise FeatureSourceError(f"failed to query koji: {e}") from e
        except ValueError as e:
            raise FeatureSourceError(f"koji returned malformed JSON: {e}") from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
            raise FeatureSourceError(
                f"koji response for project '{project}' has no FeatureCollection"
            )
        return data


def looks_like_number(name: str) -> bool:
    """Return True for names koji would mistake for a geofence id."""
    return all(c.isdigit() or c in ".-+" for c in name)


def property_category(value: Any) -> str | None:
    """Return the koji property category for a property value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "string"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return None


def _koji_data(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        body = None
    if not 200 <= response.status_code <= 202:
        message = body.get("message") if isinstance(body, dict) else None
        raise ImportDestinationError(
            f"koji returned status {response.status_code}: {message or '<no message>'}"
        )
    if not isinstance(body, dict):
        raise ImportDestinationError("koji returned malformed JSON")
    return body.get("data")


class KojiAdminClient:
    """Creates geofences and properties through koji's admin API.

    The admin API uses a session cookie. Entering the client logs in with the
    token as the password, and a 401 triggers one more login and retry.

    Usage:
        async with KojiAdminClient.from_config(config.koji) as client:
            project = await client.get_project_by_name("nests")
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport
        self.client: httpx.AsyncClient | None = None
        self._properties: dict[str, dict[str, Any]] | None = None

    @classmethod
    def from_config(cls, config: KojiConfig) -> "KojiAdminClient":
        return cls(config.url, config.token)

    async def __aenter__(self) -> "KojiAdminClient":
        self.client = httpx.AsyncClient(
            base_url=self.url, timeout=self.timeout, transport=self.transport
        )
        try:
            await self.login()
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _client(self) -> httpx.AsyncClient:
        if self.client is None:
            raise RuntimeError("KojiAdminClient must be used with 'async with'")
        return self.client

    async def login(self) -> None:
        """Log in to koji.

        Raises:
            ImportDestinationError: If koji cannot be reached or refuses the token
        """
        try:
            response = await self._client().post("/config/login", json={"password": self.token})
        except httpx.HTTPError as e:
            raise ImportDestinationError(f"failed to log in to koji: {e}") from e
        if response.status_code != 200:
            raise ImportDestinationError(f"koji login returned status {response.status_code}")

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        client = self._client()
        url = "/internal/admin" + path
        try:
            response = await client.request(method, url, json=body)
            if response.status_code == 401:
                logger.warning("Request to '%s' not authorized, logging in again", path)
                await self.login()
                response = await client.request(method, url, json=body)
        except httpx.HTTPError as e:
            raise ImportDestinationError(f"koji request {method} {path} failed: {e}") from e
        return _koji_data(response)

    # Projects

    async def get_all_projects(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/project/all/") or []

    async def get_project_by_name(self, name: str) -> dict[str, Any]:
        """Return the full project named ``name``.

        Raises:
            ImportDestinationError: If there is no such project
        """
        for project in await self.get_all_projects():
            if project.get("name") == name:
                return await self._request("GET", f"/project/{project['id']}/")
        raise ImportDestinationError(f"no koji project was found with name '{name}'")

    # Geofences

    async def get_all_geofences(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/geofence/all/") or []

    async def get_geofence(self, geofence_id: int) -> dict[str, Any]:
        return await self._request("GET", f"/geofence/{geofence_id}/")

    async def get_all_geofences_full(self) -> list[dict[str, Any]]:
        """Return every geofence with its geometry and properties."""
        return [await self.get_geofence(brief["id"]) for brief in await self.get_all_geofences()]

    async def create_geofence(self, geofence: dict[str, Any]) -> dict[str, Any]:
        """Create a geofence and return it as koji stored it.

        Koji updates the existing geofence instead when the name is taken.

        Raises:
            ImportDestinationError: If the name is unusable or koji refuses it
        """
        name = geofence.get("name") or ""
        if not name:
            raise ImportDestinationError("geofence has no name")
        if looks_like_number(name):
            raise ImportDestinationError(f"geofence name '{name}' looks like a number")

        now = utcnow().isoformat()
        body = {"created_at": now, "updated_at": now, **geofence}
        created = await self._request("POST", "/geofence/", body)
        # The POST response leaves out the properties
        return await self.get_geofence(created["id"])

    # Properties

    async def refresh_properties(self) -> None:
        properties = await self._request("GET", "/property/all/") or []
        self._properties = {prop["name"]: prop for prop in properties}

    async def get_property_by_name(self, name: str) -> dict[str, Any] | None:
        if self._properties is None:
            await self.refresh_properties()
        return self._properties.get(name)

    async def create_property(self, name: str, category: str) -> dict[str, Any]:
        now = utcnow().isoformat()
        body = {
            "name": name,
            "category": category,
            "default_value": None,
            "created_at": now,
            "updated_at": now,
        }
        return await self._request("POST", "/property/", body)

    async def get_or_create_property(self, name: str, value: Any) -> dict[str, Any]:
        """Return the property named ``name``, creating it to hold ``value`` if needed.

        Raises:
            ImportDestinationError: If the value has no koji category or creation fails
        """
        prop = await self.get_property_by_name(name)
        if prop is not None:
            return prop

        category = property_category(value)
        if category is None:
            raise ImportDestinationError(
                f"couldn't determine type of value ({type(value).__name__}) for property '{name}'"
            )
        prop = await self.create_property(name, category)
        await self.refresh_properties()
        return prop
