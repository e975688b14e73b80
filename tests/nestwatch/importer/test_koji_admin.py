"""Tests for the koji admin API client."""

import json

import httpx
import pytest

from nestwatch.errors import ImportDestinationError
from nestwatch.importer.koji import KojiAdminClient, looks_like_number, property_category


class FakeKoji:
    """Answers admin API requests from canned responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: dict[tuple[str, str], list[httpx.Response]] = {}
        self.logins = 0

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.responses.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/config/login":
            self.logins += 1
            return httpx.Response(200)
        queue = self.responses.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "not found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def client(self, token: str = "secret") -> KojiAdminClient:
        return KojiAdminClient("http://koji:8080/", token, transport=httpx.MockTransport(self))


def data(value) -> httpx.Response:
    return httpx.Response(200, json={"data": value})


class TestHelpers:
    """Test name and property helpers."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            pytest.param("42", True, id="int"),
            pytest.param("-1.5", True, id="float"),
            pytest.param("Park 42", False, id="words"),
        ],
    )
    def test_looks_like_number(self, name, expected):
        """Should spot names made only of number characters."""
        assert looks_like_number(name) is expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            pytest.param(True, "boolean", id="bool"),
            pytest.param("x", "string", id="str"),
            pytest.param(3, "number", id="int"),
            pytest.param(2.5, "number", id="float"),
            pytest.param({}, "object", id="dict"),
            pytest.param([], "array", id="list"),
            pytest.param(None, None, id="none"),
        ],
    )
    def test_property_category(self, value, expected):
        """Should map values to koji property categories."""
        assert property_category(value) == expected


class TestKojiAdminClient:
    """Test talking to the koji admin API."""

    @pytest.mark.asyncio
    async def test_logs_in_on_enter(self):
        """Should send the token as the login password."""
        fake = FakeKoji()

        async with fake.client():
            pass

        login = fake.requests[0]
        assert login.method == "POST"
        assert json.loads(login.content) == {"password": "secret"}

    @pytest.mark.asyncio
    async def test_login_refused(self):
        """Should raise when koji refuses the login."""
        transport = httpx.MockTransport(lambda request: httpx.Response(401))

        with pytest.raises(ImportDestinationError, match="login returned status 401"):
            async with KojiAdminClient("http://koji:8080", "bad", transport=transport):
                pass

    @pytest.mark.asyncio
    async def test_project_by_name(self):
        """Should find the project and fetch it in full."""
        fake = FakeKoji()
        fake.add("GET", "/internal/admin/project/all/", data([{"id": 3, "name": "nests"}]))
        fake.add("GET", "/internal/admin/project/3/", data({"id": 3, "geofences": [10]}))

        async with fake.client() as client:
            project = await client.get_project_by_name("nests")
            with pytest.raises(ImportDestinationError, match="no koji project"):
                await client.get_project_by_name("other")

        assert project["geofences"] == [10]

    @pytest.mark.asyncio
    async def test_relogin_on_401(self):
        """Should log in again once and retry an unauthorized request."""
        fake = FakeKoji()
        fake.add("GET", "/internal/admin/geofence/all/", httpx.Response(401), data([]))

        async with fake.client() as client:
            geofences = await client.get_all_geofences()

        assert geofences == []
        assert fake.logins == 2

    @pytest.mark.asyncio
    async def test_error_message(self):
        """Should raise with koji's message on an error status."""
        fake = FakeKoji()
        fake.add(
            "GET", "/internal/admin/geofence/all/", httpx.Response(500, json={"message": "boom"})
        )

        async with fake.client() as client:
            with pytest.raises(ImportDestinationError, match="status 500: boom"):
                await client.get_all_geofences()

    @pytest.mark.asyncio
    async def test_create_geofence(self):
        """Should post the geofence with timestamps and return koji's full copy."""
        fake = FakeKoji()
        fake.add("POST", "/internal/admin/geofence/", data({"id": 20}))
        fake.add("GET", "/internal/admin/geofence/20/", data({"id": 20, "name": "Central"}))

        async with fake.client() as client:
            geofence = await client.create_geofence({"name": "Central", "mode": "unset"})

        assert geofence == {"id": 20, "name": "Central"}
        posted = json.loads(fake.requests[1].content)
        assert posted["name"] == "Central"
        assert "created_at" in posted and "updated_at" in posted

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "123"])
    async def test_create_geofence_bad_name(self, name):
        """Should refuse empty and number-like names without calling koji."""
        fake = FakeKoji()

        async with fake.client() as client:
            with pytest.raises(ImportDestinationError):
                await client.create_geofence({"name": name})

        assert len(fake.requests) == 1

    @pytest.mark.asyncio
    async def test_get_or_create_property(self):
        """Should create a missing property with the value's category."""
        fake = FakeKoji()
        fake.add(
            "GET",
            "/internal/admin/property/all/",
            data([]),
            data([{"id": 5, "name": "leisure", "category": "string"}]),
        )
        fake.add("POST", "/internal/admin/property/", data({"id": 5, "name": "leisure"}))

        async with fake.client() as client:
            created = await client.get_or_create_property("leisure", "park")
            again = await client.get_or_create_property("leisure", "garden")

        assert created["id"] == 5
        assert again["category"] == "string"
        posts = [r for r in fake.requests if r.method == "POST" and "property" in r.url.path]
        assert len(posts) == 1
        assert json.loads(posts[0].content)["category"] == "string"

    @pytest.mark.asyncio
    async def test_property_without_category(self):
        """Should refuse to create a property for a value with no category."""
        fake = FakeKoji()
        fake.add("GET", "/internal/admin/property/all/", data([]))

        async with fake.client() as client:
            with pytest.raises(ImportDestinationError, match="couldn't determine type"):
                await client.get_or_create_property("odd", object())
