"""
Tests for the ArangoDB health client.
"""
import httpx
import pytest

from arango_operator.exceptions import HealthCheckError
from arango_operator.models.health import ServerRole, ServerStatus
from arango_operator.services.health_observer import ArangoHealthClient, deployment_endpoint

HEALTH_BODY = {
    "ClusterId": "a1b2",
    "Health": {
        "AGNT-1": {"Role": "Agent", "Status": "GOOD", "Endpoint": "tcp://example-agnt-0:8529"},
        "PRMR-1": {"Role": "DBServer", "Status": "BAD"},
        "CRDN-1": {"Role": "Coordinator", "Status": "GOOD"},
    },
    "error": False,
    "code": 200,
}


def _client(make_deployment, test_settings, handler) -> ArangoHealthClient:
    return ArangoHealthClient.for_deployment(
        make_deployment(), test_settings, transport=httpx.MockTransport(handler)
    )


def test_deployment_endpoint(make_deployment, test_settings):
    assert deployment_endpoint(make_deployment(), test_settings) == "http://example.default.svc:8529"


@pytest.mark.asyncio
async def test_get_cluster_health(make_deployment, test_settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=HEALTH_BODY)

    async with _client(make_deployment, test_settings, handler) as client:
        report = await client.get_cluster_health()

    assert seen[0].url.host == "example.default.svc"
    assert seen[0].url.path == "/_admin/cluster/health"
    assert "authorization" in seen[0].headers
    assert report.cluster_id == "a1b2"
    members = {member.id: member for member in report.members}
    assert members["AGNT-1"].role == ServerRole.AGENT
    assert members["AGNT-1"].endpoint == "tcp://example-agnt-0:8529"
    assert members["PRMR-1"].status == ServerStatus.BAD


@pytest.mark.asyncio
async def test_get_version(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/_api/version"
        return httpx.Response(200, json={"server": "arango", "version": "3.3.4", "license": "community"})

    async with _client(make_deployment, test_settings, handler) as client:
        version = await client.get_version()

    assert version.version == "3.3.4"


@pytest.mark.asyncio
async def test_error_status_is_a_health_check_error(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": True})

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError) as exc_info:
            await client.get_cluster_health()

    assert exc_info.value.retryable is True
    assert exc_info.value.details["status"] == 503


@pytest.mark.asyncio
async def test_connection_error_is_a_health_check_error(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError):
            await client.get_version()


@pytest.mark.asyncio
async def test_invalid_json_is_a_health_check_error(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>gateway</html>")

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError):
            await client.get_cluster_health()


@pytest.mark.asyncio
async def test_unknown_role_is_a_health_check_error(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"Health": {"X-1": {"Role": "Observer", "Status": "GOOD"}}})

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError):
            await client.get_cluster_health()


@pytest.mark.asyncio
async def test_version_without_version_field_is_rejected(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"server": "arango"})

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError):
            await client.get_version()


@pytest.mark.asyncio
async def test_non_object_body_is_a_health_check_error(make_deployment, test_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"Role": "Agent"}])

    async with _client(make_deployment, test_settings, handler) as client:
        with pytest.raises(HealthCheckError) as exc_info:
            await client.get_cluster_health()

    assert exc_info.value.retryable is True
    assert "list" in exc_info.value.message
