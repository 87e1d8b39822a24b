"""
Health observer for running ArangoDB deployments.

Queries the cluster health and version endpoints over HTTP. Every failure
(connection error, non-2xx answer, unparsable body) surfaces as a retryable
HealthCheckError; the caller decides how long to keep polling.
"""
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from arango_operator.config.logging import get_logger
from arango_operator.config.settings import Settings, settings as default_settings
from arango_operator.exceptions import HealthCheckError
from arango_operator.models.deployment import ArangoDeployment
from arango_operator.models.health import ClusterHealthReport, VersionInfo

logger = get_logger(__name__)

CLUSTER_HEALTH_PATH = "/_admin/cluster/health"
VERSION_PATH = "/_api/version"


def deployment_endpoint(deployment: ArangoDeployment, settings: Optional[Settings] = None) -> str:
    """Client URL of a deployment, served by its client service."""
    settings = settings or default_settings
    return "{}://{}.{}.svc:{}".format(
        settings.database_scheme, deployment.name, deployment.namespace, settings.database_port
    )


class ArangoHealthClient:
    """
    Minimal ArangoDB HTTP client used for health and version queries.

    Use as an async context manager, or call ``close()`` explicitly.
    """

    def __init__(self, http_client: httpx.AsyncClient, deployment_name: Optional[str] = None):
        self.http_client = http_client
        self.deployment_name = deployment_name

    @classmethod
    def for_deployment(
        cls,
        deployment: ArangoDeployment,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ArangoHealthClient":
        settings = settings or default_settings
        http_client = httpx.AsyncClient(
            base_url=deployment_endpoint(deployment, settings),
            auth=(settings.database_username, settings.database_password),
            timeout=settings.database_request_timeout,
            verify=settings.database_verify_ssl,
            transport=transport,
        )
        return cls(http_client, deployment_name=deployment.name)

    async def __aenter__(self) -> "ArangoHealthClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.http_client.aclose()

    async def _get_json(self, path: str) -> dict:
        try:
            response = await self.http_client.get(path)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise HealthCheckError(
                f"{path} answered {e.response.status_code}",
                details={"deployment": self.deployment_name, "path": path, "status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise HealthCheckError(
                f"{path} request failed: {e}",
                details={"deployment": self.deployment_name, "path": path},
            ) from e
        except ValueError as e:
            raise HealthCheckError(
                f"{path} returned invalid JSON",
                details={"deployment": self.deployment_name, "path": path},
            ) from e
        if not isinstance(payload, dict):
            raise HealthCheckError(
                f"{path} returned a JSON {type(payload).__name__} instead of an object",
                details={"deployment": self.deployment_name, "path": path},
            )
        return payload

    async def get_cluster_health(self) -> ClusterHealthReport:
        """
        Query the per-member health of the cluster.

        Raises:
            HealthCheckError: If the query fails or the report is malformed
        """
        payload = await self._get_json(CLUSTER_HEALTH_PATH)
        try:
            report = ClusterHealthReport.from_response(payload)
        except PydanticValidationError as e:
            raise HealthCheckError(
                "Cluster health report is malformed",
                details={"deployment": self.deployment_name, "errors": e.errors(include_url=False)},
            ) from e

        logger.debug(
            "cluster_health_observed",
            deployment=self.deployment_name,
            members=len(report.members),
        )
        return report

    async def get_version(self) -> VersionInfo:
        """
        Query the server version; doubles as the liveness probe of a deployment.

        Raises:
            HealthCheckError: If the endpoint does not answer with a version
        """
        payload = await self._get_json(VERSION_PATH)
        try:
            return VersionInfo.model_validate(payload)
        except PydanticValidationError as e:
            raise HealthCheckError(
                "Version response is malformed",
                details={"deployment": self.deployment_name},
            ) from e
