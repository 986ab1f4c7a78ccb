"""
Golden record store client (FHIR-style REST).
"""

from typing import Any, Dict, Optional

from shared.errors import ExternalServiceError, StoreUnavailable
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from .base_client import BaseHTTPClient
from ..models import GoldenRecord, VersionToken


_SERVER_MANAGED = ("id", "meta", "resourceType")


class GoldenRecordClient(BaseHTTPClient):
    """Reads and writes authoritative plan records.

    Every write yields a new ``meta.versionId``. The client only reports
    versions; deciding whether a version changed is the caller's job.
    """

    system = "golden_record_store"

    def __init__(self,
                 base_url: str,
                 resource_type: str = "InsurancePlan",
                 **kwargs):
        kwargs.setdefault("logger_name", "approvals.golden_record_client")
        super().__init__(base_url, **kwargs)
        self.resource_type = resource_type

    @classmethod
    def from_settings(cls, settings, metrics: Optional[MetricsCollector] = None) -> "GoldenRecordClient":
        return cls(
            settings.golden_record_url,
            resource_type=settings.golden_record_resource_type,
            timeout=settings.request_timeout_seconds,
            retry_config=RetryConfig.from_settings(settings),
            circuit_breaker=cls.build_breaker(
                settings.breaker_failure_threshold, settings.breaker_recovery_timeout
            ),
            metrics=metrics,
        )

    def _unavailable(self, message: str, details: Optional[Dict[str, Any]] = None) -> ExternalServiceError:
        return StoreUnavailable(self.system, message, details)

    async def get(self, record_id: str) -> Optional[GoldenRecord]:
        """Current version of a record, or ``None`` if it does not exist."""
        response = await self._request(
            "GET", f"/{self.resource_type}/{record_id}",
            operation="get_record", allow_not_found=True
        )
        if response is None:
            return None
        return self._decode(response, "get_record", self._record_from_json)

    async def create(self, content: Dict[str, Any]) -> GoldenRecord:
        response = await self._request(
            "POST", f"/{self.resource_type}",
            operation="create_record",
            idempotent=False,
            json=self._resource_body(content)
        )
        record = self._decode(response, "create_record", self._record_from_json)
        self.logger.info("Golden record created", record_id=record.id, version=str(record.version))
        return record

    async def update(self, record_id: str, content: Dict[str, Any]) -> GoldenRecord:
        response = await self._request(
            "PUT", f"/{self.resource_type}/{record_id}",
            operation="update_record",
            idempotent=False,
            json=self._resource_body(content, record_id)
        )
        record = self._decode(response, "update_record", self._record_from_json)
        self.logger.info("Golden record updated", record_id=record.id, version=str(record.version))
        return record

    def _resource_body(self, content: Dict[str, Any], record_id: Optional[str] = None) -> Dict[str, Any]:
        body = {key: value for key, value in content.items() if key not in _SERVER_MANAGED}
        body["resourceType"] = self.resource_type
        if record_id:
            body["id"] = record_id
        return body

    def _record_from_json(self, data: Dict[str, Any]) -> GoldenRecord:
        meta = data.get("meta") or {}
        version = VersionToken.parse(meta.get("versionId"))
        if version is None:
            raise StoreUnavailable(
                self.system,
                "Record returned without a version id",
                {"record_id": data.get("id")}
            )
        return GoldenRecord(
            id=data["id"],
            content={key: value for key, value in data.items() if key not in _SERVER_MANAGED},
            version=version,
            status=data.get("status"),
            last_updated=meta.get("lastUpdated"),
        )
