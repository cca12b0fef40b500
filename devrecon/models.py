"""Data models used by the reconciliation workflow."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

METADATA_ID = "sync_metadata"
SYNC_VERSION = "2.0.0"


class SyncState(str, Enum):
    MATCHED = "matched"
    ONLY_PROTECTION = "only_protection"
    ONLY_MDM = "only_mdm"


class MatchedOn(str, Enum):
    """Identity field that produced a match, in priority order."""

    DIRECTORY_ID = "directoryId"
    SERIAL = "serial"
    HOSTNAME = "hostname"
    NONE = "none"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True, slots=True)
class ProtectionDeviceRecord:
    """One machine as reported by the endpoint-protection platform."""

    id: str
    directory_device_id: Optional[str] = None
    hostname: Optional[str] = None
    serial_number: Optional[str] = None
    os_platform: Optional[str] = None
    os_version: Optional[str] = None
    health_status: Optional[str] = None
    risk_score: Optional[str] = None
    exposure_level: Optional[str] = None
    onboarding_status: Optional[str] = None
    last_ip_address: Optional[str] = None
    machine_tags: Tuple[str, ...] = ()
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def as_json(self) -> dict[str, object]:
        return {
            **self.extra,
            "id": self.id,
            "aadDeviceId": self.directory_device_id,
            "computerDnsName": self.hostname,
            "serialNumber": self.serial_number,
            "osPlatform": self.os_platform,
            "osVersion": self.os_version,
            "healthStatus": self.health_status,
            "riskScore": self.risk_score,
            "exposureLevel": self.exposure_level,
            "onboardingStatus": self.onboarding_status,
            "lastIpAddress": self.last_ip_address,
            "machineTags": list(self.machine_tags),
            "firstSeen": format_timestamp(self.first_seen),
            "lastSeen": format_timestamp(self.last_seen),
        }


@dataclass(frozen=True, slots=True)
class ManagedDeviceRecord:
    """One device as reported by the MDM platform."""

    id: str
    directory_device_id: Optional[str] = None
    device_name: Optional[str] = None
    serial_number: Optional[str] = None
    user_principal_name: Optional[str] = None
    operating_system: Optional[str] = None
    os_version: Optional[str] = None
    compliance_state: Optional[str] = None
    management_state: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    is_encrypted: Optional[bool] = None
    enrolled_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def as_json(self) -> dict[str, object]:
        return {
            **self.extra,
            "id": self.id,
            "azureADDeviceId": self.directory_device_id,
            "deviceName": self.device_name,
            "serialNumber": self.serial_number,
            "userPrincipalName": self.user_principal_name,
            "operatingSystem": self.operating_system,
            "osVersion": self.os_version,
            "complianceState": self.compliance_state,
            "managementState": self.management_state,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "isEncrypted": self.is_encrypted,
            "enrolledDateTime": format_timestamp(self.enrolled_at),
            "lastSyncDateTime": format_timestamp(self.last_sync_at),
        }


@dataclass(slots=True)
class SyncDocument:
    """Reconciled view of one device, keyed by ``sync_key``."""

    sync_key: str
    sync_state: SyncState
    matched_on: MatchedOn
    reconciled_at: datetime
    protection: Optional[ProtectionDeviceRecord] = None
    mdm: Optional[ManagedDeviceRecord] = None

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.sync_key,
            "syncKey": self.sync_key,
            "syncState": self.sync_state.value,
            "matchedOn": self.matched_on.value,
            "reconciledAt": format_timestamp(self.reconciled_at),
            "protection": self.protection.as_json() if self.protection else None,
            "mdm": self.mdm.as_json() if self.mdm else None,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "SyncDocument":
        # Imported lazily: normalization depends on this module.
        from .normalization import managed_record_from_api, protection_record_from_api

        protection = payload.get("protection")
        mdm = payload.get("mdm")
        return cls(
            sync_key=payload["syncKey"],
            sync_state=SyncState(payload["syncState"]),
            matched_on=MatchedOn(payload.get("matchedOn", MatchedOn.NONE.value)),
            reconciled_at=parse_iso(payload.get("reconciledAt")) or utcnow(),
            protection=protection_record_from_api(protection) if protection else None,
            mdm=managed_record_from_api(mdm) if mdm else None,
        )


@dataclass(slots=True)
class SyncError:
    key: str
    kind: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def as_json(self) -> dict[str, object]:
        return {
            "syncKey": self.key,
            "kind": self.kind,
            "error": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "SyncError":
        return cls(
            key=payload.get("syncKey", ""),
            kind=payload.get("kind", "unknown"),
            message=payload.get("error", ""),
            timestamp=parse_iso(payload.get("timestamp")) or utcnow(),
        )


@dataclass(slots=True)
class FetchResult:
    """Complete inventory from one source."""

    source: str
    records: list
    cost: float = 0.0
    pages: int = 0
    requests: int = 0
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class ClearResult:
    deleted: int = 0
    failed: int = 0
    cost: float = 0.0
    errors: List[SyncError] = field(default_factory=list)


@dataclass(slots=True)
class BulkResult:
    success: int = 0
    failure: int = 0
    skipped: int = 0
    cost: float = 0.0
    batches: int = 0
    cancelled: bool = False
    errors: List[SyncError] = field(default_factory=list)

    def merge(self, other: "BulkResult") -> None:
        self.success += other.success
        self.failure += other.failure
        self.skipped += other.skipped
        self.cost += other.cost
        self.batches += other.batches
        self.cancelled = self.cancelled or other.cancelled
        self.errors.extend(other.errors)


@dataclass(slots=True)
class ReconciliationResult:
    """Outcome of one run, shaped for the manual and scheduled triggers."""

    run_id: str
    status: RunStatus
    phase: str
    started_at: datetime
    finished_at: datetime
    total_processed: int = 0
    matched: int = 0
    only_protection: int = 0
    only_mdm: int = 0
    protection_fetched: int = 0
    mdm_fetched: int = 0
    devices_processed: int = 0
    devices_failed: int = 0
    deleted: int = 0
    api_calls: int = 0
    api_pages: int = 0
    total_execution_ms: float = 0.0
    phase_ms: Dict[str, float] = field(default_factory=dict)
    phase_cost: Dict[str, float] = field(default_factory=dict)
    percentages: Dict[str, float] = field(default_factory=dict)
    ambiguous: Dict[str, int] = field(default_factory=dict)
    errors: List[SyncError] = field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return sum(self.phase_cost.values())

    @property
    def total_fetched(self) -> int:
        return self.protection_fetched + self.mdm_fetched

    def as_json(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status.value,
            "runId": self.run_id,
            "statistics": {
                "totalProcessed": self.total_processed,
                "matched": self.matched,
                "onlyProtection": self.only_protection,
                "onlyMdm": self.only_mdm,
                "errorCount": len(self.errors),
            },
            "percentages": dict(self.percentages),
            "performance": {
                "totalExecutionTimeMs": round(self.total_execution_ms, 2),
                "phases": {
                    f"{name}Ms": round(value, 2) for name, value in self.phase_ms.items()
                },
            },
            "resourceUsage": {
                "totalCost": round(self.total_cost, 2),
                "breakdown": {
                    f"{name}Cost": round(value, 2) for name, value in self.phase_cost.items()
                },
            },
        }
        if self.errors:
            payload["errors"] = [error.as_json() for error in self.errors]
        return payload


@dataclass(slots=True)
class SyncMetadata:
    """Singleton record describing the most recent run and its predecessor."""

    id: str = METADATA_ID
    last_run_id: Optional[str] = None
    last_trigger: Optional[str] = None
    last_sync_start: Optional[datetime] = None
    last_sync_end: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    devices_processed: int = 0
    devices_failed: int = 0
    total_devices_fetched: int = 0
    execution_time_ms: float = 0.0
    matched: int = 0
    only_protection: int = 0
    only_mdm: int = 0
    api_calls: int = 0
    api_pages: int = 0
    run_cost: float = 0.0
    cumulative_cost: float = 0.0
    errors: List[SyncError] = field(default_factory=list)
    previous_run: Optional[Dict[str, Any]] = None
    in_flight: Optional[Dict[str, Any]] = None
    sync_version: str = SYNC_VERSION
    updated_at: Optional[datetime] = None

    def snapshot(self) -> dict[str, object] | None:
        """Summary of this run, kept as ``previous_run`` by the next one."""

        if self.last_sync_end is None:
            return None
        return {
            "runId": self.last_run_id,
            "syncTime": format_timestamp(self.last_sync_end),
            "status": self.last_status.value if self.last_status else None,
            "deviceCount": self.devices_processed,
            "matched": self.matched,
            "onlyProtection": self.only_protection,
            "onlyMdm": self.only_mdm,
        }

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "lastRunId": self.last_run_id,
            "lastTrigger": self.last_trigger,
            "lastSyncStartTime": format_timestamp(self.last_sync_start),
            "lastSyncEndTime": format_timestamp(self.last_sync_end),
            "lastSyncStatus": self.last_status.value if self.last_status else None,
            "devicesProcessed": self.devices_processed,
            "devicesFailed": self.devices_failed,
            "totalDevicesFetched": self.total_devices_fetched,
            "executionTimeMs": self.execution_time_ms,
            "matched": self.matched,
            "onlyProtection": self.only_protection,
            "onlyMdm": self.only_mdm,
            "apiCalls": self.api_calls,
            "apiPages": self.api_pages,
            "runCost": self.run_cost,
            "cumulativeCost": self.cumulative_cost,
            "errors": [error.as_json() for error in self.errors],
            "previousRun": self.previous_run,
            "inFlight": self.in_flight,
            "syncVersion": self.sync_version,
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "SyncMetadata":
        status = payload.get("lastSyncStatus")
        return cls(
            id=payload.get("id", METADATA_ID),
            last_run_id=payload.get("lastRunId"),
            last_trigger=payload.get("lastTrigger"),
            last_sync_start=parse_iso(payload.get("lastSyncStartTime")),
            last_sync_end=parse_iso(payload.get("lastSyncEndTime")),
            last_status=RunStatus(status) if status else None,
            devices_processed=int(payload.get("devicesProcessed", 0)),
            devices_failed=int(payload.get("devicesFailed", 0)),
            total_devices_fetched=int(payload.get("totalDevicesFetched", 0)),
            execution_time_ms=float(payload.get("executionTimeMs", 0.0)),
            matched=int(payload.get("matched", 0)),
            only_protection=int(payload.get("onlyProtection", 0)),
            only_mdm=int(payload.get("onlyMdm", 0)),
            api_calls=int(payload.get("apiCalls", 0)),
            api_pages=int(payload.get("apiPages", 0)),
            run_cost=float(payload.get("runCost", 0.0)),
            cumulative_cost=float(payload.get("cumulativeCost", 0.0)),
            errors=[SyncError.from_json(item) for item in payload.get("errors") or []],
            previous_run=payload.get("previousRun"),
            in_flight=payload.get("inFlight"),
            sync_version=payload.get("syncVersion", SYNC_VERSION),
            updated_at=parse_iso(payload.get("updatedAt")),
        )
