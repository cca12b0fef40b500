"""Utilities for turning upstream device payloads into normalised records."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import NormalizationError
from .models import ManagedDeviceRecord, ProtectionDeviceRecord

TIMESTAMP_FORMATS = ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S%z")

EMPTY_DIRECTORY_ID = "00000000-0000-0000-0000-000000000000"

PLACEHOLDER_SERIALS = {
    "0",
    "00000000",
    "NONE",
    "N/A",
    "NA",
    "NULL",
    "UNKNOWN",
    "DEFAULT STRING",
    "TO BE FILLED BY O.E.M.",
    "SYSTEM SERIAL NUMBER",
    "NOT SPECIFIED",
    "NOT APPLICABLE",
}

PROTECTION_FIELDS = {
    "id",
    "aadDeviceId",
    "computerDnsName",
    "serialNumber",
    "osPlatform",
    "osVersion",
    "healthStatus",
    "riskScore",
    "exposureLevel",
    "onboardingStatus",
    "lastIpAddress",
    "machineTags",
    "firstSeen",
    "lastSeen",
}

MANAGED_FIELDS = {
    "id",
    "azureADDeviceId",
    "deviceName",
    "serialNumber",
    "userPrincipalName",
    "operatingSystem",
    "osVersion",
    "complianceState",
    "managementState",
    "manufacturer",
    "model",
    "isEncrypted",
    "enrolledDateTime",
    "lastSyncDateTime",
}

# Store system properties are never part of the upstream record.
_SYSTEM_KEYS = {"_rid", "_self", "_etag", "_attachments", "_ts"}

_FRACTION = re.compile(r"\.(\d{6})\d+")


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse the ISO-8601 variants both platforms emit into an aware datetime."""

    text = _clean(raw)
    if text is None:
        return None
    if text.startswith("0001-01-01"):
        # MDM uses the minimum date for "never".
        return None
    text = _FRACTION.sub(lambda m: "." + m.group(1), text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for pattern in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, pattern)
        except ValueError:
            continue
        return parsed.astimezone(timezone.utc)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise NormalizationError(f"Unrecognised timestamp: {raw}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalise_hostname(raw: Any) -> str | None:
    text = _clean(raw)
    return text.casefold() if text else None


def normalise_serial(raw: Any) -> str | None:
    text = _clean(raw)
    if text is None:
        return None
    text = text.upper()
    if text in PLACEHOLDER_SERIALS or set(text) <= {"0", "-", " "}:
        return None
    return text


def normalise_directory_id(raw: Any) -> str | None:
    text = _clean(raw)
    if text is None:
        return None
    text = text.lower()
    if text == EMPTY_DIRECTORY_ID:
        return None
    return text


def _extra(payload: Mapping[str, Any], known: set[str]) -> dict[str, Any]:
    return {
        key: value
        for key, value in payload.items()
        if key not in known and key not in _SYSTEM_KEYS and not key.startswith("@odata")
    }


def _require_id(payload: Mapping[str, Any], source: str) -> str:
    if not isinstance(payload, Mapping):
        raise NormalizationError(f"{source} payload is not an object: {payload!r}")
    device_id = _clean(payload.get("id"))
    if device_id is None:
        raise NormalizationError(f"{source} device without id: {dict(payload)!r}")
    return device_id


def protection_record_from_api(payload: Mapping[str, Any]) -> ProtectionDeviceRecord:
    device_id = _require_id(payload, "protection")
    tags = payload.get("machineTags") or ()
    return ProtectionDeviceRecord(
        id=device_id,
        directory_device_id=normalise_directory_id(payload.get("aadDeviceId")),
        hostname=_clean(payload.get("computerDnsName")),
        serial_number=_clean(payload.get("serialNumber")),
        os_platform=_clean(payload.get("osPlatform")),
        os_version=_clean(payload.get("osVersion")),
        health_status=_clean(payload.get("healthStatus")),
        risk_score=_clean(payload.get("riskScore")),
        exposure_level=_clean(payload.get("exposureLevel")),
        onboarding_status=_clean(payload.get("onboardingStatus")),
        last_ip_address=_clean(payload.get("lastIpAddress")),
        machine_tags=tuple(str(tag) for tag in tags),
        first_seen=parse_timestamp(payload.get("firstSeen")),
        last_seen=parse_timestamp(payload.get("lastSeen")),
        extra=_extra(payload, PROTECTION_FIELDS),
    )


def managed_record_from_api(payload: Mapping[str, Any]) -> ManagedDeviceRecord:
    device_id = _require_id(payload, "mdm")
    encrypted = payload.get("isEncrypted")
    return ManagedDeviceRecord(
        id=device_id,
        directory_device_id=normalise_directory_id(payload.get("azureADDeviceId")),
        device_name=_clean(payload.get("deviceName")),
        serial_number=_clean(payload.get("serialNumber")),
        user_principal_name=_clean(payload.get("userPrincipalName")),
        operating_system=_clean(payload.get("operatingSystem")),
        os_version=_clean(payload.get("osVersion")),
        compliance_state=_clean(payload.get("complianceState")),
        management_state=_clean(payload.get("managementState")),
        manufacturer=_clean(payload.get("manufacturer")),
        model=_clean(payload.get("model")),
        is_encrypted=bool(encrypted) if encrypted is not None else None,
        enrolled_at=parse_timestamp(payload.get("enrolledDateTime")),
        last_sync_at=parse_timestamp(payload.get("lastSyncDateTime")),
        extra=_extra(payload, MANAGED_FIELDS),
    )
