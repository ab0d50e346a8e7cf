from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from iot_dashboard.models.telemetry import (
    Alert,
    AlertDirection,
    ExceedanceResult,
    TelemetryRecord,
    ThresholdBound,
    ThresholdSpec,
)
from iot_dashboard.repositories.base import TelemetryRepository

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100

_MIN_SUFFIX = "Min"
_MAX_SUFFIX = "Max"


def coerce_number(v: Any) -> float | None:
    """Return ``v`` as a finite float, or None when it is not numeric."""
    if v is None or isinstance(v, bool):
        return None
    if not isinstance(v, (int, float, str)):
        return None
    try:
        result = float(v.strip() if isinstance(v, str) else v)
    except (ValueError, OverflowError):
        # Integers too large for a float overflow instead of becoming inf.
        return None
    if not math.isfinite(result):
        return None
    return result


def decode_payload(payload: str) -> dict[str, Any]:
    try:
        decoded = json.loads(payload)
    except (TypeError, ValueError):
        return {}
    if not isinstance(decoded, dict):
        return {}
    return decoded


def build_threshold_spec(raw: Mapping[str, Mapping[str, Any]]) -> ThresholdSpec:
    """Normalize ``{field: {"min": x, "max": y}}`` input, dropping unusable bounds."""
    spec: ThresholdSpec = {}
    for field, limits in raw.items():
        if not field or not isinstance(limits, Mapping):
            continue
        bound = ThresholdBound(
            min=coerce_number(limits.get("min")), max=coerce_number(limits.get("max"))
        )
        if not bound.is_empty():
            spec[field] = bound
    return spec


def parse_threshold_params(params: Mapping[str, Any]) -> ThresholdSpec:
    """Rebuild a ThresholdSpec from flat ``<field>Min`` / ``<field>Max`` entries.

    Example: ``{"temperatureMin": "15", "temperatureMax": "30"}`` becomes
    ``{"temperature": ThresholdBound(min=15.0, max=30.0)}``. Bounds that do not
    parse as finite numbers are treated as absent.
    """
    nested: dict[str, dict[str, Any]] = {}
    for key, value in params.items():
        if key.endswith(_MIN_SUFFIX):
            side = "min"
        elif key.endswith(_MAX_SUFFIX):
            side = "max"
        else:
            continue
        field = key[: -len(_MIN_SUFFIX)]
        if not field:
            continue
        nested.setdefault(field, {})[side] = value
    return build_threshold_spec(nested)


def thresholds_to_params(spec: ThresholdSpec) -> dict[str, float]:
    params: dict[str, float] = {}
    for field, bound in spec.items():
        if bound.min is not None:
            params[f"{field}{_MIN_SUFFIX}"] = bound.min
        if bound.max is not None:
            params[f"{field}{_MAX_SUFFIX}"] = bound.max
    return params


def evaluate_record(record: TelemetryRecord, thresholds: ThresholdSpec) -> list[Alert]:
    values = decode_payload(record.payload)
    if not values:
        return []

    alerts: list[Alert] = []
    for field, bound in thresholds.items():
        value = coerce_number(values.get(field))
        if value is None:
            continue
        if bound.min is not None and value < bound.min:
            alerts.append(
                Alert(field=field, direction=AlertDirection.BELOW, value=value, threshold=bound.min)
            )
        if bound.max is not None and value > bound.max:
            alerts.append(
                Alert(field=field, direction=AlertDirection.ABOVE, value=value, threshold=bound.max)
            )
    return alerts


class ExceedanceEngine:
    """Finds stored records that cross at least one configured threshold.

    Thresholds are evaluated here, after an unfiltered fetch of at most
    ``limit`` records, so results never depend on the store backend. ``since``
    is inclusive.
    """

    def __init__(self, repo: TelemetryRepository) -> None:
        self._repo = repo

    def find(
        self,
        device_id: str,
        thresholds: ThresholdSpec,
        *,
        limit: int = DEFAULT_LIMIT,
        since: datetime | None = None,
    ) -> list[ExceedanceResult]:
        if not thresholds:
            return []

        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        records = self._repo.query_range(device_id=device_id, since=since, limit=limit)
        if since is not None:
            records = [r for r in records if r.received_at >= since]
        records = sorted(records, key=lambda r: r.received_at, reverse=True)

        results: list[ExceedanceResult] = []
        for record in records[:limit]:
            alerts = evaluate_record(record, thresholds)
            if alerts:
                results.append(ExceedanceResult(record=record, alerts=alerts))

        logger.debug(
            "Exceedance scan for device %s: %d candidate(s), %d violation(s)",
            device_id,
            len(records),
            len(results),
        )
        return results
