from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Annotated

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Path,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from iot_dashboard.api.deps import (
    ManageUser,
    ReadUser,
    get_live_fanout,
    get_settings,
    get_telemetry_repository,
    get_telemetry_service,
    get_ws_settings,
    user_from_token,
)
from iot_dashboard.core.config import Settings
from iot_dashboard.core.errors import (
    DeviceDirectoryError,
    DeviceNotConfiguredError,
    DeviceNotFoundError,
)
from iot_dashboard.models.telemetry import ConnectionState
from iot_dashboard.repositories.base import TelemetryRepository
from iot_dashboard.schemas.telemetry import (
    DEVICE_ID_PATTERN,
    CleanupResponse,
    ConnectAllResponse,
    ConnectionsResponse,
    ConnectionStatusRead,
    ConnectResponse,
    ExceedanceRead,
    ExceedanceReport,
    LatestRead,
    LiveMessage,
    TelemetryRead,
    ThresholdBoundRead,
)
from iot_dashboard.services.exceedance import parse_threshold_params
from iot_dashboard.services.fanout import LiveFanout, Subscription
from iot_dashboard.services.telemetry import HistoryPeriod, TelemetryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mqtt")

DeviceId = Annotated[str, Path(min_length=1, max_length=64, pattern=DEVICE_ID_PATTERN)]
Service = Annotated[TelemetryService, Depends(get_telemetry_service)]


def _store_unavailable(e: Exception) -> HTTPException:
    logger.warning("Telemetry store request failed: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Telemetry store unavailable",
    )


def _directory_unavailable(e: Exception) -> HTTPException:
    logger.warning("Device directory request failed: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Device directory unavailable",
    )


@router.get("/health", tags=["meta"])
def health(
    repo: Annotated[TelemetryRepository, Depends(get_telemetry_repository)],
) -> dict[str, str]:
    try:
        repo.ping()
    except Exception as e:  # noqa: BLE001 - expose as 503 without leaking internals
        raise _store_unavailable(e) from e
    return {"status": "ok"}


@router.get("/status", response_model=ConnectionsResponse)
def connection_status(_: ReadUser, service: Service) -> ConnectionsResponse:
    return ConnectionsResponse(
        connections={
            device_id: ConnectionStatusRead.model_validate(s.__dict__)
            for device_id, s in service.status().items()
        }
    )


@router.post(
    "/connect-all",
    response_model=ConnectAllResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def connect_all(_: ManageUser, service: Service) -> ConnectAllResponse:
    try:
        requested = service.connect_all()
    except DeviceDirectoryError as e:
        raise _directory_unavailable(e) from e
    return ConnectAllResponse(requested=requested)


@router.post(
    "/maintenance/cleanup",
    response_model=CleanupResponse,
)
def cleanup_old_data(
    _: ManageUser,
    service: Service,
    settings: Annotated[Settings, Depends(get_settings)],
    days: Annotated[int | None, Query(ge=1, le=3650)] = None,
) -> CleanupResponse:
    try:
        deleted, cutoff = service.clean_old_data(days=days or settings.retention_days)
    except Exception as e:  # noqa: BLE001 - normalize storage failures
        raise _store_unavailable(e) from e
    return CleanupResponse(deleted=deleted, cutoff=cutoff)


@router.post(
    "/{device_id}/connect",
    response_model=ConnectResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def connect_device(_: ManageUser, device_id: DeviceId, service: Service) -> ConnectResponse:
    try:
        handle = service.connect(device_id)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except DeviceNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except DeviceDirectoryError as e:
        raise _directory_unavailable(e) from e
    return ConnectResponse(
        device_id=device_id,
        state=handle.state,
        message=f"Connecting to {handle.config.host}:{handle.config.port}",
    )


@router.post("/{device_id}/disconnect", response_model=ConnectResponse)
def disconnect_device(_: ManageUser, device_id: DeviceId, service: Service) -> ConnectResponse:
    removed = service.disconnect(device_id)
    return ConnectResponse(
        device_id=device_id,
        state=ConnectionState.DISCONNECTED,
        message=None if removed else "Device was not connected",
    )


@router.get("/{device_id}/data", response_model=list[TelemetryRead])
def historical_data(
    _: ReadUser,
    device_id: DeviceId,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=10_000)] = 100,
    since: Annotated[datetime | None, Query()] = None,
    period: Annotated[HistoryPeriod | None, Query()] = None,
) -> list[TelemetryRead]:
    try:
        rows = service.history(device_id, limit=limit, since=since, period=period)
    except Exception as e:  # noqa: BLE001 - normalize storage failures
        raise _store_unavailable(e) from e
    return [TelemetryRead.from_record(r) for r in rows]


@router.get("/{device_id}/latest", response_model=LatestRead | None)
def latest_value(_: ReadUser, device_id: DeviceId, service: Service) -> LatestRead | None:
    try:
        latest = service.latest(device_id)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except DeviceDirectoryError as e:
        raise _directory_unavailable(e) from e
    except Exception as e:  # noqa: BLE001 - normalize storage failures
        raise _store_unavailable(e) from e
    if latest is None:
        return None
    return LatestRead.from_cached(latest)


@router.get("/{device_id}/exceedances", response_model=ExceedanceReport)
def exceedances(
    _: ReadUser,
    request: Request,
    device_id: DeviceId,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=10_000)] = 100,
    since: Annotated[datetime | None, Query()] = None,
) -> ExceedanceReport:
    """Records crossing ``<field>Min`` / ``<field>Max`` query thresholds.

    Example: ``?temperatureMin=15&temperatureMax=30&humidityMax=80``.
    """
    thresholds = parse_threshold_params(request.query_params)
    try:
        results = service.exceedances(device_id, thresholds, limit=limit, since=since)
    except Exception as e:  # noqa: BLE001 - normalize storage failures
        raise _store_unavailable(e) from e
    return ExceedanceReport(
        count=len(results),
        thresholds={
            field: ThresholdBoundRead(min=bound.min, max=bound.max)
            for field, bound in thresholds.items()
        },
        data=[ExceedanceRead.from_result(r) for r in results],
    )


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        record = await subscription.get()
        try:
            await websocket.send_json(LiveMessage.from_record(record).model_dump(mode="json"))
        except Exception:  # noqa: BLE001 - client went away mid-send
            logger.debug("Live update send failed for device %s", subscription.device_id)
            return


@router.websocket("/{device_id}/ws")
async def live_updates(
    websocket: WebSocket,
    device_id: DeviceId,
    fanout: Annotated[LiveFanout, Depends(get_live_fanout)],
    settings: Annotated[Settings, Depends(get_ws_settings)],
    token: Annotated[str | None, Query()] = None,
) -> None:
    user = user_from_token(token, settings=settings) if token else None
    if user is None or user.missing_scopes(["telemetry:read"]):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # Subscribe before accepting so nothing published after the handshake is missed.
    subscription = fanout.subscribe(device_id)
    pump: asyncio.Task[None] | None = None
    try:
        await websocket.accept()
        pump = asyncio.create_task(_pump(websocket, subscription))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if pump is not None:
            pump.cancel()
        fanout.unsubscribe(subscription)
