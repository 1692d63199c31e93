"""REST API endpoints."""

from datetime import datetime, time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlmodel import Session

from pillwatch.adherence.history import get_alert_history
from pillwatch.adherence.models import Alert, AlertLog
from pillwatch.adherence.monitor import AdherenceMonitor
from pillwatch.backup import restore_snapshot
from pillwatch.boxes.models import BeaconMapping
from pillwatch.boxes.store import (
    BoxConflictError,
    assign_beacons,
    free_boxes,
    list_mappings,
    list_unmapped_beacons,
    unassign_beacon,
)
from pillwatch.config import settings
from pillwatch.database import get_session
from pillwatch.notify.scheduler import NotificationScheduler, wrong_box_trigger_id
from pillwatch.scanner.discovery import BeaconObservation, DiscoveryService
from pillwatch.schedule.models import MedicationEntry
from pillwatch.schedule.store import (
    add_medications,
    available_boxes,
    delete_medication,
    get_medication,
    list_medications,
    update_medication,
)

router = APIRouter(prefix="/api")


# Service dependencies (built in the app lifespan)
def get_discovery(request: Request) -> DiscoveryService:
    return request.app.state.discovery


def get_notifier(request: Request) -> NotificationScheduler:
    return request.app.state.notifier


def get_monitor(request: Request) -> AdherenceMonitor:
    return request.app.state.monitor


# Request / response models
class BeaconAssignment(BaseModel):
    beacon_id: str
    box_number: int


class AssignBeaconsRequest(BaseModel):
    assignments: list[BeaconAssignment] = Field(min_length=1)


class MedicationItem(BaseModel):
    medication_time: time
    box_number: int


class AddMedicationsRequest(BaseModel):
    entries: list[MedicationItem] = Field(min_length=1)


class UpdateMedicationRequest(BaseModel):
    medication_time: time | None = None
    box_number: int | None = None


class MappingRecord(BaseModel):
    beacon_id: str
    box_number: int


class MedicationRecord(BaseModel):
    id: str
    medication_time: time
    box_number: int


class Snapshot(BaseModel):
    mappings: list[MappingRecord] = []
    medications: list[MedicationRecord] = []


def _observation_dict(obs: BeaconObservation) -> dict[str, Any]:
    return {
        "beacon_id": obs.beacon_id,
        "name": obs.name,
        "label": obs.label,
        "rssi": obs.rssi,
        "sensor_byte": obs.sensor_byte,
        "last_seen": obs.last_seen,
    }


def _alert_dict(alert: Alert) -> dict[str, Any]:
    return {
        "message": alert.message,
        "level": alert.level,
        "box_number": alert.box_number,
        "entry_id": alert.entry_id,
        "raised_at": alert.raised_at,
    }


# --- Scanner & beacons ---


@router.get("/scanner")
async def scanner_status(discovery: DiscoveryService = Depends(get_discovery)) -> dict[str, Any]:
    return {"status": discovery.status, "observed_count": len(discovery.observations())}


@router.post("/scanner/start")
async def start_scanner(discovery: DiscoveryService = Depends(get_discovery)) -> dict[str, str]:
    await discovery.start_scanning()
    return {"status": discovery.status}


@router.post("/scanner/stop")
async def stop_scanner(discovery: DiscoveryService = Depends(get_discovery)) -> dict[str, str]:
    await discovery.stop_scanning()
    return {"status": discovery.status}


@router.get("/beacons")
async def list_beacons(
    discovery: DiscoveryService = Depends(get_discovery),
) -> list[dict[str, Any]]:
    return [_observation_dict(o) for o in discovery.observations()]


@router.get("/beacons/unassigned")
async def list_unassigned_beacons(
    discovery: DiscoveryService = Depends(get_discovery),
    session: Session = Depends(get_session),
) -> list[dict[str, Any]]:
    return [_observation_dict(o) for o in list_unmapped_beacons(session, discovery.observations())]


# --- Beacon mappings ---


@router.get("/mappings")
def list_all_mappings(session: Session = Depends(get_session)) -> list[BeaconMapping]:
    return list_mappings(session)


@router.post("/mappings", status_code=201)
async def create_mappings(
    request: AssignBeaconsRequest,
    session: Session = Depends(get_session),
) -> list[BeaconMapping]:
    items = [(a.beacon_id, a.box_number) for a in request.assignments]
    try:
        return assign_beacons(session, items, settings.box_count)
    except BoxConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/mappings/{beacon_id}")
async def delete_mapping(
    beacon_id: str,
    session: Session = Depends(get_session),
) -> dict[str, str]:
    if not unassign_beacon(session, beacon_id):
        raise HTTPException(status_code=404, detail="Mapping not found")
    return {"status": "unassigned"}


@router.get("/boxes/free")
def list_free_boxes(
    exclude: str | None = None,
    staged: list[int] = Query(default=[]),
    session: Session = Depends(get_session),
) -> list[int]:
    return free_boxes(session, settings.box_count, excluding_beacon_id=exclude, staged=staged)


# --- Medication schedule ---


@router.get("/medications")
def list_all_medications(session: Session = Depends(get_session)) -> list[MedicationEntry]:
    return list_medications(session)


@router.post("/medications", status_code=201)
async def create_medications(
    request: AddMedicationsRequest,
    session: Session = Depends(get_session),
    notifier: NotificationScheduler = Depends(get_notifier),
) -> list[MedicationEntry]:
    items = [(item.medication_time, item.box_number) for item in request.entries]
    try:
        entries = add_medications(session, items, settings.box_count)
    except BoxConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    for entry in entries:
        notifier.schedule_reminder(entry)
    return entries


# Literal path must come before {entry_id} parametric path
@router.get("/medications/available-boxes")
def list_available_boxes(
    exclude: str | None = None,
    staged: list[int] = Query(default=[]),
    session: Session = Depends(get_session),
) -> list[int]:
    return available_boxes(
        session, settings.box_count, excluding_entry_id=exclude, staged=staged
    )


@router.get("/medications/{entry_id}")
def medication_detail(
    entry_id: str,
    session: Session = Depends(get_session),
) -> MedicationEntry:
    entry = get_medication(session, entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Medication not found")
    return entry


@router.patch("/medications/{entry_id}")
async def edit_medication(
    entry_id: str,
    request: UpdateMedicationRequest,
    session: Session = Depends(get_session),
    notifier: NotificationScheduler = Depends(get_notifier),
    monitor: AdherenceMonitor = Depends(get_monitor),
) -> MedicationEntry:
    try:
        entry = update_medication(
            session,
            entry_id,
            medication_time=request.medication_time,
            box_number=request.box_number,
            box_count=settings.box_count,
        )
    except BoxConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail="Medication not found")
    notifier.schedule_reminder(entry)
    # a pending wrong-box notice would still name the old box
    notifier.cancel(wrong_box_trigger_id(entry.id))
    monitor.forget(entry.id)
    return entry


@router.delete("/medications/{entry_id}")
async def remove_medication(
    entry_id: str,
    session: Session = Depends(get_session),
    notifier: NotificationScheduler = Depends(get_notifier),
    monitor: AdherenceMonitor = Depends(get_monitor),
) -> dict[str, str]:
    if not delete_medication(session, entry_id):
        raise HTTPException(status_code=404, detail="Medication not found")
    notifier.cancel_entry(entry_id)
    monitor.forget(entry_id)
    return {"status": "deleted"}


# --- Adherence ---


@router.get("/status")
async def dose_status(
    session: Session = Depends(get_session),
    monitor: AdherenceMonitor = Depends(get_monitor),
) -> list[dict[str, Any]]:
    result = []
    for report in monitor.evaluate(session):
        cover = None
        if report.cover_open is not None:
            cover = "open" if report.cover_open else "closed"
        result.append(
            {
                "entry_id": report.entry.id,
                "medication_time": report.entry.medication_time.strftime("%H:%M"),
                "box_number": report.entry.box_number,
                "status": report.status,
                "scheduled_at": report.scheduled_at,
                "cover": cover,
                "last_known": report.last_known,
            }
        )
    return result


@router.get("/alert")
async def current_alert(monitor: AdherenceMonitor = Depends(get_monitor)) -> dict[str, Any] | None:
    if monitor.alert is None:
        return None
    return _alert_dict(monitor.alert)


@router.post("/alert/ack")
async def acknowledge_alert(monitor: AdherenceMonitor = Depends(get_monitor)) -> dict[str, str]:
    if monitor.acknowledge() is None:
        raise HTTPException(status_code=404, detail="No active alert")
    return {"status": "acknowledged"}


@router.get("/alerts/history")
def alert_history(
    entry_id: str | None = None,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[AlertLog]:
    return get_alert_history(session, entry_id=entry_id, limit=limit)


@router.get("/notifications")
async def pending_notifications(
    notifier: NotificationScheduler = Depends(get_notifier),
) -> list[dict[str, Any]]:
    return [
        {
            "trigger_id": t.trigger_id,
            "entry_id": t.entry_id,
            "title": t.title,
            "body": t.body,
            "fire_at": t.fire_at,
            "repeats_daily": t.repeats_daily,
        }
        for t in notifier.pending()
    ]


# --- Backup ---


@router.get("/export")
def export_snapshot(session: Session = Depends(get_session)) -> Snapshot:
    return Snapshot(
        mappings=[
            MappingRecord(beacon_id=m.beacon_id, box_number=m.box_number)
            for m in list_mappings(session)
        ],
        medications=[
            MedicationRecord(id=e.id, medication_time=e.medication_time, box_number=e.box_number)
            for e in list_medications(session)
        ],
    )


@router.post("/import")
async def import_snapshot(
    snapshot: Snapshot,
    session: Session = Depends(get_session),
    notifier: NotificationScheduler = Depends(get_notifier),
    monitor: AdherenceMonitor = Depends(get_monitor),
) -> dict[str, int]:
    try:
        mapping_count, medication_count = restore_snapshot(
            session,
            [
                BeaconMapping(beacon_id=m.beacon_id, box_number=m.box_number)
                for m in snapshot.mappings
            ],
            [
                MedicationEntry(id=m.id, medication_time=m.medication_time, box_number=m.box_number)
                for m in snapshot.medications
            ],
            settings.box_count,
        )
    except BoxConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Only a committed restore gets here; rebuild reminders and edge state from it
    notifier.clear()
    monitor.reset()
    now = datetime.now()
    for entry in list_medications(session):
        notifier.schedule_reminder(entry, now=now)
    return {"mappings": mapping_count, "medications": medication_count}
