"""
Cloud backend — shared document store and admin console.

Endpoints:
    GET   /users/{user_id}                     — Read a user record
    PATCH /users/{user_id}                     — Merge a patch into a user record
    GET   /devices/{device_id}                 — Read a device record
    PATCH /devices/{device_id}                 — Merge a patch into a device record
    GET   /devices                             — List all registered devices
    POST  /collections/{path}/events           — Append a security event
    GET   /collections/{path}/events           — List a security event collection
    GET   /audit/{user_id}                     — A user's security events
    GET   /commands/{device_id}                — Pending commands (polled by the device)
    PATCH /commands/{command_id}               — Report command progress
    POST  /admin/lock/{device_id}              — Remote lock
    POST  /admin/unblock/{device_id}           — Remote unblock
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import ValidationError

from .config import get_settings
from .lock import coerce_reason
from .models import (
    AdminLockRequest,
    BlockReason,
    CommandUpdate,
    RemoteCommandStatus,
    RemoteCommandType,
    SecurityEventRecord,
    UserRecord,
    utcnow,
)
from .remote import GLOBAL_EVENTS_COLLECTION, InMemoryDocumentStore, user_events_collection

# ── Structured logging ─────────────────────────────────────────────────

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("securewipe-backend")

app = FastAPI(title="SecureWipe Backend", version="0.3.0")

# ── In-memory document store (swap for a database in production) ──────

documents = InMemoryDocumentStore()


# ── Command status transitions ─────────────────────────────────────────

COMMAND_TRANSITIONS: dict[RemoteCommandStatus, set[RemoteCommandStatus]] = {
    RemoteCommandStatus.PENDING: {
        RemoteCommandStatus.EXECUTING,
        RemoteCommandStatus.EXECUTED,
        RemoteCommandStatus.FAILED,
    },
    RemoteCommandStatus.EXECUTING: {RemoteCommandStatus.EXECUTED, RemoteCommandStatus.FAILED},
    RemoteCommandStatus.EXECUTED: set(),
    RemoteCommandStatus.FAILED: set(),
}


# ── Records ────────────────────────────────────────────────────────────

@app.get("/users/{user_id}")
def get_user(user_id: str):
    doc = documents.read_user_doc(user_id)
    if doc is None:
        logger.warning(f"USER | user={user_id} NOT_FOUND")
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return doc


@app.patch("/users/{user_id}")
def patch_user(user_id: str, patch: dict[str, Any] = Body(...)):
    documents.update_user_doc(user_id, patch)
    logger.info(f"USER | user={user_id} updated fields={sorted(patch)}")
    return {"status": "ok", "user_id": user_id}


@app.get("/devices/{device_id}")
def get_device(device_id: str):
    doc = documents.read_device_doc(device_id)
    if doc is None:
        logger.warning(f"DEVICE | device={device_id} NOT_FOUND")
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    return doc


@app.patch("/devices/{device_id}")
def patch_device(device_id: str, request: Request, patch: dict[str, Any] = Body(...)):
    client_ip = request.client.host if request.client else "unknown"
    documents.update_device_doc(device_id, patch)
    logger.info(f"DEVICE | device={device_id} updated fields={sorted(patch)} ip={client_ip}")
    return {"status": "ok", "device_id": device_id}


@app.get("/devices")
def list_devices():
    """List all registered devices and their lock status."""
    device_list = []
    for device_id, doc in sorted(documents.devices.items()):
        status = doc.get("status", {})
        device_list.append({
            "device_id": device_id,
            "user_id": doc.get("userId"),
            "is_blocked": bool(status.get("isBlocked")),
            "block_reason": status.get("blockReason"),
            "is_online": bool(status.get("isOnline")),
        })
    logger.info(f"DEVICES | total={len(device_list)}")
    return {"devices": device_list, "total": len(device_list)}


# ── Security events ────────────────────────────────────────────────────

@app.post("/collections/{collection:path}/events", status_code=201)
def append_event(collection: str, event: dict[str, Any] = Body(...)):
    """Append an event. Events are validated before they are stored."""
    if collection != GLOBAL_EVENTS_COLLECTION and not (
        collection.startswith("users/") and collection.endswith("/securityEvents")
    ):
        raise HTTPException(status_code=404, detail=f"Unknown collection {collection}")
    try:
        record = SecurityEventRecord.model_validate(event)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    payload = record.model_dump(mode="json", by_alias=True)
    payload["createdAt"] = utcnow().isoformat()
    event_id = documents.append_event(collection, payload)
    logger.info(
        f"EVENT | collection={collection} type={record.type.value} "
        f"severity={record.severity.value} device={record.device_id}"
    )
    return {"status": "ok", "id": event_id}


@app.get("/collections/{collection:path}/events")
def list_events(collection: str):
    events = documents.list_events(collection)
    return {"collection": collection, "events": events, "total": len(events)}


@app.get("/audit/{user_id}")
def get_audit(user_id: str):
    """Return the full security event trail for a user."""
    records = documents.list_events(user_events_collection(user_id))
    logger.info(f"AUDIT | user={user_id} records={len(records)}")
    return {"user_id": user_id, "records": records}


# ── Remote commands ────────────────────────────────────────────────────

@app.get("/commands/{device_id}")
def get_commands(device_id: str):
    """Return pending commands for a device."""
    pending = documents.list_pending_commands(device_id)
    logger.info(f"COMMANDS | device={device_id} pending={len(pending)}")
    return {"device_id": device_id, "commands": pending}


@app.patch("/commands/{command_id}")
def update_command(command_id: str, patch: dict[str, Any] = Body(...)):
    """Record command progress reported by the device."""
    current = documents.commands.get(command_id)
    if current is None:
        raise HTTPException(status_code=404, detail="Command not found")
    try:
        update = CommandUpdate.model_validate(patch)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    from_status = RemoteCommandStatus(current.get("status", RemoteCommandStatus.PENDING.value))
    if update.status != from_status and update.status not in COMMAND_TRANSITIONS[from_status]:
        logger.warning(
            f"COMMAND | REJECTED id={command_id} invalid transition: "
            f"{from_status.value} -> {update.status.value}"
        )
        raise HTTPException(
            status_code=409,
            detail=f"Invalid transition: {from_status.value} -> {update.status.value}",
        )
    documents.update_command(command_id, patch)
    logger.info(f"COMMAND_ACK | id={command_id} device={current.get('deviceId')} status={update.status.value}")
    return {"status": "ok", "command_id": command_id}


# ── Admin console ──────────────────────────────────────────────────────

@app.post("/admin/lock/{device_id}")
def admin_lock(device_id: str, body: Optional[AdminLockRequest] = None):
    """
    Lock a device from the console.

    The block is written to the device and user records right away, so the
    device adopts it on its next reconciliation even if it never sees the
    queued command.
    """
    body = body or AdminLockRequest()
    device = documents.read_device_doc(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")

    reason = coerce_reason(body.reason)
    if reason == BlockReason.NONE:
        reason = BlockReason.REMOTE_COMMAND
    now = utcnow().isoformat()
    documents.update_device_doc(device_id, {
        "status": {"isBlocked": True, "blockedAt": now, "blockReason": reason.value},
    })
    user_id = device.get("userId")
    if user_id:
        documents.update_user_doc(user_id, {
            "deviceBlocked": True,
            "blockedAt": now,
            "blockReason": reason.value,
        })

    command_id = _enqueue(device_id, user_id, RemoteCommandType.LOCK, {"reason": reason.value})
    logger.warning(f"ADMIN_LOCK | device={device_id} user={user_id} reason={reason.value} actor={body.actor}")
    return {"status": "ok", "device_id": device_id, "command_id": command_id, "reason": reason.value}


@app.post("/admin/unblock/{device_id}")
def admin_unblock(device_id: str, actor: str = "admin"):
    """Queue an UNLOCK carrying the account's recovery key."""
    device = documents.read_device_doc(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
    user_id = device.get("userId")
    user_doc = documents.read_user_doc(user_id) if user_id else None
    user = UserRecord.model_validate(user_doc) if user_doc else None
    if user is None or not user.security_key:
        raise HTTPException(status_code=409, detail="No recovery key on file for this device's account")

    now = utcnow().isoformat()
    documents.update_device_doc(device_id, {
        "status": {"isBlocked": False, "blockedAt": None, "blockReason": None},
    })
    documents.update_user_doc(user_id, {"deviceBlocked": False, "unblockedAt": now})

    command_id = _enqueue(device_id, user_id, RemoteCommandType.UNLOCK, {"securityKey": user.security_key})
    logger.warning(f"ADMIN_UNBLOCK | device={device_id} user={user_id} actor={actor}")
    return {"status": "ok", "device_id": device_id, "command_id": command_id}


# ── Helpers ────────────────────────────────────────────────────────────

def _enqueue(device_id: str, user_id: str | None, command_type: RemoteCommandType, params: dict) -> str:
    command_id = documents.enqueue_command({
        "id": str(uuid.uuid4()),
        "type": command_type.value,
        "deviceId": device_id,
        "userId": user_id,
        "status": RemoteCommandStatus.PENDING.value,
        "createdAt": utcnow().isoformat(),
        "params": params,
    })
    logger.info(f"COMMAND | device={device_id} queued={command_type.value} id={command_id}")
    return command_id
