import asyncio
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

import config
import pricing
from chat import ChatService
from database import db, get_store
from errors import GeolocationUnavailable, Result
from geocoding import ReverseGeocoder
from identity import UserDirectory
from lifecycle import REQUEST_COLLECTION, RequestService, allowed_actions
from matching import MatchingEngine
from presence import PresenceService
from schemas import (
    AcceptPayload,
    ActorPayload,
    CancelPayload,
    Coordinate,
    CreateRequestPayload,
    EditRequestPayload,
    EnsureChatPayload,
    MarkReadPayload,
    PresencePayload,
    RegisterUserPayload,
    ReportIssuePayload,
    SendMessagePayload,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PasaBUY API", description="Pasabuy requests, pasabuyer matching and chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------ Utilities ------------------

def serialize_doc(value: Any):
    if isinstance(value, dict):
        return {k: serialize_doc(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def unwrap(result: Result):
    if not result.ok:
        raise HTTPException(status_code=result.error.status_code, detail=result.error.to_detail())
    return serialize_doc(result.value)


class Services:
    def __init__(self, store, geocoder: Optional[ReverseGeocoder] = None):
        self.store = store
        self.users = UserDirectory(store)
        self.presence = PresenceService(store, geocoder)
        self.chats = ChatService(store, self.users)
        self.requests = RequestService(store, self.users)
        self.matching = MatchingEngine(store, self.chats, self.presence)


@lru_cache
def get_services() -> Services:
    return Services(get_store())


def _with_actions(doc: Dict[str, Any], viewer_id: Optional[str]) -> Dict[str, Any]:
    out = {**doc, "estimated_earnings": pricing.estimate_earnings(doc.get("price"))}
    if viewer_id:
        out["allowed_actions"] = allowed_actions(doc, viewer_id)
    return out


# ------------------ Root & Health ------------------

@app.get("/")
def read_root():
    return {"message": "PasaBUY API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️  Using in-memory store"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"

    return response


# ------------------ Users ------------------

@app.post("/api/auth/register")
def register_user(req: RegisterUserPayload, services: Services = Depends(get_services)):
    return unwrap(services.users.register_user(req))


@app.get("/api/users/{user_id}")
def get_user(user_id: str, services: Services = Depends(get_services)):
    return unwrap(services.users.get_user(user_id))


# ------------------ Requests ------------------

@app.post("/api/requests")
def create_request(req: CreateRequestPayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.create_request(req))


@app.get("/api/requests/nearby")
def nearby_requests(pasabuyer_id: Optional[str] = None,
                    lat: Optional[float] = Query(None, ge=-90, le=90),
                    lng: Optional[float] = Query(None, ge=-180, le=180),
                    radius_km: Optional[float] = Query(None, gt=0), services: Services = Depends(get_services)):
    origin = Coordinate(latitude=lat, longitude=lng) if lat is not None and lng is not None else None
    if pasabuyer_id:
        result = services.matching.nearby_for_pasabuyer(pasabuyer_id, origin, radius_km)
    else:
        result = services.matching.nearby_requests(origin, radius_km=radius_km)
    if not result.ok and isinstance(result.error, GeolocationUnavailable):
        # no location: show nothing rather than guess
        return {"count": 0, "items": [], "reason": result.error.to_detail()}
    items = unwrap(result)
    return {"count": len(items), "items": items}


@app.get("/api/requests")
def list_requests(user_id: str, status: Optional[str] = None, services: Services = Depends(get_services)):
    docs = unwrap(services.requests.list_requester_requests(user_id, status))
    return {"count": len(docs), "items": [_with_actions(d, user_id) for d in docs]}


@app.get("/api/requests/{request_id}")
def get_request(request_id: str, viewer_id: Optional[str] = None, services: Services = Depends(get_services)):
    doc = unwrap(services.requests.get_request(request_id))
    return _with_actions(doc, viewer_id)


@app.patch("/api/requests/{request_id}")
def edit_request(request_id: str, req: EditRequestPayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.edit_request(request_id, req))


@app.delete("/api/requests/{request_id}")
def delete_request(request_id: str, user_id: str, services: Services = Depends(get_services)):
    return {"id": unwrap(services.requests.delete_request(request_id, user_id)), "deleted": True}


@app.post("/api/requests/{request_id}/accept")
def accept_request(request_id: str, req: AcceptPayload, services: Services = Depends(get_services)):
    return unwrap(services.matching.accept_request(request_id, req.pasabuyer_id))


@app.post("/api/requests/{request_id}/cancel")
def cancel_request(request_id: str, req: CancelPayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.cancel_request(request_id, req.actor_id, req.reason))


@app.post("/api/requests/{request_id}/deliver")
def mark_delivered(request_id: str, req: ActorPayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.mark_delivered(request_id, req.actor_id))


@app.post("/api/requests/{request_id}/confirm")
def confirm_receipt(request_id: str, req: ActorPayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.confirm_receipt(request_id, req.actor_id))


@app.post("/api/requests/{request_id}/report")
def report_issue(request_id: str, req: ReportIssuePayload, services: Services = Depends(get_services)):
    return unwrap(services.requests.report_issue(request_id, req.actor_id, req.issue))


@app.get("/api/pasabuyers/{user_id}/orders")
def pasabuyer_orders(user_id: str, status: Optional[str] = None, services: Services = Depends(get_services)):
    docs = unwrap(services.requests.list_pasabuyer_orders(user_id, status))
    return {"count": len(docs), "items": [_with_actions(d, user_id) for d in docs]}


@app.get("/api/pricing/quote")
def pricing_quote(item_price: float = Query(0, ge=0)):
    return {"item_price": item_price, **pricing.fee_breakdown(item_price)}


# ------------------ Presence ------------------

@app.put("/api/presence/{user_id}")
def go_online(user_id: str, req: PresencePayload, services: Services = Depends(get_services)):
    coord = Coordinate(latitude=req.latitude, longitude=req.longitude)
    return unwrap(services.presence.go_online(user_id, coord))


@app.post("/api/presence/{user_id}/location")
def update_location(user_id: str, req: PresencePayload, services: Services = Depends(get_services)):
    coord = Coordinate(latitude=req.latitude, longitude=req.longitude)
    return unwrap(services.presence.update_location(user_id, coord))


@app.delete("/api/presence/{user_id}")
def go_offline(user_id: str, services: Services = Depends(get_services)):
    return unwrap(services.presence.go_offline(user_id))


@app.get("/api/presence/{user_id}")
def get_presence(user_id: str, services: Services = Depends(get_services)):
    return unwrap(services.presence.get_presence(user_id))


# ------------------ Chat ------------------

@app.post("/api/chats")
def ensure_chat(req: EnsureChatPayload, services: Services = Depends(get_services)):
    request = unwrap(services.requests.get_request(req.request_id))
    return unwrap(services.chats.ensure_thread(request, req.requester_id, req.pasabuyer_id))


@app.get("/api/chats")
def list_chats(user_id: str, services: Services = Depends(get_services)):
    items = unwrap(services.chats.list_threads(user_id))
    return {"count": len(items), "unread": sum(c["unread"] for c in items), "items": items}


@app.get("/api/chats/{chat_id}")
def get_chat(chat_id: str, services: Services = Depends(get_services)):
    return unwrap(services.chats.get_thread(chat_id))


@app.post("/api/chats/{chat_id}/messages")
def send_message(chat_id: str, req: SendMessagePayload, services: Services = Depends(get_services)):
    return unwrap(services.chats.append_message(chat_id, req.sender_id, req.text))


@app.post("/api/chats/{chat_id}/read")
def mark_read(chat_id: str, req: MarkReadPayload, services: Services = Depends(get_services)):
    return {"marked": unwrap(services.chats.mark_read(chat_id, req.reader_id))}


# ------------------ Change feed ------------------

@app.websocket("/ws/requests")
async def request_feed(websocket: WebSocket, services: Services = Depends(get_services)):
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=config.FEED_QUEUE_SIZE)

    def enqueue(event):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Request feed client is behind, dropping %s event for %s", event["op"], event["id"])

    def on_change(event):
        # runs on the writer's thread
        if not loop.is_closed():
            loop.call_soon_threadsafe(enqueue, event)

    unsubscribe = services.store.subscribe(REQUEST_COLLECTION, on_change)
    await websocket.accept()

    async def pump():
        while True:
            event = await queue.get()
            await websocket.send_json(serialize_doc(event))

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
    finally:
        unsubscribe()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.info("Request feed closed: %s", e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
