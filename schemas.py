"""
Database Schemas for PasaBUY

Each Pydantic model represents a MongoDB collection. The collection name is the lowercase of the class name.
Embedded models (Coordinate, RequesterInfo, RequestSummary) are stored inside their parent document.
"""
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, field_validator
from datetime import datetime


class Coordinate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class RequesterInfo(BaseModel):
    user_id: str = Field(..., description="Requester user id (owner, never changes)")
    display_name: Optional[str] = Field(None)
    email: Optional[str] = Field(None)
    photo_url: Optional[str] = Field(None)


class User(BaseModel):
    display_name: str = Field(..., description="Full name shown to other users")
    email: str = Field(..., description="Email address")
    photo_url: Optional[str] = Field(None, description="Profile image")


class Request(BaseModel):
    title: str = Field(..., description="Item name, e.g. 'Milk Tea (Wintermelon)'")
    quantity: int = Field(1, ge=1)
    price: float = Field(0, ge=0, description="Total amount including fees")
    item_price: float = Field(0, ge=0, description="Requester-entered price before fees")
    store_location: str = Field(..., description="Store name or address, e.g. 'SM City Calapan'")
    user_location: Optional[Coordinate] = Field(None, description="Store coordinate if known")
    delivery_location: Optional[str] = Field(None)
    pickup_date: Optional[str] = Field(None, description="Preferred pickup time")
    note: Optional[str] = Field(None)
    image_url: Optional[str] = Field(None)
    requester: RequesterInfo
    status: str = Field("active", description="active | accepted | delivered | completed | cancelled")
    accepted_by: Optional[str] = Field(None, description="Pasabuyer user id holding the claim")
    accepted_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    confirmed_by: Optional[str] = None
    reported_by: Optional[str] = None


class RequestSummary(BaseModel):
    title: str
    store: str
    delivery_location: Optional[str] = None
    quantity: int = 1
    budget: float = 0
    status: str


class Chat(BaseModel):
    participants: List[str] = Field(..., description="[pasabuyer_id, requester_id]")
    participant_names: Dict[str, str] = Field(default_factory=dict)
    participant_avatars: Dict[str, str] = Field(default_factory=dict)
    request_id: str = Field(...)
    requester_id: str = Field(...)
    pasabuyer_id: str = Field(...)
    request_details: RequestSummary
    last_message: Optional[str] = None
    last_updated: Optional[datetime] = None


class Message(BaseModel):
    chat_id: str = Field(...)
    sender_id: str = Field(...)
    text: str = Field(..., min_length=1)
    timestamp: datetime
    read: bool = False


class Presence(BaseModel):
    user_id: str = Field(...)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, description="Reverse-geocoded address")
    online: bool = Field(True)


# ------------------ API payloads ------------------

class CreateRequestPayload(BaseModel):
    user_id: str
    title: str = ""
    quantity: int = 1
    item_price: float = Field(0, ge=0)
    store_location: str = ""
    user_location: Optional[Coordinate] = None
    delivery_location: Optional[str] = None
    pickup_date: Optional[str] = None
    note: Optional[str] = None
    image_url: Optional[str] = None


class EditRequestPayload(BaseModel):
    user_id: str
    title: Optional[str] = None
    quantity: Optional[int] = None
    item_price: Optional[float] = Field(None, ge=0)
    store_location: Optional[str] = None
    user_location: Optional[Coordinate] = None
    delivery_location: Optional[str] = None
    pickup_date: Optional[str] = None
    note: Optional[str] = None
    image_url: Optional[str] = None


class ActorPayload(BaseModel):
    actor_id: str


class CancelPayload(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class ReportIssuePayload(BaseModel):
    actor_id: str
    issue: str

    @field_validator("issue")
    @classmethod
    def issue_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Describe the issue")
        return v.strip()


class AcceptPayload(BaseModel):
    pasabuyer_id: str


class EnsureChatPayload(BaseModel):
    request_id: str
    requester_id: str
    pasabuyer_id: str


class SendMessagePayload(BaseModel):
    sender_id: str
    text: str


class MarkReadPayload(BaseModel):
    reader_id: str


class PresencePayload(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class RegisterUserPayload(BaseModel):
    user_id: str
    display_name: str
    email: str
    photo_url: Optional[str] = None
