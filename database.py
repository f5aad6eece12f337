"""
Database Helper Functions

MongoDB connection plus the repositories the order core is built on.
Repositories take a collection handle so tests can hand them an in-memory one.
"""

from pymongo import MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
import os
from dotenv import load_dotenv
from typing import Union, Optional, Dict, Any, List
from pydantic import BaseModel

from schemas import Appsettings, CookStats, DriverStats, FeePolicy, Order

# Load environment variables from .env file
load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def get_database() -> Database:
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # MongoDB hands datetimes back naive unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude={"id"})
    return dict(data)


def _object_id(_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(_id)
    except (InvalidId, TypeError):
        return None


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))  # convert ObjectId to string
    return d


class OrderRepository:
    """Orders collection access.

    Every mutation that depends on the current status goes through
    ``compare_and_set`` so that two writers racing on the same order
    cannot both succeed.
    """

    def __init__(self, collection: Collection):
        self.collection = collection

    def insert(self, order: Order) -> Order:
        payload = _to_dict(order)
        now = utcnow()
        payload["created_at"] = now
        payload["updated_at"] = now
        result = self.collection.insert_one(payload)
        return self._to_order(self.collection.find_one({"_id": result.inserted_id}))

    def get(self, order_id: str) -> Optional[Order]:
        oid = _object_id(order_id)
        if oid is None:
            return None
        return self._to_order(self.collection.find_one({"_id": oid}))

    def compare_and_set(self, order_id: str, expected: Dict[str, Any], updates: Dict[str, Any],
                        increments: Optional[Dict[str, int]] = None) -> Optional[Order]:
        """Apply ``updates`` only if every field in ``expected`` still matches.

        Returns the updated order, or None when the order is missing or
        no longer matches.
        """
        oid = _object_id(order_id)
        if oid is None:
            return None
        update = {"$set": dict(updates)}
        update["$set"]["updated_at"] = utcnow()
        if increments:
            update["$inc"] = dict(increments)
        doc = self.collection.find_one_and_update(
            {"_id": oid, **expected}, update, return_document=ReturnDocument.AFTER
        )
        return self._to_order(doc)

    def find(self, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
             sort: Optional[list] = None) -> List[Order]:
        cursor = self.collection.find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(int(limit))
        return [self._to_order(doc) for doc in cursor]

    def by_cook(self, cooker_id: str, status: Optional[str] = None) -> List[Order]:
        filt = {"cooker_id": cooker_id}
        if status:
            filt["status"] = status
        return self.find(filt, sort=[("created_at", -1)])

    def by_customer(self, customer_id: str) -> List[Order]:
        return self.find({"customer_id": customer_id}, sort=[("created_at", -1)])

    def by_driver(self, driver_id: str, active_only: bool = False) -> List[Order]:
        filt = {"driver_id": driver_id}
        if active_only:
            filt["status"] = "delivering"
        return self.find(filt, sort=[("created_at", -1)])

    def driver_stats(self, driver_id: str, since: Optional[datetime] = None) -> DriverStats:
        """Delivery counts and earnings (delivery fees) for a driver; "today" starts at ``since``."""
        since = since or utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        stats = DriverStats(driver_id=driver_id)
        assigned = self.by_driver(driver_id)
        for order in assigned:
            if order.status == "delivering":
                stats.active_deliveries += 1
            if order.status != "delivered":
                continue
            stats.total_deliveries += 1
            stats.total_earnings += order.delivery_fee
            delivered_at = as_utc(order.actual_delivery_time)
            if delivered_at and delivered_at >= since:
                stats.today_deliveries += 1
                stats.today_earnings += order.delivery_fee
        if assigned:
            stats.completion_rate = round(stats.total_deliveries / len(assigned) * 100, 1)
        return stats

    def cook_stats(self, cooker_id: str) -> CookStats:
        stats = CookStats(cooker_id=cooker_id)
        for order in self.by_cook(cooker_id):
            stats.total_orders += 1
            if order.status == "delivered":
                stats.delivered_orders += 1
                stats.total_earnings += order.total
            elif order.status == "pending_approval":
                stats.awaiting_approval += 1
            elif order.status not in ("cancelled", "rejected"):
                stats.open_orders += 1
        return stats

    def available_for_pickup(self) -> List[Order]:
        return self.find({"status": "ready", "available_for_pickup": True}, sort=[("created_at", 1)])

    def by_delivery_code(self, code: str) -> Optional[Order]:
        found = self.find(
            {"delivery_code": code, "status": "delivering", "is_delivered": False},
            limit=1,
            sort=[("pickup_time", 1)],
        )
        return found[0] if found else None

    @staticmethod
    def _to_order(doc: Optional[dict]) -> Optional[Order]:
        d = serialize_doc(doc)
        return Order(**d) if d else None


class SettingsRepository:
    """Runtime fee configuration kept in a single ``appsettings`` document."""

    settings_id = "main"

    def __init__(self, collection: Collection):
        self.collection = collection

    def get(self) -> Appsettings:
        doc = self.collection.find_one({"_id": self.settings_id})
        if not doc:
            return Appsettings()
        doc.pop("_id", None)
        return Appsettings(**doc)

    def fee_policy(self) -> FeePolicy:
        return self.get().fee_policy

    def update_fee_policy(self, policy: FeePolicy, updated_by: str) -> Appsettings:
        settings = Appsettings(fee_policy=policy, updated_by=updated_by)
        payload = _to_dict(settings)
        payload["updated_at"] = utcnow()
        self.collection.update_one({"_id": self.settings_id}, {"$set": payload}, upsert=True)
        return settings


class UserRepository:
    def __init__(self, collection: Collection):
        self.collection = collection

    def create(self, data: Union[BaseModel, dict]) -> str:
        payload = _to_dict(data)
        now = utcnow()
        payload["created_at"] = now
        payload["updated_at"] = now
        result = self.collection.insert_one(payload)
        return str(result.inserted_id)

    def get(self, user_id: str) -> Optional[dict]:
        oid = _object_id(user_id)
        if oid is None:
            return None
        return serialize_doc(self.collection.find_one({"_id": oid}))

    def by_email(self, email: str) -> Optional[dict]:
        return serialize_doc(self.collection.find_one({"email": email}))
