from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

TRADE = "trade"
CUSTODY = "custody"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(v: Any) -> datetime | None:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v
    return datetime.fromisoformat(str(v))


@dataclass
class Bot:
    id: str
    game_id: str
    user_id: str
    username: str
    status: str = "online"
    current_trades: int = 0
    max_trades: int = 5
    # Platform session cookie; never serialised.
    cookie: str | None = field(default=None, repr=False)

    def is_available(self) -> bool:
        return self.status == "online" and self.current_trades < self.max_trades

    def info(self) -> dict[str, Any]:
        return {"username": self.username, "userId": self.user_id}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "gameId": self.game_id,
            "robloxUserId": self.user_id,
            "robloxUsername": self.username,
            "status": self.status,
            "currentTrades": int(self.current_trades),
            "maxTrades": int(self.max_trades),
        }


@dataclass
class TradeRequest:
    id: str
    buyer_id: str
    buyer_username: str
    pet_id: str
    game_id: str
    bot_id: str
    bot_username: str
    bot_user_id: str
    access_code: str
    seller_id: str | None = None
    pet_name: str | None = None
    price: float | None = None
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    game_server_id: str | None = None
    failure_reason: str | None = None

    kind = TRADE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": TRADE,
            "buyerId": self.buyer_id,
            "buyerRobloxUsername": self.buyer_username,
            "sellerId": self.seller_id,
            "petId": self.pet_id,
            "petName": self.pet_name,
            "price": self.price,
            "gameId": self.game_id,
            "botId": self.bot_id,
            "botUsername": self.bot_username,
            "botInfo": {"username": self.bot_username, "userId": self.bot_user_id},
            "accessCode": self.access_code,
            "status": self.status,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
            "gameServerId": self.game_server_id,
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TradeRequest:
        bot_info = d.get("botInfo") or {}
        return cls(
            id=str(d["id"]),
            buyer_id=str(d["buyerId"]),
            buyer_username=str(d["buyerRobloxUsername"]),
            pet_id=str(d["petId"]),
            game_id=str(d["gameId"]),
            bot_id=str(d["botId"]),
            bot_username=str(d.get("botUsername") or bot_info.get("username") or ""),
            bot_user_id=str(bot_info.get("userId") or ""),
            access_code=str(d.get("accessCode") or ""),
            seller_id=d.get("sellerId"),
            pet_name=d.get("petName"),
            price=d.get("price"),
            status=str(d.get("status") or "pending"),
            created_at=_parse_ts(d.get("createdAt")) or utcnow(),
            updated_at=_parse_ts(d.get("updatedAt")) or utcnow(),
            completed_at=_parse_ts(d.get("completedAt")),
            game_server_id=d.get("gameServerId"),
            failure_reason=d.get("failureReason"),
        )


@dataclass
class CustodyRequest:
    id: str
    seller_id: str
    seller_username: str
    pet_data: dict[str, Any]
    game_id: str
    bot_id: str
    bot_username: str
    bot_user_id: str
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    failure_reason: str | None = None

    kind = CUSTODY

    def to_dict(self) -> dict[str, Any]:
        return {
            "custodyId": self.id,
            "kind": CUSTODY,
            "sellerId": self.seller_id,
            "sellerRobloxUsername": self.seller_username,
            "petData": self.pet_data,
            "gameId": self.game_id,
            "botId": self.bot_id,
            "botInfo": {"username": self.bot_username, "userId": self.bot_user_id},
            "status": self.status,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CustodyRequest:
        bot_info = d.get("botInfo") or {}
        return cls(
            id=str(d["custodyId"]),
            seller_id=str(d["sellerId"]),
            seller_username=str(d["sellerRobloxUsername"]),
            pet_data=dict(d.get("petData") or {}),
            game_id=str(d["gameId"]),
            bot_id=str(d["botId"]),
            bot_username=str(bot_info.get("username") or ""),
            bot_user_id=str(bot_info.get("userId") or ""),
            status=str(d.get("status") or "pending"),
            created_at=_parse_ts(d.get("createdAt")) or utcnow(),
            updated_at=_parse_ts(d.get("updatedAt")) or utcnow(),
            completed_at=_parse_ts(d.get("completedAt")),
            failure_reason=d.get("failureReason"),
        )
