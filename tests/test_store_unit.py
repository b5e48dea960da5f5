import threading
from uuid import uuid4

from petbot.domain.models import CustodyRequest, TradeRequest
from petbot.orchestrator.store import MemoryRequestStore, SqliteRequestStore, build_store
from petbot.utils import database


def _trade(status: str = "pending") -> TradeRequest:
    return TradeRequest(
        id=f"trade_{uuid4().hex[:9]}",
        buyer_id="u1",
        buyer_username="buyer1",
        pet_id="p1",
        game_id="8737899170",
        bot_id="bot_ps99_01",
        bot_username="StarPetsBot01",
        bot_user_id="1234567890",
        access_code="TRADE_ABC",
        pet_name="Huge Cat",
        price=12.5,
        status=status,
    )


def _custody(status: str = "pending") -> CustodyRequest:
    return CustodyRequest(
        id=f"custody_{uuid4().hex[:9]}",
        seller_id="s1",
        seller_username="seller1",
        pet_data={"name": "Huge Cat", "neon": True},
        game_id="8737899170",
        bot_id="bot_ps99_02",
        bot_username="StarPetsBot02",
        bot_user_id="1234567891",
        status=status,
    )


def test_memory_store_filters_by_kind_and_terminal():
    store = MemoryRequestStore()
    open_trade, done_trade, open_custody = _trade(), _trade("completed"), _custody("pet_received")
    for r in (open_trade, done_trade, open_custody):
        store.put(r)

    assert store.get(open_trade.id) is open_trade
    assert {r.id for r in store.list(kind="trade")} == {open_trade.id, done_trade.id}
    assert {r.id for r in store.non_terminal()} == {open_trade.id, open_custody.id}


def test_sqlite_store_survives_a_new_instance():
    trade = _trade("friend_accepted")
    custody = _custody("custody_complete")
    first = SqliteRequestStore()
    first.put(trade)
    first.put(custody)
    first.flush()

    second = SqliteRequestStore()
    loaded = second.get(trade.id)
    assert isinstance(loaded, TradeRequest)
    assert loaded.status == "friend_accepted"
    assert loaded.price == 12.5
    assert loaded.created_at == trade.created_at

    loaded_custody = second.get(custody.id)
    assert isinstance(loaded_custody, CustodyRequest)
    assert loaded_custody.pet_data == {"name": "Huge Cat", "neon": True}

    open_ids = {r.id for r in second.non_terminal()}
    assert trade.id in open_ids
    assert custody.id not in open_ids
    assert second.get("trade_missing") is None


def test_sqlite_store_updates_in_place():
    store = SqliteRequestStore()
    trade = _trade()
    store.put(trade)
    trade.status = "failed"
    trade.failure_reason = "friend request timed out"
    store.put(trade)
    store.flush()

    doc = database.get_request_doc(trade.id)
    assert doc["status"] == "failed"
    assert doc["failureReason"] == "friend request timed out"


def test_build_store_backends():
    assert isinstance(build_store({"store": {"backend": "memory"}}), MemoryRequestStore)
    assert isinstance(build_store({"store": {"backend": "sqlite"}}), SqliteRequestStore)
    assert isinstance(build_store({}), MemoryRequestStore)


def test_sqlite_writes_run_on_writer_thread_in_order(monkeypatch):
    seen: list[tuple[str, str]] = []
    real_save = database.save_request

    def recording_save(request_id, kind, status, doc):
        seen.append((threading.current_thread().name, status))
        real_save(request_id, kind, status, doc)

    monkeypatch.setattr(database, "save_request", recording_save)
    store = SqliteRequestStore()
    trade = _trade()
    for status in ("pending", "friend_request_sent", "friend_accepted"):
        trade.status = status
        store.put(trade)
    store.flush()

    assert [s for _, s in seen] == ["pending", "friend_request_sent", "friend_accepted"]
    assert all(name.startswith("request_store") for name, _ in seen)
    assert database.get_request_doc(trade.id)["status"] == "friend_accepted"
