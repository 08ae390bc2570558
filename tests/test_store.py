from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from store import ChangeFeed, DocumentPathError, DocumentStore, Filter, deep_merge


def _store(session: Session, feed: ChangeFeed | None = None) -> DocumentStore:
    return DocumentStore(session, feed)


def test_documents_round_trip_and_snapshots_are_copies() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = _store(session)
        store.set_document("users/u1", {"settings": {"initialBalance": 1000}})

        data = store.get_document("users/u1")
        data["settings"]["initialBalance"] = 0

        assert store.get_document("users/u1") == {"settings": {"initialBalance": 1000}}
        assert store.get_document("users/nobody") is None


def test_merge_replaces_lists_and_merges_maps() -> None:
    merged = deep_merge(
        {"a": {"x": 1, "y": [1, 2]}, "b": 1},
        {"a": {"y": [3]}, "c": 2},
    )
    assert merged == {"a": {"x": 1, "y": [3]}, "b": 1, "c": 2}

    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        store = _store(session)
        store.set_document("users/u1", {"settings": {"a": 1, "tags": ["x"]}})
        store.set_document("users/u1", {"settings": {"tags": ["y"]}}, merge=True)
        assert store.get_document("users/u1") == {"settings": {"a": 1, "tags": ["y"]}}

        store.set_document("users/u1", {"other": True})
        assert store.get_document("users/u1") == {"other": True}


def test_update_document_replaces_dotted_leaf_and_creates_missing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = _store(session)
        store.update_document("users/u1", {"annualData.2024.budget": {"a": 1, "b": 2}})
        store.update_document("users/u1", {"annualData.2024.budget": {"a": 5}})
        store.update_document("users/u1", {"annualData.2025.budget": {"c": 3}})

        assert store.get_document("users/u1") == {
            "annualData": {"2024": {"budget": {"a": 5}}, "2025": {"budget": {"c": 3}}}
        }


def test_delete_reports_whether_anything_was_removed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = _store(session)
        store.set_document("users/u1/transactions/t1", {"amount": 1})

        assert store.delete_document("users/u1/transactions/t1") is True
        assert store.delete_document("users/u1/transactions/t1") is False


def test_query_collection_filters_and_orders_in_sql() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = _store(session)
        rows = {
            "t1": {"date": "2024-03-01", "amount": 100},
            "t2": {"date": "2024-03-15", "amount": 2500},
            "t3": {"date": "2024-04-02", "amount": 700},
        }
        for key, data in rows.items():
            store.set_document(f"users/u1/transactions/{key}", data)
        store.set_document("users/u2/transactions/t9", {"date": "2024-03-05", "amount": 1})

        march = store.query_collection(
            "users/u1/transactions",
            [Filter("date", ">=", date(2024, 3, 1)), ("date", "<=", "2024-03-31")],
            order_by="date",
            descending=True,
        )
        assert [s.id for s in march] == ["t2", "t1"]

        large = store.query_collection(
            "users/u1/transactions", [("amount", ">", 500)], order_by="amount"
        )
        assert [s.id for s in large] == ["t3", "t2"]

        limited = store.query_collection("users/u1/transactions", limit=1)
        assert len(limited) == 1

        with pytest.raises(ValueError):
            store.query_collection("users/u1/transactions", [("amount", "~", 1)])


def test_invalid_paths_are_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = _store(session)
        with pytest.raises(DocumentPathError):
            store.get_document("users")
        with pytest.raises(DocumentPathError):
            store.query_collection("users/u1")
        with pytest.raises(DocumentPathError):
            store.set_document("users//x", {})


def test_subscribers_receive_current_and_later_snapshots() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    feed = ChangeFeed()

    with Session(engine) as session:
        store = _store(session, feed)
        store.set_document("users/u1", {"v": 1})

        seen: list = []
        unsubscribe = store.subscribe("users/u1", lambda snap: seen.append(snap.to_dict()))
        store.update_document("users/u1", {"v": 2})
        unsubscribe()
        store.update_document("users/u1", {"v": 3})

        assert seen == [{"v": 1}, {"v": 2}]
        assert feed.listener_count("users/u1") == 0


def test_collection_subscribers_see_deletes_and_survive_failing_listeners() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    feed = ChangeFeed()

    with Session(engine) as session:
        store = _store(session, feed)
        store.set_document("users/u1/transactions/t1", {"amount": 1})

        def broken(_snapshot) -> None:
            raise RuntimeError("boom")

        events: list = []
        feed.add("users/u1/transactions", broken)
        store.subscribe(
            "users/u1/transactions", lambda snap: events.append((snap.id, snap.exists))
        )
        store.set_document("users/u1/transactions/t2", {"amount": 2})
        store.delete_document("users/u1/transactions/t1")

        assert events == [("t1", True), ("t2", True), ("t1", False)]


def test_subscribe_requires_a_feed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(RuntimeError):
            _store(session).subscribe("users/u1", lambda snap: None)
