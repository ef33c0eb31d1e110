import uuid

import mongomock
import pytest

from activity import ActivityLog
from marketplace import Marketplace
from session import SessionManager
from stats import StatsAggregator
from store import USERS, RecordStore
from tracker import ActivityTracker


@pytest.fixture
def store():
    db = mongomock.MongoClient()[f"farmlink_test_{uuid.uuid4().hex[:8]}"]
    return RecordStore(db)


@pytest.fixture
def stats(store):
    return StatsAggregator(store)


@pytest.fixture
def activity_log(store):
    return ActivityLog(store)


@pytest.fixture
def tracker(stats, activity_log):
    return ActivityTracker(stats, activity_log)


@pytest.fixture
def marketplace(store, tracker):
    return Marketplace(store, tracker)


@pytest.fixture
def sessions(store):
    return SessionManager(store, secret_key="test-secret")


@pytest.fixture
def make_user(store):
    """Insert a bare profile without going through password hashing."""
    def _make(uid="user_1", email=None, **fields):
        record = {
            "uid": uid,
            "email": email or f"{uid}@farm.test",
            "passwordHash": "x",
            "role": "Farmer",
            "stats": {"totalListings": 0, "pendingOrders": 0, "totalRevenue": 0},
            "achievements": [],
            "dashboard": {"recentActivity": [], "inventory": {"totalProducts": 0}},
        }
        record.update(fields)
        return store.create(USERS, record)
    return _make
