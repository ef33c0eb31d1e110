from datetime import timedelta

import pytest

from errors import AlreadyExistsError, InvalidCredentialsError, NotSignedInError
from marketplace import Marketplace
from session import PROFILE_CHANGED, SIGNED_IN, SIGNED_OUT
from store import USERS


def test_sign_up_creates_default_profile(sessions, store):
    session = sessions.sign_up("a@x.com", "pw123456", "Ama Mensah")

    assert sessions.current_session() == session
    profile = sessions.profile()
    assert profile["role"] == "Farmer"
    assert profile["fullName"] == "Ama Mensah"
    assert all(value == 0 for value in profile["stats"].values())
    assert profile["dashboard"]["recentActivity"] == []
    assert "passwordHash" not in profile
    stored = store.get(USERS, session.uid)
    assert stored["passwordHash"] != "pw123456"


def test_listing_scenario(sessions, store):
    session = sessions.sign_up("a@x.com", "pw123456", "Ama")
    market = Marketplace(store, sessions.tracker)

    product = market.add_product(session.uid, {"name": "Maize", "price": 120, "stock": 5})

    profile = sessions.profile()
    assert profile["stats"]["totalListings"] == 1
    newest = profile["dashboard"]["recentActivity"][0]
    assert newest["type"] == "product_added"
    assert newest["displayText"] == "Added new listing: Maize at ₵120"

    market.delete_product(session.uid, product["id"])
    assert sessions.profile()["stats"]["totalListings"] == 0

    with pytest.raises(AlreadyExistsError):
        sessions.sign_up("a@x.com", "another-pw", "Impostor")


def test_sign_in_failures_are_indistinguishable(sessions):
    sessions.sign_up("a@x.com", "pw123456")
    sessions.sign_out()
    with pytest.raises(InvalidCredentialsError) as unknown:
        sessions.sign_in("b@x.com", "pw123456")
    with pytest.raises(InvalidCredentialsError) as wrong:
        sessions.sign_in("a@x.com", "nope")
    assert str(unknown.value) == str(wrong.value)
    assert sessions.current_session() is None


def test_sign_in_refreshes_last_active(sessions, store):
    uid = sessions.sign_up("a@x.com", "pw123456").uid
    store.db[USERS].update_one({"uid": uid}, {"$set": {"lastActive": 1}})
    sessions.sign_out()
    session = sessions.sign_in("A@X.com ", "pw123456")
    assert session.uid == uid
    assert store.get(USERS, uid)["lastActive"] > 1


def test_sign_out_and_signed_out_errors(sessions):
    sessions.sign_up("a@x.com", "pw123456")
    sessions.sign_out()
    assert sessions.current_session() is None
    with pytest.raises(NotSignedInError):
        sessions.profile()
    with pytest.raises(NotSignedInError):
        sessions.track("weather_check", {"location": "Accra"})


def test_restore_from_token(sessions, store):
    token = sessions.sign_up("a@x.com", "pw123456").access_token
    sessions.sign_out()

    restored = sessions.restore(token)

    assert restored.email == "a@x.com"
    assert sessions.restore("not-a-token") is None
    expired = sessions.create_access_token(restored.uid, restored.email, timedelta(minutes=-5))
    assert sessions.resolve_token(expired) is None


def test_update_profile_records_activity(sessions):
    sessions.sign_up("a@x.com", "pw123456")
    profile = sessions.update_profile({"location": "Tamale", "farmSize": "4 acres", "email": "hijack@x.com"})
    assert profile["location"] == "Tamale"
    assert profile["email"] == "a@x.com"
    assert profile["dashboard"]["recentActivity"][0]["type"] == "profile_updated"


def test_update_profile_cannot_change_role(sessions, store):
    session = sessions.sign_up("a@x.com", "pw123456")
    profile = sessions.update_profile({"role": "Admin", "bio": "grower"})
    assert profile["role"] == "Farmer"
    assert profile["bio"] == "grower"
    assert store.get(USERS, session.uid)["role"] == "Farmer"


def test_track_for_current_user(sessions):
    sessions.sign_up("a@x.com", "pw123456")
    sessions.track("buyer_contacted", {"buyerName": "Kofi", "location": "Kumasi"})
    stats = sessions.profile()["stats"]
    assert stats["totalBuyers"] == 1
    assert stats["totalInteractions"] == 1
    dashboard = sessions.dashboard()
    assert dashboard["recentActivity"][0]["label"] == "Buyer Contacted"
    assert dashboard["recentActivity"][0]["timeAgo"] == "Just now"


def test_subscribers_notified_in_order(sessions):
    calls = []
    sessions.subscribe(lambda event, data: calls.append(("first", event)))
    unsubscribe = sessions.subscribe(lambda event, data: calls.append(("second", event)))

    sessions.sign_up("a@x.com", "pw123456")
    sessions.track("weather_check", {"location": "Accra"})
    unsubscribe()
    sessions.sign_out()

    assert calls == [
        ("first", SIGNED_IN), ("second", SIGNED_IN),
        ("first", PROFILE_CHANGED), ("second", PROFILE_CHANGED),
        ("first", SIGNED_OUT),
    ]


def test_failing_subscriber_does_not_block_others(sessions):
    seen = []

    def broken(event, data):
        raise RuntimeError("render failed")

    sessions.subscribe(broken)
    sessions.subscribe(lambda event, data: seen.append(event))
    sessions.sign_up("a@x.com", "pw123456")
    assert seen == [SIGNED_IN]


def test_other_users_changes_are_not_published(sessions, store, make_user):
    make_user("someone_else")
    sessions.sign_up("a@x.com", "pw123456")
    events = []
    sessions.subscribe(lambda event, data: events.append(event))
    sessions.tracker.track("someone_else", "weather_check", {"location": "Ho"})
    assert events == []
