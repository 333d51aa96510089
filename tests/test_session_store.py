import json

from models import User
from session_store import PetSelection, SessionStore

from conftest import user_payload


def test_user_round_trips_through_durable_storage():
    storage = {}
    user = User.model_validate(user_payload(isPremium=True, validDays=30, favouriteTreat="sardines"))

    SessionStore(storage).set_user(user)
    reloaded = SessionStore(storage).user

    assert reloaded == user
    assert reloaded.model_dump(by_alias=True) == user.model_dump(by_alias=True)

    # feeding the reloaded record back in writes the same bytes
    first_write = storage["user"]
    SessionStore(storage).set_user(reloaded)
    assert storage["user"] == first_write


def test_set_user_and_token_none_remove_keys():
    storage = {}
    store = SessionStore(storage)
    store.set_user(User.model_validate(user_payload()))
    store.set_token("a.b.c")
    assert set(storage) == {"user", "token"}

    store.set_user(None)
    store.set_token("")
    assert storage == {}
    assert store.user is None
    assert store.token is None


def test_logout_clears_memory_and_storage():
    storage = {"unrelated": "kept"}
    store = SessionStore(storage)
    store.set_user(User.model_validate(user_payload()))
    store.set_token("a.b.c")
    assert store.is_authenticated

    store.logout()

    assert store.user is None and store.token is None
    assert "user" not in storage and "token" not in storage
    assert not store.is_authenticated
    assert storage == {"unrelated": "kept"}


def test_invalid_json_user_fails_open():
    store = SessionStore({"user": "{not json", "token": "a.b.c"})
    assert store.user is None
    assert not store.is_authenticated


def test_wrong_shapes_fail_open():
    assert SessionStore({"user": json.dumps([1, 2, 3])}).user is None
    assert SessionStore({"user": json.dumps({"userId": "not-a-number"})}).user is None
    assert SessionStore({"user": {"userId": 1}}).user is None
    assert SessionStore({"token": 12345}).token is None


def test_purge_drops_every_durable_key():
    storage = {"user": json.dumps(user_payload()), "token": "a.b.c", "other": "x"}
    store = SessionStore(storage)
    store.purge()
    assert storage == {}
    assert store.user is None and store.token is None


def test_pet_selection_is_keyed_per_user():
    storage = {}
    pets = PetSelection(storage)
    pets.set(42, 7)
    pets.set(43, "9")

    assert storage == {"selectedPetId_42": "7", "selectedPetId_43": "9"}
    assert pets.get(42) == "7"
    assert pets.get(44) is None
    assert pets.get(None) is None

    pets.clear()
    assert pets.get(42) is None
