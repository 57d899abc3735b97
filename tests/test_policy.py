import pytest

from peerdrop.share.errors import ProtocolError, QuotaExhausted, RoomExpired, RoomFull
from peerdrop.share.policy import AccessPolicy, check_password, evaluate_join, is_expired, quota_reached
from peerdrop.share.room import Connection, Room


def _room(policy, created_at=0.0):
    return Room(room_id="r", host=Connection(peer="host"), policy=policy, created_at=created_at)


def test_defaults_from_empty_options():
    policy = AccessPolicy.from_options(None)
    assert policy.password is None
    assert policy.expiry_hours == 24
    assert policy.max_downloads == 0
    assert not policy.requires_password


def test_empty_password_means_none():
    assert AccessPolicy.from_options({"password": ""}).password is None


@pytest.mark.parametrize("options", [
    {"maxDownloads": -1},
    {"maxDownloads": 1.5},
    {"maxDownloads": True},
    {"expiryHours": 0},
    {"expiryHours": "24"},
    {"password": 1234},
])
def test_bad_options_rejected(options):
    with pytest.raises(ProtocolError):
        AccessPolicy.from_options(options)


def test_options_round_trip():
    options = {"maxDownloads": 3, "expiryHours": 2, "password": "pw"}
    assert AccessPolicy.from_options(options).to_options() == options


def test_expiry_is_inclusive_at_the_deadline():
    room = _room(AccessPolicy(expiry_hours=1), created_at=100.0)
    assert not is_expired(room, 100.0 + 3599)
    assert is_expired(room, 100.0 + 3600)


def test_quota_zero_is_unlimited():
    room = _room(AccessPolicy(max_downloads=0))
    room.download_count = 1000
    assert not quota_reached(room)


def test_check_password():
    policy = AccessPolicy(password="secret")
    assert check_password(policy, "secret")
    assert not check_password(policy, "Secret")
    assert not check_password(policy, None)
    assert check_password(AccessPolicy(), "anything")


def test_evaluate_join_order():
    room = _room(AccessPolicy(expiry_hours=1, max_downloads=1))
    room.download_count = 1
    room.receiver = Connection(peer="receiver")

    # expiry wins over quota and full
    with pytest.raises(RoomExpired):
        evaluate_join(room, 7200)
    with pytest.raises(QuotaExhausted):
        evaluate_join(room, 10)
    room.download_count = 0
    with pytest.raises(RoomFull):
        evaluate_join(room, 10)
    room.receiver = None
    assert evaluate_join(room, 10) is False


def test_evaluate_join_reports_password_requirement():
    assert evaluate_join(_room(AccessPolicy(password="pw")), 0) is True
