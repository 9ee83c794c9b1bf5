from datetime import datetime, timedelta

from roombook.models import Booking, RoleEnum

ADMIN_PAYLOAD = {
    "name": "Admin",
    "username": "admin",
    "email": "admin@example.com",
    "password": "Passw0rd!",
    "role": RoleEnum.ADMIN.value,
}

USER_PAYLOAD = {
    "name": "User",
    "username": "user1",
    "email": "user1@example.com",
    "password": "Passw0rd!",
}

ROOM_PAYLOAD = {
    "room_code": "R-1",
    "display_name": "Focus Room",
    "capacity": 6,
    "location": "Floor 2",
    "facilities": ["tv"],
}


def auth_header(users_client, username: str, password: str) -> dict[str, str]:
    response = users_client.post(
        "/users/login",
        data={"username": username, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def tomorrow_at(hour: int, minute: int = 0) -> datetime:
    return (datetime.utcnow() + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def setup_room_and_user(users_client, rooms_client):
    users_client.post("/users/register", json=ADMIN_PAYLOAD)
    admin_headers = auth_header(users_client, "admin", "Passw0rd!")
    room_id = rooms_client.post("/rooms", json=ROOM_PAYLOAD, headers=admin_headers).json()["id"]
    users_client.post("/users/register", json=USER_PAYLOAD)
    user_headers = auth_header(users_client, "user1", "Passw0rd!")
    return room_id, admin_headers, user_headers


def book(bookings_client, headers, room_id: int, start: datetime, end: datetime):
    return bookings_client.post(
        "/bookings",
        json={"room_id": room_id, "start_time": start.isoformat(), "end_time": end.isoformat(), "title": "Sync"},
        headers=headers,
    )


def test_booking_flow(users_client, rooms_client, bookings_client, notifier):
    room_id, admin_headers, user_headers = setup_room_and_user(users_client, rooms_client)

    start_time = tomorrow_at(9)
    end_time = start_time + timedelta(hours=2)
    booking_resp = book(bookings_client, user_headers, room_id, start_time, end_time)
    assert booking_resp.status_code == 201
    booking = booking_resp.json()
    assert booking["status"] == "confirmed"
    assert len(booking["confirm_code"]) == 6
    assert notifier.sent == [booking["id"]]

    availability = bookings_client.get(
        "/bookings/availability",
        params={
            "room_id": room_id,
            "start_time": (start_time + timedelta(hours=3)).isoformat(),
            "end_time": (end_time + timedelta(hours=4)).isoformat(),
        },
    )
    assert availability.status_code == 200
    assert availability.json()["available"] is True

    busy = bookings_client.get(
        "/bookings/availability",
        params={"room_id": room_id, "start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
    )
    assert busy.json()["available"] is False

    mine = bookings_client.get("/bookings/me", headers=user_headers).json()
    assert [item["id"] for item in mine] == [booking["id"]]

    room_analytics = bookings_client.get("/analytics/rooms/popularity", headers=admin_headers)
    assert room_analytics.status_code == 200
    assert room_analytics.json()[0] == {"room_id": room_id, "room_code": "R-1", "booking_count": 1}

    frequent = bookings_client.get(
        "/analytics/users/frequent",
        params={"on": start_time.date().isoformat()},
        headers=admin_headers,
    )
    assert frequent.status_code == 200
    assert frequent.json()[0]["username"] == "user1"
    assert frequent.json()[0]["booking_count"] == 1

    assert bookings_client.get("/analytics/rooms/popularity", headers=user_headers).status_code == 403


def test_overlapping_booking_rejected_and_touching_allowed(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)

    assert book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).status_code == 201

    overlap = book(bookings_client, user_headers, room_id, tomorrow_at(10, 30), tomorrow_at(11, 30))
    assert overlap.status_code == 409
    assert overlap.json()["detail"] == "The booking time conflicts with existing bookings"

    assert book(bookings_client, user_headers, room_id, tomorrow_at(11), tomorrow_at(12)).status_code == 201
    assert book(bookings_client, user_headers, room_id, tomorrow_at(9), tomorrow_at(10)).status_code == 201


def test_invalid_intervals_rejected(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)

    same = book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(10))
    assert same.status_code == 400
    assert same.json()["detail"] == "End time must be after start time"

    past_start = datetime.utcnow() - timedelta(hours=2)
    past = book(bookings_client, user_headers, room_id, past_start, past_start + timedelta(hours=1))
    assert past.status_code == 400
    assert past.json()["detail"] == "Bookings must start in the future"

    too_long = book(bookings_client, user_headers, room_id, tomorrow_at(8), tomorrow_at(17))
    assert too_long.status_code == 400


def test_unknown_or_inactive_room(users_client, rooms_client, bookings_client):
    room_id, admin_headers, user_headers = setup_room_and_user(users_client, rooms_client)

    assert book(bookings_client, user_headers, 999, tomorrow_at(10), tomorrow_at(11)).status_code == 404

    rooms_client.put(f"/rooms/{room_id}", json={"is_active": False}, headers=admin_headers)
    assert book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).status_code == 404


def test_suspended_user_cannot_book(users_client, rooms_client, bookings_client):
    room_id, admin_headers, user_headers = setup_room_and_user(users_client, rooms_client)
    user_id = users_client.get("/users/me", headers=user_headers).json()["id"]
    users_client.put(f"/users/{user_id}/booking-permission", json={"suspended": True}, headers=admin_headers)

    resp = book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Booking permission is suspended"


def test_daily_threshold_per_room(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)

    for hour in (9, 11, 13):
        assert book(bookings_client, user_headers, room_id, tomorrow_at(hour), tomorrow_at(hour + 1)).status_code == 201

    fourth = book(bookings_client, user_headers, room_id, tomorrow_at(15), tomorrow_at(16))
    assert fourth.status_code == 403
    assert fourth.json()["detail"] == "At most 3 bookings per room per day are allowed"


def test_cancel_booking(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)
    booking_id = book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).json()["id"]

    cancel_resp = bookings_client.delete(f"/bookings/{booking_id}", headers=user_headers)
    assert cancel_resp.status_code == 200
    assert cancel_resp.json()["status"] == "cancelled"

    again = bookings_client.delete(f"/bookings/{booking_id}", headers=user_headers)
    assert again.status_code == 409

    # the freed slot can be booked again
    assert book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).status_code == 201


def test_cancel_started_booking_fails(users_client, rooms_client, bookings_client, db_session):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)
    user_id = users_client.get("/users/me", headers=user_headers).json()["id"]
    started = Booking(
        user_id=user_id,
        room_id=room_id,
        start_time=datetime.utcnow() - timedelta(minutes=30),
        end_time=datetime.utcnow() + timedelta(minutes=30),
        confirm_code="STRTD1",
    )
    db_session.add(started)
    db_session.commit()

    resp = bookings_client.delete(f"/bookings/{started.id}", headers=user_headers)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Cannot cancel an already started booking"


def test_other_users_booking_is_hidden(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)
    booking_id = book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).json()["id"]

    users_client.post(
        "/users/register",
        json={"name": "Other", "username": "other", "email": "other@example.com", "password": "Passw0rd!"},
    )
    other_headers = auth_header(users_client, "other", "Passw0rd!")
    assert bookings_client.get(f"/bookings/{booking_id}", headers=other_headers).status_code == 404
    assert bookings_client.delete(f"/bookings/{booking_id}", headers=other_headers).status_code == 404


def test_reschedule_booking(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)
    first = book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11)).json()
    book(bookings_client, user_headers, room_id, tomorrow_at(12), tomorrow_at(13))

    shifted = bookings_client.put(
        f"/bookings/{first['id']}",
        json={"start_time": tomorrow_at(10, 30).isoformat(), "end_time": tomorrow_at(11, 30).isoformat()},
        headers=user_headers,
    )
    assert shifted.status_code == 200
    assert shifted.json()["start_time"].startswith(tomorrow_at(10, 30).isoformat()[:16])

    clash = bookings_client.put(
        f"/bookings/{first['id']}",
        json={"start_time": tomorrow_at(12, 30).isoformat(), "end_time": tomorrow_at(13, 30).isoformat()},
        headers=user_headers,
    )
    assert clash.status_code == 409

    renamed = bookings_client.put(f"/bookings/{first['id']}", json={"title": "Retro"}, headers=user_headers)
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Retro"


def test_user_booking_details(users_client, rooms_client, bookings_client):
    room_id, _, user_headers = setup_room_and_user(users_client, rooms_client)
    book(bookings_client, user_headers, room_id, tomorrow_at(10), tomorrow_at(11))
    user_id = users_client.get("/users/me", headers=user_headers).json()["id"]

    details = users_client.get(f"/users/{user_id}/bookings", headers=user_headers)
    assert details.status_code == 200
    assert details.json()[0]["room_code"] == "R-1"
    assert details.json()[0]["username"] == "user1"
