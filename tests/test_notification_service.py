from datetime import datetime, timedelta, timezone

from src.bookings.notification_service import BookingNotifier
from src.bookings.schemas import BookingCreateRequest, BookingStatus, BookingStatusChange

AT = datetime(2030, 1, 7, 8, 0)


def change(booking_id, station_id=1, user_id="owner-1", new_status=BookingStatus.PENDING):
    return BookingStatusChange(
        booking_id=booking_id,
        booking_number=f"BK-20300107-{booking_id[-6:].upper()}",
        station_id=station_id,
        user_id=user_id,
        new_status=new_status,
        actor_id=user_id,
        occurred_at=AT,
    )


def test_history_is_bounded_and_newest_first():
    notifier = BookingNotifier(history_size=2)

    for booking_id in ("aaaaaa", "bbbbbb", "cccccc"):
        notifier.notify(change(booking_id))

    assert [c.booking_id for c in notifier.recent()] == ["cccccc", "bbbbbb"]


def test_recent_filters_by_station_and_user():
    notifier = BookingNotifier()
    notifier.notify(change("aaaaaa", station_id=1, user_id="owner-1"))
    notifier.notify(change("bbbbbb", station_id=2, user_id="owner-2"))

    assert [c.booking_id for c in notifier.recent(station_id=2)] == ["bbbbbb"]
    assert [c.booking_id for c in notifier.recent(user_id="owner-1")] == ["aaaaaa"]


def test_subscribers_receive_changes_even_if_one_fails():
    notifier = BookingNotifier()
    received = []

    def broken(c):
        raise RuntimeError("boom")

    notifier.subscribe(broken)
    notifier.subscribe(received.append)
    notifier.notify(change("aaaaaa", new_status=BookingStatus.APPROVED))

    assert [c.new_status for c in received] == [BookingStatus.APPROVED]

    notifier.unsubscribe(received.append)
    notifier.notify(change("bbbbbb"))

    assert len(received) == 1


def test_aware_times_are_stored_as_naive_utc():
    request = BookingCreateRequest(
        station_id=1,
        start_time=datetime(2030, 1, 8, 15, 30, tzinfo=timezone(timedelta(hours=5, minutes=30))),
        end_time=datetime(2030, 1, 8, 16, 30, tzinfo=timezone(timedelta(hours=5, minutes=30))),
        vehicle_number=" wp-cab-1234 ",
    )

    assert request.start_time == datetime(2030, 1, 8, 10, 0)
    assert request.start_time.tzinfo is None
    assert request.vehicle_number == "WP-CAB-1234"
