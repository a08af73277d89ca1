"""Sequential human-readable ids for clients, therapists, bookings and payments."""
from __future__ import annotations

from .extensions import db
from .models import Counter

STARTING_NUMBERS = {
    "client": 10000,
    "therapist": 20000,
    "booking": 30000,
    "payment": 40000,
}


def next_id(counter_type: str) -> int:
    """Return the next number for ``counter_type``.

    The row is locked for the rest of the caller's transaction, so the
    caller owns the commit.
    """
    if counter_type not in STARTING_NUMBERS:
        raise ValueError(f"unknown counter type: {counter_type}")

    counter = (
        db.session.query(Counter)
        .filter_by(counter_type=counter_type)
        .with_for_update()
        .first()
    )
    if counter is None:
        counter = Counter(counter_type=counter_type, count=STARTING_NUMBERS[counter_type])
        db.session.add(counter)
    else:
        counter.count += 1
    db.session.flush()
    return counter.count


def current_count(counter_type: str) -> int:
    counter = db.session.get(Counter, counter_type)
    return counter.count if counter else 0
