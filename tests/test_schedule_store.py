"""Tests for medication schedule store operations."""

from datetime import time
from unittest.mock import patch

import pytest
from sqlmodel import Session

from pillwatch.boxes.store import BoxConflictError
from pillwatch.schedule.store import (
    add_medication,
    add_medications,
    available_boxes,
    delete_medication,
    get_medication,
    list_medications,
    update_medication,
)


class TestAdd:
    def test_add_medication(self, session: Session):
        entry = add_medication(session, time(8, 0, 45), 3)
        assert entry.id
        assert entry.box_number == 3
        assert entry.medication_time == time(8, 0)  # seconds dropped

    def test_ids_are_unique(self, session: Session):
        a = add_medication(session, time(8, 0), 1)
        b = add_medication(session, time(8, 0), 2)
        assert a.id != b.id

    def test_box_already_scheduled(self, session: Session):
        add_medication(session, time(8, 0), 5)
        with pytest.raises(BoxConflictError, match="Box 5"):
            add_medication(session, time(20, 0), 5)

    def test_box_out_of_range(self, session: Session):
        with pytest.raises(ValueError):
            add_medication(session, time(8, 0), 11)

    def test_batch_add(self, session: Session):
        entries = add_medications(session, [(time(8, 0), 1), (time(13, 0), 2), (time(20, 0), 3)])
        assert [e.box_number for e in entries] == [1, 2, 3]
        assert len(list_medications(session)) == 3

    def test_batch_with_repeated_box_writes_nothing(self, session: Session):
        with pytest.raises(BoxConflictError):
            add_medications(session, [(time(8, 0), 1), (time(9, 0), 1)])
        assert list_medications(session) == []


class TestAvailableBoxes:
    def test_all_free(self, session: Session):
        assert available_boxes(session) == list(range(1, 11))

    def test_claimed_box_not_offered(self, session: Session):
        """Once box 5 is saved, a second entry can't pick it."""
        add_medication(session, time(8, 0), 5)
        choices = available_boxes(session)
        assert 5 not in choices
        assert len(choices) == 9

    def test_staged_picks_excluded(self, session: Session):
        add_medication(session, time(8, 0), 1)
        assert available_boxes(session, staged=[2, 3]) == [4, 5, 6, 7, 8, 9, 10]

    def test_own_box_offered_when_editing(self, session: Session):
        entry = add_medication(session, time(8, 0), 5)
        add_medication(session, time(9, 0), 6)
        choices = available_boxes(session, excluding_entry_id=entry.id)
        assert 5 in choices
        assert 6 not in choices

    def test_own_box_offered_even_if_staged_elsewhere(self, session: Session):
        entry = add_medication(session, time(8, 0), 5)
        assert 5 in available_boxes(session, excluding_entry_id=entry.id, staged=[5])


class TestUpdate:
    def test_update_time(self, session: Session):
        entry = add_medication(session, time(8, 0), 1)
        updated = update_medication(session, entry.id, medication_time=time(9, 30))
        assert updated.medication_time == time(9, 30)
        assert updated.box_number == 1

    def test_update_box(self, session: Session):
        entry = add_medication(session, time(8, 0), 1)
        updated = update_medication(session, entry.id, box_number=4)
        assert updated.box_number == 4
        assert 1 in available_boxes(session)

    def test_update_to_own_box_is_not_a_conflict(self, session: Session):
        entry = add_medication(session, time(8, 0), 1)
        assert update_medication(session, entry.id, box_number=1).box_number == 1

    def test_update_to_taken_box(self, session: Session):
        entry = add_medication(session, time(8, 0), 1)
        add_medication(session, time(9, 0), 2)
        with pytest.raises(BoxConflictError):
            update_medication(session, entry.id, box_number=2)

    def test_update_missing(self, session: Session):
        assert update_medication(session, "missing", box_number=2) is None


class TestDelete:
    def test_delete(self, session: Session):
        entry = add_medication(session, time(8, 0), 1)
        assert delete_medication(session, entry.id) is True
        assert get_medication(session, entry.id) is None
        assert 1 in available_boxes(session)

    def test_delete_missing(self, session: Session):
        assert delete_medication(session, "missing") is False


class TestPersistence:
    def test_round_trip_through_new_session(self, engine, session: Session):
        add_medications(session, [(time(8, 0), 3), (time(21, 15), 7)])
        before = {(e.id, e.medication_time, e.box_number) for e in list_medications(session)}

        with Session(engine) as fresh:
            after = {(e.id, e.medication_time, e.box_number) for e in list_medications(fresh)}
        assert after == before

    def test_listed_in_time_order(self, session: Session):
        add_medications(session, [(time(20, 0), 1), (time(8, 0), 2)])
        assert [e.box_number for e in list_medications(session)] == [2, 1]


    def test_unique_index_race_reported_as_conflict(self, session: Session):
        add_medication(session, time(8, 0), 3)
        # another writer saved Box 3 after this caller read the schedule
        with patch("pillwatch.schedule.store._used_boxes", return_value=set()):
            with pytest.raises(BoxConflictError):
                add_medication(session, time(9, 0), 3)
        assert [e.medication_time for e in list_medications(session)] == [time(8, 0)]
