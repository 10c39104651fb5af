"""Tests for base due date of new contributions."""

from datetime import date

from sindiboleto.domain.due_dates import base_due_date
from sindiboleto.domain.states import Competence


def test_tenth_of_following_month():
    assert base_due_date(Competence(month=8, year=2025)) == date(2025, 9, 10)


def test_december_rolls_into_next_year():
    assert base_due_date(Competence(month=12, year=2024)) == date(2025, 1, 10)


def test_saturday_moves_to_monday():
    # 2025-05-10 is a Saturday
    assert base_due_date(Competence(month=4, year=2025)) == date(2025, 5, 12)


def test_sunday_moves_to_monday():
    # 2025-08-10 is a Sunday
    assert base_due_date(Competence(month=7, year=2025)) == date(2025, 8, 11)
