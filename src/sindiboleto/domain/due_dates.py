"""Due date rules for newly issued contributions."""

from datetime import date, timedelta

from sindiboleto.domain.states import Competence

# Contributions are due on this day of the month after the competence
BASE_DUE_DAY = 10


def base_due_date(competence: Competence) -> date:
    """Day 10 of the month following the competence, pushed to Monday on weekends."""
    if competence.month == 12:
        due = date(competence.year + 1, 1, BASE_DUE_DAY)
    else:
        due = date(competence.year, competence.month + 1, BASE_DUE_DAY)

    weekday = due.weekday()  # Monday=0 .. Sunday=6
    if weekday == 5:
        due += timedelta(days=2)
    elif weekday == 6:
        due += timedelta(days=1)
    return due
