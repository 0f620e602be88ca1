"""Shared fixtures for the dosewatch test suite.

``MockPool`` and the Postgres fixtures live in the root ``conftest.py``;
this file builds the common household / animal / regimen graph on top.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest


@dataclass
class Household:
    household_id: uuid.UUID
    animal_id: uuid.UUID
    regimen_id: uuid.UUID
    medication_id: uuid.UUID
    caregiver_id: uuid.UUID
    other_caregiver_id: uuid.UUID


@pytest.fixture
def household(mock_pool) -> Household:
    """One UTC household with one animal on a twice-daily fixed regimen."""
    household_id = mock_pool.seed_household()
    animal_id = mock_pool.seed_animal(household_id)
    medication_id = uuid.uuid4()
    regimen_id = mock_pool.seed_regimen(
        animal_id, times_local=["08:00", "20:00"], medication_id=medication_id
    )
    return Household(
        household_id=household_id,
        animal_id=animal_id,
        regimen_id=regimen_id,
        medication_id=medication_id,
        caregiver_id=uuid.uuid4(),
        other_caregiver_id=uuid.uuid4(),
    )


@pytest.fixture
def morning() -> datetime:
    """08:10 UTC on a day well after every seeded regimen starts."""
    return datetime(2025, 3, 3, 8, 10, tzinfo=UTC)
