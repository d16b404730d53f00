"""Shared fixtures: a seeded in-memory store on a fixed clock."""

import pytest

from dentalbook.infra.memory_store import InMemoryStore
from dentalbook.infra.realtime import InMemoryRealtimeFeed
from tests.factories import NOW


@pytest.fixture
def feed():
    """Isolated in-process realtime feed."""
    return InMemoryRealtimeFeed()


@pytest.fixture
def store(feed):
    """In-memory store with two clinics, their doctors, services and patients."""
    store = InMemoryStore(feed=feed, now=lambda: NOW)
    store.add_clinic(
        "clinic-1",
        "Smile Dental",
        email="front-desk@smile.test",
        cancellation_policy_hours=24,
    )
    store.add_clinic("clinic-2", "Bright Teeth")
    store.add_doctor("doc-1", "clinic-1", "Dr. Lee")
    store.add_doctor("doc-2", "clinic-1", "Dr. Moreau")
    store.add_doctor("doc-3", "clinic-2", "Dr. Park")
    store.add_service("cleaning", 30, "Cleaning", "clinic-1")
    store.add_service("fluoride", 15, "Fluoride treatment", "clinic-1")
    store.add_service("xray", 20, "X-ray", "clinic-1")
    store.add_service("whitening", 60, "Whitening", "clinic-1")
    store.add_patient("patient-1", email="pat@example.test", name="Pat Lee")
    store.add_patient("patient-2", email="sam@example.test", name="Sam Ortiz")
    return store
