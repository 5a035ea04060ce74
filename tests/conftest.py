from datetime import datetime, timedelta, timezone

import pytest

from jvs_service.lifecycle import RotationPolicy
from jvs_service.memory_backend import InMemoryKMS
from jvs_service.rotation import RotationEngine

KEY = "projects/p/locations/global/keyRings/jvs/cryptoKeys/signer"
OTHER_KEY = "projects/p/locations/global/keyRings/jvs/cryptoKeys/other"

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_policy() -> RotationPolicy:
    return RotationPolicy(
        rotation_age=timedelta(days=30),
        propagation_delay=timedelta(hours=2),
        destroy_after=timedelta(days=7),
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def kms(clock):
    return InMemoryKMS(clock=clock)


@pytest.fixture
def engine(kms, clock, policy):
    return RotationEngine(kms, default_policy=policy, clock=clock)


@pytest.fixture
def bootstrapped(engine):
    """Engine whose KEY already has one ENABLED primary version."""
    engine.rotate(KEY)
    return engine
