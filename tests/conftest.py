"""
Shared fixtures for the security engine tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from security_engine.clients.memory_store import InMemoryDatabaseManager
from security_engine.clients.sms_client import OTPMessage, SMSProvider, SMSResult
from security_engine.services.cipher import TemplateCipher, generate_key
from security_engine.services.face_profile_service import FaceProfileManager
from security_engine.services.otp_service import OTPManager
from security_engine.services.similarity_service import SimilarityEngine


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSMSProvider(SMSProvider):
    """Captures messages instead of sending them."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[OTPMessage] = []

    async def send(self, message: OTPMessage) -> SMSResult:
        self.messages.append(message)
        if self.fail:
            return SMSResult(success=False, provider=self.name, error="carrier unavailable")
        return SMSResult(success=True, provider=self.name, message_id=f"msg_{len(self.messages)}")

    @property
    def last_code(self) -> str:
        return self.messages[-1].code


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_manager():
    return InMemoryDatabaseManager()


@pytest.fixture
def cipher():
    return TemplateCipher({"v1": generate_key()}, "v1")


@pytest.fixture
def similarity_engine():
    return SimilarityEngine(default_threshold=0.85)


@pytest.fixture
def sms_provider():
    return RecordingSMSProvider()


@pytest.fixture
def face_manager(db_manager, cipher, similarity_engine, clock):
    return FaceProfileManager(
        db_manager=db_manager,
        cipher=cipher,
        similarity_engine=similarity_engine,
        clock=clock
    )


@pytest.fixture
def otp_manager(db_manager, sms_provider, clock):
    return OTPManager(
        db_manager=db_manager,
        sms_provider=sms_provider,
        clock=clock,
        hash_secret="test-hash-secret"
    )


@pytest.fixture
def sample_angles():
    """Three distinguishable angles with qualities 0.9, 0.8 and 0.95."""
    return [
        {"vector": [0.1, 0.2, 0.3, 0.4], "quality": 0.9},
        {"vector": [0.4, 0.1, 0.2, 0.3], "quality": 0.8},
        {"vector": [0.3, 0.4, 0.1, 0.2], "quality": 0.95},
    ]


@pytest.fixture
def device():
    return {"platform": "ios", "os_version": "17.4", "screen": {"width": 1179, "height": 2556}}
