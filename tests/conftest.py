import pytest


@pytest.fixture
def audio_bytes():
    return bytes(range(256)) * 64
