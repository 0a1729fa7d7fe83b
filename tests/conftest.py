import pytest

from fakes import FakeMetadataProvider, FakeTransport, RecordingRequester


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def provider():
    return FakeMetadataProvider()


@pytest.fixture
def make_requester():

    def factory(register=40001, count=2, node=1, name="requester"):
        return RecordingRequester(register, count, node, name)

    return factory
