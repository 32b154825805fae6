import pytest

from factories import InMemoryEntityStore, make_message


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def memory_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()
