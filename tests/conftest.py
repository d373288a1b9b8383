import pytest
from doubles import FlakyStore

from visit_counter.app import create_app
from visit_counter.counter import CounterService


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def service(store):
    s = CounterService(store)
    s.initialize()
    return s


@pytest.fixture
def app(service):
    app = create_app(service)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
