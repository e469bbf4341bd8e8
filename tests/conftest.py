"""
Pytest configuration and fixtures for ID Card Service tests.
"""

import os

import mongomock
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["MONGO_URI"] = "mongodb://localhost:27017/studentidreq"

from idcard_service.configuration import load_config
from idcard_service.database import ADMIN_IDS, PRINT_REQUESTS, IdCardStore
from idcard_service.main import create_app
from idcard_service.models import utcnow


@pytest.fixture
def config():
    """Configuration built from a fixed environment, ignoring any .env file."""
    return load_config(environ={"MONGO_URI": "mongodb://localhost:27017/studentidreq"}, use_dotenv=False)


@pytest.fixture
def mongo_client():
    """In-memory MongoDB client."""
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def store(mongo_client):
    """A connected store with the admin-ID index in place."""
    store = IdCardStore(mongo_client, database_name="studentidreq")
    assert store.connect()
    return store


@pytest.fixture
def app(config, store):
    return create_app(config, store=store)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app (lifespan not started)."""
    return TestClient(app)


@pytest.fixture
def sample_record():
    """The request body used in the accept examples."""
    return {
        "registerNumber": "R1",
        "name": "A",
        "dob": "2000-01-01",
        "department": "CS",
        "year": "2",
        "section": "A",
        "libraryCode": "L1",
        "reason": "graduation",
    }


@pytest.fixture
def seed_print_request(store):
    """Insert a print request the way the external request form does."""

    def seed(**fields):
        document = {"createdAt": utcnow(), **fields}
        store.db[PRINT_REQUESTS].insert_one(document)
        return document

    return seed


@pytest.fixture
def print_request(seed_print_request, sample_record):
    """A pending print request for registerNumber R1."""
    seed_print_request(**sample_record)
    return sample_record


@pytest.fixture
def admin_id(store):
    store.db[ADMIN_IDS].insert_one({"adminid": "ADMIN1"})
    return "ADMIN1"
