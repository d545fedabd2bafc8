import itertools
from datetime import datetime
from unittest.mock import MagicMock

import mongomock
import pytest

from backend.app import create_app
from backend.emails import EmailSender
from backend.products import ProductWriteCoordinator
from backend.repository import ProductRepository
from backend.storage import StorageGateway

from tests.utils import BUCKET_NAME


@pytest.fixture
def collection():
    return mongomock.MongoClient().gamma_ortho.products


@pytest.fixture
def bucket():
    return MagicMock(name="bucket")


@pytest.fixture
def gateway(bucket):
    ticks = itertools.count(1700000000000)
    return StorageGateway(bucket, BUCKET_NAME, clock=lambda: next(ticks))


@pytest.fixture
def unavailable_gateway():
    return StorageGateway(None, None)


@pytest.fixture
def repository(collection):
    return ProductRepository(collection)


@pytest.fixture
def coordinator(repository, gateway):
    return ProductWriteCoordinator(repository, gateway)


@pytest.fixture
def email_sender():
    return EmailSender("re_test_key", "orders@gammaortho.test", "owner@gammaortho.test")


@pytest.fixture
def app(collection, gateway, email_sender):
    app = create_app(
        {"TESTING": True},
        product_collection=collection,
        storage_gateway=gateway,
        email_sender=email_sender,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed_product(collection):
    """Insert a stored product document directly and return it."""

    created = datetime(2024, 1, 1)

    def insert(**overrides):
        document = {
            "name": "Wire Pin",
            "description": "Stainless steel wire pin",
            "productType": "wire-pin",
            "baseImageURL": None,
            "additionalImageURLs": [],
            "dimensions": [
                {"dimensionName": "2mm", "basePrice": 10.0},
                {"dimensionName": "3mm", "basePrice": 12.5},
            ],
            "gstRate": 0.12,
            "isActive": True,
            "createdAt": created,
            "updatedAt": created,
        }
        document.update(overrides)
        result = collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document

    return insert

