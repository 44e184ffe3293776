"""Shared pytest fixtures for the listing intake service tests."""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

import pytest  # noqa: E402
from mongomock_motor import AsyncMongoMockClient  # noqa: E402

from utils.log_utils import LogUtil  # noqa: E402
from utils.environment_utils import EnvironmentUtils  # noqa: E402
from database.listing_db import ListingDB  # noqa: E402

TEST_ENV = {
    "APP_ENV": "test",
    "LOKI_URL": "",
    "MONGO_URI": "mongodb://localhost:27017/",
    "MONGO_DB_NAME": "listing_intake_test",
    "OPENAI_API_KEY": "test-openai-key",
    "OPENAI_BASE_URL": "https://llm.test/v1",
    "EXTRACTION_MODEL": "gpt-4o-mini",
    "EXTRACTION_MAX_MESSAGE_LENGTH": "2400",
    "EXTRACTION_MAX_LISTINGS": "6",
    "EXTRACTION_TIMEOUT_SECONDS": "5",
    "WORKER_BATCH_SIZE": "5",
    "WORKER_MAX_ATTEMPTS": "3",
    "WORKER_CLAIM_TIMEOUT_SECONDS": "300",
    "WORKER_BASE_URL": "",
    "WORKER_TRIGGER_WINDOW_SECONDS": "30",
    "WORKER_TRIGGER_TIMEOUT_SECONDS": "2",
    "BACKEND_API_KEY": "test-backend-key",
    "WHATSAPP_APP_SECRET": "test-app-secret",
    "WHATSAPP_VERIFY_TOKEN": "test-verify-token",
}


def make_whatsapp_payload(messages, contacts=None, field="messages"):
    """Build a WhatsApp Cloud API webhook body around the given messages."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": field,
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "123456789"},
                            "contacts": contacts if contacts is not None else [
                                {"wa_id": "2348012345678", "profile": {"name": "Ada"}}
                            ],
                            "messages": messages,
                        },
                    }
                ],
            }
        ],
    }


def make_text_message(message_id="wamid.TEST001", body="2 bedroom flat, Lekki, ₦1.2m/year",
                      sender="2348012345678", timestamp="1717430400"):
    message = {
        "from": sender,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }
    if message_id is not None:
        message["id"] = message_id
    return message


@pytest.fixture
def test_env(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    return TEST_ENV


@pytest.fixture
def log_util(test_env):
    return LogUtil(logger_name="listing_intake_service_test")


@pytest.fixture
def environment_utils(log_util):
    return EnvironmentUtils(log_util=log_util)


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def listing_db(log_util, environment_utils, mongo_client):
    # Same in-memory client for every event loop
    return ListingDB(log_util=log_util, environment_utils=environment_utils, client_factory=lambda: mongo_client)


@pytest.fixture
def incoming_collection(mongo_client, test_env):
    return mongo_client[test_env["MONGO_DB_NAME"]]["incoming_messages"]


@pytest.fixture
def properties_collection(mongo_client, test_env):
    return mongo_client[test_env["MONGO_DB_NAME"]]["properties"]
