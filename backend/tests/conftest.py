import os

import pytest

# server.py and config.py read these at import time.
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "patient_context_test")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"

from fakes import FakeDatabase  # noqa: E402


@pytest.fixture
def fake_db():
    return FakeDatabase()
