import os
import sys

import pytest

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.dirname(CURRENT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from agile_poker.models import SignInIn
from agile_poker.services import user_service
from agile_poker.storage import DataClient

DOMAIN = "metalab.com"


@pytest.fixture
def client():
    """Data client over an in-memory SQLite database."""
    return DataClient.from_url("sqlite://")


@pytest.fixture
def sign_in(client):
    def _sign_in(name):
        email = f"{name.lower()}@{DOMAIN}"
        user = user_service.sign_in(client, SignInIn(email=email, name=name), DOMAIN)
        return user_service.context_for(user)
    return _sign_in
