# tests/conftest.py
import json
from typing import Any

import pytest

from drive_auth import AuthorizedClient, Scope
from tests.stubs import CLIENT_CONFIG, DriveServiceStub


@pytest.fixture
def drive_client():
    def _make(*outcomes: Any, chunks: int = 0) -> AuthorizedClient:
        return AuthorizedClient(
            account="a@example.com",
            scope=Scope.DRIVE_FILE,
            service=DriveServiceStub(*outcomes, chunks=chunks),
        )

    return _make


@pytest.fixture
def client_secrets(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text(json.dumps(CLIENT_CONFIG), encoding="utf-8")
    return path
