import base64
import json

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from onenote_mcp.auth.primitives.redaction import secret_registry


class InMemoryKeyring(KeyringBackend):
    """Keyring backend holding entries in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.entries.get((service, username))

    def set_password(self, service, username, password):
        self.entries[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError(username)


def make_jwt(claims: dict) -> str:
    def encode(part: dict) -> str:
        raw = json.dumps(part).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{encode({'alg': 'none', 'typ': 'JWT'})}.{encode(claims)}.signature"


@pytest.fixture
def keyring_backend() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def jwt_factory():
    return make_jwt


@pytest.fixture(autouse=True)
def clear_secret_registry():
    yield
    secret_registry.forget(*secret_registry.snapshot())
