from typing import Dict, List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from ghatoken import ApiError, Installation, LookupResult


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem(key, private_format, encryption=serialization.NoEncryption()) -> bytes:
    return key.private_bytes(serialization.Encoding.PEM, private_format, encryption)


@pytest.fixture(scope="session")
def legacy_pem(rsa_key) -> bytes:
    return _pem(rsa_key, serialization.PrivateFormat.TraditionalOpenSSL)


@pytest.fixture(scope="session")
def legacy_encrypted_pem(rsa_key) -> bytes:
    return _pem(rsa_key, serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.BestAvailableEncryption(b"correct horse"))


@pytest.fixture(scope="session")
def pkcs8_pem(rsa_key) -> bytes:
    return _pem(rsa_key, serialization.PrivateFormat.PKCS8)


@pytest.fixture(scope="session")
def pkcs8_encrypted_pem(rsa_key) -> bytes:
    return _pem(rsa_key, serialization.PrivateFormat.PKCS8,
                serialization.BestAvailableEncryption(b"correct horse"))


@pytest.fixture(scope="session")
def ec_pkcs8_pem() -> bytes:
    return _pem(ec.generate_private_key(ec.SECP256R1()), serialization.PrivateFormat.PKCS8)


def not_found(what: str) -> LookupResult:
    return LookupResult.not_found(ApiError(f"HTTP 404 error from GitHub API: Not Found ({what})", status=404))


class FakeClient:
    """In-memory stand-in for GitHubAppClient that records every call."""

    def __init__(self,
                 org: Optional[LookupResult] = None,
                 user: Optional[LookupResult] = None,
                 repo: Optional[LookupResult] = None,
                 token_error: Optional[Exception] = None) -> None:
        self.org = org or not_found("org")
        self.user = user or not_found("user")
        self.repo = repo or not_found("repo")
        self.token_error = token_error
        self.calls: List[Tuple] = []
        self.token_requests: List[Tuple[int, Optional[List[str]]]] = []

    def find_org_installation(self, org: str) -> LookupResult:
        self.calls.append(("org", org))
        return self.org

    def find_user_installation(self, user: str) -> LookupResult:
        self.calls.append(("user", user))
        return self.user

    def find_repo_installation(self, owner: str, repo: str) -> LookupResult:
        self.calls.append(("repo", owner, repo))
        return self.repo

    def create_installation_token(self, installation_id: int,
                                  repositories: Optional[List[str]] = None) -> Dict:
        self.calls.append(("token", installation_id))
        self.token_requests.append((installation_id, repositories))
        if self.token_error:
            raise self.token_error
        return {
            "token": f"ghs_token_for_{installation_id}",
            "expires_at": "2030-01-01T00:00:00Z",
            "permissions": {"contents": "read"},
            "repository_selection": "selected" if repositories else "all",
        }


ORG_INSTALLATION = Installation(id=101, account="dayflower", target_type="Organization")
USER_INSTALLATION = Installation(id=202, account="dayflower", target_type="User")
REPO_INSTALLATION = Installation(id=303, account="dayflower", target_type="User")
