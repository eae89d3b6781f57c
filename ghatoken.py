#!/usr/bin/env python3
"""
ghatoken - derive GitHub App installation tokens for a repository or owner

Takes a GitHub App ID, a private key and a repository/owner specifier
(URL, SCP-like or bare "owner/repo" form), finds the matching App
installation and exchanges it for a short-lived installation token.
"""

import argparse
import base64
import binascii
import json
import os
import re
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, NoReturn, Callable, List, Iterable, NamedTuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlsplit
from urllib.request import Request, urlopen

import jwt as pyjwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

__version__ = "1.0.0"

# Constants
GITHUB_DOT_COM = "github.com"
DEFAULT_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
DEFAULT_JWT_EXPIRY = 600
MAX_JWT_EXPIRY = 600
MIN_JWT_EXPIRY = 1
DEFAULT_USER_AGENT = f"ghatoken/{__version__}"
DEFAULT_PASSPHRASE_ENV = "PASSPHRASE"

LEGACY_RSA_PEM_TYPE = "RSA PRIVATE KEY"
PKCS8_PEM_TYPE = "PRIVATE KEY"
ENCRYPTED_PKCS8_PEM_TYPE = "ENCRYPTED PRIVATE KEY"


class GhatokenError(Exception):
    """Base class for every failure of the token derivation pipeline."""
    pass


class ValidationError(GhatokenError):
    """Raised when command-line input validation fails."""
    pass


class ParseError(GhatokenError):
    """Raised when a repository/owner specifier is malformed."""
    pass


class DecodeError(GhatokenError):
    """Raised when a private key cannot be turned into an RSA signing key."""
    pass


class PassphraseRequiredError(DecodeError):
    """Raised when an encrypted legacy key is supplied without a passphrase."""
    pass


class IncorrectPassphraseError(DecodeError):
    """Raised when the passphrase does not decrypt an encrypted legacy key."""
    pass


class UnsupportedKeyFormatError(DecodeError):
    """Raised when the PEM block type is not one of the supported key formats."""

    def __init__(self, pem_type: str) -> None:
        super().__init__(f"unsupported key format: '{pem_type}'")
        self.pem_type = pem_type


class ResolveError(GhatokenError):
    """Raised when no usable App installation can be found for a target."""
    pass


class InstallationNotFoundError(ResolveError):
    """Raised when owner resolution finished without finding an installation."""
    pass


class IssueError(GhatokenError):
    """Raised when an installation token request fails."""
    pass


class ApiError(GhatokenError):
    """Raised by GitHubAppClient when a GitHub API call fails."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RepoTarget(NamedTuple):
    """Structured addressing target produced from a specifier string."""
    enterprise_host: Optional[str]
    owner: str
    repo: Optional[str]


class OwnerMode(NamedTuple):
    """Which installation namespaces to probe, organization first."""
    try_org: bool
    try_user: bool

    @classmethod
    def from_force_owner(cls, force_owner: Optional[str]) -> 'OwnerMode':
        if not force_owner:
            return cls(try_org=True, try_user=True)
        if force_owner == 'org':
            return cls(try_org=True, try_user=False)
        if force_owner == 'user':
            return cls(try_org=False, try_user=True)
        raise ValueError(f"unsupported force-owner mode: '{force_owner}'")


class Installation(NamedTuple):
    """An App installation bound to one organization or user account."""
    id: int
    account: Optional[str] = None
    target_type: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Installation':
        account = data.get('account') or {}
        return cls(
            id=int(data['id']),
            account=account.get('login'),
            target_type=data.get('target_type')
        )


class InstallationToken(NamedTuple):
    token: str
    expires_at: Optional[str] = None
    permissions: Optional[Dict[str, str]] = None
    repository_selection: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'InstallationToken':
        permissions: Dict[str, str] = dict(data.get('permissions') or {})
        return cls(
            token=data['token'],
            expires_at=data.get('expires_at'),
            permissions=permissions,
            repository_selection=data.get('repository_selection')
        )


class LookupState(Enum):
    NOT_TRIED = 'not tried'
    NOT_FOUND = 'not found'
    FOUND = 'found'
    FAILED = 'failed'


class LookupResult(NamedTuple):
    """
    Outcome of one installation lookup.

    A NOT_FOUND result keeps the underlying ApiError in `error` so that callers
    which do not tolerate a missing installation can still report the cause.
    """
    state: LookupState
    installation: Optional[Installation] = None
    error: Optional[Exception] = None

    @classmethod
    def found(cls, installation: Installation) -> 'LookupResult':
        return cls(LookupState.FOUND, installation=installation)

    @classmethod
    def not_found(cls, error: Optional[Exception] = None) -> 'LookupResult':
        return cls(LookupState.NOT_FOUND, error=error)

    @classmethod
    def failed(cls, error: Exception) -> 'LookupResult':
        return cls(LookupState.FAILED, error=error)


NOT_TRIED = LookupResult(LookupState.NOT_TRIED)


def eprint(*args, **kwargs) -> None:
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def debug_print(message: str, debug: bool) -> None:
    """Print debug message to stderr if debug mode is enabled."""
    if debug:
        eprint(f"[DEBUG] {message}")


def fatal_error(message: str) -> NoReturn:
    """Print error message to stderr and exit with status 1."""
    eprint(f"Error: {message}")
    sys.exit(1)


def mask_token(token: str) -> str:
    """Mask a token for safe display, showing only first and last few characters."""
    if len(token) <= 10:
        return "***"
    return f"{token[:7]}...{token[-4:]}"


def format_headers_for_display(headers: Dict[str, str]) -> str:
    """Format HTTP headers for display, masking sensitive values."""
    lines = []
    for key, value in headers.items():
        if key.lower() == 'authorization':
            parts = value.split(' ')
            if len(parts) == 2:
                value = f"{parts[0]} {mask_token(parts[1])}"
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def _normalize_host(host: Optional[str]) -> Optional[str]:
    """Return the host as an enterprise host, or None for github.com and empty hosts."""
    if not host or host == GITHUB_DOT_COM:
        return None
    return host


def _split_remainder(remainder: str, specifier: str) -> RepoTarget:
    parts: List[str] = remainder.split('/', 2)
    if not parts[0] or (len(parts) == 3 and parts[2]):
        raise ParseError(f"malformed specifier: '{specifier}'")

    repo: Optional[str] = None
    if len(parts) >= 2 and parts[1]:
        name: str = parts[1]
        if name.endswith('.git'):
            name = name[:-len('.git')]
        # "owner/.git" leaves nothing behind; treat it like "owner/"
        repo = name or None

    return RepoTarget(enterprise_host=None, owner=parts[0], repo=repo)


def parse_specifier(specifier: str) -> RepoTarget:
    """
    Parse a repository or owner specifier into a RepoTarget.

    Supported shapes:

        https://github.com/dayflower/ghatoken.git
        https://github.com/dayflower
        git@github.com:dayflower/ghatoken.git
        git@enterprise.example.net:dayflower
        dayflower/ghatoken.git
        dayflower

    Args:
        specifier: URL, SCP-like or bare specifier

    Returns:
        RepoTarget; enterprise_host is None for github.com

    Raises:
        ParseError: If the specifier is malformed
    """
    enterprise_host: Optional[str]
    remainder: str

    if '://' in specifier:
        try:
            url = urlsplit(specifier)
            host = url.hostname
        except ValueError as e:
            raise ParseError(f"malformed specifier: '{specifier}': {e}") from e
        enterprise_host = _normalize_host(host)
        remainder = url.path[1:]
    elif ':' in specifier:
        parts = specifier.split(':')
        if len(parts) > 2:
            raise ParseError(f"malformed specifier: '{specifier}'")
        host_part, remainder = parts
        enterprise_host = _normalize_host(host_part.rsplit('@', 1)[-1])
    else:
        enterprise_host = None
        remainder = specifier

    target: RepoTarget = _split_remainder(remainder, specifier)
    return target._replace(enterprise_host=enterprise_host)


def api_url_for_enterprise(enterprise_host: str) -> str:
    """Return the REST API base URL of a GitHub Enterprise Server host."""
    return f"https://{enterprise_host}/api/v3"


class PemBlock(NamedTuple):
    type: str
    headers: Dict[str, str]
    data: bytes

    @property
    def is_encrypted(self) -> bool:
        return 'DEK-Info' in self.headers


class KeyFormat(Enum):
    LEGACY_RSA = LEGACY_RSA_PEM_TYPE
    PKCS8_PLAIN = PKCS8_PEM_TYPE
    PKCS8_ENCRYPTED = ENCRYPTED_PKCS8_PEM_TYPE
    UNSUPPORTED = None

    @classmethod
    def of(cls, pem_type: str) -> 'KeyFormat':
        for key_format in cls:
            if key_format.value == pem_type:
                return key_format
        return cls.UNSUPPORTED


_PEM_BLOCK_RE = re.compile(rb"-----BEGIN ([^\r\n-]+)-----[ \t]*\r?\n(.*?)-----END \1-----", re.DOTALL)
_PEM_HEADER_RE = re.compile(r"^([A-Za-z0-9-]+):\s*(.*)$")


def _parse_pem_body(body: str) -> Optional[PemBlock]:
    lines: List[str] = body.splitlines()
    headers: Dict[str, str] = {}

    index: int = 0
    while index < len(lines):
        match = _PEM_HEADER_RE.match(lines[index].strip())
        if not match:
            break
        headers[match.group(1)] = match.group(2).strip()
        index += 1
    if headers:
        # headers are separated from the payload by one blank line
        if index >= len(lines) or lines[index].strip():
            return None
        index += 1

    payload: str = "".join(line.strip() for line in lines[index:])
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None
    return PemBlock(type='', headers=headers, data=data)


def find_pem_block(data: bytes) -> Optional[PemBlock]:
    """
    Locate the first well-formed PEM block in the input.

    Malformed blocks (broken headers or base64) are skipped, so text before,
    between or after blocks does not matter.
    """
    for match in _PEM_BLOCK_RE.finditer(data):
        block = _parse_pem_body(match.group(2).decode('latin-1'))
        if block is not None:
            return block._replace(type=match.group(1).decode('latin-1'))
    return None


# Cipher name -> (cipher factory, key size in bytes, block size in bytes)
_LEGACY_PEM_CIPHERS: Dict[str, tuple] = {
    'DES-CBC': (TripleDES, 8, 8),
    'DES-EDE3-CBC': (TripleDES, 24, 8),
    'AES-128-CBC': (algorithms.AES, 16, 16),
    'AES-192-CBC': (algorithms.AES, 24, 16),
    'AES-256-CBC': (algorithms.AES, 32, 16),
}


def _evp_bytes_to_key(passphrase: bytes, salt: bytes, key_size: int) -> bytes:
    """OpenSSL EVP_BytesToKey with MD5 and a single iteration."""
    derived: bytes = b''
    digest: bytes = b''
    while len(derived) < key_size:
        md5 = hashes.Hash(hashes.MD5())
        md5.update(digest + passphrase + salt)
        digest = md5.finalize()
        derived += digest
    return derived[:key_size]


def decrypt_legacy_pem_block(block: PemBlock, passphrase: bytes) -> bytes:
    """
    Decrypt the payload of a Proc-Type 4,ENCRYPTED PEM block.

    Args:
        block: Encrypted PEM block carrying a DEK-Info header
        passphrase: Passphrase the block was encrypted with

    Returns:
        Decrypted DER bytes

    Raises:
        IncorrectPassphraseError: If the decrypted padding is invalid
        DecodeError: If the block cannot be decrypted at all
    """
    dek_info = block.headers.get('DEK-Info')
    if not dek_info or ',' not in dek_info:
        raise DecodeError("decrypt failed: missing or malformed DEK-Info header")

    cipher_name, iv_hex = (item.strip() for item in dek_info.split(',', 1))
    if cipher_name.upper() not in _LEGACY_PEM_CIPHERS:
        raise DecodeError(f"decrypt failed: unknown encryption mode '{cipher_name}'")
    factory, key_size, block_size = _LEGACY_PEM_CIPHERS[cipher_name.upper()]

    try:
        iv = bytes.fromhex(iv_hex)
    except ValueError as e:
        raise DecodeError(f"decrypt failed: malformed IV '{iv_hex}'") from e
    if len(iv) != block_size:
        raise DecodeError("decrypt failed: IV size does not match the cipher block size")
    if not block.data or len(block.data) % block_size:
        raise DecodeError("decrypt failed: encrypted data is not a multiple of the block size")

    key: bytes = _evp_bytes_to_key(passphrase, iv[:8], key_size)
    decryptor = Cipher(factory(key), modes.CBC(iv)).decryptor()
    decrypted: bytes = decryptor.update(block.data) + decryptor.finalize()

    unpadder = padding.PKCS7(block_size * 8).unpadder()
    try:
        return unpadder.update(decrypted) + unpadder.finalize()
    except ValueError as e:
        raise IncorrectPassphraseError("incorrect passphrase") from e


def _load_rsa_der(der: bytes, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    key = serialization.load_der_private_key(der, password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise DecodeError(f"failed to decode private key: not an RSA key ({type(key).__name__})")
    return key


def _decode_legacy_rsa(block: PemBlock, passphrase: Optional[bytes]) -> rsa.RSAPrivateKey:
    assert block.type == LEGACY_RSA_PEM_TYPE, f"invalid PEM type '{block.type}'"

    der: bytes = block.data
    if block.is_encrypted:
        if not passphrase:
            raise PassphraseRequiredError("passphrase required: encrypted key found, but passphrase was not supplied")
        der = decrypt_legacy_pem_block(block, passphrase)

    try:
        return _load_rsa_der(der)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        if block.is_encrypted:
            # padding happened to look valid, but the plaintext is garbage
            raise IncorrectPassphraseError(f"incorrect passphrase: {e}") from e
        raise DecodeError(f"failed to decode private key: {e}") from e


def _decode_pkcs8_plain(block: PemBlock, passphrase: Optional[bytes]) -> rsa.RSAPrivateKey:
    try:
        return _load_rsa_der(block.data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise DecodeError(f"failed to decode private key: {e}") from e


def _decode_pkcs8_encrypted(block: PemBlock, passphrase: Optional[bytes]) -> rsa.RSAPrivateKey:
    try:
        return _load_rsa_der(block.data, password=passphrase or b'')
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise DecodeError(f"failed to decode private key: {e}") from e


def _decode_unsupported(block: PemBlock, passphrase: Optional[bytes]) -> rsa.RSAPrivateKey:
    raise UnsupportedKeyFormatError(block.type)


_KEY_DECODERS: Dict[KeyFormat, Callable[[PemBlock, Optional[bytes]], rsa.RSAPrivateKey]] = {
    KeyFormat.LEGACY_RSA: _decode_legacy_rsa,
    KeyFormat.PKCS8_PLAIN: _decode_pkcs8_plain,
    KeyFormat.PKCS8_ENCRYPTED: _decode_pkcs8_encrypted,
    KeyFormat.UNSUPPORTED: _decode_unsupported,
}


def decode_private_key(pem_bytes: bytes, passphrase: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    """
    Decode a PEM encoded RSA private key.

    Accepts "RSA PRIVATE KEY" (optionally Proc-Type encrypted), "PRIVATE KEY"
    and "ENCRYPTED PRIVATE KEY" blocks. Only the first PEM block is used.

    Args:
        pem_bytes: PEM text
        passphrase: Passphrase for encrypted keys, if any

    Returns:
        RSA private key usable for signing

    Raises:
        DecodeError: If no key can be decoded (see subclasses for specific causes)
    """
    block: Optional[PemBlock] = find_pem_block(pem_bytes)
    if block is None:
        raise DecodeError("no PEM block found")

    return _KEY_DECODERS[KeyFormat.of(block.type)](block, passphrase)


def generate_jwt(app_id: int, private_key: rsa.RSAPrivateKey, expiry_seconds: int) -> str:
    """
    Generate a JWT for GitHub App authentication.

    Args:
        app_id: GitHub App ID, used as issuer
        private_key: App private key
        expiry_seconds: JWT lifetime in seconds

    Returns:
        Encoded JWT string
    """
    now: int = int(time.time())
    payload: Dict[str, Any] = {
        'iat': now - 60,  # clock skew tolerance
        'exp': now + expiry_seconds,
        'iss': str(app_id)
    }
    token: str = pyjwt.encode(payload, private_key, algorithm='RS256')
    return token


def _error_message(error: HTTPError) -> str:
    body: str = error.read().decode('utf-8', errors='replace')
    try:
        return json.loads(body).get('message', body)
    except (json.JSONDecodeError, ValueError, AttributeError):
        return body


class GitHubAppClient:
    """
    Minimal GitHub REST client authenticated as a GitHub App.

    Every request is signed with a freshly generated JWT. Nothing is cached or
    retried; errors are raised as ApiError carrying the HTTP status.
    """

    def __init__(
        self,
        app_id: int,
        private_key: rsa.RSAPrivateKey,
        base_url: str = DEFAULT_API_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        jwt_expiry: int = DEFAULT_JWT_EXPIRY,
        debug: bool = False
    ) -> None:
        self.app_id = app_id
        self.private_key = private_key
        self.base_url = base_url.rstrip('/')
        self.user_agent = user_agent
        self.jwt_expiry = jwt_expiry
        self.debug = debug

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {generate_jwt(self.app_id, self.private_key, self.jwt_expiry)}',
            'Accept': 'application/vnd.github+json',
            'User-Agent': self.user_agent,
            'X-GitHub-Api-Version': GITHUB_API_VERSION
        }

    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an API request and return the decoded JSON response.

        Raises:
            ApiError: On HTTP errors, connection failures or invalid JSON
        """
        url: str = f"{self.base_url}{path}"
        headers: Dict[str, str] = self._headers()
        data: Optional[bytes] = None
        if body is not None:
            data = json.dumps(body).encode('utf-8')
            headers['Content-Type'] = 'application/json'

        debug_print(f"{method} {url}", self.debug)
        debug_print(f"Request headers:\n{format_headers_for_display(headers)}", self.debug)

        try:
            with urlopen(Request(url, data=data, headers=headers, method=method)) as response:
                debug_print(f"Response status: {response.status}", self.debug)
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as e:
            message: str = _error_message(e)
            debug_print(f"HTTP Error body: {message}", self.debug)
            raise ApiError(f"HTTP {e.code} error from GitHub API ({method} {url}): {message}", status=e.code) from e
        except URLError as e:
            raise ApiError(f"Failed to connect to GitHub API ({url}): {e.reason}") from e
        except json.JSONDecodeError as e:
            raise ApiError(f"Invalid JSON from GitHub API ({url}): {e}") from e

    def _lookup(self, path: str) -> LookupResult:
        try:
            data: Dict[str, Any] = self.request('GET', path)
        except ApiError as e:
            if e.status == 404:
                return LookupResult.not_found(e)
            return LookupResult.failed(e)

        try:
            installation: Installation = Installation.from_api(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            error = ApiError(f"unexpected installation response from GitHub API ({path}): {e!r}")
            error.__cause__ = e
            return LookupResult.failed(error)
        return LookupResult.found(installation)

    def find_org_installation(self, org: str) -> LookupResult:
        return self._lookup(f"/orgs/{quote(org, safe='')}/installation")

    def find_user_installation(self, user: str) -> LookupResult:
        return self._lookup(f"/users/{quote(user, safe='')}/installation")

    def find_repo_installation(self, owner: str, repo: str) -> LookupResult:
        return self._lookup(f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/installation")

    def create_installation_token(
        self,
        installation_id: int,
        repositories: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Request an installation token, optionally restricted to the given repository names."""
        body: Dict[str, Any] = {}
        if repositories:
            body['repositories'] = list(repositories)
        return self.request('POST', f"/app/installations/{installation_id}/access_tokens", body)


def new_app_client(
    app_id: int,
    private_key: rsa.RSAPrivateKey,
    enterprise_host: Optional[str] = None,
    api_url: Optional[str] = None,
    **kwargs: Any
) -> GitHubAppClient:
    """
    Build a GitHubAppClient for github.com or a GitHub Enterprise Server host.

    An explicit api_url wins over the URL derived from enterprise_host.
    """
    if api_url:
        base_url = api_url
    elif enterprise_host:
        base_url = api_url_for_enterprise(enterprise_host)
    else:
        base_url = DEFAULT_API_URL
    return GitHubAppClient(app_id, private_key, base_url=base_url, **kwargs)


def combine_owner_lookups(org: LookupResult, user: LookupResult) -> Optional[Installation]:
    """
    Pick the installation from the org and user lookups.

    The user lookup runs second and wins when both found an installation.
    """
    if user.state is LookupState.FOUND:
        return user.installation
    if org.state is LookupState.FOUND:
        return org.installation
    return None


def resolve_owner_installation(client: Any, owner: str, mode: OwnerMode) -> Installation:
    """
    Find the App installation of an organization and/or user account.

    The organization is probed first; a missing org installation is not an
    error while the user lookup may still run. Any failure of the user lookup,
    404 included, is fatal.

    Args:
        client: GitHubAppClient or compatible object
        owner: Organization or user login
        mode: Namespaces to probe

    Returns:
        The resolved Installation

    Raises:
        ResolveError: If a lookup fails
        InstallationNotFoundError: If no namespace yielded an installation
    """
    if not (mode.try_org or mode.try_user):
        raise ValueError("owner mode must try at least one of org or user")

    org = NOT_TRIED
    user = NOT_TRIED

    if mode.try_org:
        org = client.find_org_installation(owner)
        if org.state is LookupState.FAILED:
            raise ResolveError(f"org lookup failed for '{owner}': {org.error}") from org.error

    if mode.try_user:
        user = client.find_user_installation(owner)
        if user.state is not LookupState.FOUND:
            raise ResolveError(f"user lookup failed for '{owner}': {user.error}") from user.error

    installation = combine_owner_lookups(org, user)
    if installation is None:
        raise InstallationNotFoundError(f"installation not found for '{owner}'")
    return installation


def resolve_repo_installation(client: Any, owner: str, repo: str) -> Installation:
    """Find the App installation covering owner/repo; no fallback."""
    result = client.find_repo_installation(owner, repo)
    if result.state is not LookupState.FOUND:
        raise ResolveError(f"repo lookup failed for '{owner}/{repo}': {result.error}") from result.error
    return result.installation


def issue_token(
    client: Any,
    installation: Installation,
    scope_repos: Optional[Iterable[str]] = None
) -> InstallationToken:
    """
    Exchange an installation for a token.

    Args:
        client: GitHubAppClient or compatible object
        installation: Resolved installation
        scope_repos: Repository names to restrict the token to; None or empty
            keeps the installation's default scope

    Raises:
        IssueError: If the token request fails
    """
    repositories: Optional[List[str]] = sorted(set(scope_repos)) if scope_repos else None
    try:
        data: Dict[str, Any] = client.create_installation_token(installation.id, repositories)
        return InstallationToken.from_api(data)
    except (ApiError, KeyError, TypeError, ValueError, AttributeError) as e:
        raise IssueError(f"token request failed for installation {installation.id}: {e}") from e


def create_token_for_owner(client: Any, owner: str, mode: OwnerMode) -> InstallationToken:
    installation: Installation = resolve_owner_installation(client, owner, mode)
    return issue_token(client, installation)


def create_token_for_org(client: Any, org: str) -> InstallationToken:
    return create_token_for_owner(client, org, OwnerMode(try_org=True, try_user=False))


def create_token_for_user(client: Any, user: str) -> InstallationToken:
    return create_token_for_owner(client, user, OwnerMode(try_org=False, try_user=True))


def create_token_for_repo(client: Any, owner: str, repo: str, restrict_scope_to_repo: bool) -> InstallationToken:
    installation: Installation = resolve_repo_installation(client, owner, repo)
    return issue_token(client, installation, {repo} if restrict_scope_to_repo else None)


def create_token_for_target(
    client: Any,
    target: RepoTarget,
    mode: OwnerMode,
    restrict_scope_to_repo: bool = False
) -> InstallationToken:
    """Resolve a RepoTarget with an existing client and issue its token."""
    if target.repo is None:
        return create_token_for_owner(client, target.owner, mode)
    return create_token_for_repo(client, target.owner, target.repo, restrict_scope_to_repo)


def derive_token(
    app_id: int,
    pem_bytes: bytes,
    specifier: str,
    passphrase: Optional[bytes] = None,
    mode: OwnerMode = OwnerMode(try_org=True, try_user=True),
    restrict_scope_to_repo: bool = False,
    api_url: Optional[str] = None,
    **client_kwargs: Any
) -> InstallationToken:
    """
    Run the whole pipeline: parse, decode, build the client, resolve, issue.

    Raises:
        GhatokenError: The first failure of any stage
    """
    target = parse_specifier(specifier)
    key = decode_private_key(pem_bytes, passphrase)
    client = new_app_client(app_id, key, enterprise_host=target.enterprise_host, api_url=api_url, **client_kwargs)
    return create_token_for_target(client, target, mode, restrict_scope_to_repo)


def validate_app_id(app_id: str) -> int:
    """
    Validate GitHub App ID is a positive integer.

    Raises:
        ValidationError: If validation fails
    """
    if not re.fullmatch(r'[0-9]+', app_id) or int(app_id) <= 0:
        raise ValidationError(
            f"App ID must be a positive integer: '{app_id}'\n"
            "Example: 123456"
        )
    return int(app_id)


def validate_jwt_expiry(expiry: int) -> None:
    """
    Validate JWT expiry is within allowed range.

    Raises:
        ValidationError: If expiry is out of range
    """
    if expiry < MIN_JWT_EXPIRY or expiry > MAX_JWT_EXPIRY:
        raise ValidationError(
            f"JWT expiry must be between {MIN_JWT_EXPIRY} and {MAX_JWT_EXPIRY} seconds"
        )


def validate_api_url(api_url: str) -> None:
    """
    Validate that the API URL has proper syntax and uses http:// or https://.

    Raises:
        ValidationError: If the URL is invalid or uses an unsupported scheme
    """
    try:
        parsed = urlsplit(api_url)
    except ValueError as e:
        raise ValidationError(f"Invalid API URL format: '{api_url}'\nError: {e}") from e

    if parsed.scheme not in ('http', 'https'):
        raise ValidationError(
            f"Invalid API URL: '{api_url}'\n"
            f"The URL must use either 'http://' or 'https://'.\n"
            f"Example: https://github.example.com/api/v3"
        )

    if not parsed.netloc:
        raise ValidationError(
            f"Invalid API URL: '{api_url}'\n"
            f"The URL must include a valid domain."
        )


def load_private_key_pem(args: argparse.Namespace) -> bytes:
    """
    Read the private key PEM from a file, stdin or an environment variable.

    Raises:
        ValidationError: If no source is given or the source is empty/unreadable
    """
    if args.private_key_file:
        if args.private_key_file == '-':
            return sys.stdin.buffer.read()
        try:
            with open(os.path.expanduser(args.private_key_file), 'rb') as key_file:
                return key_file.read()
        except OSError as e:
            raise ValidationError(f"failed to load private key pem from '{args.private_key_file}': {e}") from e

    if args.private_key_env:
        value = os.environ.get(args.private_key_env, '')
        if not value:
            raise ValidationError(f"private key environment '{args.private_key_env}' is not set or empty")
        return value.encode('utf-8')

    raise ValidationError(
        "you must specify either file name (--private-key-file) "
        "or environment name (--private-key-env) for the private key"
    )


def prompt_for_passphrase(prompt_text: str = "Enter private key passphrase: ") -> str:
    """Prompt for the passphrase on stderr without echoing it."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.output import create_output

    session: PromptSession = PromptSession(output=create_output(stdout=sys.stderr))
    try:
        return session.prompt(prompt_text, is_password=True)
    except (EOFError, KeyboardInterrupt):
        eprint()
        fatal_error("Input cancelled by user")


def read_passphrase(args: argparse.Namespace) -> Optional[bytes]:
    """Return the passphrase from the prompt or the configured environment variable."""
    if args.ask_passphrase:
        return prompt_for_passphrase().encode('utf-8')
    value = os.environ.get(args.passphrase_env, '')
    return value.encode('utf-8') if value else None


def output_token(token: InstallationToken, output_format: str) -> None:
    """
    Output the installation token in the specified format.

    The text format writes the bare token without a trailing newline so that
    it can be captured directly by shell command substitution.
    """
    if output_format == 'json':
        output: Dict[str, Any] = {
            'token': token.token,
            'expires_at': token.expires_at or '',
            'permissions': token.permissions or {},
            'repository_selection': token.repository_selection or ''
        }
        try:
            exp_dt = datetime.fromisoformat((token.expires_at or '').replace('Z', '+00:00'))
            output['expires_in_seconds'] = int((exp_dt - datetime.now(timezone.utc)).total_seconds())
        except (ValueError, TypeError):
            pass
        print(json.dumps(output, indent=2))

    elif output_format == 'env':
        print(f"export GITHUB_TOKEN={token.token}")

    elif output_format == 'header':
        print(f"Authorization: Bearer {token.token}")

    else:  # text (default)
        sys.stdout.write(token.token)
        sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ghatoken',
        description="Generate a GitHub App installation token for a repository or owner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Token for the installation covering a repository
  %(prog)s -f app.pem 123456 dayflower/ghatoken

  # Token restricted to that one repository
  %(prog)s -f app.pem -r 123456 https://github.com/dayflower/ghatoken.git

  # Token for an organization installation, key taken from $APP_KEY
  %(prog)s -e APP_KEY --force-owner org 123456 dayflower

  # GitHub Enterprise Server (API URL derived as https://HOST/api/v3)
  %(prog)s -f app.pem 123456 git@enterprise.example.net:dayflower/ghatoken.git
        """
    )

    parser.add_argument('app_id', metavar='APP_ID', help='GitHub App ID')
    parser.add_argument('repo', metavar='REPO', help='Repository or owner (URL, SCP-like or owner[/repo])')

    parser.add_argument(
        '-f', '--private-key-file',
        help="Private key file ('-' reads stdin)"
    )
    parser.add_argument(
        '-e', '--private-key-env',
        help='Name of the environment variable holding the private key'
    )
    parser.add_argument(
        '-s', '--passphrase-env',
        default=DEFAULT_PASSPHRASE_ENV,
        help=f'Name of the environment variable holding the key passphrase (default: {DEFAULT_PASSPHRASE_ENV})'
    )
    parser.add_argument(
        '--ask-passphrase',
        action='store_true',
        help='Prompt for the key passphrase instead of reading it from the environment'
    )
    parser.add_argument(
        '--force-owner',
        choices=['org', 'user'],
        help='Force owner recognition (default: try org, then user)'
    )
    parser.add_argument(
        '-r', '--restrict-scope-repo',
        action='store_true',
        help='Restrict token scope to the specified repo only'
    )

    # Configuration arguments
    parser.add_argument(
        '--api-url',
        help='GitHub API base URL (default: derived from the REPO host)'
    )
    parser.add_argument(
        '--jwt-expiry',
        type=int,
        default=DEFAULT_JWT_EXPIRY,
        help=f'JWT expiry time in seconds, 1-{MAX_JWT_EXPIRY} (default: {DEFAULT_JWT_EXPIRY})'
    )
    parser.add_argument(
        '--user-agent',
        default=DEFAULT_USER_AGENT,
        help=f'Custom User-Agent header (default: {DEFAULT_USER_AGENT})'
    )
    parser.add_argument(
        '--output-format',
        choices=['text', 'json', 'env', 'header'],
        default='text',
        help='Output format (default: text)'
    )

    # Mode arguments
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output (verbose mode)'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Quiet mode - suppress progress messages'
    )
    parser.add_argument(
        '-v', '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse and return command-line arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.quiet and args.debug:
        parser.error("--quiet and --debug are mutually exclusive")

    if args.private_key_file and args.private_key_env:
        parser.error("--private-key-file and --private-key-env are mutually exclusive")

    return args


def run(args: argparse.Namespace) -> InstallationToken:
    """
    Derive the token described by parsed command-line arguments.

    Raises:
        GhatokenError: On any validation or pipeline failure
    """
    app_id: int = validate_app_id(args.app_id)
    validate_jwt_expiry(args.jwt_expiry)
    if args.api_url:
        validate_api_url(args.api_url)

    target: RepoTarget = parse_specifier(args.repo)
    debug_print(f"Target: host={target.enterprise_host or GITHUB_DOT_COM} "
                f"owner={target.owner} repo={target.repo or '(none)'}", args.debug)

    pem_bytes: bytes = load_private_key_pem(args)
    passphrase: Optional[bytes] = read_passphrase(args)
    key: rsa.RSAPrivateKey = decode_private_key(pem_bytes, passphrase)
    debug_print(f"Private key decoded ({key.key_size} bits)", args.debug)

    client: GitHubAppClient = new_app_client(
        app_id,
        key,
        enterprise_host=target.enterprise_host,
        api_url=args.api_url,
        user_agent=args.user_agent,
        jwt_expiry=args.jwt_expiry,
        debug=args.debug
    )
    debug_print(f"API URL: {client.base_url}", args.debug)

    mode: OwnerMode = OwnerMode.from_force_owner(args.force_owner)
    token: InstallationToken = create_token_for_target(client, target, mode, args.restrict_scope_repo)

    debug_print(f"Token: {mask_token(token.token)}", args.debug)
    if token.expires_at:
        debug_print(f"Expires at: {token.expires_at}", args.debug)
    return token


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)
    try:
        token = run(args)
    except GhatokenError as e:
        fatal_error(str(e))

    if not args.quiet and not args.debug:
        eprint("Successfully obtained installation token!")
    output_token(token, args.output_format)


def entry_point() -> None:
    try:
        main()
    except KeyboardInterrupt:
        eprint("\nInterrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    entry_point()
