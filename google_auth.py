import json
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

import httpx
import jwt

SPREADSHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DRIVE_FILE_SCOPE = "https://www.googleapis.com/auth/drive.file"

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Tokens are treated as expired this many seconds before Google says so
EXPIRY_MARGIN_SECONDS = 30


class AuthError(RuntimeError):
    """No usable bearer token could be obtained"""


class StaticTokenProvider:
    """Wraps a token issued elsewhere (e.g. GOOGLE_ACCESS_TOKEN); scopes are the issuer's problem"""

    def __init__(self, token: str):
        if not token:
            raise AuthError("Empty access token")
        self.token = token

    def get_access_token(self, scopes: Optional[Iterable[str]] = None) -> str:
        return self.token


class ServiceAccountTokenProvider:
    """
    Bearer tokens for a Google service account.

    Signs an RS256 assertion with the account's private key and trades it for
    an access token. The token is cached with its expiry and the set of scopes
    it was granted; asking for a scope outside that set fetches a new token
    covering the union.
    """

    def __init__(
        self,
        info: Dict[str, Any],
        http_client: Optional[httpx.Client] = None,
        timeout: float = 20.0,
        clock: Callable[[], float] = time.time,
    ):
        missing = [k for k in ("client_email", "private_key") if not info.get(k)]
        if missing:
            raise AuthError(f"Service account info missing {', '.join(missing)}")
        self.info = info
        self.token_uri = info.get("token_uri") or DEFAULT_TOKEN_URI
        self.http = http_client or httpx.Client(timeout=timeout)
        self.clock = clock

        self._access_token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._granted_scopes: Set[str] = set()

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "ServiceAccountTokenProvider":
        try:
            with open(path, 'r', encoding='utf-8') as f:
                info = json.load(f)
        except (OSError, ValueError) as e:
            raise AuthError(f"Could not load service account file {path}: {e}") from e
        return cls(info, **kwargs)

    def _token_valid(self) -> bool:
        return (
            self._access_token is not None
            and self._expires_at is not None
            and self.clock() < self._expires_at
        )

    def _build_assertion(self, scopes: Set[str]) -> str:
        now = int(self.clock())
        payload = {
            "iss": self.info["client_email"],
            "scope": " ".join(sorted(scopes)),
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": self.info["private_key_id"]} if self.info.get("private_key_id") else None
        return jwt.encode(payload, self.info["private_key"], algorithm="RS256", headers=headers)

    def get_access_token(self, scopes: Optional[Iterable[str]] = None) -> str:
        requested = set(scopes or [SPREADSHEETS_SCOPE])
        needs_scopes = not requested.issubset(self._granted_scopes)

        if self._token_valid() and not needs_scopes:
            return self._access_token

        wanted = requested | self._granted_scopes
        print(f"[Google] Requesting access token (scopes={sorted(wanted)}, new_scopes={needs_scopes})")

        try:
            response = self.http.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": self._build_assertion(wanted)},
            )
        except httpx.HTTPError as e:
            print(f"[Google] ❌ Token request failed: {e}")
            raise AuthError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            print(f"[Google] ❌ Token error {response.status_code}: {response.text[:200]}")
            raise AuthError(f"Token endpoint returned HTTP {response.status_code}")

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise AuthError(body.get("error") or "No access token returned")

        expires_in = int(body.get("expires_in") or 3600)
        self._access_token = token
        self._expires_at = self.clock() + max(1, expires_in - EXPIRY_MARGIN_SECONDS)
        granted = str(body.get("scope") or "").split()
        self._granted_scopes = set(granted) if granted else wanted
        print("[Google] ✅ Access token acquired")
        return token
