"""
IndieAuth login handshake.

Turns an anonymous visitor into a verified profile URL without the
wiki ever seeing a password:

    begin(claimed_url)   -> discover endpoints, redirect out with
                            a fresh nonce and PKCE challenge
    complete(nonce,code) -> exchange the code with the auth server,
                            check the returned ``me`` matches the
                            claimed URL

Pending attempts live in an in-memory arena keyed by nonce. Expired
entries are swept whenever the arena is touched.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import threading
import time
from html.parser import HTMLParser
from typing import Callable, Optional
from urllib.parse import urlencode, urljoin

import requests

from .errors import HandshakeError, HandshakeErrorKind, ValidationError
from .models import PendingLogin, VerifiedProfile, normalize_url

logger = logging.getLogger("gitalite.handshake")

DEFAULT_SCOPE = "profile email"
DEFAULT_LOGIN_TIMEOUT = 600.0
HTTP_TIMEOUT = 10.0

_METADATA_REL = "indieauth-metadata"
_AUTHORIZATION_REL = "authorization_endpoint"
_TOKEN_REL = "token_endpoint"


class _LinkCollector(HTMLParser):
    """Collects ``<link rel=... href=...>`` pairs from a profile page."""

    def __init__(self) -> None:
        super().__init__()
        self.links: dict[str, str] = {}

    def handle_starttag(self, tag, attrs):
        if tag != "link":
            return
        attr = dict(attrs)
        href = attr.get("href")
        if not href:
            return
        for rel in (attr.get("rel") or "").split():
            self.links.setdefault(rel.lower(), href)


def _pkce_pair() -> tuple[str, str]:
    """Return a (verifier, S256 challenge) pair."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class IdentityHandshake:
    """Runs IndieAuth authorization-code logins.

    Args:
        client_id: The wiki's public URL, registered as the client.
        redirect_uri: Where the auth server sends the visitor back.
        login_timeout: Seconds a pending attempt stays valid.
        http: Session used for discovery and code exchange.
        clock: Time source, in seconds.
    """

    def __init__(
        self,
        client_id: str,
        redirect_uri: str,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        scope: str = DEFAULT_SCOPE,
    ) -> None:
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.login_timeout = login_timeout
        self.scope = scope
        self.http = http or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[str, PendingLogin] = {}

    # ------------------------------------------------------------------
    # Requested -> AuthorizationPending
    # ------------------------------------------------------------------

    def begin(self, claimed_url: str) -> tuple[str, str]:
        """Start a login for ``claimed_url``.

        Args:
            claimed_url: Profile URL the visitor says is theirs.

        Returns:
            (authorization_url, nonce). Redirect the visitor to the URL.

        Raises:
            ValidationError: If the URL cannot be a profile URL.
            HandshakeError: DISCOVERY_FAILED if no auth endpoint is found.
        """
        try:
            claimed = normalize_url(claimed_url)
        except ValueError as exc:
            raise ValidationError(f"invalid profile URL: {exc}") from exc

        authorization_endpoint, token_endpoint = self.discover(claimed)

        nonce = secrets.token_urlsafe(24)
        verifier, challenge = _pkce_pair()
        now = self._clock()
        pending = PendingLogin(
            nonce=nonce,
            claimed_url=claimed,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            code_verifier=verifier,
            redirect_uri=self.redirect_uri,
            created_at=now,
            expires_at=now + self.login_timeout,
        )

        with self._lock:
            self._sweep(now)
            self._pending[nonce] = pending

        query = urlencode({
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": nonce,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "scope": self.scope,
            "me": claimed,
        })
        sep = "&" if "?" in authorization_endpoint else "?"
        logger.info("Login started for %s via %s", claimed, authorization_endpoint)
        return f"{authorization_endpoint}{sep}{query}", nonce

    def discover(self, profile_url: str) -> tuple[str, Optional[str]]:
        """Find the authorization and token endpoints of a profile.

        Checks for an ``indieauth-metadata`` document first, then for
        the older ``authorization_endpoint`` / ``token_endpoint`` rels,
        in HTTP Link headers and in the page's ``<link>`` tags.

        Returns:
            (authorization_endpoint, token_endpoint or None).
        """
        try:
            resp = self.http.get(
                profile_url,
                headers={"Accept": "text/html, application/xhtml+xml"},
                timeout=HTTP_TIMEOUT,
                allow_redirects=True,
            )
        except requests.Timeout as exc:
            raise HandshakeError(HandshakeErrorKind.TIMEOUT, f"discovery timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise HandshakeError(
                HandshakeErrorKind.DISCOVERY_FAILED, f"could not fetch {profile_url}: {exc}"
            ) from exc

        base = resp.url or profile_url
        links: dict[str, str] = {}
        for rel, link in (resp.links or {}).items():
            if link.get("url"):
                for name in rel.split():
                    links.setdefault(name.lower(), urljoin(base, link["url"]))

        content_type = resp.headers.get("Content-Type", "")
        if "html" in content_type and resp.text:
            collector = _LinkCollector()
            collector.feed(resp.text)
            for rel, href in collector.links.items():
                links.setdefault(rel, urljoin(base, href))

        if _METADATA_REL in links:
            metadata = self._fetch_metadata(links[_METADATA_REL])
            auth = metadata.get(_AUTHORIZATION_REL)
            if auth:
                return auth, metadata.get(_TOKEN_REL)

        auth = links.get(_AUTHORIZATION_REL)
        if not auth:
            raise HandshakeError(
                HandshakeErrorKind.DISCOVERY_FAILED,
                f"no authorization endpoint advertised by {profile_url}",
            )
        return auth, links.get(_TOKEN_REL)

    def _fetch_metadata(self, url: str) -> dict:
        try:
            resp = self.http.get(url, headers={"Accept": "application/json"}, timeout=HTTP_TIMEOUT)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as exc:
            raise HandshakeError(HandshakeErrorKind.TIMEOUT, f"metadata fetch timed out: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise HandshakeError(
                HandshakeErrorKind.DISCOVERY_FAILED, f"bad metadata at {url}: {exc}"
            ) from exc
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # AuthorizationPending -> TokenExchanged -> Authenticated
    # ------------------------------------------------------------------

    def complete(self, nonce: Optional[str], code: Optional[str]) -> VerifiedProfile:
        """Finish a login from the auth server's callback.

        The pending attempt is removed before anything else happens, so
        a nonce can be spent at most once whatever the outcome.

        Args:
            nonce: The ``state`` query parameter.
            code: The authorization code.

        Returns:
            The verified profile.

        Raises:
            HandshakeError: INVALID_STATE, TIMEOUT, EXCHANGE_FAILED or
                IDENTITY_MISMATCH.
        """
        now = self._clock()
        with self._lock:
            self._sweep(now)
            pending = self._pending.pop(nonce, None) if nonce else None

        if pending is None:
            logger.warning("Login callback with unknown or expired state")
            raise HandshakeError(
                HandshakeErrorKind.INVALID_STATE, "login attempt is unknown or has expired"
            )
        if not code:
            raise HandshakeError(HandshakeErrorKind.EXCHANGE_FAILED, "callback carried no code")

        data = self._exchange(pending, code)

        try:
            verified_url = normalize_url(data.get("me", ""))
        except ValueError as exc:
            raise HandshakeError(
                HandshakeErrorKind.EXCHANGE_FAILED, f"auth server returned a bad 'me': {exc}"
            ) from exc

        if verified_url != pending.claimed_url:
            logger.warning(
                "Identity mismatch: claimed %s, verified %s",
                pending.claimed_url,
                verified_url,
            )
            raise HandshakeError(
                HandshakeErrorKind.IDENTITY_MISMATCH,
                f"auth server vouched for {verified_url}, not {pending.claimed_url}",
            )

        profile = data.get("profile") or {}
        if not isinstance(profile, dict):
            profile = {}
        logger.info("Login verified for %s", verified_url)
        return VerifiedProfile(
            profile_url=verified_url,
            name=profile.get("name"),
            email=profile.get("email"),
            photo=profile.get("photo"),
        )

    def _exchange(self, pending: PendingLogin, code: str) -> dict:
        """Redeem the code at the authorization endpoint (profile flow)."""
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "redirect_uri": pending.redirect_uri,
            "code_verifier": pending.code_verifier,
        }
        try:
            resp = self.http.post(
                pending.authorization_endpoint,
                data=form,
                headers={"Accept": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
        except requests.Timeout as exc:
            raise HandshakeError(HandshakeErrorKind.TIMEOUT, f"code exchange timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise HandshakeError(HandshakeErrorKind.EXCHANGE_FAILED, f"code exchange failed: {exc}") from exc

        if resp.status_code >= 400:
            raise HandshakeError(
                HandshakeErrorKind.EXCHANGE_FAILED,
                f"auth server refused the code: {resp.status_code} {resp.text[:200]}",
            )
        try:
            data = resp.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise HandshakeError(
                HandshakeErrorKind.EXCHANGE_FAILED, f"auth server sent non-JSON reply: {exc}"
            ) from exc
        if not isinstance(data, dict) or "me" not in data:
            raise HandshakeError(HandshakeErrorKind.EXCHANGE_FAILED, "auth server reply has no 'me'")
        return data

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    def abandon(self, nonce: str) -> None:
        """Drop a pending attempt, if any."""
        with self._lock:
            self._pending.pop(nonce, None)

    def pending_count(self) -> int:
        """Number of live pending attempts (sweeps first)."""
        with self._lock:
            self._sweep(self._clock())
            return len(self._pending)

    def _sweep(self, now: float) -> None:
        expired = [n for n, p in self._pending.items() if p.expires_at <= now]
        for nonce in expired:
            del self._pending[nonce]
        if expired:
            logger.debug("Swept %d expired login attempt(s)", len(expired))
