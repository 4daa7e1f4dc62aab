"""
HTTP surface of the wiki.

A stdlib ``ThreadingHTTPServer`` with one handler class. Reads run on
their own threads in parallel; writes funnel into the content store,
which serializes them.

Serves:
    GET  /<path>[?revision=]       -> rendered page (303 to the editor if missing)
    GET  /meta/raw/<path>          -> raw source with its mime type
    GET  /meta/history/<path>      -> JSON commit list
    GET  /meta/profile/<email>     -> JSON profile and recent commits
    GET  /meta/new/<path>          -> create form
    GET  /meta/edit/<path>         -> edit form
    POST /meta/new/<path>          -> create a page
    POST /meta/edit/<path>         -> update a page
    POST /meta/render              -> preview HTML
    GET|POST /meta/login           -> start a login (form without ?url=)
    GET  /meta/login-callback      -> finish a login, set the cookie
    GET|POST /meta/logout          -> end the session
"""

from __future__ import annotations

import html
import json
import logging
from datetime import timedelta
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

from . import __version__
from .config import WikiConfig
from .errors import (
    GitaliteError,
    HandshakeError,
    NotFound,
    PageExists,
    RenderError,
    SyncConflict,
    ValidationError,
)
from .handshake import IdentityHandshake
from .models import CommitInfo, SessionView, WriteResult, WriteState
from .renderer import PandocRenderer, Renderer, format_for_path, split_front_matter
from .sessions import SESSION_COOKIE_NAME, SessionBinder, open_session_store
from .store import GitContentStore, infer_mime
from .vault import CredentialVault

logger = logging.getLogger("gitalite.server")

INDEX_PAGE = "index.md"
MAX_BODY_BYTES = 16 * 1024 * 1024
PROFILE_COMMITS = 10
PENDING_MESSAGE = "saved, but not yet synchronized"

_FORM_TYPE = "application/x-www-form-urlencoded"

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<nav>{nav}</nav>
<main>
{body}
</main>
</body>
</html>
"""

_EDIT_FORM = """<h1>{heading}</h1>
<form method="post" action="{action}">
<textarea name="content" rows="30" cols="100">{content}</textarea>
<p><input name="message" placeholder="{message}" size="60"></p>
<p><button type="submit">Save</button></p>
</form>
"""

_LOGIN_FORM = """<h1>Log in</h1>
<form method="post" action="/meta/login">
<input name="url" type="url" placeholder="https://you.example.com/" size="40">
<button type="submit">Log in</button>
</form>
"""


class _HttpError(Exception):
    """Short-circuits a request with a status and a message."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(message)


class WikiApp:
    """Everything a request handler needs, built once at startup."""

    def __init__(
        self,
        config: WikiConfig,
        vault: CredentialVault,
        sessions: SessionBinder,
        handshake: IdentityHandshake,
        store: GitContentStore,
        renderer: Renderer,
    ) -> None:
        self.config = config
        self.vault = vault
        self.sessions = sessions
        self.handshake = handshake
        self.store = store
        self.renderer = renderer

    @property
    def secure_cookies(self) -> bool:
        return self.config.client_id.startswith("https://")


def build_app(config: WikiConfig) -> WikiApp:
    """Unlock the vault, open the store, and wire up the collaborators.

    Raises:
        VaultError: If the vault cannot be opened (fatal at startup).
        ConfigError: For an unusable session store.
    """
    vault = CredentialVault.unlock_from_files(
        config.users.database,
        config.users.password,
        seed=config.users.initial,
    )
    sessions = SessionBinder(
        vault,
        open_session_store(config.session_store),
        ttl=timedelta(hours=config.session_ttl_hours),
    )
    handshake = IdentityHandshake(
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        login_timeout=config.login_timeout_minutes * 60.0,
    )
    store = GitContentStore.from_config(config)
    renderer = PandocRenderer(config.renderer.pandoc_path, config.renderer.timeout)
    return WikiApp(config, vault, sessions, handshake, store, renderer)


def _commit_json(commit: CommitInfo, app: WikiApp) -> dict:
    author = app.store.resolve_author(commit, app.vault)
    return {
        "commit_id": commit.commit_id,
        "author": author.name,
        "email": author.email,
        "profile_url": author.identity.profile_url if author.identity else None,
        "timestamp": commit.timestamp.isoformat(),
        "message": commit.message,
        "files": commit.files,
    }


class WikiHandler(BaseHTTPRequestHandler):
    """Routes wiki requests. ``app`` is bound by ``start_server``."""

    app: Optional[WikiApp] = None
    server_version = f"gitalite/{__version__}"

    def do_GET(self):
        self._dispatch("GET")

    def do_POST(self):
        self._dispatch("POST")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, method: str) -> None:
        parts = urlsplit(self.path)
        route = unquote(parts.path)
        self.query = {k: v[0] for k, v in parse_qs(parts.query).items()}

        try:
            self._route(method, route)
        except _HttpError as exc:
            self._send_error_page(exc.status, exc.message)
        except ValidationError as exc:
            self._send_error_page(400, str(exc))
        except HandshakeError as exc:
            logger.info("Login rejected (%s): %s", exc.kind.value, exc)
            self._send_error_page(400, f"Login failed: {exc}")
        except NotFound as exc:
            self._send_error_page(404, f"Not found: {exc}")
        except PageExists as exc:
            self._send_error_page(409, f"{exc} already exists")
        except SyncConflict as exc:
            logger.warning("Write conflict: %s", exc)
            self._send_error_page(409, f"The wiki changed while saving; try again. ({exc})")
        except RenderError as exc:
            self._send_error_page(422, f"Could not render: {exc}")
        except GitaliteError as exc:
            logger.error("Request %s %s failed: %s", method, route, exc)
            self._send_error_page(500, str(exc))

    def _route(self, method: str, route: str) -> None:
        if method == "GET":
            if route == "/":
                return self._view_page(INDEX_PAGE)
            if route.startswith("/meta/raw/"):
                return self._raw(route[len("/meta/raw/"):])
            if route.startswith("/meta/history/"):
                return self._history(route[len("/meta/history/"):])
            if route.startswith("/meta/profile/"):
                return self._profile(route[len("/meta/profile/"):])
            if route.startswith("/meta/new/"):
                return self._new_form(route[len("/meta/new/"):])
            if route.startswith("/meta/edit/"):
                return self._edit_form(route[len("/meta/edit/"):])
            if route == "/meta/login":
                return self._login(self.query.get("url"))
            if route == "/meta/login-callback":
                return self._login_callback()
            if route == "/meta/logout":
                return self._logout()
            if route.startswith("/meta/"):
                raise _HttpError(404, "No such page")
            return self._view_page(route.lstrip("/"))

        form, raw = self._read_body()
        if route.startswith("/meta/new/"):
            return self._save(route[len("/meta/new/"):], form, raw, create=True)
        if route.startswith("/meta/edit/"):
            return self._save(route[len("/meta/edit/"):], form, raw, create=False)
        if route == "/meta/render":
            return self._preview(form, raw)
        if route == "/meta/login":
            return self._login(form.get("url") or self.query.get("url"))
        if route == "/meta/logout":
            return self._logout()
        raise _HttpError(405, "Method not allowed")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session_token(self) -> Optional[str]:
        header = self.headers.get("Cookie")
        if not header:
            return None
        cookie = SimpleCookie()
        try:
            cookie.load(header)
        except CookieError:
            return None
        morsel = cookie.get(SESSION_COOKIE_NAME)
        return morsel.value if morsel else None

    def _session(self) -> Optional[SessionView]:
        return self.app.sessions.resolve(self._session_token())

    def _require_writer(self) -> SessionView:
        view = self._session()
        if view is None:
            raise _HttpError(401, "Log in to edit pages")
        if not view.can_write:
            raise _HttpError(403, f"{view.session.profile_url} may not edit this wiki")
        return view

    def _cookie_header(self, token: str, max_age: int) -> str:
        cookie = f"{SESSION_COOKIE_NAME}={token}; Path=/; HttpOnly; SameSite=Lax; Max-Age={max_age}"
        if self.app.secure_cookies:
            cookie += "; Secure"
        return cookie

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _view_page(self, path: str) -> None:
        store = self.app.store
        revision = self.query.get("revision")
        if revision is None and not store.exists(path):
            return self._redirect(f"/meta/new/{quote(path)}")

        data = store.read(path, revision=revision)
        mime = infer_mime(path)
        if not mime.startswith("text/"):
            if mime not in self.app.config.allowed_mime_types:
                raise _HttpError(415, f"{mime} is not served")
            return self._send(200, data, mime)

        front_matter, body = split_front_matter(data.decode("utf-8", "replace"))
        rendered = self.app.renderer.render(format_for_path(path), body.encode("utf-8"))
        title = front_matter.title or path
        links = (
            f'<a href="/meta/edit/{quote(path)}">edit</a> '
            f'<a href="/meta/history/{quote(path)}">history</a>'
        )
        if revision:
            links += f" <em>revision {html.escape(revision)}</em>"
        self._send_html(200, title, f"<p>{links}</p>\n{rendered.decode('utf-8', 'replace')}")

    def _raw(self, path: str) -> None:
        data = self.app.store.read(path, revision=self.query.get("revision"))
        self._send(200, data, infer_mime(path))

    def _history(self, path: str) -> None:
        commits = [_commit_json(c, self.app) for c in self.app.store.history(path)]
        self._send_json(200, {"path": path, "commits": commits})

    def _profile(self, email: str) -> None:
        record = self.app.vault.find_by_email(email)
        commits = [
            _commit_json(c, self.app)
            for c in self.app.store.history_by_author(email, limit=PROFILE_COMMITS)
        ]
        if record is None and not commits:
            raise NotFound(email)
        self._send_json(200, {
            "email": email,
            "name": record.identity.display_name if record else None,
            "profile_url": record.identity.profile_url if record else None,
            "role": record.role.value if record else None,
            "commits": commits,
        })

    def _new_form(self, path: str) -> None:
        self._require_writer()
        if self.app.store.exists(path):
            return self._redirect(f"/meta/edit/{quote(path)}")
        self._send_html(200, f"New: {path}", _EDIT_FORM.format(
            heading=html.escape(f"Create {path}"),
            action=f"/meta/new/{quote(path)}",
            content="",
            message=html.escape(f"[create] {path}"),
        ))

    def _edit_form(self, path: str) -> None:
        self._require_writer()
        data = self.app.store.read(path)
        self._send_html(200, f"Edit: {path}", _EDIT_FORM.format(
            heading=html.escape(f"Edit {path}"),
            action=f"/meta/edit/{quote(path)}",
            content=html.escape(data.decode("utf-8", "replace")),
            message=html.escape(f"[update] {path}"),
        ))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _read_body(self) -> tuple[dict[str, str], bytes]:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_BODY_BYTES:
            raise _HttpError(413, "Request body too large")
        raw = self.rfile.read(length) if length else b""
        content_type = (self.headers.get("Content-Type") or "").split(";", 1)[0].strip().lower()
        if content_type == _FORM_TYPE:
            parsed = parse_qs(raw.decode("utf-8", "replace"), keep_blank_values=True)
            return {k: v[0] for k, v in parsed.items()}, b""
        return {}, raw

    def _save(self, path: str, form: dict[str, str], raw: bytes, create: bool) -> None:
        view = self._require_writer()
        store = self.app.store

        if not create and not store.exists(path):
            raise NotFound(path)

        if form:
            data = form.get("content", "").replace("\r\n", "\n").encode("utf-8")
            mime = form.get("mime") or infer_mime(path)
            message = form.get("message")
        else:
            # raw uploads carry their own content type
            data = raw
            mime = self.headers.get("Content-Type") or infer_mime(path)
            message = self.query.get("message")
        if not message or not message.strip():
            message = f"[{'create' if create else 'update'}] {path}"

        path = store.validate_write(path, mime, view.identity, message)
        if infer_mime(path).startswith("text/"):
            self._check_renders(path, data)

        result = store.write(path, data, mime, view.identity, message, expect_absent=create)
        self._write_outcome(result, path)

    def _check_renders(self, path: str, data: bytes) -> None:
        """Raise RenderError for content that could not be viewed once saved."""
        _front_matter, body = split_front_matter(data.decode("utf-8", "replace"))
        self.app.renderer.render(format_for_path(path), body.encode("utf-8"))

    def _write_outcome(self, result: WriteResult, path: str) -> None:
        if result.state == WriteState.PUSHED:
            return self._redirect(f"/{quote(path)}")
        logger.warning("Write of %s pending sync: %s", path, result.warning)
        body = (
            f"<p>{PENDING_MESSAGE}</p>\n"
            f"<p><code>{html.escape(result.commit_id)}</code>: {html.escape(result.warning or '')}</p>\n"
            f'<p><a href="/{quote(path)}">{html.escape(path)}</a></p>'
        )
        self._send_html(202, PENDING_MESSAGE, body)

    def _preview(self, form: dict[str, str], raw: bytes) -> None:
        if form:
            content = form.get("content", "").encode("utf-8")
            fmt = form.get("format") or self.query.get("format") or "markdown"
        else:
            content = raw
            fmt = self.query.get("format") or "markdown"
        if not self.app.renderer.supports(fmt):
            raise ValidationError(f"unsupported format: {fmt}")
        self._send(200, self.app.renderer.render(fmt, content), "text/html; charset=utf-8")

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def _login(self, url: Optional[str]) -> None:
        if not url:
            return self._send_html(200, "Log in", _LOGIN_FORM)
        location, _nonce = self.app.handshake.begin(url)
        self._redirect(location)

    def _login_callback(self) -> None:
        profile = self.app.handshake.complete(self.query.get("state"), self.query.get("code"))
        view = self.app.sessions.create(profile.profile_url)
        max_age = int(self.app.sessions.ttl.total_seconds())
        self._redirect("/", cookie=self._cookie_header(view.session.token, max_age))

    def _logout(self) -> None:
        self.app.sessions.invalidate(self._session_token())
        self._redirect("/", cookie=self._cookie_header("", 0))

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _nav(self) -> str:
        view = self._session()
        if view is None:
            return '<a href="/">home</a> <a href="/meta/login">log in</a>'
        who = view.identity.display_name if view.identity else view.session.profile_url
        return f'<a href="/">home</a> {html.escape(who)} <a href="/meta/logout">log out</a>'

    def _send(self, status: int, body: bytes, content_type: str, headers: Optional[dict] = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def _send_html(self, status: int, title: str, body: str) -> None:
        page = _LAYOUT.format(title=html.escape(title), nav=self._nav(), body=body)
        self._send(status, page.encode("utf-8"), "text/html; charset=utf-8")

    def _send_json(self, status: int, data: dict) -> None:
        body = json.dumps(data, indent=2, default=str).encode("utf-8")
        self._send(status, body, "application/json")

    def _send_error_page(self, status: int, message: str) -> None:
        self._send_html(status, f"Error {status}", f"<p>{html.escape(message)}</p>")

    def _redirect(self, location: str, cookie: Optional[str] = None) -> None:
        headers = {"Location": location}
        if cookie:
            headers["Set-Cookie"] = cookie
        self._send(303, b"", "text/plain", headers)

    def log_message(self, format, *args):
        logger.debug("HTTP: %s", format % args)


def start_server(app: WikiApp, host: str = "127.0.0.1", port: int = 3000) -> ThreadingHTTPServer:
    """Bind the wiki to ``host:port``.

    Args:
        app: The wired-up application.
        host: Interface to listen on.
        port: Port to listen on (0 picks a free one).

    Returns:
        ThreadingHTTPServer: Call serve_forever() or run it in a thread.
    """
    handler = type("BoundWikiHandler", (WikiHandler,), {"app": app})
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    logger.info("Wiki listening on http://%s:%d", host, server.server_address[1])
    return server
