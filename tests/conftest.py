import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import pytest

from recordsync.config import Settings
from recordsync.db.database import Database
from recordsync.db.kv_store import KeyValueStore
from recordsync.models.schemas import AuthSession, User
from recordsync.services.events import EventChannel
from recordsync.services.http_client import HTTPClient
from recordsync.services.local_cache import LocalCache
from recordsync.services.sync_engine import SyncEngine
from recordsync.services.token_store import TokenStore

ACCESS_TOKEN = "access-token-123"
REFRESH_TOKEN = "refresh-token-456"
PASSWORD = "secret"

USER = {
    "id": "u-1",
    "username": "tester",
    "email": "test@example.com",
    "is_active": True,
    "profile_data": {},
    "created_at": "2026-01-01T00:00:00Z",
    "updated_at": "2026-01-01T00:00:00Z",
}


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict
    headers: dict
    body: bytes


class FakeBackend:
    """In-process stand-in for the transcription backend's REST surface."""

    def __init__(self):
        self.recordings: dict[str, dict] = {}
        self.requests: list[RecordedRequest] = []
        # (method, path) -> (status, json body or None)
        self.overrides: dict[tuple[str, str], tuple[int, object]] = {}
        # path -> (status, location)
        self.redirects: dict[str, tuple[int, str]] = {}
        self.upload_response: dict | None = None
        self.templates: dict[int, dict] = {}
        self._next_template_id = 1
        self.add_template("Standard meeting summary", system=True, default=True)
        self.lock = threading.Lock()
        self._server: ThreadingHTTPServer | None = None

    # --- Lifecycle ---

    def start(self) -> None:
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        self._server.daemon_threads = True
        self._server.backend = self
        threading.Thread(target=self._server.serve_forever, daemon=True).start()

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/api"

    # --- Helpers for tests ---

    def add_recording(self, title: str = "Meeting", status: str = "completed",
                      age_minutes: int = 0, transcript: str | None = "hello",
                      summary: str | None = "short") -> str:
        recording_id = str(uuid.uuid4())
        created = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=age_minutes)
        self.recordings[recording_id] = {
            "id": recording_id,
            "title": title,
            "original_filename": f"{title}.m4a",
            "format": "m4a",
            "mime_type": "audio/mp4",
            "duration": 61.5,
            "created_at": created.isoformat(),
            "file_size": 2048,
            "status": status,
            "transcript": transcript,
            "summary": summary,
        }
        return recording_id

    def add_template(self, name: str, prompt: str = "Summarize the meeting.",
                     system: bool = False, default: bool = False) -> int:
        template_id = self._next_template_id
        self._next_template_id += 1
        self.templates[template_id] = {
            "id": template_id,
            "name": name,
            "description": None,
            "prompt": prompt,
            "is_system_template": system,
            "is_user_default": default,
            "user_id": None if system else USER["id"],
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }
        return template_id

    def requests_to(self, method: str, path: str) -> list[RecordedRequest]:
        with self.lock:
            return [r for r in self.requests if r.method == method and r.path == path]

    def summary_of(self, recording: dict) -> dict:
        return {
            "id": recording["id"],
            "title": recording["title"],
            "duration": recording["duration"],
            "file_size": recording["file_size"],
            "status": recording["status"],
            "created_at": recording["created_at"],
            "has_transcript": bool(recording["transcript"]),
            "has_summary": bool(recording["summary"]),
        }


def _multipart_fields(body: bytes, content_type: str) -> dict[str, bytes]:
    boundary = content_type.split("boundary=", 1)[1]
    fields = {}
    for segment in body.split(b"--" + boundary.encode())[1:]:
        if segment.startswith(b"--"):
            break
        segment = segment.removeprefix(b"\r\n").removesuffix(b"\r\n")
        headers, _, content = segment.partition(b"\r\n\r\n")
        name = headers.split(b'name="', 1)[1].split(b'"', 1)[0].decode()
        fields[name] = content
    return fields


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def do_GET(self):
        self._handle("GET")

    def do_POST(self):
        self._handle("POST")

    def do_PUT(self):
        self._handle("PUT")

    def do_DELETE(self):
        self._handle("DELETE")

    def _send(self, status: int, payload=None, headers: dict | None = None) -> None:
        body = b"" if payload is None else json.dumps(payload).encode()
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if body:
            self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _handle(self, method: str) -> None:
        backend: FakeBackend = self.server.backend
        parts = urlsplit(self.path)
        path = parts.path
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        with backend.lock:
            backend.requests.append(RecordedRequest(
                method, path, parse_qs(parts.query), dict(self.headers.items()), body
            ))

        if path in backend.redirects:
            status, location = backend.redirects[path]
            self._send(status, headers={"Location": location})
            return
        if (method, path) in backend.overrides:
            status, payload = backend.overrides[(method, path)]
            self._send(status, payload)
            return

        path = path.replace("/api/v2/", "/api/")
        if path == "/api/system/status":
            self._send(200, {"status": "ok", "version": "1.0.0"})
            return
        if method == "POST" and path in ("/api/auth/login", "/api/auth/register"):
            data = json.loads(body or b"{}")
            if data.get("password") != PASSWORD:
                self._send(400, {"detail": "Incorrect email or password"})
                return
            self._send(200, {
                "access_token": ACCESS_TOKEN,
                "refresh_token": REFRESH_TOKEN,
                "token_type": "bearer",
                "user": USER,
            })
            return

        if self.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            self._send(401, {"detail": "Not authenticated"})
            return

        if method == "POST" and path == "/api/auth/logout":
            self._send(200, {"message": "Logged out"})
        elif method == "GET" and path == "/api/auth/me":
            self._send(200, USER)
        elif method == "GET" and path == "/api/recordings":
            self._send(307, headers={"Location": "/api/recordings/"})
        elif method == "GET" and path == "/api/recordings/":
            self._send(200, {"recordings": list(backend.recordings.values())})
        elif method == "GET" and path == "/api/recordings/summary":
            self._send(200, {"items": [backend.summary_of(r) for r in backend.recordings.values()]})
        elif method == "POST" and path == "/api/recordings/upload":
            self._upload(backend, body)
        elif path.startswith("/api/prompt-templates"):
            self._templates(backend, method, path, body)
        elif path.startswith("/api/recordings/"):
            recording_id = path.rsplit("/", 1)[1]
            if recording_id not in backend.recordings:
                self._send(404, {"detail": "Recording not found"})
            elif method == "DELETE":
                del backend.recordings[recording_id]
                self._send(204)
            else:
                self._send(200, backend.recordings[recording_id])
        else:
            self._send(404)

    def _templates(self, backend: FakeBackend, method: str, path: str, body: bytes) -> None:
        rest = path.removeprefix("/api/prompt-templates")
        if rest == "/" and method == "GET":
            self._send(200, list(backend.templates.values()))
        elif rest == "/" and method == "POST":
            data = json.loads(body)
            template_id = backend.add_template(data["name"], data["prompt"])
            backend.templates[template_id]["description"] = data.get("description")
            self._send(200, backend.templates[template_id])
        elif rest == "/default" and method == "GET":
            default = next((t for t in backend.templates.values() if t["is_user_default"]), None)
            self._send(200, {"default_template": default})
        else:
            template_id, _, action = rest.strip("/").partition("/")
            template = backend.templates.get(int(template_id)) if template_id.isdigit() else None
            if template is None:
                self._send(404, {"detail": "Template not found"})
            elif method == "POST" and action == "set-default":
                for other in backend.templates.values():
                    other["is_user_default"] = other is template
                self._send(200, {"message": "Default template updated"})
            elif method == "PUT" and not action:
                template.update(json.loads(body))
                self._send(200, template)
            elif method == "DELETE" and not action:
                del backend.templates[template["id"]]
                self._send(204)
            else:
                self._send(405)

    def _upload(self, backend: FakeBackend, body: bytes) -> None:
        fields = _multipart_fields(body, self.headers["Content-Type"])
        if backend.upload_response is not None:
            self._send(200, backend.upload_response)
            return
        recording_id = backend.add_recording(
            title=fields["title"].decode(), status="processing", age_minutes=60 * 24,
            transcript=None, summary=None,
        )
        backend.recordings[recording_id]["file_size"] = len(fields["file"])
        self._send(200, {"recording_id": recording_id, "status": "processing"})


@pytest.fixture
def backend():
    server = FakeBackend()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def settings(tmp_path, backend):
    return Settings(
        dev_base_url=backend.url,
        db_path=tmp_path / "recordsync.db",
        poll_interval_secs=0.05,
        poll_debounce_secs=0.0,
    )


class Stack:
    """The engine components wired against one database, for async tests."""

    def __init__(self, base_url: str, db_path: str):
        self.db = Database(db_path)
        self.unauthorized = EventChannel("unauthorized")
        self.base_url = base_url

    async def __aenter__(self):
        await self.db.init()
        self.kv = KeyValueStore(self.db.session_factory)
        self.tokens = TokenStore(self.kv)
        self.http = HTTPClient(self.base_url, self.tokens, self.unauthorized)
        self.cache = LocalCache(self.kv)
        self.engine = SyncEngine(self.http, self.cache)
        return self

    async def __aexit__(self, *exc):
        self.http.close()
        await self.db.dispose()

    async def authenticate(self) -> None:
        await self.tokens.save(AuthSession(
            access_token=ACCESS_TOKEN, refresh_token=REFRESH_TOKEN, user=User(**USER)
        ))


@pytest.fixture
def make_stack(tmp_path, backend):
    def factory(base_url: str | None = None) -> Stack:
        return Stack(base_url or backend.url, str(tmp_path / "stack.db"))
    return factory
