import io
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from PIL import Image

from app.core.config import Settings
from app.core.database import DatabaseManager
from app.core.storage import StorageManager
from app.services.image_preprocessor import ImagePreprocessor
from app.services.inference_gateway import MeshResult
from app.services.pipeline_manager import PipelineManager

SUPABASE_URL = "https://test-project.supabase.co"
MESH_URL = "https://replicate.delivery/pbxt/abc/model.glb"
MESH_BYTES = b"glTF\x02\x00\x00\x00fake-binary-mesh"


def make_image(size=(1, 1), mode="RGB", fmt="PNG", color=(200, 30, 30)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    image = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def _parse_ts(value):
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ==================== SUPABASE STAND-IN ====================

class FakeQuery:
    """Just enough of the postgrest query builder for DatabaseManager."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self._order = None
        self._range = None
        self._limit = None

    def select(self, *columns, count=None):
        self.op = "select"
        return self

    def insert(self, data):
        self.op, self.payload = "insert", data
        return self

    def update(self, data):
        self.op, self.payload = "update", data
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def lt(self, column, value):
        bound = _parse_ts(value)
        self.filters.append(lambda row: row.get(column) is not None and _parse_ts(row[column]) < bound)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matching(self):
        return [row for row in self.db.tables[self.table] if all(f(row) for f in self.filters)]

    def execute(self):
        failure = self.db.failures.get(f"{self.table}.{self.op}")
        if failure is not None:
            raise failure

        rows = self.db.tables[self.table]
        if self.op == "insert":
            records = self.payload if isinstance(self.payload, list) else [self.payload]
            created = [self.db.new_row(self.table, record) for record in records]
            rows.extend(created)
            return SimpleNamespace(data=[dict(r) for r in created], count=None)

        matched = self._matching()
        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        if self.op == "delete":
            ids = {row["id"] for row in matched}
            self.db.tables[self.table] = [r for r in rows if r["id"] not in ids]
            if self.table == "uploads":
                self.db.tables["models"] = [m for m in self.db.tables["models"] if m["upload_id"] not in ids]
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
        if self._range:
            start, end = self._range
            matched = matched[start:end + 1]
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=[dict(r) for r in matched], count=len(matched))


class FakeBucket:
    def __init__(self, storage, name):
        self.storage = storage
        self.name = name
        self.objects = storage.buckets.setdefault(name, {})

    def upload(self, path, file, file_options=None):
        if self.storage.upload_failures:
            self.storage.upload_failures -= 1
            raise Exception("Storage service unavailable")
        if path in self.objects:
            raise Exception("The resource already exists")
        self.objects[path] = bytes(file)
        self.storage.content_types[(self.name, path)] = (file_options or {}).get("content-type")
        return SimpleNamespace(path=path)

    def download(self, path):
        if path not in self.objects:
            raise Exception("Object not found")
        return self.objects[path]

    def remove(self, paths):
        if self.storage.remove_failure is not None:
            raise self.storage.remove_failure
        self.storage.removed.append((self.name, list(paths)))
        for path in paths:
            self.objects.pop(path, None)
        return []


class FakeStorage:
    def __init__(self):
        self.buckets = {}
        self.content_types = {}
        self.removed = []
        self.upload_failures = 0
        self.remove_failure = None

    def from_(self, bucket):
        return FakeBucket(self, bucket)

    def count(self):
        return sum(len(objects) for objects in self.buckets.values())


class FakeSupabase:
    def __init__(self):
        self.tables = {"uploads": [], "models": []}
        self.failures = {}
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self, name)

    def new_row(self, table, record):
        if table == "models" and not any(u["id"] == record["upload_id"] for u in self.tables["uploads"]):
            raise Exception("insert or update on table \"models\" violates foreign key constraint")
        row = {
            "id": str(uuid.uuid4()),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if table == "uploads":
            row.update({"user_id": None, "status": "pending", "expires_at": None})
        row.update(record)
        return row


# ==================== HTTP / GATEWAY / CLOCK ====================

class FakeResponse:
    def __init__(self, status_code=200, content=b"", json_data=None, reason="OK"):
        self.status_code = status_code
        self.content = content
        self._json = json_data
        self.reason = reason
        self.text = content.decode(errors="replace") if content else str(json_data)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeHttp:
    """Serves mesh downloads by URL."""

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        if url not in self.files:
            return FakeResponse(status_code=404, reason="Not Found")
        return FakeResponse(content=self.files[url])


class ScriptedGateway:
    """Returns (or raises) the scripted outcomes in order; repeats the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [MeshResult(mesh_url=MESH_URL, job_id="pred-1")]
        self.requests = []

    def check_credentials(self):
        return True

    async def generate(self, request):
        self.requests.append(request)
        index = min(len(self.requests), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)

    @property
    def total(self):
        return sum(self.delays)


# ==================== FIXTURES ====================

@pytest.fixture
def settings():
    s = Settings()
    s.SUPABASE_URL = SUPABASE_URL
    s.SUPABASE_SERVICE_ROLE_KEY = "test-service-role-key"
    s.SUPABASE_ANON_KEY = None
    s.REPLICATE_API_TOKEN = "r8_test"
    s.CLEANUP_SECRET = "s3cret"
    s.ALLOW_INSECURE_CLEANUP = False
    s.RETENTION_DAYS = 60
    s.MAX_UPLOAD_BYTES = 10 * 1024 * 1024
    s.PREPROCESS_ENABLED = True
    s.CORS_ORIGINS = ["*"]
    return s


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def http():
    return FakeHttp({MESH_URL: MESH_BYTES})


@pytest.fixture
def storage(supabase, http):
    return StorageManager(supabase, SUPABASE_URL, http=http)


@pytest.fixture
def database(supabase):
    return DatabaseManager(supabase)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def pipeline(storage, database, gateway, sleeper):
    return PipelineManager(
        storage,
        database,
        gateway,
        preprocessor=ImagePreprocessor(),
        retention_days=60,
        sleep=sleeper,
    )
