import copy
import io
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from PIL import Image

from database import to_object_id
from images import ImageStore
from lifecycle import Actor
from main import app, create_access_token, get_image_store, get_password_hash, get_store


class MemoryStore:
    """In-memory stand-in for MongoStore with the same method surface."""

    def __init__(self):
        self.collections = {}
        self._base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._ticks = 0

    def _now(self):
        self._ticks += 1
        return self._base + timedelta(seconds=self._ticks)

    def _coll(self, name):
        return self.collections.setdefault(name, {})

    def insert(self, collection, data):
        doc = copy.deepcopy(dict(data))
        doc_id = str(ObjectId())
        now = self._now()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        doc["id"] = doc_id
        self._coll(collection)[doc_id] = doc
        return doc_id

    def get(self, collection, doc_id):
        if to_object_id(doc_id) is None:
            return None
        doc = self._coll(collection).get(str(doc_id))
        return copy.deepcopy(doc) if doc else None

    def find_one(self, collection, filt):
        found = self.find(collection, filt, newest_first=False)
        return found[0] if found else None

    def find(self, collection, filt=None, newest_first=True):
        filt = filt or {}
        docs = [d for d in self._coll(collection).values() if all(d.get(k) == v for k, v in filt.items())]
        if newest_first:
            docs.sort(key=lambda d: d["created_at"], reverse=True)
        return copy.deepcopy(docs)

    def update(self, collection, doc_id, fields):
        doc = self._coll(collection).get(str(doc_id))
        if doc is None:
            return None
        changes = copy.deepcopy(dict(fields))
        changes.pop("id", None)
        doc.update(changes)
        doc["updated_at"] = self._now()
        return copy.deepcopy(doc)

    def delete(self, collection, doc_id):
        return self._coll(collection).pop(str(doc_id), None) is not None

    def collection_names(self):
        return list(self.collections)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def image_store(tmp_path):
    return ImageStore(storage_dir=str(tmp_path / "uploads"), url_prefix="/uploads")


@pytest.fixture
def client(store, image_store):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_image_store] = lambda: image_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(store):
    """Insert a user with the given role; returns (actor, auth headers)."""
    counter = {"n": 0}

    def _make(role="user", name=None, **extra):
        counter["n"] += 1
        n = counter["n"]
        doc = {
            "name": name or f"{role.title()} {n}",
            "email": f"{role}{n}@example.com",
            "password_hash": get_password_hash("secret123"),
            "role": role,
            "phone": f"555-010{n}",
            "address": f"{n} Recycling Way",
            "organization_name": extra.pop("organization_name", None),
            "profile_picture": None,
        }
        doc.update(extra)
        uid = store.insert("user", doc)
        token = create_access_token({"sub": uid, "role": role})
        return Actor(id=uid, role=role), {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), color=(0, 128, 0)).save(buf, format="PNG")
    return buf.getvalue()
