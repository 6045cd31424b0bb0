"""
Listing lifecycle rules shared by individual e-waste posts and bulk lots.

Both listing families go through one `ListingService`; everything that differs
between them (collection, field schema, the one status transition, who may
create, how references are resolved) lives on a `ListingKind` descriptor.

Every operation takes the acting user explicitly. There is no version check on
writes: two concurrent transitions on the same listing can both pass the
status check before either is stored, and the later write wins.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from schemas import BulkEWaste, EWaste, Role

logger = logging.getLogger(__name__)


# ------------------ Errors ------------------
class ListingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ListingError):
    status_code = 400


class NotFound(ListingError):
    status_code = 404


class Forbidden(ListingError):
    status_code = 403


class DomainConflict(ListingError):
    status_code = 400


class InternalError(ListingError):
    status_code = 500


class Actor(BaseModel):
    id: str
    role: Role


# ------------------ Kind descriptors ------------------
@dataclass(frozen=True)
class Transition:
    name: str
    target: str
    sources: Tuple[str, ...]
    roles: Tuple[str, ...]
    actor_field: str
    time_field: str
    conflict_message: str


@dataclass(frozen=True)
class ListingKind:
    name: str
    label: str
    collection: str
    schema: Type[BaseModel]
    required: Tuple[str, ...]
    # replaced on update only when the new value is non-empty
    replace_if_given: Tuple[str, ...]
    # replaced on update whenever the key is present, even with "" / 0 / None
    replace_if_present: Tuple[str, ...]
    numeric: Tuple[str, ...]
    initial_status: str
    transition: Transition
    create_roles: Optional[Tuple[str, ...]] = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    owner_summary: Tuple[str, ...] = ("name", "email", "phone", "address")
    counterpart_summary: Tuple[str, ...] = ("name", "email")
    derive: Optional[Callable[[Dict[str, Any]], None]] = None

    @property
    def editable(self) -> Tuple[str, ...]:
        return self.replace_if_given + self.replace_if_present


def _bulk_total_price(doc: Dict[str, Any]) -> None:
    per_kg = doc.get("price_per_kg")
    if per_kg is None:
        doc["total_price"] = None
    else:
        doc["total_price"] = round(doc["weight_in_kg"] * per_kg, 2)


INDIVIDUAL = ListingKind(
    name="ewaste",
    label="E-waste post",
    collection="ewaste",
    schema=EWaste,
    required=("title", "description", "category", "condition"),
    replace_if_given=("title", "description", "category", "condition", "quantity"),
    replace_if_present=("price", "location"),
    numeric=("quantity", "price"),
    initial_status="pending",
    transition=Transition(
        name="collect",
        target="collected",
        sources=("pending",),
        roles=("collector", "admin"),
        actor_field="collector",
        time_field="collected_at",
        conflict_message="E-waste already collected",
    ),
    defaults={"quantity": 1, "price": None, "location": None},
)

BULK = ListingKind(
    name="bulk-ewaste",
    label="Bulk e-waste post",
    collection="bulkewaste",
    schema=BulkEWaste,
    required=("title", "description", "weight_in_kg"),
    replace_if_given=("title", "description", "category", "condition", "weight_in_kg"),
    replace_if_present=("price_per_kg", "location"),
    numeric=("weight_in_kg", "price_per_kg"),
    initial_status="available",
    transition=Transition(
        name="sold",
        target="sold",
        # "reserved" has no API path in, but a reserved lot can still be bought
        sources=("available", "reserved"),
        roles=("organization", "admin"),
        actor_field="sold_to",
        time_field="sold_at",
        conflict_message="Bulk e-waste already sold",
    ),
    create_roles=("collector", "admin"),
    defaults={"price_per_kg": None, "location": None},
    counterpart_summary=("name", "email", "organization_name"),
    derive=_bulk_total_price,
)

# ------------------ Helpers ------------------
def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_zero(value: Any) -> bool:
    return not isinstance(value, bool) and value in (0, "0")


def _schema_error_message(err: SchemaError) -> str:
    first = err.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ListingService:
    def __init__(self, kind: ListingKind, store):
        self.kind = kind
        self.store = store

    # ---- internals ----
    def _validated(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        try:
            model = self.kind.schema.model_validate(doc)
        except SchemaError as e:
            raise ValidationError(_schema_error_message(e))
        data = model.model_dump()
        if self.kind.derive:
            self.kind.derive(data)
        return data

    def _normalized(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        out = {}
        for key in self.kind.editable:
            if key not in fields:
                continue
            value = fields[key]
            if isinstance(value, str):
                value = value.strip()
            if key in self.kind.numeric and value == "":
                value = None
            out[key] = value
        return out

    def _load(self, listing_id: str) -> Dict[str, Any]:
        doc = self.store.get(self.kind.collection, listing_id)
        if not doc:
            raise NotFound(f"{self.kind.label} not found")
        return doc

    def _resolve(self, docs: List[Dict[str, Any]], owner_fields: Iterable[str]) -> List[Dict[str, Any]]:
        cache: Dict[str, Optional[Dict[str, Any]]] = {}

        def summary(user_id, fields):
            if user_id is None:
                return None
            if user_id not in cache:
                cache[user_id] = self.store.get("user", user_id)
            user = cache[user_id]
            if not user:
                return None
            out = {"id": user["id"]}
            out.update({f: user.get(f) for f in fields})
            return out

        counterpart = self.kind.transition.actor_field
        resolved = []
        for doc in docs:
            d = dict(doc)
            d["owner"] = summary(d.get("owner"), owner_fields)
            d[counterpart] = summary(d.get(counterpart), self.kind.counterpart_summary)
            resolved.append(d)
        return resolved

    # ---- operations ----
    def create(self, actor: Actor, fields: Dict[str, Any], image_refs: Iterable[str] = ()) -> Dict[str, Any]:
        if self.kind.create_roles and actor.role not in self.kind.create_roles:
            logger.warning("create_forbidden kind=%s actor=%s role=%s", self.kind.name, actor.id, actor.role)
            raise Forbidden(f"Role '{actor.role}' cannot create a {self.kind.label.lower()}")
        missing = [k for k in self.kind.required if _is_blank(fields.get(k))]
        if missing:
            raise ValidationError("Please provide all required fields: " + ", ".join(missing))

        doc = dict(self.kind.defaults)
        doc.update({k: v for k, v in self._normalized(fields).items() if k in self.kind.replace_if_present or not _is_blank(v)})
        doc.update({
            "owner": actor.id,
            "images": list(image_refs),
            "status": self.kind.initial_status,
        })
        data = self._validated(doc)
        listing_id = self.store.insert(self.kind.collection, data)
        logger.info("listing_created kind=%s id=%s owner=%s", self.kind.name, listing_id, actor.id)
        return self.store.get(self.kind.collection, listing_id)

    def list_mine(self, actor: Actor) -> List[Dict[str, Any]]:
        docs = self.store.find(self.kind.collection, {"owner": actor.id})
        return self._resolve(docs, ("name", "email"))

    def list_all(self, actor: Actor, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        filt = {k: filters[k] for k in ("status", "condition") if not _is_blank(filters.get(k))}
        docs = self.store.find(self.kind.collection, filt)
        return self._resolve(docs, self.kind.owner_summary)

    def get_by_id(self, actor: Actor, listing_id: str) -> Dict[str, Any]:
        return self._resolve([self._load(listing_id)], self.kind.owner_summary)[0]

    def update(self, actor: Actor, listing_id: str, fields: Dict[str, Any], new_image_refs: Iterable[str] = ()) -> Dict[str, Any]:
        doc = self._load(listing_id)
        if doc.get("owner") != actor.id and actor.role != "admin":
            logger.warning("update_forbidden kind=%s id=%s actor=%s", self.kind.name, listing_id, actor.id)
            raise Forbidden("Not authorized to update this item")

        merged = dict(doc)
        for key, value in self._normalized(fields).items():
            if key in self.kind.replace_if_present:
                merged[key] = value
            # a zero count or weight on update means "unchanged"
            elif not _is_blank(value) and not (key in self.kind.numeric and _is_zero(value)):
                merged[key] = value
        merged["images"] = list(doc.get("images") or []) + list(new_image_refs)
        data = self._validated(merged)

        changes = {k: data[k] for k in self.kind.editable}
        changes["images"] = data["images"]
        if self.kind.derive:
            changes["total_price"] = data["total_price"]
        updated = self.store.update(self.kind.collection, listing_id, changes)
        if updated is None:
            raise NotFound(f"{self.kind.label} not found")
        return updated

    def delete(self, actor: Actor, listing_id: str) -> None:
        doc = self._load(listing_id)
        # Admins may edit but not delete someone else's post
        if doc.get("owner") != actor.id:
            logger.warning("delete_forbidden kind=%s id=%s actor=%s", self.kind.name, listing_id, actor.id)
            raise Forbidden("Not authorized to delete this post")
        self.store.delete(self.kind.collection, listing_id)
        logger.info("listing_deleted kind=%s id=%s", self.kind.name, listing_id)

    def apply_transition(self, actor: Actor, listing_id: str) -> Dict[str, Any]:
        t = self.kind.transition
        if actor.role not in t.roles:
            logger.warning("transition_forbidden kind=%s id=%s role=%s", self.kind.name, listing_id, actor.role)
            raise Forbidden(f"Role '{actor.role}' is not allowed to perform this action")
        doc = self._load(listing_id)
        status = doc.get("status")
        if status == t.target:
            raise DomainConflict(t.conflict_message)
        if status not in t.sources:
            raise DomainConflict(f"{self.kind.label} is {status}")
        updated = self.store.update(self.kind.collection, listing_id, {
            "status": t.target,
            t.actor_field: actor.id,
            t.time_field: _now(),
        })
        if updated is None:
            raise NotFound(f"{self.kind.label} not found")
        logger.info("listing_transition kind=%s id=%s to=%s actor=%s", self.kind.name, listing_id, t.target, actor.id)
        return updated
