import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ALGORITHM,
    CORS_ORIGINS,
    LOG_LEVEL,
    MAX_IMAGES,
    SECRET_KEY,
    STORAGE_DIR,
    UPLOAD_URL_PREFIX,
)
from database import MongoStore, ensure_indexes
from images import ImageStore
from lifecycle import BULK, INDIVIDUAL, Actor, ListingError, ListingKind, ListingService, ValidationError
from schemas import User

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("ewaste")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes()
    except PyMongoError as e:
        logger.warning("ensure_indexes_failed err=%s", e)
    yield


app = FastAPI(title="E-Waste Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(STORAGE_DIR, exist_ok=True)
app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=STORAGE_DIR), name="uploads")

# ------------------ Collaborators ------------------
_store: Optional[MongoStore] = None
_image_store: Optional[ImageStore] = None


def get_store():
    global _store
    if _store is None:
        _store = MongoStore()
    return _store


def get_image_store():
    global _image_store
    if _image_store is None:
        _image_store = ImageStore()
    return _image_store


# ------------------ Error shaping ------------------
@app.exception_handler(ListingError)
async def listing_error_handler(request: Request, exc: ListingError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "form"))
    message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "errors": [e.get("msg") for e in errors]},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("store_error path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server error"})

# ------------------ Auth helpers ------------------
def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k != "password_hash"}


def get_current_user(token: str = Depends(oauth2_scheme), store=Depends(get_store)) -> Dict[str, Any]:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    user = store.get("user", user_id)
    if not user:
        raise credentials_exception
    return user


def get_current_actor(user=Depends(get_current_user)) -> Actor:
    return Actor(id=user["id"], role=user.get("role", "user"))

# ------------------ Public & Utility ------------------
@app.get("/")
def read_root():
    return {"message": "E-Waste Marketplace Backend Running"}


@app.get("/test")
def test_database(store=Depends(get_store)):
    try:
        collections = store.collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected",
            "collections": collections[:10]
        }
    except Exception as e:
        return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}

# ------------------ Auth Endpoints ------------------
auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


class SignupBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["user", "collector", "organization"] = "user"
    phone: Optional[str] = None
    address: Optional[str] = None
    organization_name: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


@auth_router.post("/signup", status_code=201)
def signup(body: SignupBody, store=Depends(get_store)):
    email = body.email.lower()
    if body.role == "organization" and not (body.organization_name or "").strip():
        raise ValidationError("Organization name is required")
    if store.find_one("user", {"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        name=body.name,
        email=email,
        password_hash=get_password_hash(body.password),
        role=body.role,
        phone=body.phone,
        address=body.address,
        organization_name=body.organization_name if body.role == "organization" else None,
    )
    uid = store.insert("user", user.model_dump())
    logger.info("user_signup id=%s role=%s", uid, body.role)
    token = create_access_token({"sub": uid, "role": user.role})
    return {"success": True, "token": token, "user": public_user(store.get("user", uid))}


@auth_router.post("/login")
def login(body: LoginBody, store=Depends(get_store)):
    user = store.find_one("user", {"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": user["id"], "role": user.get("role", "user")})
    return {"success": True, "token": token, "user": public_user(user)}


@auth_router.get("/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "data": public_user(user)}


@auth_router.put("/profile")
async def update_profile(
    name: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    organization_name: Optional[str] = Form(None),
    profile_picture: Optional[UploadFile] = File(None),
    user=Depends(get_current_user),
    store=Depends(get_store),
    image_store: ImageStore = Depends(get_image_store),
):
    changes: Dict[str, Any] = {}
    if name and name.strip():
        changes["name"] = name.strip()
    if phone is not None:
        changes["phone"] = phone
    if address is not None:
        changes["address"] = address
    if organization_name is not None and user.get("role") == "organization":
        changes["organization_name"] = organization_name
    if profile_picture is not None and profile_picture.filename:
        changes["profile_picture"] = image_store.save(profile_picture.filename, await profile_picture.read())
    updated = store.update("user", user["id"], changes) if changes else user
    return {"success": True, "data": public_user(updated)}


app.include_router(auth_router)

# ------------------ Listings ------------------
async def read_listing_request(request: Request, image_store: ImageStore) -> Tuple[Dict[str, Any], List[str]]:
    """Split a multipart (or JSON) listing request into plain fields and stored image references."""
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body, []

    form = await request.form()
    fields = {k: v for k, v in form.multi_items() if isinstance(v, str)}
    uploads = [f for f in form.getlist("images") if not isinstance(f, str)]
    if len(uploads) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images can be uploaded at once")
    refs = []
    try:
        for upload in uploads:
            refs.append(image_store.save(upload.filename or "image", await upload.read()))
    except ListingError:
        discard_images(image_store, refs)
        raise
    return fields, refs


def discard_images(image_store: ImageStore, refs: List[str]) -> None:
    for ref in refs:
        image_store.delete(ref)


def listing_router(kind: ListingKind) -> APIRouter:
    router = APIRouter(prefix=f"/api/{kind.name}", tags=[kind.label])

    def service(store=Depends(get_store)) -> ListingService:
        return ListingService(kind, store)

    @router.post("", status_code=201)
    async def create_listing(
        request: Request,
        actor: Actor = Depends(get_current_actor),
        svc: ListingService = Depends(service),
        image_store: ImageStore = Depends(get_image_store),
    ):
        fields, refs = await read_listing_request(request, image_store)
        try:
            data = svc.create(actor, fields, refs)
        except (ListingError, PyMongoError):
            discard_images(image_store, refs)
            raise
        return {"success": True, "data": data}

    @router.get("/my-posts")
    def my_posts(actor: Actor = Depends(get_current_actor), svc: ListingService = Depends(service)):
        items = svc.list_mine(actor)
        return {"success": True, "count": len(items), "data": items}

    @router.get("")
    def list_listings(
        status: Optional[str] = Query(None),
        condition: Optional[str] = Query(None),
        actor: Actor = Depends(get_current_actor),
        svc: ListingService = Depends(service),
    ):
        items = svc.list_all(actor, {"status": status, "condition": condition})
        return {"success": True, "count": len(items), "data": items}

    @router.get("/{listing_id}")
    def get_listing(listing_id: str, actor: Actor = Depends(get_current_actor), svc: ListingService = Depends(service)):
        return {"success": True, "data": svc.get_by_id(actor, listing_id)}

    @router.put("/{listing_id}")
    async def update_listing(
        listing_id: str,
        request: Request,
        actor: Actor = Depends(get_current_actor),
        svc: ListingService = Depends(service),
        image_store: ImageStore = Depends(get_image_store),
    ):
        fields, refs = await read_listing_request(request, image_store)
        try:
            data = svc.update(actor, listing_id, fields, refs)
        except (ListingError, PyMongoError):
            discard_images(image_store, refs)
            raise
        return {"success": True, "data": data}

    @router.delete("/{listing_id}")
    def delete_listing(listing_id: str, actor: Actor = Depends(get_current_actor), svc: ListingService = Depends(service)):
        svc.delete(actor, listing_id)
        return {"success": True, "message": f"{kind.label} deleted successfully"}

    @router.put(f"/{{listing_id}}/{kind.transition.name}")
    def transition_listing(listing_id: str, actor: Actor = Depends(get_current_actor), svc: ListingService = Depends(service)):
        data = svc.apply_transition(actor, listing_id)
        return {"success": True, "message": f"{kind.label} marked as {kind.transition.target}", "data": data}

    return router


app.include_router(listing_router(INDIVIDUAL))
app.include_router(listing_router(BULK))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
