import logging
import os
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel

from database import DATABASE_NAME, DATABASE_URL, is_embedded
from errors import (
    AlreadyExistsError,
    DuplicateKeyError,
    FarmLinkError,
    InvalidCredentialsError,
    InvalidTransitionError,
    NotFoundError,
    NotSignedInError,
    PermissionDeniedError,
    StorageUnavailableError,
)
from marketplace import Marketplace
from schemas import Order, Product, ProductUpdate, ProfileUpdate
from session import SessionManager, public_profile
from store import USERS, RecordStore

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Keep OAuth2PasswordBearer for dependency extraction, but do not use the form-based login
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

ROLES = ["Farmer", "Buyer", "Admin"]

app = FastAPI(title="FarmLink API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------- Services -------------------------

services: Dict[str, Any] = {}


def init_services(store: Optional[RecordStore] = None) -> Dict[str, Any]:
    store = store or RecordStore()
    sessions = SessionManager(store)
    services.clear()
    services.update(store=store, sessions=sessions, marketplace=Marketplace(store, sessions.tracker))
    return services


def get_services() -> Dict[str, Any]:
    if not services:
        init_services()
    return services


# ------------------------- Errors -------------------------

ERROR_STATUS = {
    InvalidCredentialsError: 401,
    NotSignedInError: 401,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    AlreadyExistsError: 409,
    DuplicateKeyError: 409,
    InvalidTransitionError: 409,
    StorageUnavailableError: 503,
}


@app.exception_handler(FarmLinkError)
async def farmlink_error_handler(request: Request, exc: FarmLinkError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)[:200]})


# ------------------------- Auth -------------------------

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    uid: str


class RegisterBody(BaseModel):
    email: str
    password: str
    fullName: str = ""
    role: str = "Farmer"


def get_current_user(token: str = Depends(oauth2_scheme)):
    user = get_services()["sessions"].resolve_token(token)
    if not user:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return user


def require_roles(*roles):
    def wrapper(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient role")
        return user
    return wrapper


@app.post("/auth/register", response_model=Token)
def register(body: RegisterBody):
    if body.role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    sessions = get_services()["sessions"]
    profile = sessions.register(body.email, body.password, body.fullName, body.role)
    return Token(access_token=sessions.create_access_token(profile["uid"], profile["email"]), uid=profile["uid"])


@app.post("/auth/login", response_model=Token)
def login_json(payload: dict = Body(...)):
    identifier = payload.get("username") or payload.get("email")
    password = payload.get("password")
    if not identifier or not password:
        raise HTTPException(status_code=400, detail="email and password required")
    sessions = get_services()["sessions"]
    user = sessions.login(identifier, password)
    return Token(access_token=sessions.create_access_token(user["uid"], user["email"]), uid=user["uid"])

# ------------------------- Profile -------------------------

@app.get("/me")
def read_me(user=Depends(get_current_user)):
    return public_profile(user)


@app.patch("/me")
def update_me(body: ProfileUpdate, user=Depends(get_current_user)):
    profile = get_services()["sessions"].update_user(user["uid"], body.model_dump(exclude_none=True))
    return public_profile(profile)


@app.get("/me/dashboard")
def my_dashboard(limit: int = 5, user=Depends(get_current_user)):
    return get_services()["sessions"].dashboard_for(user["uid"], limit)


@app.post("/me/reconcile")
def reconcile_me(user=Depends(get_current_user)):
    return get_services()["sessions"].stats.reconcile(user["uid"])


class TrackIn(BaseModel):
    type: str
    payload: Dict[str, Any] = {}


@app.get("/me/activities")
def my_activities(limit: int = 10, user=Depends(get_current_user)):
    return get_services()["sessions"].activity_log.history(user["uid"], limit)


@app.post("/me/activities")
def track_activity(body: TrackIn, user=Depends(get_current_user)):
    entry = get_services()["sessions"].tracker.track(user["uid"], body.type, body.payload)
    if entry is None:
        raise HTTPException(status_code=503, detail="Activity could not be recorded")
    return entry

# ------------------------- Products -------------------------

@app.post("/products")
def create_product(body: Product, user=Depends(get_current_user)):
    return get_services()["marketplace"].add_product(user["uid"], body.model_dump())


@app.get("/products")
def list_products(category: Optional[str] = None, user=Depends(get_current_user)):
    marketplace = get_services()["marketplace"]
    if category:
        return marketplace.products_in_category(category)
    return marketplace.list_products(user["uid"])


@app.patch("/products/{product_id}")
def update_product(product_id: int, body: ProductUpdate, user=Depends(get_current_user)):
    return get_services()["marketplace"].update_product(user["uid"], product_id, body.model_dump(exclude_none=True))


@app.delete("/products/{product_id}")
def delete_product(product_id: int, user=Depends(get_current_user)):
    get_services()["marketplace"].delete_product(user["uid"], product_id)
    return {"ok": True}

# ------------------------- Orders -------------------------

class StatusUpdateIn(BaseModel):
    status: str


@app.post("/orders")
def create_order(body: Order, user=Depends(get_current_user)):
    data = body.model_dump(exclude_unset=True)
    seller_id = None if body.productId is not None else user["uid"]
    return get_services()["marketplace"].create_order(seller_id, data)


@app.get("/orders")
def list_orders(status: Optional[str] = None, user=Depends(get_current_user)):
    return get_services()["marketplace"].list_orders(user["uid"], status)


@app.post("/orders/{order_id}/status")
def update_order_status(order_id: int, body: StatusUpdateIn, user=Depends(get_current_user)):
    return get_services()["marketplace"].update_order_status(order_id, body.status, user["uid"])

# ------------------------- Admin -------------------------

@app.get("/admin/export")
def export_data(user=Depends(require_roles("Admin"))):
    snapshot = get_services()["store"].export_all()
    snapshot[USERS] = [public_profile(u) for u in snapshot[USERS]]
    return snapshot


@app.post("/admin/import")
def import_data(snapshot: dict = Body(...), user=Depends(require_roles("Admin"))):
    store = get_services()["store"]
    # Exports leave out password hashes; keep the stored ones for returning users
    hashes = {u["uid"]: u.get("passwordHash") for u in store.get_all(USERS)}
    for record in snapshot.get(USERS) or []:
        if isinstance(record, dict) and "passwordHash" not in record and hashes.get(record.get("uid")):
            record["passwordHash"] = hashes[record["uid"]]
    counts = store.import_all(snapshot)
    return {"ok": True, "imported": counts}

# Root and health
@app.get("/")
def read_root():
    return {"message": "FarmLink API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "embedded" if is_embedded(DATABASE_URL) else "✅ Set",
        "database_name": DATABASE_NAME,
        "collections": [],
    }
    try:
        response["collections"] = get_services()["store"].db.list_collection_names()
        response["database"] = "✅ Connected"
    except StorageUnavailableError as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
