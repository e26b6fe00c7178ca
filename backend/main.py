import base64
import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import database
from assistant import WELCOME_MESSAGE, generate_response
from catalog import ProductFilter, filter_products, seller_names, with_seller_names
from checkout import cart_total, group_by_seller, order_number
from config import (
    AVATAR_MAX_BYTES, CORS_ORIGINS, LOG_FILE, LOG_LEVEL, PASSWORD_MIN_LENGTH, PORT,
    RECENT_ORDERS_LIMIT, SERVICE_NAME, STATIC_DIR, UNKNOWN_BUYER,
)
from logging_setup import install_access_log_filter, setup_logging
from messaging import get_chat_for, list_chats, open_chat, read_thread, send_message, unread_total
from realtime import chat_topic, stream, user_topic
from schemas import (
    Buyer as BuyerSchema, CartItem as CartItemSchema, Order as OrderSchema, Product as ProductSchema,
    Profile as ProfileSchema, Seller as SellerSchema,
)
from security import (
    account_to_user, create_jwt, find_account_by_email, find_account_by_username,
    get_current_user, hash_password, opposite_role, require_role, user_from_token, verify_password,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s ready (database %s)", SERVICE_NAME,
                "connected" if database.db is not None else "not configured")
    yield


app = FastAPI(title="Recycling Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_access_log_filter()

REGISTRY_SCHEMAS = {"seller": SellerSchema, "buyer": BuyerSchema}


@app.get("/api/health")
def health():
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/test")
def test_database():
    _db = database.db
    ok = _db is not None
    return {
        "backend": "✅ Running",
        "database": "✅ Connected" if ok else "❌ Not Connected",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": database.DATABASE_NAME or "-",
        "collections": (list(_db.list_collection_names()) if ok else []),
    }


# ========== AUTH ==========
class RegisterPayload(BaseModel):
    email: EmailStr
    username: str = Field(min_length=1)
    password: str
    role: Literal["buyer", "seller"]


class LoginPayload(BaseModel):
    username: str
    password: str


def _check_password_length(password: str):
    if len(password) < PASSWORD_MIN_LENGTH:
        raise HTTPException(400, f"Password must be at least {PASSWORD_MIN_LENGTH} characters")


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(body: RegisterPayload):
    username = body.username.strip()
    if not username:
        raise HTTPException(400, "Username is required")
    _check_password_length(body.password)
    if find_account_by_email(body.email)[1]:
        raise HTTPException(409, "Email already registered")
    if find_account_by_username(username)[1]:
        raise HTTPException(409, "Username already taken")
    account = REGISTRY_SCHEMAS[body.role](
        email=body.email, username=username, password_hash=hash_password(body.password)
    )
    uid = database.create_document(body.role, account)
    logger.info("Registered %s %s", body.role, username)
    return {"user_id": uid, "email": body.email, "username": username, "role": body.role}


@app.post("/api/auth/login")
def login(body: LoginPayload):
    role, account = find_account_by_username(body.username.strip())
    if not account or not verify_password(body.password, account.get("password_hash", "")):
        raise HTTPException(401, "Invalid credentials")
    user = account_to_user(role, account)
    return {"token": create_jwt(user), "user": user}


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return user


# ========== DIRECTORY ==========
def _directory_entry(role: str, account: dict, profile: Optional[dict] = None) -> dict:
    entry = {
        "id": str(account["_id"]),
        "user_id": str(account["_id"]),
        "role": role,
        "username": account.get("username", ""),
        "email": account.get("email", ""),
        "created_at": account.get("created_at"),
    }
    if profile:
        entry.update({
            "phone_number": profile.get("phone_number"),
            "location": profile.get("location"),
            "avatar_url": profile.get("avatar_url"),
        })
    return entry


@app.get("/api/users")
def find_users(q: Optional[str] = None, user: dict = Depends(get_current_user)):
    """Accounts on the other side of the market, matched on username or email."""
    role = opposite_role(user["role"])
    term = (q or "").lower()
    items = []
    for account in database.get_documents(role):
        entry = _directory_entry(role, account)
        if term and term not in entry["username"].lower() and term not in entry["email"].lower():
            continue
        items.append(entry)
    return {"items": items}


@app.get("/api/buyers")
def find_buyers(
    q: Optional[str] = None,
    location: Optional[str] = None,
    user: dict = Depends(require_role("seller")),
):
    profiles = {p["user_id"]: p for p in database.get_documents("profile", {"role": "buyer"})}
    term = (q or "").lower()
    place = (location or "").lower()
    items = []
    for account in database.get_documents("buyer"):
        entry = _directory_entry("buyer", account, profiles.get(str(account["_id"])))
        if term and term not in entry["username"].lower():
            continue
        if place and place not in (entry.get("location") or "").lower():
            continue
        items.append(entry)
    return {"items": items}


@app.get("/api/sellers/{seller_id}")
def seller_info(seller_id: str):
    seller = database.get_document("seller", seller_id)
    if not seller:
        raise HTTPException(404, "Seller not found")
    profile = database.collection("profile").find_one({"user_id": seller_id})
    products = database.get_documents("product", {"seller_id": seller_id})
    return {
        "seller": _directory_entry("seller", seller, profile),
        "products": [database.serialize(p) for p in products],
    }


# ========== PROFILE ==========
class ProfileUpdatePayload(BaseModel):
    username: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None
    current_password: Optional[str] = None


def _upsert_profile(user: dict, fields: dict):
    now = database.utcnow()
    database.collection("profile").update_one(
        {"user_id": user["id"]},
        {"$set": {**fields, "role": user["role"], "updated_at": now},
         "$setOnInsert": {"created_at": now}},
        upsert=True,
    )


def _profile_response(user: dict) -> dict:
    profile = database.collection("profile").find_one({"user_id": user["id"]}) or {}
    merged = ProfileSchema(
        user_id=user["id"],
        role=user["role"],
        username=profile.get("username") or user["username"],
        phone_number=profile.get("phone_number"),
        location=profile.get("location"),
        avatar_url=profile.get("avatar_url"),
    )
    return {**merged.model_dump(), "email": user["email"]}


@app.get("/api/profile")
def get_profile(user: dict = Depends(get_current_user)):
    return _profile_response(user)


@app.put("/api/profile")
def update_profile(body: ProfileUpdatePayload, user: dict = Depends(get_current_user)):
    if body.password:
        if body.password != body.confirm_password:
            raise HTTPException(400, "Passwords do not match")
        _check_password_length(body.password)

    email_changed = body.email is not None and body.email != user["email"]
    if email_changed or body.password:
        if not body.current_password:
            raise HTTPException(400, "Current password is required to change email or password")
        account = database.get_document(user["role"], user["id"])
        if not verify_password(body.current_password, account.get("password_hash", "")):
            raise HTTPException(401, "Current password is incorrect")

    account_fields = {}
    if email_changed:
        if find_account_by_email(body.email)[1]:
            raise HTTPException(409, "Email already registered")
        account_fields["email"] = body.email
    if body.password:
        account_fields["password_hash"] = hash_password(body.password)
    username = (body.username or "").strip()
    if username and username != user["username"]:
        if find_account_by_username(username)[1]:
            raise HTTPException(409, "Username already taken")
        account_fields["username"] = username
    if account_fields:
        database.update_document(user["role"], user["id"], account_fields)
        user = {**user, **{k: v for k, v in account_fields.items() if k != "password_hash"}}

    profile_fields = {
        k: v for k, v in {
            "username": username or None,
            "phone_number": body.phone_number,
            "location": body.location,
        }.items() if v is not None
    }
    _upsert_profile(user, profile_fields)
    return _profile_response(user)


@app.post("/api/profile/avatar")
def upload_avatar(file: UploadFile = File(...), user: dict = Depends(get_current_user)):
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(400, "Avatar must be an image")
    content = file.file.read()
    if not content:
        raise HTTPException(400, "Empty file")
    if len(content) > AVATAR_MAX_BYTES:
        raise HTTPException(413, "Avatar is too large")
    data_url = f"data:{content_type};base64,{base64.b64encode(content).decode()}"
    _upsert_profile(user, {"avatar_url": data_url})
    return {"avatar_url": data_url}


# ========== PRODUCTS ==========
class CreateProductPayload(ProductSchema):
    pass


class UpdateProductPayload(BaseModel):
    name: str = Field(min_length=1)
    price: float = Field(gt=0)
    quantity: int = Field(ge=0)
    weight: Optional[str] = None
    material_type: Optional[str] = None
    description: Optional[str] = None
    photo_url: Optional[str] = None


def _owned_product(product_id: str, user: dict) -> dict:
    product = database.get_document("product", product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    if product.get("seller_id") != user["id"]:
        raise HTTPException(403, "You can only manage your own products")
    return product


@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    quantity_min: Optional[float] = None,
    weight_min: Optional[float] = None,
    material_type: Optional[str] = None,
):
    criteria = ProductFilter(q=q, quantity_min=quantity_min, weight_min=weight_min,
                             material_type=material_type)
    products = filter_products(database.get_documents("product"), criteria)
    return {"items": with_seller_names(products)}


@app.get("/api/products/mine")
def my_products(user: dict = Depends(require_role("seller"))):
    products = database.get_documents("product", {"seller_id": user["id"]})
    return {"items": [database.serialize(p) for p in products]}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = database.get_document("product", product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return with_seller_names([product])[0]


@app.post("/api/products", status_code=status.HTTP_201_CREATED)
def create_product(body: CreateProductPayload, user: dict = Depends(require_role("seller"))):
    name = body.name.strip()
    if not name:
        raise HTTPException(400, "Product name is required")
    product = ProductSchema(**{**body.model_dump(), "name": name, "seller_id": user["id"]})
    pid = database.create_document("product", product)
    logger.info("Seller %s listed product %s", user["id"], pid)
    return {"product_id": pid}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: UpdateProductPayload,
                   user: dict = Depends(require_role("seller"))):
    _owned_product(product_id, user)
    fields = body.model_dump(exclude_none=True)
    fields["name"] = fields["name"].strip()
    if not fields["name"]:
        raise HTTPException(400, "Product name is required")
    database.update_document("product", product_id, fields)
    return database.serialize(database.get_document("product", product_id))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_role("seller"))):
    _owned_product(product_id, user)
    database.delete_document("product", product_id)
    logger.info("Seller %s deleted product %s", user["id"], product_id)
    return {"ok": True}


# ========== CART ==========
class CartItemPayload(BaseModel):
    product_id: str
    qty: int = 1


class CartQuantityPayload(BaseModel):
    qty: int


def _load_cart(user_id: str) -> List[dict]:
    cart = database.collection("cart").find_one({"user_id": user_id})
    return cart.get("items", []) if cart else []


def _save_cart(user_id: str, items: List[dict]):
    database.collection("cart").update_one(
        {"user_id": user_id}, {"$set": {"items": items}}, upsert=True
    )


def _cart_response(items: List[dict]) -> dict:
    return {"items": items, "total": cart_total(items)}


@app.get("/api/cart")
def get_cart(user: dict = Depends(require_role("buyer"))):
    return _cart_response(_load_cart(user["id"]))


@app.post("/api/cart")
def add_to_cart(body: CartItemPayload, user: dict = Depends(require_role("buyer"))):
    product = database.get_document("product", body.product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    if not product.get("name") or not product.get("price"):
        raise HTTPException(400, "Incomplete product information")
    if body.qty < 1:
        raise HTTPException(400, "Quantity must be at least 1")

    items = _load_cart(user["id"])
    line = next((it for it in items if it["product_id"] == body.product_id), None)
    wanted = body.qty + (line["qty"] if line else 0)
    stock = product.get("quantity") or 0
    if wanted > stock:
        raise HTTPException(400, f"Only {stock} in stock" if stock else "Out of stock")

    if line:
        line["qty"] = wanted
    else:
        seller_id = product.get("seller_id")
        items.append(CartItemSchema(
            product_id=body.product_id,
            name=product["name"],
            price=product["price"],
            qty=body.qty,
            seller_id=seller_id,
            seller_name=seller_names([seller_id]).get(seller_id) if seller_id else None,
            weight=product.get("weight"),
            material_type=product.get("material_type"),
            photo_url=product.get("photo_url"),
        ).model_dump())
    _save_cart(user["id"], items)
    return _cart_response(items)


@app.put("/api/cart/{product_id}")
def update_cart_quantity(product_id: str, body: CartQuantityPayload,
                         user: dict = Depends(require_role("buyer"))):
    items = _load_cart(user["id"])
    line = next((it for it in items if it["product_id"] == product_id), None)
    if line is None:
        raise HTTPException(404, "Item not in cart")
    if body.qty <= 0:
        items.remove(line)
    else:
        line["qty"] = body.qty
    _save_cart(user["id"], items)
    return _cart_response(items)


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, user: dict = Depends(require_role("buyer"))):
    items = [it for it in _load_cart(user["id"]) if it["product_id"] != product_id]
    _save_cart(user["id"], items)
    return _cart_response(items)


# ========== ORDERS ==========
@app.post("/api/orders/checkout", status_code=status.HTTP_201_CREATED)
def checkout(user: dict = Depends(require_role("buyer"))):
    items = _load_cart(user["id"])
    if not items:
        raise HTTPException(400, "Cart is empty")
    groups = group_by_seller(items)
    if not groups:
        raise HTTPException(400, "Cart items are missing seller information")

    buyer = database.get_document("buyer", user["id"])
    buyer_name = (buyer or {}).get("username") or UNKNOWN_BUYER

    created = []
    try:
        for group in groups.values():
            order = OrderSchema(buyer_id=user["id"], buyer_name=buyer_name, **group)
            oid = database.create_document("order", order)
            database.update_document("order", oid, {"order_number": order_number(group["seller_id"])})
            created.append(database.serialize(database.get_document("order", oid)))
    except PyMongoError:
        logger.exception("Checkout failed for buyer %s after %d order(s)", user["id"], len(created))
        raise HTTPException(500, "Order confirmation failed, please retry")

    _save_cart(user["id"], [])
    logger.info("Buyer %s placed %d order(s)", user["id"], len(created))
    return {"orders": created}


@app.get("/api/orders")
def list_orders(user: dict = Depends(get_current_user)):
    field = "seller_id" if user["role"] == "seller" else "buyer_id"
    orders = database.get_documents("order", {field: user["id"]}, sort=[("created_at", -1), ("_id", -1)])
    return {"items": [database.serialize(o) for o in orders]}


@app.post("/api/orders/{order_id}/confirm")
def confirm_order(order_id: str, user: dict = Depends(require_role("seller"))):
    order = database.get_document("order", order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    if order.get("seller_id") != user["id"]:
        raise HTTPException(403, "You can only confirm your own orders")
    if order.get("status") != "pending":
        raise HTTPException(400, f"Order is already {order.get('status')}")
    database.update_document("order", order_id, {"status": "confirmed", "confirmed_at": database.utcnow()})
    return database.serialize(database.get_document("order", order_id))


@app.get("/api/dashboard")
def seller_dashboard(user: dict = Depends(require_role("seller"))):
    products = database.collection("product").count_documents({"seller_id": user["id"]})
    orders = database.get_documents("order", {"seller_id": user["id"]}, sort=[("created_at", -1), ("_id", -1)])
    return {
        "total_products": products,
        "total_orders": len(orders),
        "total_revenue": sum(o.get("total_amount") or 0 for o in orders),
        "pending_orders": sum(1 for o in orders if o.get("status") == "pending"),
        "confirmed_orders": sum(1 for o in orders if o.get("status") == "confirmed"),
        "recent_orders": [database.serialize(o) for o in orders[:RECENT_ORDERS_LIMIT]],
    }


# ========== CHATS ==========
class OpenChatPayload(BaseModel):
    user_id: str


class SendMessagePayload(BaseModel):
    content: str


@app.post("/api/chats")
def start_chat(body: OpenChatPayload, user: dict = Depends(get_current_user)):
    return open_chat(user, body.user_id)


@app.get("/api/chats")
def get_chats(user: dict = Depends(get_current_user)):
    return {"items": list_chats(user)}


@app.get("/api/chats/unread")
def get_unread(user: dict = Depends(get_current_user)):
    return {"unread": unread_total(user["id"])}


@app.get("/api/chats/{chat_id}/messages")
def get_messages(chat_id: str, user: dict = Depends(get_current_user)):
    return {"messages": read_thread(chat_id, user)}


@app.post("/api/chats/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
def post_message(chat_id: str, body: SendMessagePayload, user: dict = Depends(get_current_user)):
    return send_message(chat_id, user, body.content)


def _ws_user(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    try:
        return user_from_token(token)
    except HTTPException:
        return None


@app.websocket("/api/ws/chats/{chat_id}")
async def chat_events(websocket: WebSocket, chat_id: str, token: Optional[str] = Query(None)):
    user = await run_in_threadpool(_ws_user, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        await run_in_threadpool(get_chat_for, chat_id, user)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await stream(websocket, [chat_topic(chat_id)])


@app.websocket("/api/ws/inbox")
async def inbox_events(websocket: WebSocket, token: Optional[str] = Query(None)):
    user = await run_in_threadpool(_ws_user, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await stream(websocket, [user_topic(user["id"])])


# ========== AI ASSISTANT ==========
class AssistantPayload(BaseModel):
    message: Optional[str] = None
    conversation_history: List[dict] = Field(default_factory=list)


@app.get("/api/chat/welcome")
def assistant_welcome():
    return {"response": WELCOME_MESSAGE}


@app.post("/api/chat")
def assistant_chat(body: AssistantPayload):
    if not body.message or not body.message.strip():
        raise HTTPException(400, "Message is required")
    try:
        return {"response": generate_response(body.message, body.conversation_history)}
    except Exception:
        logger.exception("Error in chat endpoint")
        raise HTTPException(500, "Internal server error")


# ========== FRONTEND ==========
def _index_or_placeholder():
    index = STATIC_DIR / "index.html"
    if index.is_file():
        return FileResponse(index, media_type="text/html")
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/")
def root():
    return _index_or_placeholder()


@app.get("/{path:path}")
def serve_static(path: str):
    if path == "api" or path.startswith("api/"):
        raise HTTPException(404, "Not found")
    fp = (STATIC_DIR / path).resolve()
    if fp.is_file() and fp.is_relative_to(STATIC_DIR.resolve()):
        return FileResponse(fp)
    return _index_or_placeholder()


if __name__ == "__main__":
    import uvicorn
    setup_logging(LOG_LEVEL, LOG_FILE)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
