import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
import notifications
import presets
import users as user_store
import wishlist
from auth import create_token, get_current_user, require_admin, resolve_token
from catalogs import CatalogRepository, present_catalog, present_product
from database import get_db
from errors import AppError, Conflict, Unauthorized, ValidationError
from mailer import Mailer
from notifications import NotificationDispatcher, NotificationTransport, PushSender
from orders import OrderEngine
from schemas import (
    AssignRequest,
    Base64ImageRequest,
    BulkProductsRequest,
    CatalogCreateRequest,
    CatalogUpdateRequest,
    ClaspImageRequest,
    InviteRequest,
    LoginRequest,
    OrderCreateRequest,
    OrderStatusRequest,
    PermissionsRequest,
    ProductCreateRequest,
    ProductSpec,
    ProductUpdateRequest,
    ProfileUpdateRequest,
    PushTokenRequest,
    RegisterRequest,
    ReorderRequest,
    SizePresetRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from storage import LocalImageStore

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("jewelry")


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.init_db()
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    yield


app = FastAPI(title="Jewelry Catalog API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")

# Process-wide collaborators; tests swap them on app.state.
app.state.transport = NotificationTransport()
app.state.push = PushSender()
app.state.mailer = Mailer()
app.state.image_store = LocalImageStore()


# ---------- Errors ----------

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Something went wrong!"})


# ---------- Dependencies ----------

def get_catalogs(db: Database = Depends(get_db)) -> CatalogRepository:
    return CatalogRepository(db)


def get_orders(db: Database = Depends(get_db)) -> OrderEngine:
    return OrderEngine(db)


def get_dispatcher(request: Request, db: Database = Depends(get_db)) -> NotificationDispatcher:
    return NotificationDispatcher(db, request.app.state.transport, request.app.state.push)


@app.get("/")
def root():
    return {"status": "ok", "service": "jewelry-catalog-backend"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    status = {
        "backend": "running",
        "database": "not-configured",
    }
    try:
        status["collections"] = db.list_collection_names()[:10]
        status["database"] = "connected"
    except Exception:
        logger.exception("Database health check failed")
        status["database"] = "error"
    return status


# ---------- Auth ----------

def session_payload(user: dict) -> dict:
    return {"token": create_token(user), "user": user_store.public_user(user)}


@app.post("/api/auth/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    user = user_store.register(db, payload)
    return session_payload(user)


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = user_store.authenticate(db, payload.email, payload.password)
    logger.info("User %s logged in", user["email"])
    return session_payload(user)


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return {"user": user_store.public_user(user)}


@app.post("/api/auth/invite")
async def invite(payload: InviteRequest, request: Request, admin: dict = Depends(require_admin),
                 db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email.lower()}):
        raise Conflict("User already exists")
    await request.app.state.mailer.send_invite(payload.email.lower(), payload.name.strip(), admin["name"])
    return {"message": "Invite sent successfully"}


# ---------- Catalogs ----------

@app.get("/api/catalogs")
def list_catalogs(user: dict = Depends(get_current_user), repo: CatalogRepository = Depends(get_catalogs)):
    return repo.with_products(repo.list_accessible(user))


@app.get("/api/catalogs/{catalog_id}")
def get_catalog(catalog_id: str, user: dict = Depends(get_current_user),
                repo: CatalogRepository = Depends(get_catalogs)):
    return repo.present(repo.get_readable(catalog_id, user))


@app.post("/api/catalogs", status_code=201)
def create_catalog(payload: CatalogCreateRequest, background_tasks: BackgroundTasks,
                   admin: dict = Depends(require_admin), repo: CatalogRepository = Depends(get_catalogs),
                   dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    catalog = repo.create_catalog(payload.name, payload.description, admin["id"],
                                  payload.allowed_user_ids, payload.is_public)
    background_tasks.add_task(dispatcher.dispatch, "catalog_created", catalog)
    return present_catalog(catalog)


@app.put("/api/catalogs/{catalog_id}")
def update_catalog(catalog_id: str, payload: CatalogUpdateRequest, user: dict = Depends(get_current_user),
                   repo: CatalogRepository = Depends(get_catalogs)):
    return repo.present(repo.update_catalog(catalog_id, user, payload))


@app.delete("/api/catalogs/{catalog_id}")
def delete_catalog(catalog_id: str, user: dict = Depends(get_current_user),
                   repo: CatalogRepository = Depends(get_catalogs)):
    removed = repo.delete_catalog(catalog_id, user)
    return {"message": "Catalog and all its products deleted successfully", "deletedProducts": removed}


@app.post("/api/catalogs/{catalog_id}/products", status_code=201)
def add_catalog_product(catalog_id: str, payload: ProductSpec, background_tasks: BackgroundTasks,
                        user: dict = Depends(get_current_user), repo: CatalogRepository = Depends(get_catalogs),
                        dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    catalog, product = repo.add_product(catalog_id, user, payload)
    background_tasks.add_task(dispatcher.dispatch, "product_added", catalog, product)
    return repo.present(catalog)


@app.post("/api/catalogs/{catalog_id}/products/bulk", status_code=201)
def bulk_add_catalog_products(catalog_id: str, payload: BulkProductsRequest, background_tasks: BackgroundTasks,
                              user: dict = Depends(get_current_user),
                              repo: CatalogRepository = Depends(get_catalogs),
                              dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    catalog, created = repo.bulk_add_products(catalog_id, user, payload.products, payload.existing_product_ids)
    background_tasks.add_task(dispatcher.dispatch, "products_added", catalog, created)
    return repo.present(catalog)


@app.delete("/api/catalogs/{catalog_id}/products/{product_id}")
def remove_catalog_product(catalog_id: str, product_id: str, user: dict = Depends(get_current_user),
                           repo: CatalogRepository = Depends(get_catalogs)):
    return repo.present(repo.remove_product(catalog_id, user, product_id))


@app.put("/api/catalogs/{catalog_id}/reorder-products")
def reorder_catalog_products(catalog_id: str, payload: ReorderRequest, user: dict = Depends(get_current_user),
                             repo: CatalogRepository = Depends(get_catalogs)):
    return repo.present(repo.reorder_products(catalog_id, user, payload.product_ids))


@app.put("/api/catalogs/{catalog_id}/permissions")
def update_catalog_permissions(catalog_id: str, payload: PermissionsRequest, user: dict = Depends(get_current_user),
                               repo: CatalogRepository = Depends(get_catalogs)):
    catalog = repo.update_permissions(catalog_id, user, payload.allowed_user_ids, payload.is_public)
    return {"message": "Catalog permissions updated successfully", "catalog": present_catalog(catalog)}


# ---------- Products ----------

@app.get("/api/products")
def list_products(user: dict = Depends(get_current_user), repo: CatalogRepository = Depends(get_catalogs)):
    return [present_product(p) for p in repo.list_products(user)]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, user: dict = Depends(get_current_user),
                repo: CatalogRepository = Depends(get_catalogs)):
    return present_product(repo.get_readable_product(product_id, user))


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreateRequest, background_tasks: BackgroundTasks,
                   admin: dict = Depends(require_admin), repo: CatalogRepository = Depends(get_catalogs),
                   dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    catalog, product = repo.create_product(admin, payload)
    background_tasks.add_task(dispatcher.dispatch, "product_added", catalog, product)
    return present_product(product)


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdateRequest, admin: dict = Depends(require_admin),
                   repo: CatalogRepository = Depends(get_catalogs)):
    return present_product(repo.update_product(product_id, payload))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin),
                   repo: CatalogRepository = Depends(get_catalogs)):
    repo.delete_product(product_id)
    return {"message": "Product deleted successfully"}


@app.post("/api/products/{product_id}/assign")
def assign_product(product_id: str, payload: AssignRequest, admin: dict = Depends(require_admin),
                   repo: CatalogRepository = Depends(get_catalogs)):
    return present_product(repo.assign_product(product_id, payload.user_ids))


# ---------- Orders ----------

@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreateRequest, background_tasks: BackgroundTasks,
                 user: dict = Depends(get_current_user), engine: OrderEngine = Depends(get_orders),
                 dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    order = engine.place_order(user, payload.catalog_id, payload.items, payload.notes)
    background_tasks.add_task(dispatcher.dispatch, "order_created", order, user)
    return engine.present(order)


@app.get("/api/orders")
def list_orders(status: Optional[str] = None, user_id: Optional[str] = Query(None, alias="userId"),
                catalog_id: Optional[str] = Query(None, alias="catalogId"),
                date_from: Optional[datetime] = Query(None, alias="dateFrom"),
                date_to: Optional[datetime] = Query(None, alias="dateTo"),
                page: int = Query(1, ge=1), limit: int = Query(20, ge=1),
                admin: dict = Depends(require_admin), engine: OrderEngine = Depends(get_orders)):
    return engine.list_for_admin(status, user_id, catalog_id, date_from, date_to, page, limit)


@app.get("/api/orders/my")
def my_orders(status: Optional[str] = None, limit: Optional[int] = Query(None, ge=1),
              user: dict = Depends(get_current_user), engine: OrderEngine = Depends(get_orders)):
    return [engine.present(o) for o in engine.list_for_user(user["id"], status, limit)]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), engine: OrderEngine = Depends(get_orders)):
    return engine.present(engine.get_for(order_id, user))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusRequest, background_tasks: BackgroundTasks,
                        user: dict = Depends(get_current_user), engine: OrderEngine = Depends(get_orders),
                        dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    order = engine.set_status(order_id, payload.status, user)
    background_tasks.add_task(dispatcher.dispatch, "order_status_changed", order)
    return engine.present(order)


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, background_tasks: BackgroundTasks, user: dict = Depends(get_current_user),
                 engine: OrderEngine = Depends(get_orders),
                 dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    order = engine.cancel(order_id, user)
    if order["userId"] != user["id"]:
        background_tasks.add_task(dispatcher.dispatch, "order_status_changed", order)
    return engine.present(order)


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin: dict = Depends(require_admin), engine: OrderEngine = Depends(get_orders)):
    engine.delete(order_id, admin)
    return {"message": "Order deleted successfully"}


# ---------- Notifications ----------

@app.get("/api/notifications")
def get_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return notifications.list_notifications(db, user["id"])


@app.get("/api/notifications/unread")
def get_unread_count(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"count": notifications.unread_count(db, user["id"])}


@app.put("/api/notifications/read-all")
def read_all_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    updated = notifications.mark_all_read(db, user["id"])
    return {"success": True, "message": "All notifications marked as read", "updated": updated}


@app.put("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    return notifications.mark_read(db, notification_id, user["id"])


@app.delete("/api/notifications/{notification_id}")
def remove_notification(notification_id: str, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    notifications.delete_notification(db, notification_id, user["id"])
    return {"success": True, "message": "Notification deleted"}


# ---------- Size presets & clasp images ----------

@app.get("/api/size-presets")
def get_size_presets(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return presets.size_presets(db)


@app.put("/api/size-presets/{jewelry_type}")
def put_size_preset(jewelry_type: str, payload: SizePresetRequest, admin: dict = Depends(require_admin),
                    db: Database = Depends(get_db)):
    return presets.save_size_preset(db, jewelry_type, payload)


@app.get("/api/clasp-images")
def get_clasp_images(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return presets.clasp_images(db)


@app.get("/api/clasp-images/{clasp_type}")
def get_clasp_image(clasp_type: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return presets.clasp_image(db, clasp_type)


@app.post("/api/clasp-images", status_code=201)
def post_clasp_image(payload: ClaspImageRequest, admin: dict = Depends(require_admin),
                     db: Database = Depends(get_db)):
    return presets.save_clasp_image(db, payload, admin)


@app.delete("/api/clasp-images/{clasp_type}")
def delete_clasp_image(clasp_type: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    presets.delete_clasp_image(db, clasp_type)
    return {"message": "Clasp image deleted successfully"}


# ---------- Users ----------

@app.get("/api/users")
def list_users(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return user_store.list_users(db)


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreateRequest, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return user_store.public_user(user_store.create_user(db, payload, admin))


@app.post("/api/users/push-token")
def register_push_token(payload: PushTokenRequest, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    user_store.add_push_token(db, user, payload.token)
    return {"success": True}


@app.delete("/api/users/push-token")
def unregister_push_token(payload: PushTokenRequest, user: dict = Depends(get_current_user),
                          db: Database = Depends(get_db)):
    user_store.remove_push_token(db, user, payload.token)
    return {"success": True}


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdateRequest, admin: dict = Depends(require_admin),
                db: Database = Depends(get_db)):
    return user_store.update_user(db, user_id, payload)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user_store.delete_user(db, user_id, admin)
    return {"message": "User deleted successfully"}


@app.patch("/api/users/{user_id}/status")
def toggle_user_status(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return user_store.toggle_status(db, user_id, admin)


@app.put("/api/users/{user_id}/profile")
def update_profile(user_id: str, payload: ProfileUpdateRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return user_store.update_profile(db, user_id, user, payload)


# ---------- Wishlist ----------

@app.get("/api/wishlist")
def get_wishlist(user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 repo: CatalogRepository = Depends(get_catalogs)):
    return wishlist.list_wishlist(db, repo, user)


@app.get("/api/wishlist/check/{product_id}")
def check_wishlist(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"inWishlist": wishlist.in_wishlist(db, user, product_id)}


@app.post("/api/wishlist/{product_id}", status_code=201)
def add_wishlist(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 repo: CatalogRepository = Depends(get_catalogs)):
    wishlist.add_to_wishlist(db, repo, user, product_id)
    return {"message": "Product added to wishlist"}


@app.delete("/api/wishlist/{product_id}")
def remove_wishlist(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist.remove_from_wishlist(db, user, product_id)
    return {"message": "Product removed from wishlist"}


# ---------- Admin ----------

@app.get("/api/admin/dashboard")
def admin_dashboard(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return user_store.dashboard(db)


# ---------- Uploads ----------

@app.post("/api/upload/image")
async def upload_image(request: Request, image: Optional[UploadFile] = File(None),
                       user: dict = Depends(get_current_user)):
    if image is None:
        raise ValidationError("No image file provided")
    content = await image.read()
    result = request.app.state.image_store.save(content, image.filename or "", image.content_type or "")
    logger.info("Image %s uploaded by %s", result["filename"], user["email"])
    return {"message": "Image uploaded successfully", **result}


@app.post("/api/upload/image-base64")
def upload_image_base64(payload: Base64ImageRequest, request: Request, user: dict = Depends(get_current_user)):
    if not payload.image or not payload.filename:
        raise ValidationError("Image data and filename are required")
    result = request.app.state.image_store.save_base64(payload.image, payload.filename, payload.mimetype)
    logger.info("Image %s uploaded by %s", result["filename"], user["email"])
    return {"message": "Image uploaded successfully", **result}


# ---------- Real-time ----------

@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = None, db: Database = Depends(get_db)):
    if token is None:
        header = websocket.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:]
    try:
        user = resolve_token(db, token)
    except Unauthorized as exc:
        logger.warning("Socket handshake rejected: %s", exc.message)
        await websocket.close(code=4401)
        return
    transport: NotificationTransport = websocket.app.state.transport
    await websocket.accept()
    await transport.register(user["id"], websocket)
    try:
        await websocket.send_json({"event": "connected", "data": {"userId": user["id"]}})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await transport.unregister(user["id"], websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
