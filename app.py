import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

import descriptor_codec
from blob_store import BlobStoreError, LocalBlobStore
from camera import Camera, CameraUnavailableError
from cart import Cart
from config import CURRENCY, DATA_DIR, DB_URL, HOST, MEDIA_DIR_NAME, MENU_DIR_NAME, ORDER_HISTORY_LIMIT, PORT
from face_engine import FaceEngine, ModelLoadError, decode_image
from image_utils import normalize_menu_image
from logging_setup import setup_logging
from matcher import best_match
from registration import ContactFields, NoFaceDetectedError, RegistrationFlow
from scan_session import MODES, ScanLoop, ScanState
from store import IdentityStore, MenuStore, NotFoundError, OrderStore, make_engine

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class OrderLineRequest(BaseModel):
    menu_item_id: int
    quantity: int = Field(1, ge=1)


class OrderRequest(BaseModel):
    user_id: str = "guest"
    user_name: str = "Guest"
    items: List[OrderLineRequest]


COFFEE_MENU = [
    {"title": "Espresso", "price": 2.50, "category": "Beverages",
     "description": "Rich and bold espresso shot, the perfect pick-me-up"},
    {"title": "Cappuccino", "price": 3.75, "category": "Beverages",
     "description": "Classic Italian coffee with steamed milk and foam"},
    {"title": "Latte", "price": 4.00, "category": "Beverages",
     "description": "Smooth espresso with steamed milk and light foam"},
    {"title": "Americano", "price": 3.00, "category": "Beverages",
     "description": "Espresso diluted with hot water for a lighter taste"},
    {"title": "Mocha", "price": 4.50, "category": "Beverages",
     "description": "Chocolate-flavored espresso drink with steamed milk"},
    {"title": "Flat White", "price": 4.25, "category": "Beverages",
     "description": "Velvety microfoam over a double shot of espresso"},
    {"title": "Cold Brew", "price": 4.00, "category": "Beverages",
     "description": "Smooth, refreshing cold-steeped coffee"},
    {"title": "Macchiato", "price": 3.50, "category": "Beverages",
     "description": "Espresso marked with a dollop of foamed milk"},
    {"title": "Croissant", "price": 3.50, "category": "Breakfast",
     "description": "Buttery, flaky French pastry baked fresh daily"},
    {"title": "Blueberry Muffin", "price": 3.00, "category": "Breakfast",
     "description": "Moist muffin loaded with fresh blueberries"},
    {"title": "Chocolate Cookie", "price": 2.50, "category": "Breakfast",
     "description": "Decadent chocolate chip cookie, soft and chewy"},
    {"title": "Bagel", "price": 2.75, "category": "Breakfast",
     "description": "Fresh-baked bagel, perfect with cream cheese"},
    {"title": "Cinnamon Roll", "price": 4.00, "category": "Breakfast",
     "description": "Sweet, gooey cinnamon roll with cream cheese frosting"},
    {"title": "Banana Bread", "price": 3.25, "category": "Breakfast",
     "description": "Moist and flavorful homemade banana bread"},
    {"title": "Orange Juice", "price": 3.50, "category": "Beverages",
     "description": "Freshly squeezed orange juice, 100% natural"},
    {"title": "Bottled Water", "price": 1.50, "category": "Beverages",
     "description": "Premium bottled water, refreshing and pure"},
]


def user_response(identity):
    return {
        "id": identity.id,
        "name": identity.name,
        "email": identity.email,
        "phone": identity.phone,
        "snapshot_image": identity.snapshot_image,
        "registered_at": identity.registered_at.isoformat(),
        "last_greeted": identity.last_greeted.isoformat() if identity.last_greeted else None,
        "has_descriptor": bool(identity.descriptor),
        "descriptor_corrupt": descriptor_codec.is_corrupt(identity.descriptor),
    }


def menu_item_response(item):
    return {
        "id": item.id,
        "title": item.title,
        "description": item.description,
        "price": item.price,
        "category": item.category,
        "image_url": item.image_url,
        "available": item.available,
        "created_at": item.created_at.isoformat(),
        "updated_at": item.updated_at.isoformat(),
    }


def order_response(order):
    return {
        "id": order.id,
        "user_id": order.user_id,
        "user_name": order.user_name,
        "items": order.items,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "total_amount": order.total_amount,
        "currency": CURRENCY,
        "status": order.status,
        "order_date": order.order_date.isoformat(),
    }


def create_app(data_dir=DATA_DIR, db_url=None, face_engine=None, camera_factory=Camera, scan_modes=MODES):
    setup_logging()

    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    engine = make_engine(db_url or DB_URL or f"sqlite:///{data_dir / 'db.sqlite'}")
    identity_store = IdentityStore(engine)
    menu_store = MenuStore(engine)
    order_store = OrderStore(engine)
    media_dir = data_dir / MEDIA_DIR_NAME
    media_dir.mkdir(exist_ok=True)
    blobs = LocalBlobStore(media_dir, url_prefix="/data")
    face_engine = face_engine or FaceEngine()
    registration = RegistrationFlow(face_engine, identity_store, blobs)
    scan_loop = ScanLoop(face_engine, identity_store.list, camera_factory=camera_factory)

    def on_scan_update(update):
        if update.state is ScanState.RECOGNIZED and update.identity is not None:
            logger.info("Welcome back, %s!", update.identity.name)
            identity_store.mark_greeted(update.identity.id)
        elif update.state is ScanState.EXHAUSTED:
            logger.info("Face not recognized, waiting for registration details")

    scan_loop.subscribe(on_scan_update)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        try:
            await face_engine.load()
        except ModelLoadError as e:
            logger.error("Face recognition unavailable: %s", e)
        logger.info("FaceFlow ready: %d registered users", len(identity_store.list()))
        yield
        # Shutdown
        await scan_loop.stop()

    app = FastAPI(title="FaceFlow POS", lifespan=lifespan)
    app.state.identities = identity_store
    app.state.menu = menu_store
    app.state.orders = order_store
    app.state.blobs = blobs
    app.state.face_engine = face_engine
    app.state.scan_loop = scan_loop

    async def require_models():
        try:
            await face_engine.load()
        except ModelLoadError as e:
            raise HTTPException(status_code=503, detail=str(e))

    async def read_frame(upload: UploadFile):
        contents = await upload.read()
        img = decode_image(contents)
        if img is None:
            raise HTTPException(status_code=400, detail="Invalid image data")
        return img

    def scan_state_response():
        session = scan_loop.session
        mode = next((name for name, s in scan_modes.items() if s == scan_loop.settings), None)
        return {
            "state": session.state.value,
            "mode": mode,
            "attempt_count": session.attempt_count,
            "user": user_response(session.identity) if session.identity is not None else None,
            "awaiting_registration": scan_loop.handoff_frame is not None,
        }

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "models": face_engine.state.value}

    # Users
    @app.get("/api/users")
    async def list_users():
        return [user_response(u) for u in identity_store.list()]

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: str):
        try:
            return user_response(identity_store.get(user_id))
        except NotFoundError:
            raise HTTPException(status_code=404, detail="User not found")

    @app.put("/api/users/{user_id}")
    async def update_user(user_id: str, update: UserUpdate):
        """Edit contact details (the enrolled face is left alone)"""
        try:
            identity = identity_store.update(user_id, update.model_dump(exclude_none=True))
        except NotFoundError:
            raise HTTPException(status_code=404, detail="User not found")
        return {"success": True, "user": user_response(identity)}

    @app.delete("/api/users/{user_id}")
    async def delete_user(user_id: str):
        try:
            identity = identity_store.get(user_id)
            identity_store.delete(user_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="User not found")

        blobs.delete(identity.snapshot_image)
        scan_loop.forget_identity(user_id)
        return {"success": True, "message": "User deleted successfully"}

    @app.get("/api/users/{user_id}/orders")
    async def list_user_orders(user_id: str, limit: int = Query(ORDER_HISTORY_LIMIT, ge=1, le=100)):
        return [order_response(o) for o in order_store.list_for_user(user_id, limit=limit)]

    @app.get("/api/users/{user_id}/favorites")
    async def list_user_favorites(user_id: str):
        """Items this customer orders most, for the POS quick-add row"""
        return order_store.frequent_items(user_id)

    # Face recognition
    async def _register(frame, name, email, phone):
        try:
            captured = await registration.capture(frame)
        except NoFaceDetectedError as e:
            raise HTTPException(status_code=400, detail=str(e))

        existing = registration.find_existing(captured)
        result = registration.register(ContactFields(name=name, email=email, phone=phone), captured)
        if scan_loop.session.camera_on:
            scan_loop.refresh_candidates()
        return {
            "user": user_response(result.identity),
            "snapshot_stored": result.snapshot_stored,
            "already_enrolled": existing.id if existing is not None else None,
        }

    @app.post("/api/register")
    async def register_user(
        name: str = Form(...),
        email: str = Form(...),
        phone: str = Form(""),
        frame: UploadFile = File(...),
    ):
        """Enroll a new customer from a single frame"""
        await require_models()
        img = await read_frame(frame)
        return await _register(img, name, email, phone)

    @app.post("/api/recognize")
    async def recognize_face(file: UploadFile = File(...)):
        """Recognize the face in one uploaded frame"""
        await require_models()
        img = await read_frame(file)
        img_height, img_width = img.shape[:2]

        detection_data = {"face_detected": False, "bbox": None}
        detection = await face_engine.detect_single_face(img)
        if detection is None:
            return {"match": False, "score": 0.0, "user": None, "detection": detection_data}

        x, y, w, h = detection.bbox
        detection_data = {
            "face_detected": True,
            "bbox": {
                "x1": x / img_width,
                "y1": y / img_height,
                "x2": (x + w) / img_width,
                "y2": (y + h) / img_height,
            },
        }

        try:
            probe = await detection.descriptor()
        except ValueError as e:
            logger.error("Descriptor extraction failed: %s", e)
            raise HTTPException(status_code=500, detail=f"Recognition error: {e}")

        match = best_match(probe, identity_store.list())
        if match is None:
            return {"match": False, "score": 0.0, "user": None, "detection": detection_data}

        return {
            "match": True,
            "score": match.similarity,
            "user": user_response(match.identity),
            "detection": detection_data,
        }

    # Scan session
    @app.post("/api/scan/start")
    async def start_scan(mode: str = Query("greet")):
        settings = scan_modes.get(mode)
        if settings is None:
            raise HTTPException(status_code=400, detail=f"Unknown scan mode: {mode}")
        try:
            await scan_loop.start(settings)
        except ModelLoadError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except CameraUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return scan_state_response()

    @app.post("/api/scan/stop")
    async def stop_scan():
        await scan_loop.stop()
        return scan_state_response()

    @app.post("/api/scan/retry")
    async def retry_scan():
        if scan_loop.state is not ScanState.EXHAUSTED:
            raise HTTPException(status_code=409, detail="Scan session is not waiting for a retry")
        try:
            await scan_loop.retry()
        except CameraUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return scan_state_response()

    @app.get("/api/scan/state")
    async def get_scan_state():
        return scan_state_response()

    @app.post("/api/scan/register")
    async def register_from_scan(
        name: str = Form(...),
        email: str = Form(...),
        phone: str = Form(""),
    ):
        """Enroll using the frame handed off by an exhausted scan session"""
        if scan_loop.handoff_frame is None:
            raise HTTPException(status_code=409, detail="No captured frame to register")
        await require_models()
        response = await _register(scan_loop.handoff_frame, name, email, phone)
        scan_loop.handoff_frame = None
        return response

    # Menu
    def store_menu_image(item_id, contents):
        try:
            jpeg = normalize_menu_image(contents)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        name = f"{MENU_DIR_NAME}/{item_id}_{uuid4().hex[:8]}.jpg"
        try:
            return blobs.put(name, jpeg), name
        except BlobStoreError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/menu")
    async def list_menu(category: Optional[str] = Query(None)):
        return [menu_item_response(i) for i in menu_store.list(category)]

    @app.get("/api/menu/{item_id}")
    async def get_menu_item(item_id: int):
        try:
            return menu_item_response(menu_store.get(item_id))
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Menu item not found")

    @app.post("/api/menu")
    async def create_menu_item(
        title: str = Form(...),
        price: float = Form(...),
        description: str = Form(""),
        category: str = Form("Beverages"),
        available: bool = Form(True),
        image: Optional[UploadFile] = File(None),
    ):
        if price < 0:
            raise HTTPException(status_code=400, detail="Price must not be negative")
        item = menu_store.create({
            "title": title,
            "price": price,
            "description": description,
            "category": category,
            "available": available,
        })
        if image is not None and image.filename:
            url, path = store_menu_image(item.id, await image.read())
            item = menu_store.update(item.id, {"image_url": url, "image_path": path})
        return menu_item_response(item)

    @app.put("/api/menu/{item_id}")
    async def update_menu_item(
        item_id: int,
        title: Optional[str] = Form(None),
        price: Optional[float] = Form(None),
        description: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
        available: Optional[bool] = Form(None),
        image: Optional[UploadFile] = File(None),
    ):
        if price is not None and price < 0:
            raise HTTPException(status_code=400, detail="Price must not be negative")
        try:
            existing = menu_store.get(item_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Menu item not found")

        fields = {
            "title": title,
            "price": price,
            "description": description,
            "category": category,
            "available": available,
        }
        if image is not None and image.filename:
            url, path = store_menu_image(item_id, await image.read())
            blobs.delete(existing.image_path)
            fields.update(image_url=url, image_path=path)

        return menu_item_response(menu_store.update(item_id, fields))

    @app.delete("/api/menu/{item_id}")
    async def delete_menu_item(item_id: int):
        try:
            item = menu_store.get(item_id)
            menu_store.delete(item_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Menu item not found")
        blobs.delete(item.image_path)
        return {"success": True}

    @app.post("/api/menu/seed")
    async def seed_menu():
        """Replace the menu with the coffee-shop demo items"""
        count = menu_store.replace_all(COFFEE_MENU)
        return {"message": f"Seeded {count} menu items"}

    # Orders
    @app.post("/api/orders")
    async def place_order(request: OrderRequest):
        cart = Cart()
        for line in request.items:
            try:
                item = menu_store.get(line.menu_item_id)
            except NotFoundError:
                raise HTTPException(status_code=404, detail=f"Menu item {line.menu_item_id} not found")
            if not item.available:
                raise HTTPException(status_code=400, detail=f"{item.title} is not available")
            cart.add(item, quantity=line.quantity)

        if cart.is_empty():
            raise HTTPException(status_code=400, detail="Cart is empty")

        order = order_store.create(cart, user_id=request.user_id, user_name=request.user_name)
        return order_response(order)

    # Diagnostics
    @app.get("/api/storage/check")
    async def storage_check():
        return blobs.check().as_dict()

    # Serve snapshots and menu images
    app.mount("/data", StaticFiles(directory=str(media_dir)), name="data")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
