import logging
import socket
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel
from pymongo.errors import PyMongoError
import stripe

import database
from admin import AdminService, SiteConfigForm, UserForm, VideoForm
from catalog import CatalogRepository, SortOption
from config import Settings, settings
from errors import FieldValidationError, InvalidTransitionError, NotFoundError, StorefrontError
from logging_config import configure_logging
from media import MediaResolver
from payments import HttpCheckoutGateway, PayPalClient, StripeCheckout
from purchase_flow import PaymentPath, PurchaseFlow, PurchaseFlowRegistry, PurchaseMarkerStore, contact_url
from receipts import render_pdf
from schemas import UserOut, Video, VideoOut
from site_config import MongoSiteConfigStore, SiteConfigProvider
from storage import FileStorage, UploadedFile
from wallets import CryptoWallet, WalletCache, WalletRepository

configure_logging(settings.log_level, settings.log_json)
logger = logging.getLogger(__name__)

app = FastAPI(title="Video Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    """Everything the routes need, wired against one database."""

    def __init__(
        self,
        db,
        settings: Settings,
        media_storage=None,
        thumbnail_storage=None,
        checkout_gateway=None,
        paypal=None,
    ):
        videos = db[settings.video_collection]
        users = db[settings.user_collection]

        self.media_storage = media_storage or FileStorage(db, settings.videos_bucket, settings.public_base_url)
        self.thumbnail_storage = thumbnail_storage or FileStorage(db, settings.thumbnails_bucket, settings.public_base_url)
        self.config_store = MongoSiteConfigStore(db[settings.site_config_collection])
        self.config = SiteConfigProvider(self.config_store)
        self.catalog = CatalogRepository(videos, self.thumbnail_storage)
        self.media = MediaResolver(videos, self.media_storage)
        self.wallets = WalletRepository(self.config, self.config_store, WalletCache(settings.wallet_cache_path))
        self.admin = AdminService(
            videos, users, self.media_storage, self.thumbnail_storage, self.config_store, self.config, self.wallets
        )

        self.checkout_gateway = checkout_gateway or HttpCheckoutGateway(settings.checkout_base_url)
        self.paypal = paypal or PayPalClient(settings.paypal_api_base)
        self.markers = PurchaseMarkerStore()
        self.flows = PurchaseFlowRegistry(self._new_flow)

    def _new_flow(self, video: Video, session_id: str) -> PurchaseFlow:
        return PurchaseFlow(video, session_id, self.config, self.checkout_gateway, self.paypal, self.markers)

    def storage_for(self, bucket: str) -> FileStorage:
        for storage in (self.media_storage, self.thumbnail_storage):
            if storage.bucket_name == bucket:
                return storage
        raise NotFoundError("bucket", bucket)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    if _services is None:
        _services = Services(database.db, settings)
    return _services


def session_id(x_session_id: Optional[str] = Header(None)) -> str:
    return x_session_id or "anonymous"


@app.exception_handler(StorefrontError)
def storefront_error_handler(request, exc: StorefrontError):
    content = {"detail": exc.message}
    if isinstance(exc, FieldValidationError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/", response_class=PlainTextResponse)
def root():
    return "Local API running! Use /api/create-checkout-session to create card checkout sessions."


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"

    return response


# Checkout helper

class CheckoutSessionIn(BaseModel):
    amount: Optional[float] = None
    currency: str = "usd"
    name: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


def _stripe_secret_key() -> str:
    if database.db is None:
        raise RuntimeError("Database not configured")
    doc = MongoSiteConfigStore(database.db[settings.site_config_collection]).load()
    if not doc:
        logger.warning("No site configuration document found")
        return ""
    return doc.get("stripe_secret_key") or ""


_stripe_checkout = StripeCheckout()


def get_stripe_checkout() -> StripeCheckout:
    return _stripe_checkout


@app.post("/api/create-checkout-session")
def create_checkout_session(body: CheckoutSessionIn, checkout: StripeCheckout = Depends(get_stripe_checkout)):
    try:
        secret_key = _stripe_secret_key()
    except (RuntimeError, PyMongoError) as e:
        logger.error("Error fetching Stripe key: %s", e)
        return JSONResponse(status_code=500, content={"error": "Error fetching Stripe configuration", "details": str(e)})
    if not secret_key:
        logger.error("Stripe secret key not found")
        return JSONResponse(status_code=500, content={"error": "Stripe secret key not found"})

    if not body.amount or not body.success_url or not body.cancel_url:
        return JSONResponse(status_code=400, content={"error": "Missing required parameters"})

    try:
        created_id = checkout.create_session(
            secret_key,
            amount=int(round(body.amount)),
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            currency=body.currency or "usd",
        )
    except stripe.StripeError as e:
        logger.error("Error creating checkout session: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return {"sessionId": created_id}


@app.get("/api/checkout-session/{checkout_session_id}")
def get_checkout_session(checkout_session_id: str, checkout: StripeCheckout = Depends(get_stripe_checkout)):
    try:
        secret_key = _stripe_secret_key()
    except (RuntimeError, PyMongoError) as e:
        return JSONResponse(status_code=500, content={"error": "Error fetching Stripe configuration", "details": str(e)})
    if not secret_key:
        return JSONResponse(status_code=500, content={"error": "Stripe secret key not found"})
    try:
        status = checkout.payment_status(secret_key, checkout_session_id)
    except stripe.StripeError as e:
        logger.error("Error retrieving checkout session %s: %s", checkout_session_id, e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return {"sessionId": checkout_session_id, "paymentStatus": status}


# Storefront

class VideoPage(BaseModel):
    videos: List[VideoOut]
    page: int
    per_page: int
    total_pages: int


@app.get("/api/site-config")
def public_site_config(services: Services = Depends(get_services)):
    return services.config.public_view()


@app.get("/api/videos", response_model=VideoPage)
def list_videos(
    sort: SortOption = SortOption.NEWEST,
    q: str = "",
    page: int = 1,
    per_page: int = Query(12, alias="perPage"),
    services: Services = Depends(get_services),
):
    videos, total_pages = services.catalog.list_videos_paged(page, per_page, sort, q)
    return VideoPage(videos=videos, page=page, per_page=per_page, total_pages=total_pages)


@app.get("/api/videos/{video_id}", response_model=VideoOut)
def get_video(video_id: str, services: Services = Depends(get_services)):
    video = services.catalog.get_video(video_id)
    if video is None:
        raise NotFoundError("video", video_id)
    return video


@app.get("/api/videos/{video_id}/suggested", response_model=List[VideoOut])
def suggested_videos(video_id: str, limit: int = 8, services: Services = Depends(get_services)):
    return services.catalog.suggested_videos(video_id, limit)


@app.get("/api/videos/{video_id}/playback")
def playback(video_id: str, services: Services = Depends(get_services)):
    return {"video_id": video_id, "url": services.media.get_playback_url(video_id)}


@app.post("/api/videos/{video_id}/visit")
def visit(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    """Called once per detail-page visit: counts the view and resolves the preview."""
    url = services.media.record_visit(video_id)
    return {
        "video_id": video_id,
        "url": url,
        "just_purchased": services.markers.consume(session, video_id),
    }


@app.get("/api/files/{bucket}/{file_id}")
def get_file(bucket: str, file_id: str, services: Services = Depends(get_services)):
    grid_out = services.storage_for(bucket).open(file_id)
    metadata = grid_out.metadata or {}
    chunks = iter(lambda: grid_out.read(256 * 1024), b"")
    return StreamingResponse(chunks, media_type=metadata.get("content_type") or "application/octet-stream")


# Purchases

class ChooseIn(BaseModel):
    path: PaymentPath


class CardCheckoutIn(BaseModel):
    success_url: str
    cancel_url: str


class CardConfirmIn(BaseModel):
    session_id: Optional[str] = None


def _flow(services: Services, session: str, video_id: str) -> PurchaseFlow:
    video = services.catalog.get_video(video_id)
    if video is None:
        raise NotFoundError("video", video_id)
    return services.flows.get_or_create(session, video)


def _late(result):
    if result is None:
        raise InvalidTransitionError("Purchase flow was closed")
    return result


@app.get("/api/purchases/{video_id}/options")
def purchase_options(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    config = flow.config
    paths = flow.available_paths()
    return {
        **flow.describe(),
        "price": flow.video.price,
        "paypal_client_id": config.paypal_client_id if PaymentPath.PAYPAL in paths else None,
        "stripe_publishable_key": config.stripe_publishable_key if PaymentPath.CARD in paths else None,
        "wallets": [w._asdict() for w in map(CryptoWallet.parse, config.crypto)] if PaymentPath.CRYPTO in paths else [],
        "contact_url": contact_url(config.telegram_username),
    }


@app.post("/api/purchases/{video_id}/choose")
def choose_payment(video_id: str, body: ChooseIn, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    flow.choose(body.path)
    return flow.describe()


@app.post("/api/purchases/{video_id}/card/checkout")
def card_checkout(video_id: str, body: CardCheckoutIn, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    checkout_session_id = _late(flow.start_card_checkout(body.success_url, body.cancel_url))
    return {
        **flow.describe(),
        "sessionId": checkout_session_id,
        "publishableKey": flow.config.stripe_publishable_key,
    }


@app.post("/api/purchases/{video_id}/card/confirm")
def card_confirm(video_id: str, body: CardConfirmIn, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    flow.confirm_card_checkout(body.session_id)
    return flow.describe()


@app.post("/api/purchases/{video_id}/paypal/orders")
def paypal_create_order(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    order_id = _late(flow.create_paypal_order())
    return {**flow.describe(), "orderId": order_id}


@app.post("/api/purchases/{video_id}/paypal/orders/{order_id}/capture")
def paypal_capture_order(video_id: str, order_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    flow.capture_paypal_order(order_id)
    return flow.describe()


@app.post("/api/purchases/{video_id}/crypto/wallets/{index}/copy")
def copy_wallet(video_id: str, index: int, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    wallet = flow.copy_wallet(index)
    return {**flow.describe(), "wallet": wallet._asdict()}


@app.post("/api/purchases/{video_id}/manual/confirm")
def manual_confirm(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    flow.report_manual_payment()
    return flow.describe()


@app.get("/api/purchases/{video_id}/access")
def reveal_access(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    artifact = flow.reveal_access()
    return {**flow.describe(), "access": artifact._asdict()}


@app.get("/api/purchases/{video_id}/receipt")
def download_receipt(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    flow = _flow(services, session, video_id)
    receipt = flow.receipt()
    return Response(
        content=render_pdf(receipt),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{receipt.filename}"'},
    )


@app.get("/api/purchases/{video_id}/just-purchased")
def just_purchased(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    return {"video_id": video_id, "just_purchased": services.markers.consume(session, video_id)}


@app.delete("/api/purchases/{video_id}")
def close_purchase(video_id: str, session: str = Depends(session_id), services: Services = Depends(get_services)):
    return {"closed": services.flows.close(session, video_id)}


# Admin

def _upload(upload: Optional[UploadFile]) -> Optional[UploadedFile]:
    if upload is None or not upload.filename:
        return None
    return UploadedFile(upload.filename, upload.content_type, upload.file.read())


@app.get("/api/admin/summary")
def admin_summary(services: Services = Depends(get_services)):
    return services.admin.summary()


@app.get("/api/admin/videos", response_model=List[Video])
def admin_list_videos(services: Services = Depends(get_services)):
    return services.admin.list_videos()


@app.post("/api/admin/videos", response_model=dict)
def admin_create_video(
    title: str = Form(""),
    description: str = Form(""),
    price: str = Form(""),
    product_link: str = Form(""),
    duration: Optional[int] = Form(None),
    is_active: Optional[bool] = Form(None),
    media: Optional[UploadFile] = File(None),
    thumbnail: Optional[UploadFile] = File(None),
    services: Services = Depends(get_services),
):
    form = VideoForm(title=title, description=description, price=price, product_link=product_link, is_active=is_active)
    video_id = services.admin.create_video(form, _upload(media), _upload(thumbnail), duration)
    return {"id": video_id}


@app.patch("/api/admin/videos/{video_id}", response_model=Video)
def admin_update_video(
    video_id: str,
    title: str = Form(""),
    description: str = Form(""),
    price: str = Form(""),
    product_link: str = Form(""),
    duration: Optional[int] = Form(None),
    is_active: Optional[bool] = Form(None),
    media: Optional[UploadFile] = File(None),
    thumbnail: Optional[UploadFile] = File(None),
    services: Services = Depends(get_services),
):
    form = VideoForm(title=title, description=description, price=price, product_link=product_link, is_active=is_active)
    return services.admin.update_video(video_id, form, _upload(media), _upload(thumbnail), duration)


@app.delete("/api/admin/videos/{video_id}")
def admin_delete_video(video_id: str, services: Services = Depends(get_services)):
    services.admin.delete_video(video_id)
    return {"status": "ok"}


@app.get("/api/admin/users", response_model=List[UserOut])
def admin_list_users(services: Services = Depends(get_services)):
    return services.admin.list_users()


@app.post("/api/admin/users", response_model=dict)
def admin_create_user(body: UserForm, services: Services = Depends(get_services)):
    return {"id": services.admin.create_user(body)}


@app.patch("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, body: UserForm, services: Services = Depends(get_services)):
    services.admin.update_user(user_id, body)
    return {"status": "ok"}


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, services: Services = Depends(get_services)):
    services.admin.delete_user(user_id)
    return {"status": "ok"}


@app.get("/api/admin/site-config")
def admin_get_site_config(services: Services = Depends(get_services)):
    return services.admin.get_site_config()


@app.put("/api/admin/site-config")
def admin_save_site_config(body: SiteConfigForm, services: Services = Depends(get_services)):
    services.admin.save_site_config(body)
    return services.admin.get_site_config()


class WalletIn(BaseModel):
    code: str
    address: str


@app.post("/api/admin/site-config/wallets")
def admin_add_wallet(body: WalletIn, services: Services = Depends(get_services)):
    edit = services.admin.add_wallet(body.code, body.address)
    return edit._asdict()


@app.delete("/api/admin/site-config/wallets/{index}")
def admin_remove_wallet(index: int, services: Services = Depends(get_services)):
    edit = services.admin.remove_wallet(index)
    return edit._asdict()


DEFAULT_PORT = 8000
ALTERNATIVE_PORTS = range(8001, 8010)


def _port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return True
    return False


def pick_port() -> int:
    """PORT wins; otherwise the default, or the first free alternative when it is taken."""
    if settings.port:
        return settings.port
    if not _port_in_use(DEFAULT_PORT):
        return DEFAULT_PORT
    for port in ALTERNATIVE_PORTS:
        if not _port_in_use(port):
            logger.warning("Port %d is in use, using alternative port %d", DEFAULT_PORT, port)
            return port
    return DEFAULT_PORT


if __name__ == "__main__":
    import uvicorn
    port = pick_port()
    logger.info("Storefront API listening on port %d", port)
    uvicorn.run(app, host="0.0.0.0", port=port)
