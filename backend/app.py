import json
import logging
import os
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from .catalog import list_public_products, search_public_products
from .dimensions import TRUTHY_FLAGS, is_blank
from .emails import DEFAULT_COMPANY_NAME, EmailSender
from .errors import (
    CatalogError,
    EmailServiceUnavailable,
    NotFound,
    StorageOperationFailed,
    StorageUnavailable,
    ValidationError,
)
from .products import (
    DEFAULT_IMAGE_FOLDER,
    MAX_ADDITIONAL_IMAGES,
    ProductDraft,
    ProductUpdate,
    ProductWriteCoordinator,
    UploadedImage,
    serialize_product,
)
from .repository import ProductRepository
from .storage import DEFAULT_PUBLIC_HOST, build_storage_gateway

load_dotenv()

COMPANY_NAME = (os.getenv("COMPANY_NAME") or DEFAULT_COMPANY_NAME).strip()

CLEAR_SENTINELS = {"", "null", "[]"}
MAX_INQUIRY_FILES = 5
MAX_INQUIRY_FILE_BYTES = 5 * 1024 * 1024


def create_app(
    test_config: Optional[Dict] = None,
    *,
    product_collection=None,
    storage_gateway=None,
    email_sender=None,
) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so the public HTTPS origin survives the load balancer.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["MONGO_URI"] = (
        os.getenv("MONGO_URI")
        or os.getenv("MONGODB_URI")
        or "mongodb://localhost:27017/gamma_ortho"
    )
    app.config["MAX_UPLOAD_SIZE_MB"] = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config["GCS_BUCKET_NAME"] = os.getenv("GCS_BUCKET_NAME", "")
    app.config["GOOGLE_APPLICATION_CREDENTIALS_JSON"] = os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS_JSON", ""
    )
    app.config["GOOGLE_APPLICATION_CREDENTIALS"] = os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS", ""
    )
    app.config["GCS_PUBLIC_HOST"] = os.getenv("GCS_PUBLIC_HOST", DEFAULT_PUBLIC_HOST)
    app.config["GCS_PUBLIC_READ"] = (
        os.getenv("GCS_PUBLIC_READ", "true").strip().lower() in TRUTHY_FLAGS
    )
    app.config["PRODUCT_IMAGE_FOLDER"] = os.getenv(
        "PRODUCT_IMAGE_FOLDER", DEFAULT_IMAGE_FOLDER
    )
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["SENDER_EMAIL"] = (os.getenv("SENDER_EMAIL") or "").strip()
    app.config["OWNER_EMAIL"] = (os.getenv("OWNER_EMAIL") or "").strip()
    app.config["COMPANY_NAME"] = COMPANY_NAME
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    if test_config:
        app.config.update(test_config)

    max_image_bytes = int(app.config["MAX_UPLOAD_SIZE_MB"]) * 1024 * 1024
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = max_image_bytes * (MAX_ADDITIONAL_IMAGES + 1) + 1024 * 1024

    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    # --- Initialize extensions ---
    allowed_origins = [
        os.getenv("FRONTEND_URL", "").strip(),
        os.getenv("ADMIN_FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]
    if not allowed_origins:
        app.logger.warning(
            "No FRONTEND_URL or ADMIN_FRONTEND_URL configured; CORS allows all origins."
        )

    CORS(app, origins=allowed_origins or "*")

    if product_collection is None:
        mongo = PyMongo(app)
        product_collection = mongo.db.products

    if storage_gateway is None:
        storage_gateway = build_storage_gateway(app.config, app.logger)

    if email_sender is None:
        email_sender = EmailSender(
            app.config["RESEND_API_KEY"],
            app.config["SENDER_EMAIL"],
            app.config["OWNER_EMAIL"],
            company_name=app.config["COMPANY_NAME"],
            logger=app.logger,
        )
    if not email_sender.is_configured():
        app.logger.warning("Email credentials not found. Email sending is disabled.")

    products = ProductRepository(product_collection, logger=app.logger)
    products.ensure_indexes()
    coordinator = ProductWriteCoordinator(
        products,
        storage_gateway,
        logger=app.logger,
        image_folder=app.config["PRODUCT_IMAGE_FOLDER"],
    )

    # --- Helpers ---

    def error_response(exc: CatalogError):
        status_code = 500
        if isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, NotFound):
            status_code = 404
        elif isinstance(exc, (StorageUnavailable, EmailServiceUnavailable)):
            status_code = 503
        elif isinstance(exc, StorageOperationFailed):
            status_code = 502

        body: Dict[str, object] = {"message": exc.message}
        if isinstance(exc, ValidationError) and exc.errors:
            body["errors"] = exc.errors
        return jsonify(body), status_code

    def read_payload() -> Dict[str, object]:
        if request.form:
            return request.form.to_dict()
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def text_field(payload: Dict[str, object], key: str) -> Optional[str]:
        value = payload.get(key)
        if value is None:
            return None
        return str(value)

    def collect_dimension_entries(payload: Dict[str, object]) -> Optional[List]:
        entries = []
        index = 0
        while True:
            name_key = f"dimensions[{index}][dimensionName]"
            price_key = f"dimensions[{index}][basePrice]"
            if name_key not in payload and price_key not in payload:
                break
            entries.append(
                {
                    "dimensionName": payload.get(name_key),
                    "basePrice": payload.get(price_key),
                }
            )
            index += 1
        if entries:
            return entries

        if "dimensions" not in payload:
            return None

        raw_value = payload.get("dimensions")
        if isinstance(raw_value, str):
            candidate = raw_value.strip()
            if not candidate:
                return []
            try:
                raw_value = json.loads(candidate)
            except (json.JSONDecodeError, ValueError):
                raise ValidationError(
                    "Invalid dimensions data format.",
                    {"dimensions": "Expected a list of dimensions."},
                )

        if raw_value is None:
            return []
        if isinstance(raw_value, dict):
            raw_value = [raw_value]
        if not isinstance(raw_value, list):
            raise ValidationError(
                "Invalid dimensions data format.",
                {"dimensions": "Expected a list of dimensions."},
            )
        return raw_value

    def is_clear_sentinel(payload: Dict[str, object], key: str) -> bool:
        if key not in payload:
            return False
        value = payload.get(key)
        if value is None:
            return True
        if isinstance(value, list):
            return not value
        return str(value).strip().lower() in CLEAR_SENTINELS

    def collect_retained_urls(payload: Dict[str, object]) -> Optional[List[str]]:
        key = "additionalImageURLs"
        if key not in payload or is_clear_sentinel(payload, key):
            return None

        form_values = request.form.getlist(key) if request.form else []
        if len(form_values) > 1:
            values = form_values
        else:
            value = payload.get(key)
            if isinstance(value, str):
                try:
                    parsed = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    parsed = [value]
                value = parsed if isinstance(parsed, list) else [value]
            values = value if isinstance(value, list) else [value]

        retained: List[str] = []
        for item in values:
            candidate = str(item or "").strip()
            if candidate and candidate.lower() != "null":
                retained.append(candidate)
        return retained

    def collect_images(
        field_name: str, max_count: int, max_bytes: int = max_image_bytes
    ) -> List[UploadedImage]:
        files = [
            file_storage
            for file_storage in request.files.getlist(field_name)
            if file_storage and file_storage.filename
        ]
        if len(files) > max_count:
            raise ValidationError(
                f"Too many files for {field_name}. At most {max_count} allowed.",
                {field_name: f"At most {max_count} files are allowed."},
            )

        images: List[UploadedImage] = []
        for file_storage in files:
            mimetype = (file_storage.mimetype or "").lower()
            if not mimetype.startswith("image/"):
                app.logger.warning(
                    "Rejected non-image upload %s (%s) for %s",
                    file_storage.filename,
                    mimetype or "unknown type",
                    field_name,
                )
                continue
            data = file_storage.read()
            if len(data) > max_bytes:
                raise ValidationError(
                    f"{file_storage.filename} exceeds the {max_bytes // (1024 * 1024)} MB limit.",
                    {field_name: "File is too large."},
                )
            images.append(
                UploadedImage(
                    data=data,
                    filename=os.path.basename(file_storage.filename.replace("\\", "/")) or "image",
                    content_type=mimetype,
                )
            )
        return images

    def collect_attachments() -> List[Tuple[str, bytes]]:
        files = [
            file_storage
            for file_storage in request.files.getlist("contact-files[]")
            if file_storage and file_storage.filename
        ]
        if len(files) > MAX_INQUIRY_FILES:
            raise ValidationError(f"You can attach up to {MAX_INQUIRY_FILES} files.")

        attachments: List[Tuple[str, bytes]] = []
        for file_storage in files:
            data = file_storage.read()
            if len(data) > MAX_INQUIRY_FILE_BYTES:
                raise ValidationError(f"{file_storage.filename} exceeds the 5 MB limit.")
            attachments.append((secure_filename(file_storage.filename) or "attachment", data))
        return attachments

    def build_draft(payload: Dict[str, object]) -> ProductDraft:
        base_images = collect_images("baseImage", 1)
        return ProductDraft(
            name=text_field(payload, "name"),
            product_type=text_field(payload, "productType"),
            new_product_type=text_field(payload, "newProductType"),
            description=text_field(payload, "description"),
            gst_rate=payload.get("gstRate"),
            is_active=payload.get("isActive"),
            dimensions=collect_dimension_entries(payload) or [],
            base_image=base_images[0] if base_images else None,
            additional_images=collect_images("additionalImages", MAX_ADDITIONAL_IMAGES),
        )

    def build_update(payload: Dict[str, object]) -> ProductUpdate:
        base_images = collect_images("baseImage", 1)
        product_type = text_field(payload, "productTypeSelect")
        if is_blank(product_type):
            product_type = text_field(payload, "productType")
        return ProductUpdate(
            name=text_field(payload, "name"),
            product_type=product_type,
            new_product_type=text_field(payload, "newProductType"),
            description=text_field(payload, "description"),
            gst_rate=payload.get("gstRate"),
            is_active=payload.get("isActive"),
            dimensions=collect_dimension_entries(payload),
            base_image=base_images[0] if base_images else None,
            additional_images=collect_images("additionalImages", MAX_ADDITIONAL_IMAGES),
            clear_base_image=is_clear_sentinel(payload, "baseImageURL"),
            clear_additional_images=is_clear_sentinel(payload, "additionalImageURLs"),
            retained_additional_image_urls=collect_retained_urls(payload),
        )

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/test", methods=["GET"])
    def test_route():
        db_status = "Connected"
        try:
            product_collection.database.client.admin.command("ping")
        except Exception as exc:
            app.logger.warning("Database ping failed: %s", exc)
            db_status = "Disconnected"
        return jsonify(
            {"message": f"Hello from {app.config['COMPANY_NAME']} Backend! DB Status: {db_status}"}
        )

    # Admin products
    @app.route("/api/admin/products", methods=["POST"])
    def create_product():
        payload = read_payload()
        try:
            created_product = coordinator.create(build_draft(payload))
        except CatalogError as exc:
            app.logger.warning("Error creating product: %s", exc.message)
            return error_response(exc)
        return jsonify(serialize_product(created_product)), 201

    @app.route("/api/admin/products", methods=["GET"])
    def list_products():
        search_term = (request.args.get("q") or "").strip()
        try:
            product_docs = coordinator.search(search_term) if search_term else coordinator.list_all()
        except CatalogError as exc:
            return error_response(exc)
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/admin/product-types", methods=["GET"])
    def list_product_types():
        try:
            product_types = coordinator.product_types()
        except CatalogError as exc:
            return error_response(exc)
        return jsonify({"productTypes": product_types})

    @app.route("/api/admin/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        try:
            product_document = coordinator.get(product_id)
        except CatalogError as exc:
            return error_response(exc)
        return jsonify(serialize_product(product_document))

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    def update_product(product_id: str):
        payload = read_payload()
        try:
            updated_product = coordinator.update(product_id, build_update(payload))
        except CatalogError as exc:
            app.logger.warning("Error updating product %s: %s", product_id, exc.message)
            return error_response(exc)
        return jsonify(serialize_product(updated_product))

    @app.route("/api/admin/products/<product_id>", methods=["DELETE"])
    def delete_product(product_id: str):
        try:
            result = coordinator.delete(product_id)
        except CatalogError as exc:
            return error_response(exc)
        return jsonify(result)

    # Public catalog
    @app.route("/api/products", methods=["GET"])
    def list_active_products():
        search_term = (request.args.get("q") or "").strip()
        try:
            if search_term:
                public_products = search_public_products(products, search_term)
            else:
                public_products = list_public_products(products)
        except CatalogError as exc:
            return error_response(exc)
        return jsonify(public_products)

    # Orders and inquiries
    @app.route("/api/orders/place-order", methods=["POST"])
    def place_order():
        order_data = request.get_json(silent=True)
        if not isinstance(order_data, dict):
            order_data = {}
        try:
            email_sender.send_order_confirmation(order_data)
        except CatalogError as exc:
            app.logger.error("Error processing order: %s", exc.message)
            return error_response(exc)
        return jsonify(
            {"message": "Order placed successfully! Confirmation emails have been sent."}
        )

    @app.route("/api/inquiry/submit", methods=["POST"])
    def submit_inquiry():
        inquiry_data = read_payload()
        try:
            email_sender.send_inquiry(inquiry_data, collect_attachments())
        except CatalogError as exc:
            app.logger.error("Error processing inquiry: %s", exc.message)
            return error_response(exc)
        return jsonify(
            {"message": "Inquiry submitted successfully! We will get back to you soon."}
        )

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 3001))
    create_app().run(host="0.0.0.0", port=port)
