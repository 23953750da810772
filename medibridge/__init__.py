import logging
import os
import random
from datetime import timedelta

import click
from dotenv import load_dotenv
from flask import Flask, jsonify
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException

from medibridge.claims import reconcile_offers
from medibridge.db import MongoJSONProvider, ensure_indexes, utcnow
from medibridge.errors import ApiError

logger = logging.getLogger(__name__)


# App & Database Configuration

def create_app(test_config=None, db=None):
    load_dotenv()

    app = Flask(__name__)
    app.json = MongoJSONProvider(app)
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-change-me")
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/medibridge")
    app.config["MONGO_DB"] = os.getenv("MONGO_DB", "medibridge")
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")
    app.config["GROQ_API_KEY"] = os.getenv("GROQ_API_KEY")
    app.config["GROQ_MODEL"] = os.getenv("GROQ_MODEL")
    app.config["GROQ_BASE_URL"] = os.getenv("GROQ_BASE_URL")
    app.config["DEFAULT_SHOP_RADIUS_KM"] = float(os.getenv("DEFAULT_SHOP_RADIUS_KM", "10"))
    app.config["LOW_STOCK_THRESHOLD"] = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if db is None:
        client = MongoClient(app.config["MONGO_URI"])
        db = client[app.config["MONGO_DB"]]
    app.db = db

    ensure_indexes(app.db)

    from medibridge.routes import auth, medicines, notifications, patient, shop, shops
    for mod in (auth, patient, shop, medicines, notifications, shops):
        app.register_blueprint(mod.bp)

    register_error_handlers(app)
    register_commands(app)

    @app.route("/health")
    def health():
        try:
            app.db.command("ping")
            return jsonify({
                "status": "healthy",
                "database": "connected",
                "timestamp": utcnow().isoformat(),
            })
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return jsonify({
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e),
                "timestamp": utcnow().isoformat(),
            }), 500

    return app


# -----------------------------
# Error handling
# -----------------------------
def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(e):
        return jsonify({"ok": False, "msg": e.msg}), e.status

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate(e):
        logger.info("Duplicate key rejected: %s", e.details)
        return jsonify({"ok": False, "msg": "Record already exists"}), 409

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return jsonify({"ok": False, "msg": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error: %s", e)
        return jsonify({"ok": False, "msg": "Internal server error"}), 500


# -----------------------------
# CLI
# -----------------------------
SEED_MEDICINES = [
    {"medicine_name": "Paracetamol 500mg", "brand": "Crocin", "category": "Pain Relief", "price": 25},
    {"medicine_name": "Amoxicillin 500mg", "brand": "Mox", "category": "Antibiotic", "price": 85},
    {"medicine_name": "Cetirizine 10mg", "brand": "Cetzine", "category": "Antihistamine", "price": 35},
    {"medicine_name": "Omeprazole 20mg", "brand": "Omez", "category": "Antacid", "price": 65},
    {"medicine_name": "Metformin 500mg", "brand": "Glycomet", "category": "Diabetes", "price": 45},
    {"medicine_name": "Amlodipine 5mg", "brand": "Amlong", "category": "Blood Pressure", "price": 55},
    {"medicine_name": "Azithromycin 500mg", "brand": "Azithral", "category": "Antibiotic", "price": 120},
    {"medicine_name": "Pantoprazole 40mg", "brand": "Pan-D", "category": "Antacid", "price": 75},
    {"medicine_name": "Ibuprofen 400mg", "brand": "Brufen", "category": "Pain Relief", "price": 30},
    {"medicine_name": "Montelukast 10mg", "brand": "Montair", "category": "Respiratory", "price": 95},
    {"medicine_name": "Atorvastatin 10mg", "brand": "Atorva", "category": "Cholesterol", "price": 85},
    {"medicine_name": "Losartan 50mg", "brand": "Losar", "category": "Blood Pressure", "price": 60},
    {"medicine_name": "Dolo 650mg", "brand": "Dolo", "category": "Pain Relief", "price": 32},
    {"medicine_name": "Vitamin D3 60000 IU", "brand": "D-Rise", "category": "Vitamin", "price": 110},
    {"medicine_name": "Multivitamin", "brand": "Becosules", "category": "Vitamin", "price": 45},
]


def seed_medicines(db, per_shop=5):
    added = 0
    for i, shop in enumerate(db.users.find({"role": "shop"}, {"_id": 1})):
        have = {m["medicine_name"] for m in db.inventory.find({"shop_id": shop["_id"]}, {"medicine_name": 1})}
        # rotate through the catalogue so neighbouring shops stock different lines
        start = (i * per_shop) % len(SEED_MEDICINES)
        picks = [SEED_MEDICINES[(start + j) % len(SEED_MEDICINES)] for j in range(per_shop)]
        now = utcnow()
        for med in picks:
            if med["medicine_name"] in have:
                continue
            db.inventory.insert_one({
                "shop_id": shop["_id"],
                "medicine_name": med["medicine_name"],
                "quantity": random.randint(20, 100),
                "expiry_date": now + timedelta(days=30 * random.randint(6, 24)),
                "brand": med["brand"],
                "price": med["price"] + random.randint(-5, 10),
                "category": med["category"],
                "created_at": now,
                "updated_at": now,
            })
            added += 1
    return added


def register_commands(app):
    @app.cli.command("init-db")
    def init_db_command():
        """Create collection indexes."""
        ensure_indexes(app.db)
        click.echo("Indexes created.")

    @app.cli.command("seed-medicines")
    def seed_medicines_command():
        """Stock every shop with a few catalogue medicines."""
        click.echo(f"Added {seed_medicines(app.db)} inventory item(s).")

    @app.cli.command("reconcile-offers")
    def reconcile_offers_command():
        """Reject offers left pending on already accepted prescriptions."""
        click.echo(f"Rejected {reconcile_offers(app.db)} stale offer(s).")
