import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase
from werkzeug.middleware.proxy_fix import ProxyFix

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "DEBUG"))

class Base(DeclarativeBase):
    pass

db = SQLAlchemy(model_class=Base)

# Create the app
app = Flask(__name__)
app.secret_key = os.environ.get("SESSION_SECRET", "dev-secret-key-change-in-production")
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

# Uploads for photo tasks
app.config['UPLOAD_FOLDER'] = os.environ.get("UPLOAD_FOLDER", "static/uploads")
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max file size

# Outbound calls and database statements share one timeout
app.config["EXTERNAL_TIMEOUT_SECONDS"] = float(os.environ.get("EXTERNAL_TIMEOUT_SECONDS", 10))


def database_connect_args(uri, timeout):
    """Driver arguments bounding connection and statement time for the configured database"""
    if uri.startswith("sqlite"):
        return {"timeout": timeout}
    if uri.startswith("postgres"):
        return {
            "connect_timeout": int(timeout),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return {}


# Configure the database
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///strun.db")
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "connect_args": database_connect_args(
        app.config["SQLALCHEMY_DATABASE_URI"], app.config["EXTERNAL_TIMEOUT_SECONDS"]
    ),
}

# Identity provider (Supabase access tokens are HS256 JWTs)
app.config["AUTH_JWT_SECRET"] = os.environ.get("SUPABASE_JWT_SECRET")
app.config["AUTH_JWT_AUDIENCE"] = os.environ.get("SUPABASE_JWT_AUDIENCE", "authenticated")

# Proof pinning
app.config["PINATA_JWT"] = os.environ.get("PINATA_JWT")
app.config["PINATA_PIN_JSON_URL"] = os.environ.get(
    "PINATA_PIN_JSON_URL", "https://api.pinata.cloud/pinning/pinJSONToIPFS"
)

# Claim policy
app.config["CLAIM_TOKEN_MAX_AGE_SECONDS"] = int(os.environ.get("CLAIM_TOKEN_MAX_AGE_SECONDS", 120))
app.config["GEOFENCE_TOLERANCE_M"] = int(os.environ.get("GEOFENCE_TOLERANCE_M", 30))
app.config["CLAIM_WINDOW_HOURS"] = int(os.environ.get("CLAIM_WINDOW_HOURS", 24))
app.config["DAILY_JOIN_LIMIT"] = int(os.environ.get("DAILY_JOIN_LIMIT", 3))
app.config["NONCE_TTL_SECONDS"] = int(os.environ.get("NONCE_TTL_SECONDS", 600))

# Initialize the app with the extension
db.init_app(app)

# Import routes after app creation to avoid circular imports
from routes import *
import commands

with app.app_context():
    # Import models to ensure tables are created
    import models
    db.create_all()
