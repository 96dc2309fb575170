import os

from flask import Flask
from flask_cors import CORS

from .config import DevConfig, ProdConfig
from .errors import register_error_handlers
from .extensions import db, init_push_client
from .routes import register_routes


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    if config_object:
        app.config.from_object(config_object)
    else:
        default = ProdConfig if os.getenv("FLASK_ENV") == "production" else DevConfig
        app.config.from_object(default)
        app.config.from_envvar("APP_SETTINGS", silent=True)

    db.init_app(app)
    init_push_client(app)

    # Mobile and web clients call the API directly
    CORS(app,
         origins=app.config.get("CORS_ORIGINS", ["*"]),
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization", "X-Account-Id", "X-User-Id", "X-Cron-Secret"],
         methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
    )

    register_error_handlers(app)
    register_routes(app)

    return app
