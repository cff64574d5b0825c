# backend/pharmapos/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate



def create_app(test_config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.sales import sales_bp
    from .routes.returns import returns_bp
    from .routes.sale_edits import sale_edits_bp
    from .routes.credit import credit_bp
    from .routes.mpesa import mpesa_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(sale_edits_bp)
    app.register_blueprint(credit_bp)
    app.register_blueprint(mpesa_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if not app.config.get("TESTING"):
        from .services.credit_service import start_overdue_sweeper
        start_overdue_sweeper(app)

    return app
