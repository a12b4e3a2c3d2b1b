# -*- coding: utf-8 -*-
"""PVMSS API blueprints"""


def register_blueprints(app):
    """Register all API blueprints with the Flask app."""
    from pvmss.api.auth import bp as auth_bp
    from pvmss.api.console import bp as console_bp
    from pvmss.api.settings import bp as settings_bp
    from pvmss.api.health import bp as health_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(console_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(health_bp)
