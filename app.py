#!/usr/bin/env python3
"""
Concept Alignment Web API

Flask app for running audits and exploring their graphs and results.
"""

from typing import Callable, Optional

from flask import Flask, jsonify

from config import load_settings, setup_logging
from repositories import Repository, configure_backend
from routes import audit_bp


def create_app(
    repo: Optional[Repository] = None,
    pipeline_factory: Optional[Callable] = None,
) -> Flask:
    """
    Build the Flask app.

    repo defaults to the configured repository backend; pipeline_factory
    (repo -> AuditPipeline) defaults to wiring one from settings.
    """
    app = Flask(__name__)
    app.config["AUDIT_REPO"] = repo
    app.config["PIPELINE_FACTORY"] = pipeline_factory
    app.register_blueprint(audit_bp)

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    setup_logging()
    settings = load_settings()
    configure_backend(settings.backend, **({"base_path": settings.sessions_dir} if settings.backend == "json" else {}))
    app = create_app()
    print("\n" + "="*60)
    print("  Concept Alignment API")
    print("="*60)
    print(f"  Model: {settings.model}")
    print("  Listening on http://localhost:5001")
    print("="*60 + "\n")
    app.run(debug=True, port=5001)
