import os
from datetime import datetime
import click
from flask import Flask, jsonify
from config import Config
from extensions import db, login_manager, init_extensions
from logger import configure_app_logging
from models import User


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    # ------------------------------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------------------------------
    configure_app_logging(app)

    # ------------------------------------------------------------------------------------------
    # Reward knobs are checked once, at start-up
    # ------------------------------------------------------------------------------------------
    from rewards.config import validate_reward_configuration
    validate_reward_configuration(app.config)

    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///") and ":memory:" not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace("sqlite:///", "", 1)) or ".", exist_ok=True)

    # ------------------------------------------------------------------------------------------
    # Initialize extensions
    # ------------------------------------------------------------------------------------------
    init_extensions(app)

    register_blueprints(app)
    register_commands(app)

    # ------------------------------------------------------------------------------------------
    # Flask-Login
    # ------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": datetime.now().isoformat()}, 200

    return app


# ------------------------------------------------------------------------------------------
# Register blueprints
# ------------------------------------------------------------------------------------------
def register_blueprints(app):
    from blueprints.auth import bp as auth_bp
    from blueprints.positions import bp as positions_bp
    from blueprints.videos import bp as videos_bp
    from blueprints.referrals import bp as referrals_bp
    from blueprints.dashboard import bp as dashboard_bp
    from blueprints.wallet import bp as wallet_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(positions_bp)
    app.register_blueprint(videos_bp)
    app.register_blueprint(referrals_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(wallet_bp)


# ------------------------------------------------------------------------------------------
# CLI
# ------------------------------------------------------------------------------------------
def register_commands(app):

    @app.cli.command("seed-catalog")
    @click.option("--with-videos/--no-videos", default=True, help="Also add demo videos.")
    def seed_catalog(with_videos):
        """Create tables and seed positions, referral rewards and demo videos."""
        from seed import seed_catalog as run_seed
        db.create_all()
        created = run_seed(with_videos=with_videos)
        click.echo(
            f"Seeded {created['positions']} position(s), {created['rewards']} reward trigger(s), "
            f"{created['videos']} video(s)"
        )

    @app.cli.command("audit-ledger")
    def audit_ledger():
        """Replay every user's ledger and report mismatches."""
        from rewards.audit import LedgerAuditor
        report = LedgerAuditor.audit_all()
        click.echo(f"Checked {report['usersChecked']} user(s), {report['usersFailed']} mismatch(es)")
        for failure in report["failures"]:
            click.echo(f"  user {failure['userId']}: {'; '.join(failure['problems'])}")
        for cycle in report["referralCycles"]:
            click.echo(f"  referral cycle: {' -> '.join(str(uid) for uid in cycle)}")
        if report["usersFailed"] or report["referralCycles"]:
            raise SystemExit(1)
