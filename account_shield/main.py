from flask import Flask, jsonify, request

from .config import get_config
from .core import SecurityCore, build_security_core
from .errors import (
    ConfigurationError,
    DeliveryError,
    LockedError,
    NotProvisionedError,
    RateLimitedError,
    StorageCorruptionError,
    StorageUnavailableError,
    VerificationFailedError,
)
from .logging_config import configure_logging

ERROR_STATUS = {
    LockedError: 423,
    RateLimitedError: 429,
    VerificationFailedError: 401,
    NotProvisionedError: 404,
    ConfigurationError: 409,
    StorageUnavailableError: 503,
    StorageCorruptionError: 500,
    DeliveryError: 502,
}


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def create_app(core: SecurityCore) -> Flask:
    app = Flask(__name__)
    app.extensions['security_core'] = core

    # --- MIDDLEWARE / HELPERS ---

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Content-Security-Policy'] = "default-src 'self'"
        response.headers['Cache-Control'] = 'no-store'
        return response

    def handle_security_error(error):
        body = {"error": str(error)}
        minutes = getattr(error, 'minutes_remaining', None)
        if minutes is not None:
            body["minutes_remaining"] = minutes
        attempts = getattr(error, 'attempts_remaining', None)
        if attempts is not None:
            body["attempts_remaining"] = attempts
        status = next(code for cls, code in ERROR_STATUS.items() if isinstance(error, cls))
        return jsonify(body), status

    for error_cls in ERROR_STATUS:
        app.register_error_handler(error_cls, handle_security_error)

    @app.errorhandler(KeyError)
    def missing_field(error):
        return jsonify({"error": f"Missing field: {error.args[0]}"}), 400

    @app.errorhandler(ValueError)
    def invalid_value(error):
        return jsonify({"error": str(error)}), 400

    # --- AUTH ---

    @app.route('/auth/login', methods=['POST'])
    def login():
        data = _payload()
        identity = core.auth.sign_in(data['identifier'], data['password'])
        return jsonify({
            "user_id": identity.user_id,
            "mfa_required": core.mfa.is_provisioned(identity.user_id),
        })

    @app.route('/auth/logout', methods=['POST'])
    def logout():
        return jsonify({"logged_out": core.auth.sign_out()})

    @app.route('/auth/activity', methods=['POST'])
    def activity():
        core.session.touch()
        return jsonify({"active": core.session.get_session() is not None})

    @app.route('/auth/lock-status/<identifier>', methods=['GET'])
    def lock_status(identifier):
        status = core.auth.is_account_locked(identifier)
        if not status:
            return jsonify({"locked": False})
        return jsonify({"locked": True, "minutes_remaining": status.minutes_remaining})

    @app.route('/auth/password-reset', methods=['POST'])
    def password_reset():
        core.auth.request_password_reset(_payload()['identifier'])
        # Same response whether or not the account exists
        return jsonify({"msg": "If the account exists, a reset link has been sent."}), 202

    # --- MFA ---

    @app.route('/mfa/totp/setup', methods=['POST'])
    def totp_setup():
        data = _payload()
        setup = core.mfa.setup_totp(
            data['user_id'],
            account_name=data.get('account_name'),
            include_qr=bool(data.get('include_qr')),
        )
        return jsonify({
            "secret": setup.secret,
            "provisioning_uri": setup.provisioning_uri,
            "qr_code": setup.qr_code,
        }), 201

    @app.route('/mfa/totp/verify-setup', methods=['POST'])
    def totp_verify_setup():
        data = _payload()
        result = core.mfa.verify_setup(data['user_id'], data['code'])
        return jsonify(result.to_dict()), 200 if result.success else 401

    @app.route('/mfa/backup-codes', methods=['POST'])
    def backup_codes():
        codes = core.mfa.generate_backup_codes(_payload()['user_id'])
        return jsonify({"backup_codes": codes}), 201

    @app.route('/mfa/send', methods=['POST'])
    def send_code():
        data = _payload()
        return jsonify(core.mfa.send_out_of_band(data['user_id'], data['channel'], data['destination']))

    @app.route('/mfa/verify', methods=['POST'])
    def verify_code():
        data = _payload()
        result = core.mfa.verify(data['user_id'], data['code'], data.get('method'))
        return jsonify(result.to_dict()), 200 if result.success else 401

    @app.route('/mfa/disable', methods=['POST'])
    def disable_mfa():
        data = _payload()
        core.mfa.disable_all(data['user_id'], data['code'], data.get('method'))
        return jsonify({"msg": "Two-factor authentication disabled"})

    @app.route('/mfa/status/<user_id>', methods=['GET'])
    def mfa_status(user_id):
        return jsonify(core.mfa.get_status(user_id))

    # --- MONITORING ---

    @app.route('/security/api-call', methods=['POST'])
    def record_api_call():
        data = _payload()
        core.monitor.record_api_call(
            data['url'],
            data.get('method', 'GET'),
            int(data.get('status', 200)),
            float(data.get('duration', 0)),
        )
        return jsonify({"recorded": True}), 202

    @app.route('/security/dashboard', methods=['GET'])
    def dashboard():
        snapshot = core.monitor.get_dashboard_snapshot()
        if snapshot is None:
            return jsonify({"error": "Dashboard unavailable"}), 503
        return jsonify(snapshot)

    @app.route('/security/integrity', methods=['POST'])
    def integrity():
        report = core.store.verify_integrity()
        return jsonify(report.to_dict())

    return app


if __name__ == "__main__":
    config = get_config()
    configure_logging(config.LOG_LEVEL, config.LOG_REDACT)
    security_core = build_security_core(config)
    security_core.start()
    try:
        # In production, run with Gunicorn + SSL
        create_app(security_core).run(debug=False)
    finally:
        security_core.shutdown()
