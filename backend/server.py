# backend/server.py
import os
import time
import uuid
import logging
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from accounts import ConnectedAccountStore, get_valid_account
from config import Settings, setup_logging
from cors import OriginPolicy
from dashboard import DashboardRequest, build_dashboard
from oauth import (
    OAuthError,
    TokenExchanger,
    UnauthorizedError,
    authenticate_user,
    build_authorize_url,
    issue_state,
    verify_state,
)
from postgres_client import get_auth_client, get_postgres_client

setup_logging()
logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _error_response(message: str, status: int = 500, **extra: Any):
    payload: Dict[str, Any] = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


def _json_body() -> Dict[str, Any]:
    # JSON malformado vira {} em vez de 400.
    body = request.get_json(force=True, silent=True)
    return body if isinstance(body, dict) else {}


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ConnectedAccountStore] = None,
    auth_client=None,
) -> Flask:
    settings = settings or Settings.from_env()
    policy = OriginPolicy.from_config(settings.cors)

    app = Flask(__name__)
    app.config["SETTINGS"] = settings

    def _store() -> ConnectedAccountStore:
        if store is not None:
            return store
        return ConnectedAccountStore(get_postgres_client(settings.supabase))

    def _auth_client():
        return auth_client if auth_client is not None else get_auth_client(settings.supabase)

    def _check_state(body: Dict[str, Any], provider: str) -> None:
        state = body.get("state")
        if not state:
            return
        data = verify_state(settings, str(state))
        if data.get("provider") != provider:
            raise UnauthorizedError("OAuth state does not match provider")

    @app.before_request
    def short_circuit_preflight():
        if request.method == "OPTIONS":
            return Response(status=200)
        return None

    @app.after_request
    def apply_cors_headers(response):
        response.headers.update(policy.headers(request.headers.get("Origin")))
        return response

    @app.errorhandler(405)
    def method_not_allowed(_err):
        return _error_response("Method not allowed", 405)

    @app.errorhandler(404)
    def not_found(_err):
        return _error_response("Not found", 404)

    @app.post("/ig-dashboard")
    def ig_dashboard():
        request_id = str(uuid.uuid4())
        started = time.monotonic()
        dashboard_request = DashboardRequest.from_payload(_json_body(), settings.dashboard.business_id)
        logger.info(
            "[ig-dashboard] %s timeframe=%s maxMedia=%s includePage=%s",
            request_id, dashboard_request.timeframe, dashboard_request.max_media, dashboard_request.include_page,
        )
        try:
            payload = build_dashboard(settings.dashboard, dashboard_request, request_id=request_id)
        except Exception as err:  # noqa: BLE001
            logger.error("[ig-dashboard] %s falhou após %sms: %s", request_id, _elapsed_ms(started), err)
            return _error_response(str(err) or "Unknown error", 500)
        response = jsonify(payload)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.post("/facebook-oauth")
    def facebook_oauth():
        started = time.monotonic()
        logger.info("[facebook-oauth] Request started")
        try:
            logger.info("[facebook-oauth] Step 1: Verifying JWT...")
            user_id = authenticate_user(_auth_client(), request.headers.get("Authorization"))
            logger.info("[facebook-oauth] User authenticated: %s", user_id)
            body = _json_body()
            _check_state(body, "facebook")
            result = TokenExchanger(settings, _store()).connect_facebook(user_id, body.get("code"))
        except UnauthorizedError as err:
            logger.error("[facebook-oauth] Unauthorized after %sms: %s", _elapsed_ms(started), err)
            return _error_response(str(err), 401, duration_ms=_elapsed_ms(started))
        except Exception as err:  # noqa: BLE001
            logger.error("[facebook-oauth] Error after %sms: %s", _elapsed_ms(started), err)
            return _error_response(str(err) or "Unknown error", 500, duration_ms=_elapsed_ms(started))
        logger.info("[facebook-oauth] Success! Duration: %sms", _elapsed_ms(started))
        return jsonify(result)

    @app.post("/instagram-oauth")
    def instagram_oauth():
        started = time.monotonic()
        body = _json_body()
        provider = body.get("provider") or "instagram"
        try:
            if not body.get("code"):
                raise OAuthError("Authorization code is required")
            user_id = body.get("user_id")
            if not user_id:
                raise UnauthorizedError("User ID is required")
            _check_state(body, provider)
            logger.info("[instagram-oauth] Provider: %s, user: %s", provider, user_id)
            result = TokenExchanger(settings, _store()).connect_instagram(str(user_id), body.get("code"), provider)
        except UnauthorizedError as err:
            logger.error("[instagram-oauth] Unauthorized: %s", err)
            return _error_response(str(err), 401, duration_ms=_elapsed_ms(started))
        except Exception as err:  # noqa: BLE001
            logger.error("[instagram-oauth] Error after %sms: %s", _elapsed_ms(started), err)
            return _error_response(str(err) or "Unknown error", 500, duration_ms=_elapsed_ms(started))
        return jsonify(result)

    @app.post("/get-instagram-token")
    def get_instagram_token():
        body = _json_body()
        user_id = body.get("user_id")
        if not user_id:
            return _error_response("User ID is required", 500)
        logger.info("[get-instagram-token] Fetching token for user: %s", user_id)
        try:
            account = get_valid_account(_store(), str(user_id))
        except Exception as err:  # noqa: BLE001
            logger.error("[get-instagram-token] %s", err)
            return _error_response(str(err), 500)
        return jsonify({
            "access_token": account.access_token,
            "instagram_user_id": account.provider_account_id,
        })

    @app.post("/oauth-url")
    def oauth_url():
        body = _json_body()
        provider = body.get("provider") or "instagram"
        try:
            state = issue_state(settings, provider, body.get("redirect_to") or "/")
            url = build_authorize_url(settings, provider, state)
        except OAuthError as err:
            return _error_response(str(err), 500)
        return jsonify({"success": True, "provider": provider, "url": url, "state": state})

    return app


app = create_app()


if __name__ == "__main__":
    debug_env = os.getenv("FLASK_DEBUG")
    debug_mode = False
    if debug_env is not None:
        debug_mode = debug_env.lower() not in {"0", "false", "no"}
    run_host = os.getenv("FLASK_RUN_HOST") or os.getenv("HOST") or "0.0.0.0"
    run_port = int(os.getenv("PORT", "3001"))
    app.run(host=run_host, port=run_port, debug=debug_mode)
