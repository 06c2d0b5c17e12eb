# backend/oauth.py
"""
Troca de código OAuth (Facebook Login e Instagram Login) por token de longa
duração, resolução da conta Instagram Business e gravação em
``connected_accounts``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from accounts import ConnectedAccount, ConnectedAccountStore, expiry_from_now
from config import Settings
from meta import GRAPH_HOST, request_json

logger = logging.getLogger(__name__)

CODE_MIN_LENGTH = 10
CODE_MAX_LENGTH = 1000
DEFAULT_EXPIRES_IN = 5_184_000  # 60 dias

INSTAGRAM_TOKEN_URL = "https://api.instagram.com/oauth/access_token"
INSTAGRAM_GRAPH_HOST = "https://graph.instagram.com"
INSTAGRAM_AUTHORIZE_URL = "https://www.instagram.com/oauth/authorize"
FACEBOOK_DIALOG_HOST = "https://www.facebook.com"

FACEBOOK_SCOPES = [
    "instagram_basic",
    "instagram_manage_insights",
    "pages_show_list",
    "pages_read_engagement",
    "business_management",
]
INSTAGRAM_SCOPES = ["instagram_business_basic", "instagram_business_manage_insights"]

FACEBOOK_PROFILE_FIELDS = "id,username,name,profile_picture_url,followers_count,follows_count,media_count"
INSTAGRAM_PROFILE_FIELDS = "id,username,name,profile_picture_url"
STATE_SALT = "ig-dashboard-oauth-state"


class OAuthError(RuntimeError):
    pass


class UnauthorizedError(OAuthError):
    pass


@dataclass
class LinkedPage:
    instagram_user_id: str
    page_id: str
    page_name: Optional[str]
    page_access_token: Optional[str]


def is_valid_code(code: Any) -> bool:
    return isinstance(code, str) and CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH


def _state_serializer(settings: Settings) -> URLSafeTimedSerializer:
    secret = settings.oauth.state_secret
    if not secret:
        raise OAuthError("OAUTH_STATE_SECRET is not configured")
    return URLSafeTimedSerializer(secret, salt=STATE_SALT)


def issue_state(settings: Settings, provider: str, redirect_to: str = "/") -> str:
    return _state_serializer(settings).dumps({"provider": provider, "redirect_to": redirect_to or "/"})


def verify_state(settings: Settings, state: str) -> Dict[str, Any]:
    try:
        data = _state_serializer(settings).loads(state, max_age=settings.oauth.state_ttl_seconds)
    except SignatureExpired as err:
        raise UnauthorizedError("OAuth state expired") from err
    except BadSignature as err:
        raise UnauthorizedError("Invalid OAuth state") from err
    if not isinstance(data, dict):
        raise UnauthorizedError("Invalid OAuth state")
    return data


def build_authorize_url(settings: Settings, provider: str, state: str) -> str:
    oauth = settings.oauth
    if provider == "facebook":
        if not oauth.facebook_app_id:
            raise OAuthError("Facebook app credentials not configured")
        query = {
            "client_id": oauth.facebook_app_id,
            "redirect_uri": oauth.redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": ",".join(FACEBOOK_SCOPES),
        }
        return f"{FACEBOOK_DIALOG_HOST}/{settings.dashboard.graph_version}/dialog/oauth?{urlencode(query)}"
    if provider == "instagram":
        if not oauth.instagram_app_id:
            raise OAuthError("Instagram app credentials not configured")
        query = {
            "client_id": oauth.instagram_app_id,
            "redirect_uri": oauth.redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": ",".join(INSTAGRAM_SCOPES),
        }
        return f"{INSTAGRAM_AUTHORIZE_URL}?{urlencode(query)}"
    raise OAuthError(f"Unsupported provider: {provider}")


def authenticate_user(auth_client, authorization_header: Optional[str]) -> str:
    """Valida o JWT do Supabase Auth e devolve o id do usuário."""
    if not authorization_header:
        raise UnauthorizedError("Missing authorization header")
    jwt = authorization_header.strip()
    if jwt.lower().startswith("bearer "):
        jwt = jwt[7:].strip()
    if not jwt or auth_client is None:
        raise UnauthorizedError("Unauthorized")
    try:
        response = auth_client.auth.get_user(jwt)
    except Exception as err:  # noqa: BLE001
        logger.error("[facebook-oauth] Auth error: %s", err)
        raise UnauthorizedError("Unauthorized") from err
    user = getattr(response, "user", None)
    user_id = getattr(user, "id", None)
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    return str(user_id)


def _error_message(status: int, payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            return err.get("message") or err.get("type") or str(err)
        if isinstance(err, str) and err:
            return payload.get("error_description") or err
    if status >= 400:
        return f"HTTP {status}"
    return None


def _checked(status: int, payload: Any, prefix: Optional[str] = None) -> Dict[str, Any]:
    message = _error_message(status, payload)
    if message:
        raise OAuthError(f"{prefix}: {message}" if prefix else message)
    return payload if isinstance(payload, dict) else {}


class TokenExchanger:
    def __init__(self, settings: Settings, store: ConnectedAccountStore):
        self.settings = settings
        self.store = store
        self.version = settings.dashboard.graph_version
        self.timeout = settings.dashboard.request_timeout

    def _graph(self, path: str, params: Dict[str, Any]) -> Tuple[int, Any]:
        return request_json("GET", f"{GRAPH_HOST}/{self.version}{path}", params=params, timeout=self.timeout)

    def _facebook_credentials(self) -> Tuple[str, str]:
        oauth = self.settings.oauth
        if not oauth.facebook_app_id or not oauth.facebook_app_secret:
            raise OAuthError("Facebook app credentials not configured")
        return oauth.facebook_app_id, oauth.facebook_app_secret

    def _instagram_credentials(self) -> Tuple[str, str]:
        oauth = self.settings.oauth
        if not oauth.instagram_app_id or not oauth.instagram_app_secret:
            raise OAuthError("Instagram app credentials not configured")
        return oauth.instagram_app_id, oauth.instagram_app_secret

    # ---- Facebook Login ----

    def exchange_facebook_code(self, code: str) -> str:
        client_id, client_secret = self._facebook_credentials()
        status, payload = self._graph("/oauth/access_token", {
            "client_id": client_id,
            "redirect_uri": self.settings.oauth.redirect_uri,
            "client_secret": client_secret,
            "code": code,
        })
        data = _checked(status, payload, "Facebook token error")
        token = data.get("access_token")
        if not token:
            raise OAuthError("Facebook token error: access_token missing")
        return token

    def upgrade_facebook_token(self, short_lived_token: str) -> Tuple[str, int]:
        client_id, client_secret = self._facebook_credentials()
        status, payload = self._graph("/oauth/access_token", {
            "grant_type": "fb_exchange_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "fb_exchange_token": short_lived_token,
        })
        data = _checked(status, payload, "Long-lived token error")
        token = data.get("access_token")
        if not token:
            raise OAuthError("Long-lived token error: access_token missing")
        return token, int(data.get("expires_in") or DEFAULT_EXPIRES_IN)

    def list_pages(self, user_token: str) -> List[Dict[str, Any]]:
        status, payload = self._graph("/me/accounts", {
            "fields": "id,name,access_token,instagram_business_account",
            "access_token": user_token,
        })
        data = _checked(status, payload, "Pages fetch error")
        pages = data.get("data")
        return [page for page in pages if isinstance(page, dict)] if isinstance(pages, list) else []

    def _linked_account_id(self, page: Dict[str, Any], user_token: str) -> Optional[str]:
        linked = page.get("instagram_business_account")
        if isinstance(linked, dict) and linked.get("id"):
            return str(linked["id"])
        # A lista nem sempre traz o vínculo; consulta a página diretamente.
        status, payload = self._graph(f"/{page.get('id')}", {
            "fields": "instagram_business_account",
            "access_token": user_token,
        })
        if _error_message(status, payload):
            logger.warning("Falha ao consultar vínculo Instagram da página %s", page.get("id"))
            return None
        linked = payload.get("instagram_business_account") if isinstance(payload, dict) else None
        if isinstance(linked, dict) and linked.get("id"):
            return str(linked["id"])
        return None

    def resolve_business_account(self, user_token: str, tag: str = "facebook-oauth") -> LinkedPage:
        pages = self.list_pages(user_token)
        logger.info("[%s] Pages found: %s", tag, len(pages))
        if not pages:
            raise OAuthError(
                "No Facebook Pages found. Please create a Facebook Page and link it to your "
                "Instagram Business account."
            )
        for page in pages:
            logger.info("[%s] Checking page: %s (ID: %s)", tag, page.get("name"), page.get("id"))
            instagram_user_id = self._linked_account_id(page, user_token)
            if instagram_user_id:
                logger.info("[%s] Found Instagram Business Account %s on page %s", tag, instagram_user_id, page.get("name"))
                return LinkedPage(
                    instagram_user_id=instagram_user_id,
                    page_id=str(page.get("id")),
                    page_name=page.get("name"),
                    page_access_token=page.get("access_token"),
                )
        page_names = ", ".join(str(page.get("name")) for page in pages)
        raise OAuthError(
            f"No Instagram Business Account found. Your Facebook Pages ({page_names}) are not linked to an "
            "Instagram Business account. Please link your Instagram Business/Creator account to a Facebook Page."
        )

    def fetch_facebook_profile(self, instagram_user_id: str, token: str) -> Dict[str, Any]:
        status, payload = self._graph(f"/{instagram_user_id}", {
            "fields": FACEBOOK_PROFILE_FIELDS,
            "access_token": token,
        })
        return _checked(status, payload, "Profile fetch error")

    def connect_facebook(self, user_id: str, code: str, *, store_page_token: bool = True,
                         provider: str = "facebook", tag: str = "facebook-oauth") -> Dict[str, Any]:
        if not is_valid_code(code):
            logger.error("[%s] Invalid code format", tag)
            raise OAuthError("Invalid authorization code format")
        logger.info("[%s] Code received, length: %s", tag, len(code))

        logger.info("[%s] Exchanging code for access token...", tag)
        short_lived = self.exchange_facebook_code(code)

        logger.info("[%s] Getting long-lived token...", tag)
        user_token, expires_in = self.upgrade_facebook_token(short_lived)
        logger.info("[%s] Long-lived token received, expires in: %s seconds", tag, expires_in)

        linked = self.resolve_business_account(user_token, tag)
        token = (linked.page_access_token or user_token) if store_page_token else user_token

        logger.info("[%s] Fetching Instagram profile...", tag)
        profile = self.fetch_facebook_profile(linked.instagram_user_id, token)

        self._persist(user_id, provider, linked.instagram_user_id, token, expires_in, profile, tag)
        return {
            "success": True,
            "provider": provider,
            "instagram_user_id": linked.instagram_user_id,
            "username": profile.get("username"),
            "name": profile.get("name"),
            "profile_picture_url": profile.get("profile_picture_url"),
            "page_name": linked.page_name,
        }

    # ---- Instagram Login ----

    def exchange_instagram_code(self, code: str) -> Tuple[str, str]:
        client_id, client_secret = self._instagram_credentials()
        status, payload = request_json("POST", INSTAGRAM_TOKEN_URL, data={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.oauth.redirect_uri,
            "code": code,
        }, timeout=self.timeout)
        if isinstance(payload, dict) and payload.get("error_message"):
            raise OAuthError(str(payload["error_message"]))
        data = _checked(status, payload)
        # A API nova devolve {"data": [{...}]}; a antiga devolve o objeto direto.
        if isinstance(data.get("data"), list) and data["data"]:
            data = data["data"][0]
        token = data.get("access_token")
        instagram_user_id = data.get("user_id")
        if not token or instagram_user_id is None:
            raise OAuthError("Instagram token response missing access_token/user_id")
        return token, str(instagram_user_id)

    def upgrade_instagram_token(self, short_lived_token: str) -> Tuple[str, int]:
        _, client_secret = self._instagram_credentials()
        status, payload = request_json("GET", f"{INSTAGRAM_GRAPH_HOST}/access_token", params={
            "grant_type": "ig_exchange_token",
            "client_secret": client_secret,
            "access_token": short_lived_token,
        }, timeout=self.timeout)
        # Só um corpo com "error" interrompe; qualquer outra falha mantém o token curto.
        data = _checked(0, payload)
        if status >= 400:
            logger.warning("Troca por token longo falhou (HTTP %s); usando token curto.", status)
        return data.get("access_token") or short_lived_token, int(data.get("expires_in") or DEFAULT_EXPIRES_IN)

    def fetch_instagram_profile(self, instagram_user_id: str, token: str) -> Dict[str, Any]:
        status, payload = request_json(
            "GET",
            f"{INSTAGRAM_GRAPH_HOST}/{self.version}/{instagram_user_id}",
            params={"fields": INSTAGRAM_PROFILE_FIELDS, "access_token": token},
            timeout=self.timeout,
        )
        return _checked(status, payload, "Profile fetch error")

    def connect_instagram(self, user_id: str, code: str, provider: str = "instagram") -> Dict[str, Any]:
        tag = "instagram-oauth"
        if provider == "facebook":
            return self.connect_facebook(user_id, code, store_page_token=False, provider="facebook", tag=tag)
        if provider != "instagram":
            raise OAuthError(f"Unsupported provider: {provider}")
        if not is_valid_code(code):
            logger.error("[%s] Invalid code format", tag)
            raise OAuthError("Invalid authorization code format")

        logger.info("[%s] Exchanging code for short-lived token...", tag)
        short_lived, instagram_user_id = self.exchange_instagram_code(code)

        logger.info("[%s] Exchanging for long-lived token...", tag)
        token, expires_in = self.upgrade_instagram_token(short_lived)

        logger.info("[%s] Fetching Instagram profile...", tag)
        profile = self.fetch_instagram_profile(instagram_user_id, token)

        self._persist(user_id, provider, instagram_user_id, token, expires_in, profile, tag)
        return {
            "success": True,
            "provider": provider,
            "instagram_user_id": instagram_user_id,
            "username": profile.get("username"),
            "name": profile.get("name"),
            "profile_picture_url": profile.get("profile_picture_url"),
        }

    def _persist(self, user_id: str, provider: str, instagram_user_id: str, token: str,
                 expires_in: int, profile: Dict[str, Any], tag: str) -> None:
        logger.info("[%s] Saving connected account to database...", tag)
        self.store.upsert(ConnectedAccount(
            user_id=user_id,
            provider=provider,
            provider_account_id=instagram_user_id,
            access_token=token,
            token_expires_at=expiry_from_now(expires_in),
            account_username=profile.get("username"),
            account_name=profile.get("name"),
            profile_picture_url=profile.get("profile_picture_url"),
        ))
