# backend/postgres_client.py
import logging
from typing import Dict, Optional, Tuple

from supabase import Client, create_client

from config import SupabaseConfig

logger = logging.getLogger(__name__)

# Um cliente por (url, chave); reaproveitado entre requisições.
_CLIENTS: Dict[Tuple[str, str], Client] = {}


def _cached_client(url: str, key: str) -> Client:
    client = _CLIENTS.get((url, key))
    if client is None:
        client = create_client(url, key)
        _CLIENTS[(url, key)] = client
    return client


def get_postgres_client(config: Optional[SupabaseConfig] = None) -> Optional[Client]:
    """
    Cliente Supabase com a service role (ignora RLS). Retorna None quando o
    banco não está configurado.
    """
    config = config or SupabaseConfig.from_env()
    if not config.url or not config.service_role_key:
        logger.warning("SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY não configurados.")
        return None
    return _cached_client(config.url, config.service_role_key)


def get_auth_client(config: Optional[SupabaseConfig] = None) -> Optional[Client]:
    """Cliente com a anon key, usado só para validar sessões (JWT) de usuários."""
    config = config or SupabaseConfig.from_env()
    if not config.url or not config.anon_key:
        logger.warning("SUPABASE_URL/SUPABASE_ANON_KEY não configurados.")
        return None
    return _cached_client(config.url, config.anon_key)
